"""Pydantic models for workflow definitions, instances and history."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

WILDCARD = "*"

# A condition or action entry: "name", {"name": ..., "params": ...} or [name, *params].
Entry = str | dict[str, Any] | list[Any]


class TriggerType(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SYSTEM = "system"


def humanize(key: str) -> str:
    return key.replace("_", " ").replace("-", " ").title()


class StateSpec(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str | None = None
    color: str = "gray"
    is_final: bool = False


class TransitionSpec(BaseModel):
    """A guarded edge between states.

    `from` accepts a single state key, a list of keys, or "*" for any state.
    Post actions are read from `actions` (or the older `post_actions` key).
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    from_states: list[str] = Field(
        validation_alias=AliasChoices("from", "from_states"),
        serialization_alias="from",
    )
    to: str
    label: str | None = None
    conditions: list[Entry] = Field(default_factory=list)
    pre_actions: list[Entry] = Field(default_factory=list)
    actions: list[Entry] = Field(
        default_factory=list,
        validation_alias=AliasChoices("actions", "post_actions"),
    )
    icon: str | None = None
    confirm: str | bool | None = None

    @field_validator("from_states", mode="before")
    @classmethod
    def _normalise_from(cls, value: object) -> object:
        if isinstance(value, str):
            return [value]
        return value

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD in self.from_states


class WorkflowDefinition(BaseModel):
    """A validated workflow schema.

    Instances are only ever built through `validation.build_definition` or loaded
    back from storage, so every transition references declared states.
    """

    id: int | None = None
    slug: str
    name: str
    entity_type: str
    description: str | None = None
    initial_state: str
    states: dict[str, StateSpec]
    transitions: dict[str, TransitionSpec]
    config: dict[str, Any] = Field(default_factory=dict)
    owner: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def get_transition(self, transition_id: str) -> TransitionSpec | None:
        return self.transitions.get(transition_id)

    def is_final(self, state: str) -> bool:
        spec = self.states.get(state)
        return bool(spec and spec.is_final)

    def can_transition(
        self, from_state: str, transition_id: str, *, final_is_terminal: bool = False
    ) -> bool:
        """Return True if `transition_id` exists and may leave `from_state`.

        This is the structural check only; conditions are evaluated elsewhere.
        """
        spec = self.get_transition(transition_id)
        if spec is None:
            return False
        if from_state in spec.from_states:
            return True
        if spec.is_wildcard:
            return not (final_is_terminal and self.is_final(from_state))
        return False

    def transitions_from(
        self, state: str, *, final_is_terminal: bool = False
    ) -> dict[str, TransitionSpec]:
        return {
            transition_id: spec
            for transition_id, spec in self.transitions.items()
            if self.can_transition(state, transition_id, final_is_terminal=final_is_terminal)
        }

    def state_label(self, state: str) -> str:
        spec = self.states.get(state)
        if spec is not None and spec.label:
            return spec.label
        return humanize(state)

    def transition_label(self, transition_id: str) -> str:
        spec = self.transitions.get(transition_id)
        if spec is not None and spec.label:
            return spec.label
        return transition_id

    def to_array(self) -> dict[str, Any]:
        """Export states, transitions and labels for UI consumption."""

        return {
            "slug": self.slug,
            "name": self.name,
            "entity_type": self.entity_type,
            "description": self.description,
            "initial_state": self.initial_state,
            "states": {
                key: {
                    "label": self.state_label(key),
                    "color": spec.color,
                    "is_final": spec.is_final,
                }
                for key, spec in self.states.items()
            },
            "transitions": {
                transition_id: {
                    "from": list(spec.from_states),
                    "to": spec.to,
                    "label": self.transition_label(transition_id),
                    "icon": spec.icon,
                    "confirm": spec.confirm,
                    "conditions": list(spec.conditions),
                    "pre_actions": list(spec.pre_actions),
                    "actions": list(spec.actions),
                }
                for transition_id, spec in self.transitions.items()
            },
        }


class WorkflowInstance(BaseModel):
    """The live binding of one definition to one external record."""

    id: int
    definition_id: int
    workflow_slug: str
    record_type: str
    record_id: str
    current_state: str
    previous_state: str | None = None
    transitioned_at: datetime | None = None
    transitioned_by: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime
    updated_at: datetime


class ConditionResult(BaseModel):
    passed: bool = True
    failed: list[str] = Field(default_factory=list)
    details: dict[str, bool] = Field(default_factory=dict)


class ExecutedAction(BaseModel):
    action: str
    phase: Literal["pre", "post"]
    params: Any = None
    ok: bool = True
    error: str | None = None


class HistoryEntry(BaseModel):
    """One immutable audit row per executed transition."""

    model_config = ConfigDict(frozen=True)

    id: int
    instance_id: int
    transition_id: str
    from_state: str
    to_state: str
    triggered_by: str | None = None
    trigger_type: TriggerType = TriggerType.MANUAL
    condition_results: ConditionResult = Field(default_factory=ConditionResult)
    actions_executed: list[ExecutedAction] = Field(default_factory=list)
    data_snapshot: dict[str, Any] = Field(default_factory=dict)
    notes: str | None = None
    created_at: datetime


class AvailableTransition(BaseModel):
    id: str
    label: str
    to: str
    can_execute: bool
    failed_conditions: list[str] = Field(default_factory=list)
    icon: str | None = None
    confirm: str | bool | None = None
