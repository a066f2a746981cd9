"""Class-declared workflows that keep their state on the record itself.

A lighter alternative to `WorkflowEngine` for records that need guarded
transitions but no instance row or history:

    class OrderFlow(RecordStateMachine):
        slug = "order_flow"
        state_field = "status"
        states = {"draft": {}, "placed": {}, "shipped": {"is_final": True}}
        transitions = {
            "place": {"from": "draft", "to": "placed", "conditions": ["has_lines"]},
            "ship": {"from": "placed", "to": "shipped"},
        }

    OrderFlow().apply(order, "place")

The schema is validated when the subclass is created, with the same rules as
`WorkflowEngine.define_workflow`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, ClassVar

from record_workflow.bus import ServiceBus
from record_workflow.errors import (
    ConditionsNotMet,
    InvalidTransitionState,
    UnknownTransition,
)
from record_workflow.models import AvailableTransition, WorkflowDefinition
from record_workflow.validation import build_definition
from record_workflow.workflow.actions import (
    ActionContext,
    ActionExecutor,
    ActionRegistry,
    Phase,
)
from record_workflow.workflow.conditions import (
    ConditionContext,
    ConditionEvaluator,
    ConditionRegistry,
    PermissionChecker,
    annotate_transitions,
)
from record_workflow.workflow.records import (
    CapabilityRegistry,
    read_field,
    record_type_of,
    write_field,
)

logger = logging.getLogger(__name__)


class RecordStateMachine:
    slug: ClassVar[str]
    states: ClassVar[Mapping[str, Any]]
    transitions: ClassVar[Mapping[str, Any]]
    initial_state: ClassVar[str | None] = None
    state_field: ClassVar[str] = "state"
    entity_type: ClassVar[str | None] = None

    definition: ClassVar[WorkflowDefinition]

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if "states" not in cls.__dict__ and "transitions" not in cls.__dict__:
            # Intermediate base classes may leave the schema to their children.
            return
        slug = getattr(cls, "slug", None) or cls.__name__
        payload: dict[str, Any] = {
            "name": cls.__name__,
            "states": dict(cls.states),
            "transitions": dict(cls.transitions),
        }
        if cls.initial_state:
            payload["initial_state"] = cls.initial_state
        cls.slug = slug
        cls.definition = build_definition(slug, cls.entity_type or cls.__name__, payload)

    def __init__(
        self,
        *,
        conditions: ConditionRegistry | None = None,
        actions: ActionRegistry | None = None,
        capabilities: CapabilityRegistry | None = None,
        permissions: PermissionChecker | None = None,
        bus: ServiceBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        capabilities = capabilities or CapabilityRegistry()
        self.permissions = permissions
        self.bus = bus
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._evaluator = ConditionEvaluator(conditions or ConditionRegistry(), capabilities)
        self._executor = ActionExecutor(actions or ActionRegistry(), capabilities, bus)

    def current_state(self, record: object) -> str:
        """The record's state, or the initial state when the field is empty."""

        return read_field(record, self.state_field) or self.definition.initial_state

    def available_transitions(
        self, record: object, actor: str | None = None
    ) -> list[AvailableTransition]:
        return annotate_transitions(
            self.definition,
            self.current_state(record),
            self._evaluator,
            self._context(record, actor),
        )

    def can_apply(self, record: object, transition_id: str, actor: str | None = None) -> bool:
        if not self.definition.can_transition(self.current_state(record), transition_id):
            return False
        spec = self.definition.transitions[transition_id]
        return self._evaluator.evaluate(spec.conditions, self._context(record, actor)).passed

    def apply(
        self,
        record: object,
        transition_id: str,
        data: Mapping[str, Any] | None = None,
        actor: str | None = None,
    ) -> str:
        """Run a transition and write the new state onto the record.

        Pre-action failures abort before the state is written. Post-action
        failures propagate after it was written; there is no transaction to
        roll back here.

        Returns:
            The new state.
        """
        spec = self.definition.get_transition(transition_id)
        if spec is None:
            raise UnknownTransition(self.slug, transition_id)

        current = self.current_state(record)
        if not self.definition.can_transition(current, transition_id):
            raise InvalidTransitionState(transition_id, current, spec.from_states)

        ctx = self._context(record, actor)
        outcome = self._evaluator.evaluate(spec.conditions, ctx)
        if not outcome.passed:
            raise ConditionsNotMet(transition_id, outcome.failed)

        incoming = dict(data or {})
        self._executor.run_phase(
            spec.pre_actions,
            self._action_context(record, incoming, actor, "pre", ctx.now, transition_id),
        )
        write_field(record, self.state_field, spec.to)
        self._executor.run_phase(
            spec.actions,
            self._action_context(record, incoming, actor, "post", ctx.now, transition_id),
        )

        logger.info(
            "Record state changed",
            extra={
                "workflow": self.slug,
                "transition": transition_id,
                "record_type": record_type_of(record),
                "from_state": current,
                "to_state": spec.to,
            },
        )
        return spec.to

    def _context(self, record: object, actor: str | None) -> ConditionContext:
        return ConditionContext(
            record=record, actor=actor, now=self._clock(), permissions=self.permissions
        )

    def _action_context(
        self,
        record: object,
        data: dict[str, Any],
        actor: str | None,
        phase: Phase,
        now: datetime,
        transition_id: str,
    ) -> ActionContext:
        return ActionContext(
            record=record,
            instance=None,
            data=data,
            actor=actor,
            phase=phase,
            now=now,
            transition_id=transition_id,
            bus=self.bus,
        )
