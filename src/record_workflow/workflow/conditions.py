"""Transition guards.

Conditions are resolved in order:
1. the condition registry (built-ins plus anything registered by callers)
2. the record type's capabilities, by name then `can_<name>`
3. otherwise the condition is skipped with a warning

Skipping unknown names keeps workflows extensible by plugins that may not be
loaded, at the cost of not catching misspelled names. The warning is the only
signal, so keep an eye on it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from record_workflow.entries import parse_entry
from record_workflow.models import AvailableTransition, ConditionResult, Entry, WorkflowDefinition
from record_workflow.workflow.records import CapabilityRegistry, read_field, record_type_of

logger = logging.getLogger(__name__)

# permission checker: fn(actor, permission, record) -> bool
PermissionChecker = Callable[[str, str, Any], bool]
# registered condition: fn(context, *params) -> bool
ConditionHandler = Callable[..., bool]


@dataclass(frozen=True, slots=True)
class ConditionContext:
    """Everything a guard may look at. Guards must not write anything."""

    record: Any
    actor: str | None
    now: datetime
    permissions: PermissionChecker | None = None

    def can(self, permission: str) -> bool:
        if self.actor is None or self.permissions is None:
            return False
        return bool(self.permissions(self.actor, permission, self.record))


def _relation_count(record: object, relation: str) -> int:
    related = read_field(record, relation)
    if callable(related):
        related = related()
    if related is None:
        return 0
    count = getattr(related, "count", None)
    if callable(count) and not isinstance(related, list | tuple | str):
        return int(count())
    try:
        return len(related)
    except TypeError:
        return sum(1 for _ in related)


def _as_datetime(value: object) -> datetime | None:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def exists(ctx: ConditionContext) -> bool:
    return ctx.record is not None and bool(getattr(ctx.record, "exists", True))


def has_field(ctx: ConditionContext, field: str) -> bool:
    return bool(read_field(ctx.record, field))


def field_equals(ctx: ConditionContext, field: str, value: Any) -> bool:
    return read_field(ctx.record, field) == value


def has_relation(ctx: ConditionContext, relation: str) -> bool:
    return _relation_count(ctx.record, relation) > 0


def relation_count_min(ctx: ConditionContext, relation: str, minimum: int) -> bool:
    return _relation_count(ctx.record, relation) >= int(minimum)


def user_can(ctx: ConditionContext, permission: str) -> bool:
    return ctx.can(permission)


def created_within(ctx: ConditionContext, hours: float, field: str = "created_at") -> bool:
    created = _as_datetime(read_field(ctx.record, field))
    if created is None:
        return False
    return ctx.now - created <= timedelta(hours=float(hours))


BUILTIN_CONDITIONS: dict[str, ConditionHandler] = {
    "exists": exists,
    "has_field": has_field,
    "field_equals": field_equals,
    "has_relation": has_relation,
    "relation_count_min": relation_count_min,
    "user_can": user_can,
    "created_within": created_within,
}


class ConditionRegistry:
    def __init__(self, *, builtins: bool = True) -> None:
        self._handlers: dict[str, ConditionHandler] = dict(BUILTIN_CONDITIONS) if builtins else {}

    def register(self, name: str, handler: ConditionHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> ConditionHandler | None:
        return self._handlers.get(name)


class ConditionEvaluator:
    def __init__(self, registry: ConditionRegistry, capabilities: CapabilityRegistry) -> None:
        self._registry = registry
        self._capabilities = capabilities

    def evaluate(self, entries: Iterable[Entry], ctx: ConditionContext) -> ConditionResult:
        """Evaluate every entry; an empty list always passes."""

        result = ConditionResult()

        for entry in entries:
            parsed = parse_entry(entry)

            handler = self._registry.get(parsed.name)
            if handler is not None:
                passed = handler(ctx, *parsed.args, **parsed.kwargs)
            else:
                record_type = record_type_of(ctx.record)
                capability = self._capabilities.condition_for(record_type, parsed.name)
                if capability is None:
                    logger.warning(
                        "Unknown workflow condition skipped",
                        extra={"condition": parsed.name, "record_type": record_type},
                    )
                    continue
                passed = capability(ctx.record, *parsed.args, **parsed.kwargs)

            passed = bool(passed)
            if parsed.negated:
                passed = not passed

            result.details[parsed.expression] = passed
            if not passed:
                result.passed = False
                result.failed.append(parsed.label)

        return result


def annotate_transitions(
    definition: WorkflowDefinition,
    state: str,
    evaluator: ConditionEvaluator,
    ctx: ConditionContext,
    *,
    final_is_terminal: bool = False,
) -> list[AvailableTransition]:
    """Transitions leaving `state`, each with a live (advisory) guard evaluation."""

    available: list[AvailableTransition] = []
    transitions = definition.transitions_from(state, final_is_terminal=final_is_terminal)
    for transition_id, spec in transitions.items():
        outcome = evaluator.evaluate(spec.conditions, ctx)
        available.append(
            AvailableTransition(
                id=transition_id,
                label=definition.transition_label(transition_id),
                to=spec.to,
                can_execute=outcome.passed,
                failed_conditions=outcome.failed,
                icon=spec.icon,
                confirm=spec.confirm,
            )
        )
    return available
