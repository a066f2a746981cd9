"""Transition side effects.

Actions are resolved in order:
1. a namespaced name ("billing.invoice.create") that the service bus offers
2. the action registry (built-ins plus anything registered by callers)
3. the record type's capabilities
4. otherwise the action is skipped with a warning
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from record_workflow.bus import ServiceBus
from record_workflow.config import PostActionFailurePolicy
from record_workflow.entries import ParsedEntry, parse_entry
from record_workflow.errors import ActionFailed
from record_workflow.models import Entry, ExecutedAction, WorkflowInstance
from record_workflow.workflow.records import (
    CapabilityRegistry,
    record_id_of,
    record_type_of,
    write_field,
)

logger = logging.getLogger(__name__)

Phase = Literal["pre", "post"]
# registered action: fn(context, *params) -> Any
ActionHandler = Callable[..., Any]


@dataclass(frozen=True, slots=True)
class ActionContext:
    record: Any
    instance: WorkflowInstance | None
    data: dict[str, Any]
    actor: str | None
    phase: Phase
    now: datetime
    transition_id: str | None = None
    bus: ServiceBus | None = None


def log_activity(ctx: ActionContext, message: str | None = None, **context: Any) -> None:
    logger.info(
        message or "Workflow activity",
        extra={
            "record_type": record_type_of(ctx.record),
            "record_id": record_id_of(ctx.record),
            "transition": ctx.transition_id,
            "phase": ctx.phase,
            "actor": ctx.actor,
            "state": ctx.instance.current_state if ctx.instance else None,
            **context,
        },
    )


def update_field(ctx: ActionContext, field: str, value: Any) -> None:
    write_field(ctx.record, field, value)


def touch_timestamp(ctx: ActionContext, field: str = "updated_at") -> None:
    write_field(ctx.record, field, ctx.now)


def dispatch_event(ctx: ActionContext, event_name: str, **payload: Any) -> None:
    if ctx.bus is None:
        logger.warning("No service bus to dispatch event on", extra={"event": event_name})
        return
    ctx.bus.publish(
        event_name,
        {
            "record_type": record_type_of(ctx.record),
            "record_id": record_id_of(ctx.record),
            "transition": ctx.transition_id,
            "data": dict(ctx.data),
            **payload,
        },
    )


BUILTIN_ACTIONS: dict[str, ActionHandler] = {
    "log_activity": log_activity,
    "update_field": update_field,
    "touch_timestamp": touch_timestamp,
    "dispatch_event": dispatch_event,
}


class ActionRegistry:
    def __init__(self, *, builtins: bool = True) -> None:
        self._handlers: dict[str, ActionHandler] = dict(BUILTIN_ACTIONS) if builtins else {}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def get(self, name: str) -> ActionHandler | None:
        return self._handlers.get(name)


class ActionExecutor:
    def __init__(
        self,
        registry: ActionRegistry,
        capabilities: CapabilityRegistry,
        bus: ServiceBus | None = None,
    ) -> None:
        self._registry = registry
        self._capabilities = capabilities
        self._bus = bus

    def _call_bus(self, parsed: ParsedEntry, ctx: ActionContext) -> Any:
        payload: dict[str, Any] = {
            "record": ctx.record,
            "instance": ctx.instance,
            "data": ctx.data,
            **parsed.kwargs,
        }
        if parsed.args:
            payload["params"] = list(parsed.args)
        return self._bus.call(parsed.name, payload)

    def execute(self, entry: Entry, ctx: ActionContext) -> Any:
        parsed = parse_entry(entry, allow_negation=False)

        if "." in parsed.name and self._bus is not None and self._bus.has_service(parsed.name):
            return self._call_bus(parsed, ctx)

        handler = self._registry.get(parsed.name)
        if handler is not None:
            return handler(ctx, *parsed.args, **parsed.kwargs)

        record_type = record_type_of(ctx.record)
        capability = self._capabilities.action_for(record_type, parsed.name)
        if capability is not None:
            return capability(ctx.record, ctx.data, *parsed.args, **parsed.kwargs)

        logger.warning(
            "Unknown workflow action skipped",
            extra={"action": parsed.name, "record_type": record_type, "phase": ctx.phase},
        )
        return None

    def run_phase(
        self,
        entries: Iterable[Entry],
        ctx: ActionContext,
        *,
        on_failure: PostActionFailurePolicy = "raise",
    ) -> list[ExecutedAction]:
        """Run every entry in declared order.

        With `on_failure="raise"` the first failure stops the phase and raises
        `ActionFailed` chained from the original error. With "log" the failure
        is logged, recorded with `ok=False` and the remaining entries still run.
        """
        executed: list[ExecutedAction] = []
        for entry in entries:
            parsed = parse_entry(entry, allow_negation=False)
            try:
                self.execute(entry, ctx)
            except Exception as exc:
                if on_failure == "raise":
                    raise ActionFailed(parsed.name, ctx.phase, str(exc)) from exc
                logger.error(
                    "Workflow action failed",
                    extra={
                        "action": parsed.name,
                        "phase": ctx.phase,
                        "transition": ctx.transition_id,
                    },
                    exc_info=True,
                )
                executed.append(
                    ExecutedAction(
                        action=parsed.name,
                        phase=ctx.phase,
                        params=parsed.params,
                        ok=False,
                        error=str(exc),
                    )
                )
                continue
            executed.append(
                ExecutedAction(action=parsed.name, phase=ctx.phase, params=parsed.params)
            )
        return executed
