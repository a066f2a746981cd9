"""Workflow engine: definitions, instances, guarded transitions and history."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from functools import partial
from typing import Any

from record_workflow.bus import ServiceBus
from record_workflow.config import WorkflowSettings
from record_workflow.errors import (
    ConcurrentTransitionError,
    ConditionsNotMet,
    DefinitionNotFound,
    InvalidTransitionState,
    NoWorkflowInstance,
    UnknownTransition,
)
from record_workflow.models import (
    AvailableTransition,
    HistoryEntry,
    TriggerType,
    WorkflowDefinition,
    WorkflowInstance,
)
from record_workflow.storage import (
    Database,
    DefinitionStore,
    HistoryLedger,
    InstanceStore,
    open_database,
)
from record_workflow.validation import build_definition
from record_workflow.workflow.actions import (
    ActionContext,
    ActionExecutor,
    ActionHandler,
    ActionRegistry,
)
from record_workflow.workflow.conditions import (
    ConditionContext,
    ConditionEvaluator,
    ConditionHandler,
    ConditionRegistry,
    PermissionChecker,
    annotate_transitions,
)
from record_workflow.workflow.diagram import WorkflowDiagram, build_diagram
from record_workflow.workflow.events import TransitionedEvent
from record_workflow.workflow.records import (
    CapabilityRegistry,
    RecordAction,
    RecordCapabilities,
    RecordCondition,
    mirror_state,
    record_ref,
    record_snapshot,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class WorkflowEngine:
    """Drive records through schema-defined workflows.

    The engine never owns the records it tracks. A record only needs a stable
    identity (see `record_workflow.workflow.records`); everything else the
    engine knows about it lives in the instance row and the history ledger.

    Every `transition` runs as one SQLite write transaction: the guard
    evaluation, pre actions, state write, post actions and history row either
    all commit or all roll back. The transition event is published after the
    commit.
    """

    def __init__(
        self,
        database: Database,
        *,
        bus: ServiceBus | None = None,
        settings: WorkflowSettings | None = None,
        conditions: ConditionRegistry | None = None,
        actions: ActionRegistry | None = None,
        capabilities: CapabilityRegistry | None = None,
        permissions: PermissionChecker | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            database: Migrated workflow database.
            bus: Service bus for namespaced actions and transition events.
            settings: Engine settings. If None, loads from environment.
            conditions: Condition registry. Defaults to the built-ins.
            actions: Action registry. Defaults to the built-ins.
            capabilities: Per-record-type guards and side effects.
            permissions: Checker used by the `user_can` condition.
            clock: Source of "now"; injectable for tests.
        """
        self.settings = settings or WorkflowSettings()
        self.database = database
        self.bus = bus
        self.permissions = permissions
        self.conditions = conditions or ConditionRegistry()
        self.actions = actions or ActionRegistry()
        self.capabilities = capabilities or CapabilityRegistry()
        self._clock = clock or _utcnow

        self.definitions = DefinitionStore(database)
        self.instances = InstanceStore(database)
        self.history = HistoryLedger(database)

        self._evaluator = ConditionEvaluator(self.conditions, self.capabilities)
        self._executor = ActionExecutor(self.actions, self.capabilities, bus)

    @classmethod
    def from_settings(
        cls, settings: WorkflowSettings | None = None, **kwargs: Any
    ) -> WorkflowEngine:
        """Open the configured database and build an engine on it."""

        settings = settings or WorkflowSettings()
        return cls(open_database(settings), settings=settings, **kwargs)

    def close(self) -> None:
        self.database.close()

    # ------------------------------------------------------------------
    # Registration

    def register_condition(self, name: str, handler: ConditionHandler) -> None:
        self.conditions.register(name, handler)

    def register_action(self, name: str, handler: ActionHandler) -> None:
        self.actions.register(name, handler)

    def register_capabilities(
        self,
        record_type: str,
        *,
        conditions: dict[str, RecordCondition] | None = None,
        actions: dict[str, RecordAction] | None = None,
    ) -> RecordCapabilities:
        return self.capabilities.register(record_type, conditions=conditions, actions=actions)

    # ------------------------------------------------------------------
    # Definitions

    def define_workflow(
        self,
        slug: str,
        entity_type: str,
        payload: Mapping[str, Any],
        owner: str | None = None,
    ) -> WorkflowDefinition:
        """Create or replace the definition identified by (slug, owner).

        Args:
            slug: Workflow identifier.
            entity_type: Record type the workflow is meant for.
            payload: States, transitions and optional name/description/config.
            owner: Optional owning module tag.

        Returns:
            The stored definition.

        Raises:
            DefinitionValidationError: listing every problem in the payload.
        """
        definition = build_definition(
            slug,
            entity_type,
            payload,
            owner,
            strict_final_states=self.settings.strict_final_states,
        )
        stored = self.definitions.upsert(definition, now=self._clock())
        logger.info(
            "Workflow defined",
            extra={
                "workflow": slug,
                "owner": owner,
                "definition_id": stored.id,
                "states": len(stored.states),
                "transitions": len(stored.transitions),
            },
        )
        return stored

    def get_definition(self, slug: str) -> WorkflowDefinition:
        definition = self.definitions.get_active(slug)
        if definition is None:
            raise DefinitionNotFound(slug)
        return definition

    def deactivate_workflow(self, slug: str, owner: str | None = None) -> bool:
        """Stop new records from being initialized on a definition.

        Existing instances keep transitioning on it.
        """
        changed = self.definitions.set_active(slug, owner, False, now=self._clock())
        if changed:
            logger.info("Workflow deactivated", extra={"workflow": slug, "owner": owner})
        return changed

    def list_definitions(self, *, active_only: bool = True) -> list[WorkflowDefinition]:
        return self.definitions.list(active_only=active_only)

    def generate_diagram(self, slug: str) -> WorkflowDiagram:
        return build_diagram(self.get_definition(slug))

    # ------------------------------------------------------------------
    # Instances

    def initialize_workflow(
        self, record: object, slug: str, actor: str | None = None
    ) -> WorkflowInstance:
        """Bind `record` to the active `slug` definition.

        Idempotent: when the record already has an instance of this definition
        it is returned unchanged.
        """
        definition = self.get_definition(slug)
        ref = record_ref(record)
        instance, created = self.instances.find_or_create(
            definition_id=definition.id,
            record_type=ref.record_type,
            record_id=ref.record_id,
            initial_state=definition.initial_state,
            actor=actor,
            now=self._clock(),
        )
        if created:
            logger.info(
                "Workflow initialized",
                extra={
                    "workflow": slug,
                    "record": str(ref),
                    "state": instance.current_state,
                    "actor": actor,
                },
            )
        return instance

    def get_workflow_instance(
        self, record: object, slug: str | None = None
    ) -> WorkflowInstance | None:
        ref = record_ref(record)
        return self.instances.find(ref.record_type, ref.record_id, slug)

    def get_current_state(self, record: object, slug: str | None = None) -> str | None:
        instance = self.get_workflow_instance(record, slug)
        return instance.current_state if instance else None

    def get_history(self, record: object, slug: str | None = None) -> list[HistoryEntry]:
        instance = self.get_workflow_instance(record, slug)
        if instance is None:
            return []
        return self.history.for_instance(instance.id)

    def get_available_transitions(
        self, record: object, slug: str | None = None, actor: str | None = None
    ) -> list[AvailableTransition]:
        """Transitions leaving the record's current state.

        Each one carries a live guard evaluation. The result is advisory:
        `transition` checks everything again under the write lock.
        """
        instance = self.get_workflow_instance(record, slug)
        if instance is None:
            return []
        definition = self._definition_for(instance)
        return annotate_transitions(
            definition,
            instance.current_state,
            self._evaluator,
            self._condition_context(record, actor),
            final_is_terminal=self.settings.strict_final_states,
        )

    def can_transition(
        self,
        record: object,
        transition_id: str,
        slug: str | None = None,
        actor: str | None = None,
    ) -> bool:
        instance = self.get_workflow_instance(record, slug)
        if instance is None:
            return False
        definition = self._definition_for(instance)
        if not definition.can_transition(
            instance.current_state,
            transition_id,
            final_is_terminal=self.settings.strict_final_states,
        ):
            return False
        spec = definition.transitions[transition_id]
        return self._evaluator.evaluate(
            spec.conditions, self._condition_context(record, actor)
        ).passed

    # ------------------------------------------------------------------
    # Transitions

    def transition(
        self,
        record: object,
        transition_id: str,
        data: Mapping[str, Any] | None = None,
        slug: str | None = None,
        trigger_type: TriggerType | str = TriggerType.MANUAL,
        actor: str | None = None,
    ) -> WorkflowInstance:
        """Execute `transition_id` on the record's workflow instance.

        Args:
            record: The tracked record (or a `RecordRef`).
            transition_id: Transition key from the definition.
            data: Merged into the instance data bag; `notes` goes to history.
            slug: Selects the workflow when a record has several.
            trigger_type: Manual, automatic or system.
            actor: Who triggered the transition.

        Returns:
            The instance as stored after the transition.

        Raises:
            NoWorkflowInstance: the record was never initialized.
            UnknownTransition: the definition has no such transition.
            InvalidTransitionState: the current state is not a source state.
            ConditionsNotMet: one or more guards failed; nothing was written.
            ActionFailed: a pre action failed (or a post action, when the
                post-action policy is "raise"); nothing was written.
            ConcurrentTransitionError: the instance moved on under us.
        """
        trigger_type = TriggerType(trigger_type)
        if actor is None and trigger_type is TriggerType.SYSTEM:
            actor = self.settings.system_actor
        incoming = dict(data or {})
        ref = record_ref(record)
        now = self._clock()

        with self.database.transaction():
            instance = self.instances.find(ref.record_type, ref.record_id, slug)
            if instance is None:
                raise NoWorkflowInstance(ref.record_type, ref.record_id, slug)

            definition = self._definition_for(instance)
            spec = definition.get_transition(transition_id)
            if spec is None:
                raise UnknownTransition(definition.slug, transition_id)

            if not definition.can_transition(
                instance.current_state,
                transition_id,
                final_is_terminal=self.settings.strict_final_states,
            ):
                raise InvalidTransitionState(
                    transition_id, instance.current_state, spec.from_states
                )

            outcome = self._evaluator.evaluate(
                spec.conditions, ConditionContext(record, actor, now, self.permissions)
            )
            if not outcome.passed:
                logger.info(
                    "Workflow transition blocked",
                    extra={
                        "workflow": definition.slug,
                        "transition": transition_id,
                        "record": str(ref),
                        "failed_conditions": outcome.failed,
                    },
                )
                raise ConditionsNotMet(transition_id, outcome.failed)

            executed = self._executor.run_phase(
                spec.pre_actions,
                ActionContext(
                    record=record,
                    instance=instance,
                    data=incoming,
                    actor=actor,
                    phase="pre",
                    now=now,
                    transition_id=transition_id,
                    bus=self.bus,
                ),
                on_failure="raise",
            )

            merged = {**instance.data, **incoming}
            if not self.instances.apply_transition(
                instance, to_state=spec.to, actor=actor, data=merged, now=now
            ):
                raise ConcurrentTransitionError(instance.id, instance.version)
            updated = self.instances.get(instance.id)

            undo_mirror = None
            try:
                undo_mirror = mirror_state(record, spec.to)
                executed += self._executor.run_phase(
                    spec.actions,
                    ActionContext(
                        record=record,
                        instance=updated,
                        data=incoming,
                        actor=actor,
                        phase="post",
                        now=now,
                        transition_id=transition_id,
                        bus=self.bus,
                    ),
                    on_failure=self.settings.post_action_failure,
                )
                notes = incoming.get("notes")
                self.history.append(
                    instance_id=instance.id,
                    transition_id=transition_id,
                    from_state=instance.current_state,
                    to_state=spec.to,
                    triggered_by=actor,
                    trigger_type=trigger_type,
                    condition_results=outcome,
                    actions_executed=executed,
                    data_snapshot=record_snapshot(record),
                    notes=str(notes) if notes is not None else None,
                    now=now,
                )
            except Exception:
                # The database rolls back; put the record's field back too.
                if undo_mirror is not None:
                    undo_mirror()
                raise

            event = TransitionedEvent(
                workflow=definition.slug,
                transition=transition_id,
                from_state=instance.current_state,
                to_state=spec.to,
                record_type=ref.record_type,
                record_id=ref.record_id,
            )
            # Published only once the outermost transaction commits.
            self.database.on_commit(partial(self._publish, event))

        logger.info(
            "Workflow transition executed",
            extra={
                "workflow": definition.slug,
                "transition": transition_id,
                "record": str(ref),
                "from_state": instance.current_state,
                "to_state": spec.to,
                "actor": actor,
                "trigger_type": trigger_type.value,
            },
        )
        return self.instances.get(instance.id)

    # ------------------------------------------------------------------
    # Internals

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        # By id, so instances of a deactivated definition keep working.
        definition = self.definitions.get_by_id(instance.definition_id)
        if definition is None:
            raise DefinitionNotFound(instance.workflow_slug)
        return definition

    def _condition_context(self, record: object, actor: str | None) -> ConditionContext:
        return ConditionContext(
            record=record, actor=actor, now=self._clock(), permissions=self.permissions
        )

    def _publish(self, event: TransitionedEvent) -> None:
        if self.bus is None:
            return
        try:
            self.bus.publish(event.event_id, event.to_payload())
        except Exception:
            logger.error(
                "Failed to publish workflow event",
                extra={"event": event.event_id},
                exc_info=True,
            )

