"""Workflow runtime: guards, actions, the engine and the record adapter.

- `WorkflowEngine`: persisted instances, transactional transitions, history
- `RecordStateMachine`: class-declared workflows with state kept on the record
- condition and action registries with the built-in vocabulary
- diagram export
"""

from record_workflow.workflow.actions import ActionContext, ActionRegistry
from record_workflow.workflow.conditions import ConditionContext, ConditionRegistry
from record_workflow.workflow.diagram import WorkflowDiagram, build_diagram
from record_workflow.workflow.engine import WorkflowEngine
from record_workflow.workflow.events import TransitionedEvent
from record_workflow.workflow.records import CapabilityRegistry, RecordCapabilities, RecordRef
from record_workflow.workflow.state_machine import RecordStateMachine

__all__ = [
    "ActionContext",
    "ActionRegistry",
    "CapabilityRegistry",
    "ConditionContext",
    "ConditionRegistry",
    "RecordCapabilities",
    "RecordRef",
    "RecordStateMachine",
    "TransitionedEvent",
    "WorkflowDiagram",
    "WorkflowEngine",
    "build_diagram",
]
