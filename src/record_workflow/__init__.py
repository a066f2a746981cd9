"""Record Workflow.

A schema-driven state machine engine for business records:
- workflow definitions stored as data (states, guarded transitions, actions)
- one persisted instance per (definition, record) binding
- an append-only history ledger of every executed transition
"""

__version__ = "0.1.0"

from record_workflow.config import WorkflowSettings
from record_workflow.models import HistoryEntry, TriggerType, WorkflowDefinition, WorkflowInstance
from record_workflow.workflow.engine import WorkflowEngine

__all__ = [
    "__version__",
    "HistoryEntry",
    "TriggerType",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowSettings",
]
