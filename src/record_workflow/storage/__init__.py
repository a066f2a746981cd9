"""SQLite persistence for workflow definitions, instances and history."""

from __future__ import annotations

from record_workflow.config import WorkflowSettings
from record_workflow.storage.definitions import DefinitionStore
from record_workflow.storage.history import HistoryLedger
from record_workflow.storage.instances import InstanceStore
from record_workflow.storage.schema import Database


def open_database(settings: WorkflowSettings | None = None) -> Database:
    """Open the database configured by `settings` (or the environment)."""

    settings = settings or WorkflowSettings()
    return Database(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)


__all__ = [
    "Database",
    "DefinitionStore",
    "HistoryLedger",
    "InstanceStore",
    "open_database",
]
