"""Instance store: the current state of each (definition, record) binding."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any

from record_workflow.models import WorkflowInstance
from record_workflow.storage.schema import Database, from_json, to_json

_SELECT = """
SELECT i.*, d.slug AS workflow_slug
FROM workflow_instances i
JOIN workflow_definitions d ON d.id = i.definition_id
"""

# Find-or-create: the unique constraint on the triple makes a concurrent first
# initialization a no-op instead of a duplicate row.
_INSERT_IF_ABSENT_SQL = """
INSERT INTO workflow_instances (
    definition_id, record_type, record_id, current_state,
    transitioned_at, transitioned_by, data, version, created_at, updated_at
)
VALUES (
    :definition_id, :record_type, :record_id, :state,
    :now, :actor, '{}', 0, :now, :now
)
ON CONFLICT(definition_id, record_type, record_id) DO NOTHING
"""

# Optimistic guard: the row must still carry the version the caller read.
_APPLY_TRANSITION_SQL = """
UPDATE workflow_instances
SET previous_state  = current_state,
    current_state   = :to_state,
    transitioned_at = :now,
    transitioned_by = :actor,
    data            = :data,
    version         = version + 1,
    updated_at      = :now
WHERE id = :id
  AND version = :version
  AND current_state = :from_state
"""


def _from_row(row: sqlite3.Row) -> WorkflowInstance:
    return WorkflowInstance.model_validate(
        {
            "id": row["id"],
            "definition_id": row["definition_id"],
            "workflow_slug": row["workflow_slug"],
            "record_type": row["record_type"],
            "record_id": row["record_id"],
            "current_state": row["current_state"],
            "previous_state": row["previous_state"],
            "transitioned_at": row["transitioned_at"],
            "transitioned_by": row["transitioned_by"],
            "data": from_json(row["data"], {}),
            "version": row["version"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )


class InstanceStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def find_or_create(
        self,
        *,
        definition_id: int,
        record_type: str,
        record_id: str,
        initial_state: str,
        actor: str | None,
        now: datetime,
    ) -> tuple[WorkflowInstance, bool]:
        """Return `(instance, created)` for the binding, creating it if absent."""

        with self._db.transaction() as conn:
            cursor = conn.execute(
                _INSERT_IF_ABSENT_SQL,
                {
                    "definition_id": definition_id,
                    "record_type": record_type,
                    "record_id": record_id,
                    "state": initial_state,
                    "now": now.isoformat(),
                    "actor": actor,
                },
            )
            created = cursor.rowcount > 0
            row = conn.execute(
                _SELECT
                + " WHERE i.definition_id = ? AND i.record_type = ? AND i.record_id = ?",
                (definition_id, record_type, record_id),
            ).fetchone()
        return _from_row(row), created

    def get(self, instance_id: int) -> WorkflowInstance | None:
        with self._db.read() as conn:
            row = conn.execute(_SELECT + " WHERE i.id = ?", (instance_id,)).fetchone()
        return _from_row(row) if row else None

    def find(
        self, record_type: str, record_id: str, slug: str | None = None
    ) -> WorkflowInstance | None:
        """Return the record's instance, the oldest one when `slug` is not given."""

        query = _SELECT + " WHERE i.record_type = ? AND i.record_id = ?"
        params: list[Any] = [record_type, record_id]
        if slug is not None:
            query += " AND d.slug = ?"
            params.append(slug)
        query += " ORDER BY i.id LIMIT 1"
        with self._db.read() as conn:
            row = conn.execute(query, params).fetchone()
        return _from_row(row) if row else None

    def list_for_record(self, record_type: str, record_id: str) -> list[WorkflowInstance]:
        with self._db.read() as conn:
            rows = conn.execute(
                _SELECT + " WHERE i.record_type = ? AND i.record_id = ? ORDER BY i.id",
                (record_type, record_id),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def list_in_state(self, definition_id: int, state: str) -> list[WorkflowInstance]:
        with self._db.read() as conn:
            rows = conn.execute(
                _SELECT + " WHERE i.definition_id = ? AND i.current_state = ? ORDER BY i.id",
                (definition_id, state),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def apply_transition(
        self,
        instance: WorkflowInstance,
        *,
        to_state: str,
        actor: str | None,
        data: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Write the new state; return False if the row moved on since it was read."""

        with self._db.transaction() as conn:
            cursor = conn.execute(
                _APPLY_TRANSITION_SQL,
                {
                    "id": instance.id,
                    "version": instance.version,
                    "from_state": instance.current_state,
                    "to_state": to_state,
                    "now": now.isoformat(),
                    "actor": actor,
                    "data": to_json(data),
                },
            )
        return cursor.rowcount == 1
