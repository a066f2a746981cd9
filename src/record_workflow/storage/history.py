"""History ledger: append-only audit rows, one per executed transition.

There is deliberately no update or delete API, and the schema's triggers
reject both at the database level.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any

from record_workflow.models import (
    ConditionResult,
    ExecutedAction,
    HistoryEntry,
    TriggerType,
)
from record_workflow.storage.schema import Database, from_json, to_json

_INSERT_SQL = """
INSERT INTO workflow_history (
    instance_id, transition_id, from_state, to_state, triggered_by, trigger_type,
    condition_results, actions_executed, data_snapshot, notes, created_at
)
VALUES (
    :instance_id, :transition_id, :from_state, :to_state, :triggered_by, :trigger_type,
    :condition_results, :actions_executed, :data_snapshot, :notes, :created_at
)
RETURNING *
"""


def _from_row(row: sqlite3.Row) -> HistoryEntry:
    return HistoryEntry.model_validate(
        {
            "id": row["id"],
            "instance_id": row["instance_id"],
            "transition_id": row["transition_id"],
            "from_state": row["from_state"],
            "to_state": row["to_state"],
            "triggered_by": row["triggered_by"],
            "trigger_type": row["trigger_type"],
            "condition_results": from_json(row["condition_results"], {}),
            "actions_executed": from_json(row["actions_executed"], []),
            "data_snapshot": from_json(row["data_snapshot"], {}),
            "notes": row["notes"],
            "created_at": row["created_at"],
        }
    )


class HistoryLedger:
    def __init__(self, db: Database) -> None:
        self._db = db

    def append(
        self,
        *,
        instance_id: int,
        transition_id: str,
        from_state: str,
        to_state: str,
        triggered_by: str | None,
        trigger_type: TriggerType,
        condition_results: ConditionResult,
        actions_executed: list[ExecutedAction],
        data_snapshot: dict[str, Any],
        notes: str | None,
        now: datetime,
    ) -> HistoryEntry:
        """Insert one entry.

        Runs inside the caller's transaction when there is one, so the audit
        row commits or rolls back together with the state change it records.
        """
        params = {
            "instance_id": instance_id,
            "transition_id": transition_id,
            "from_state": from_state,
            "to_state": to_state,
            "triggered_by": triggered_by,
            "trigger_type": TriggerType(trigger_type).value,
            "condition_results": to_json(condition_results.model_dump(mode="json")),
            "actions_executed": to_json([a.model_dump(mode="json") for a in actions_executed]),
            "data_snapshot": to_json(data_snapshot),
            "notes": notes,
            "created_at": now.isoformat(),
        }
        with self._db.transaction() as conn:
            rows = conn.execute(_INSERT_SQL, params).fetchall()
        return _from_row(rows[0])

    def for_instance(self, instance_id: int) -> list[HistoryEntry]:
        """Full history of one instance, oldest first."""

        with self._db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM workflow_history
                WHERE instance_id = ?
                ORDER BY created_at, id
                """,
                (instance_id,),
            ).fetchall()
        return [_from_row(r) for r in rows]

    def count(self, instance_id: int) -> int:
        with self._db.read() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM workflow_history WHERE instance_id = ?", (instance_id,)
            ).fetchone()[0]
