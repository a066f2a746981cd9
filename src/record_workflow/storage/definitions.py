"""Definition store: workflow schemas keyed by (slug, owner)."""

from __future__ import annotations

import sqlite3
from datetime import datetime

from record_workflow.models import WorkflowDefinition
from record_workflow.storage.schema import Database, from_json, to_json

_UPSERT_SQL = """
INSERT INTO workflow_definitions (
    slug, owner, name, entity_type, description, initial_state,
    states, transitions, config, is_active, created_at, updated_at
)
VALUES (
    :slug, :owner, :name, :entity_type, :description, :initial_state,
    :states, :transitions, :config, 1, :now, :now
)
ON CONFLICT(slug, owner) DO UPDATE SET
    name          = excluded.name,
    entity_type   = excluded.entity_type,
    description   = excluded.description,
    initial_state = excluded.initial_state,
    states        = excluded.states,
    transitions   = excluded.transitions,
    config        = excluded.config,
    is_active     = 1,
    updated_at    = excluded.updated_at
RETURNING *
"""


def _from_row(row: sqlite3.Row) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "id": row["id"],
            "slug": row["slug"],
            "owner": row["owner"] or None,
            "name": row["name"],
            "entity_type": row["entity_type"],
            "description": row["description"],
            "initial_state": row["initial_state"],
            "states": from_json(row["states"], {}),
            "transitions": from_json(row["transitions"], {}),
            "config": from_json(row["config"], {}),
            "is_active": bool(row["is_active"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )


class DefinitionStore:
    """Persist workflow definitions.

    Definitions are validated before they reach the store; the store only
    upserts, looks up and toggles the active flag.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, definition: WorkflowDefinition, *, now: datetime) -> WorkflowDefinition:
        params = {
            "slug": definition.slug,
            "owner": definition.owner or "",
            "name": definition.name,
            "entity_type": definition.entity_type,
            "description": definition.description,
            "initial_state": definition.initial_state,
            "states": to_json(
                {k: v.model_dump(mode="json") for k, v in definition.states.items()}
            ),
            "transitions": to_json(
                {
                    k: v.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for k, v in definition.transitions.items()
                }
            ),
            "config": to_json(definition.config),
            "now": now.isoformat(),
        }
        with self._db.transaction() as conn:
            rows = conn.execute(_UPSERT_SQL, params).fetchall()
        return _from_row(rows[0])

    def get_active(self, slug: str) -> WorkflowDefinition | None:
        with self._db.read() as conn:
            row = conn.execute(
                """
                SELECT * FROM workflow_definitions
                WHERE slug = ? AND is_active = 1
                ORDER BY id
                LIMIT 1
                """,
                (slug,),
            ).fetchone()
        return _from_row(row) if row else None

    def get_by_id(self, definition_id: int) -> WorkflowDefinition | None:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
        return _from_row(row) if row else None

    def list(self, *, active_only: bool = True) -> list[WorkflowDefinition]:
        where = "WHERE is_active = 1" if active_only else ""
        with self._db.read() as conn:
            rows = conn.execute(
                f"SELECT * FROM workflow_definitions {where} ORDER BY slug, id"
            ).fetchall()
        return [_from_row(r) for r in rows]

    def set_active(
        self, slug: str, owner: str | None, active: bool, *, now: datetime
    ) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE workflow_definitions
                SET is_active = ?, updated_at = ?
                WHERE slug = ? AND owner = ?
                """,
                (1 if active else 0, now.isoformat(), slug, owner or ""),
            )
        return cursor.rowcount > 0
