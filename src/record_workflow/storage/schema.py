"""SQLite schema and connection handling for the workflow stores.

Tables:
- workflow_definitions: workflow schemas, unique per (slug, owner)
- workflow_instances: one row per (definition, record type, record id)
- workflow_history: append-only transition audit trail

Schema version is stored in PRAGMA user_version. `migrate()` applies schema
changes incrementally and is idempotent.

Write transactions use BEGIN IMMEDIATE so concurrent writers (threads or
processes) are serialized on the database write lock; PRAGMA busy_timeout makes
a waiting writer block instead of failing straight away.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Current schema version. Increment when adding tables or columns.
SCHEMA_VERSION = 1

IN_MEMORY = ":memory:"


def open_db(db_path: str | Path, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Open (or create) the workflow database with the required PRAGMAs.

    The connection runs in autocommit mode (`isolation_level=None`); every
    write goes through an explicit transaction opened by `Database.transaction`.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


# ---------------------------------------------------------------------------
# DDL, ordered by dependency
# ---------------------------------------------------------------------------

_CREATE_DEFINITIONS = """
CREATE TABLE IF NOT EXISTS workflow_definitions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    slug            TEXT NOT NULL,
    owner           TEXT NOT NULL DEFAULT '',   -- owning plugin tag, '' when none
    name            TEXT NOT NULL,
    entity_type     TEXT NOT NULL,
    description     TEXT,
    initial_state   TEXT NOT NULL,
    states          TEXT NOT NULL,              -- JSON object
    transitions     TEXT NOT NULL,              -- JSON object
    config          TEXT NOT NULL DEFAULT '{}', -- JSON object
    is_active       INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0, 1)),
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE(slug, owner)
)
"""

_CREATE_INSTANCES = """
CREATE TABLE IF NOT EXISTS workflow_instances (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    definition_id   INTEGER NOT NULL REFERENCES workflow_definitions(id),
    record_type     TEXT NOT NULL,
    record_id       TEXT NOT NULL,
    current_state   TEXT NOT NULL,
    previous_state  TEXT,
    transitioned_at TEXT,
    transitioned_by TEXT,
    data            TEXT NOT NULL DEFAULT '{}', -- JSON object, shallow-merged per transition
    version         INTEGER NOT NULL DEFAULT 0, -- bumped on every state write
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE(definition_id, record_type, record_id)
)
"""

_CREATE_HISTORY = """
CREATE TABLE IF NOT EXISTS workflow_history (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id       INTEGER NOT NULL REFERENCES workflow_instances(id),
    transition_id     TEXT NOT NULL,
    from_state        TEXT NOT NULL,
    to_state          TEXT NOT NULL,
    triggered_by      TEXT,
    trigger_type      TEXT NOT NULL DEFAULT 'manual'
                          CHECK(trigger_type IN ('manual', 'automatic', 'system')),
    condition_results TEXT NOT NULL,            -- JSON object
    actions_executed  TEXT NOT NULL,            -- JSON array
    data_snapshot     TEXT NOT NULL,            -- JSON object
    notes             TEXT,
    created_at        TEXT NOT NULL
)
"""

# The ledger is append-only: rows are written once and never changed.
_HISTORY_TRIGGERS = [
    """
    CREATE TRIGGER IF NOT EXISTS workflow_history_no_update
    BEFORE UPDATE ON workflow_history
    BEGIN
        SELECT RAISE(ABORT, 'workflow_history is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS workflow_history_no_delete
    BEFORE DELETE ON workflow_history
    BEGIN
        SELECT RAISE(ABORT, 'workflow_history is append-only');
    END
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_definitions_slug ON workflow_definitions(slug, is_active)",
    "CREATE INDEX IF NOT EXISTS idx_instances_record ON workflow_instances(record_type, record_id)",
    "CREATE INDEX IF NOT EXISTS idx_instances_state ON workflow_instances(current_state, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_history_instance ON workflow_history(instance_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_history_created ON workflow_history(created_at)",
]

SCHEMA_STATEMENTS: list[str] = [
    _CREATE_DEFINITIONS,
    _CREATE_INSTANCES,
    _CREATE_HISTORY,
    *_HISTORY_TRIGGERS,
    *_INDEXES,
]


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def from_json(raw: str | None, default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


def get_schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def migrate(conn: sqlite3.Connection) -> None:
    """Apply schema migrations incrementally.

    Version history:
    0 -> 1: definitions, instances, history (+ append-only triggers, indexes)
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        current = get_schema_version(conn)
        if current < 1:
            for stmt in SCHEMA_STATEMENTS:
                conn.execute(stmt)
            # PRAGMA does not accept bound parameters.
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


class Database:
    """A migrated workflow database with re-entrant transactions.

    One connection is shared by every store bound to this object; a re-entrant
    lock keeps threads from interleaving statements on it. Nested
    `transaction()` blocks become SAVEPOINTs inside the outer transaction.

    `on_commit` callbacks registered inside a transaction run once the
    outermost transaction commits, and are dropped with any block that rolls
    back.
    """

    def __init__(self, db_path: str | Path = IN_MEMORY, *, busy_timeout_ms: int = 5000) -> None:
        self.path = str(db_path)
        if self.path != IN_MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = open_db(self.path, busy_timeout_ms=busy_timeout_ms)
        self._lock = threading.RLock()
        self._depth = 0
        # (depth registered at, callback)
        self._on_commit: list[tuple[int, Callable[[], None]]] = []
        migrate(self._conn)
        logger.debug("Workflow database ready", extra={"path": self.path})

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run `callback` after the current transaction commits (now, if none is open)."""

        with self._lock:
            if self._depth:
                self._on_commit.append((self._depth, callback))
                return
        callback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block atomically; any exception rolls it back and propagates."""

        committed: list[Callable[[], None]] = []
        with self._lock:
            savepoint = f"sp_{self._depth}" if self._depth else None
            self._conn.execute(f"SAVEPOINT {savepoint}" if savepoint else "BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                self._on_commit = [(d, cb) for d, cb in self._on_commit if d <= self._depth]
                if savepoint:
                    self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                else:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if savepoint:
                self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                # Callbacks now belong to the enclosing block.
                self._on_commit = [(min(d, self._depth), cb) for d, cb in self._on_commit]
            else:
                self._conn.execute("COMMIT")
                committed = [cb for _, cb in self._on_commit]
                self._on_commit = []

        for callback in committed:
            callback()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Borrow the connection for read-only queries."""

        with self._lock:
            yield self._conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()
