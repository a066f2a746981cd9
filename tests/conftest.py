"""Test configuration and fixtures."""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

import pytest

from record_workflow.bus import InProcessServiceBus
from record_workflow.config import WorkflowSettings
from record_workflow.models import WorkflowDefinition
from record_workflow.storage import Database
from record_workflow.workflow.engine import WorkflowEngine

ORDER_FLOW: dict[str, Any] = {
    "name": "Order flow",
    "initial_state": "draft",
    "states": {
        "draft": {"label": "Draft", "color": "gray"},
        "submitted": {"label": "Submitted", "color": "blue"},
        "confirmed": {"label": "Confirmed", "color": "green"},
        "shipped": {"label": "Shipped", "color": "green", "is_final": True},
        "cancelled": {"label": "Cancelled", "color": "red", "is_final": True},
    },
    "transitions": {
        "submit": {
            "from": "draft",
            "to": "submitted",
            "label": "Submit",
            "conditions": [{"name": "has_field", "params": ["customer_email"]}],
            "actions": ["log_activity"],
        },
        "confirm": {
            "from": "submitted",
            "to": "confirmed",
            "label": "Confirm",
            "conditions": [["relation_count_min", "line_items", 1]],
            "actions": [["touch_timestamp", "confirmed_at"]],
        },
        "ship": {"from": "confirmed", "to": "shipped", "label": "Ship"},
        "cancel": {"from": "*", "to": "cancelled", "label": "Cancel order", "confirm": True},
    },
}


@dataclass
class Order:
    record_type: ClassVar[str] = "order"

    record_id: int
    customer_email: str | None = None
    status: str | None = None
    line_items: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    confirmed_at: datetime | None = None
    saves: int = 0

    def save(self) -> None:
        self.saves += 1


class FrozenClock:
    """Deterministic clock: returns the same instant until advanced."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 9, 30, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path: Path) -> WorkflowSettings:
    """Settings isolated from the developer's environment and .env file."""
    return WorkflowSettings(
        _env_file=None,
        WORKFLOW_DATABASE_PATH=tmp_path / "workflow.db",
        WORKFLOW_BUSY_TIMEOUT_MS=5000,
        WORKFLOW_POST_ACTION_FAILURE="log",
        WORKFLOW_STRICT_FINAL_STATES=False,
        WORKFLOW_SYSTEM_ACTOR="system",
    )


@pytest.fixture
def database(settings: WorkflowSettings) -> Iterator[Database]:
    db = Database(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)
    yield db
    db.close()


@pytest.fixture
def bus() -> InProcessServiceBus:
    return InProcessServiceBus(name="tests")


@pytest.fixture
def engine(
    database: Database,
    bus: InProcessServiceBus,
    settings: WorkflowSettings,
    clock: FrozenClock,
) -> WorkflowEngine:
    return WorkflowEngine(database, bus=bus, settings=settings, clock=clock)


@pytest.fixture
def order_flow_payload() -> dict[str, Any]:
    return copy.deepcopy(ORDER_FLOW)


@pytest.fixture
def order_flow(engine: WorkflowEngine, order_flow_payload: dict[str, Any]) -> WorkflowDefinition:
    return engine.define_workflow("order_flow", "order", order_flow_payload)


@pytest.fixture
def order(clock: FrozenClock) -> Order:
    return Order(
        record_id=42,
        customer_email="buyer@example.com",
        line_items=["sku-1", "sku-2"],
        created_at=clock.now - timedelta(hours=2),
    )


@pytest.fixture
def make_order(clock: FrozenClock):
    def _make(record_id: int = 7, **fields: Any) -> Order:
        fields.setdefault("created_at", clock.now)
        return Order(record_id=record_id, **fields)

    return _make
