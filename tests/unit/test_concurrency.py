"""Two engines on one database file: transitions are serialized by SQLite."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from typing import Any

import pytest

from record_workflow.config import WorkflowSettings
from record_workflow.errors import InvalidTransitionState
from record_workflow.storage import Database
from record_workflow.workflow.actions import ActionContext
from record_workflow.workflow.engine import WorkflowEngine


@pytest.fixture
def second_engine(settings: WorkflowSettings, clock) -> Iterator[WorkflowEngine]:
    other = WorkflowEngine(
        Database(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms),
        settings=settings,
        clock=clock,
    )
    yield other
    other.close()


def test_initialization_on_two_connections_creates_one_instance(
    engine: WorkflowEngine, second_engine: WorkflowEngine, order_flow, make_order
) -> None:
    first = engine.initialize_workflow(make_order(5), "order_flow")
    second = second_engine.initialize_workflow(make_order(5), "order_flow")

    assert first.id == second.id
    assert len(engine.instances.list_for_record("order", "5")) == 1


def test_competing_transitions_are_serialized(
    engine: WorkflowEngine,
    second_engine: WorkflowEngine,
    order_flow_payload: dict[str, Any],
    make_order,
) -> None:
    order_flow_payload["transitions"]["submit"]["pre_actions"] = ["hold"]
    engine.define_workflow("order_flow", "order", order_flow_payload)
    engine.initialize_workflow(make_order(9), "order_flow")

    holding = threading.Event()

    def hold(ctx: ActionContext) -> None:
        holding.set()
        time.sleep(0.3)

    engine.register_action("hold", hold)
    errors: list[BaseException] = []

    def run_first() -> None:
        try:
            engine.transition(make_order(9, customer_email="a@example.com"), "submit")
        except BaseException as exc:  # surfaced by the assertion below
            errors.append(exc)

    worker = threading.Thread(target=run_first)
    worker.start()
    assert holding.wait(timeout=5)

    # Blocks on the write lock until the first transition commits, then
    # sees the instance already in "submitted".
    with pytest.raises(InvalidTransitionState):
        second_engine.transition(
            make_order(9, customer_email="b@example.com"), "submit", actor="bob"
        )

    worker.join(timeout=5)
    assert errors == []

    record = make_order(9)
    assert engine.get_current_state(record) == "submitted"
    assert second_engine.get_current_state(record) == "submitted"
    assert [h.transition_id for h in second_engine.get_history(record)] == ["submit"]
