#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the engine directly:

* load settings from `.env`
* define an order workflow with a guarded transition
* bind a record to it, drive it through a few transitions
* print the audit trail and a Mermaid diagram

The database path is passed as an argument (not read from `.env`).
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from typing import Sequence

from record_workflow.bus import InProcessServiceBus
from record_workflow.config import WorkflowSettings
from record_workflow.errors import ConditionsNotMet
from record_workflow.logging import configure_logging
from record_workflow.workflow import WorkflowEngine

ORDER_FLOW = {
    "name": "Order flow",
    "states": {
        "draft": {"label": "Draft"},
        "placed": {"label": "Placed", "color": "blue"},
        "shipped": {"label": "Shipped", "color": "green", "is_final": True},
        "cancelled": {"label": "Cancelled", "color": "red", "is_final": True},
    },
    "transitions": {
        "place": {
            "from": "draft",
            "to": "placed",
            "conditions": [["relation_count_min", "lines", 1]],
            "actions": [["log_activity", "Order placed"]],
        },
        "ship": {"from": "placed", "to": "shipped", "actions": ["warehouse.pick.start"]},
        "cancel": {"from": "*", "to": "cancelled", "confirm": "Cancel this order?"},
    },
}


@dataclass
class Order:
    record_type = "order"

    id: int
    status: str | None = None
    lines: list[str] = field(default_factory=list)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive an order through a workflow (example).")
    parser.add_argument("--database", default=":memory:", help="SQLite database path")
    parser.add_argument("--order-id", type=int, default=1, help="Order id to use")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = WorkflowSettings(WORKFLOW_DATABASE_PATH=args.database)
    configure_logging(settings.log_level)

    bus = InProcessServiceBus(name="example")
    bus.provide(
        "warehouse.pick.start",
        lambda payload: print(f"Warehouse picking order {payload['record'].id}"),
        owner="warehouse",
    )
    bus.subscribe(
        "workflow.order_flow.transitioned",
        lambda event: print(f"Event: {event.payload['from_state']} -> {event.payload['to_state']}"),
    )

    engine = WorkflowEngine.from_settings(settings, bus=bus)
    try:
        engine.define_workflow("order_flow", "order", ORDER_FLOW)

        order = Order(id=args.order_id)
        engine.initialize_workflow(order, "order_flow", actor="example")

        try:
            engine.transition(order, "place", actor="example")
        except ConditionsNotMet as exc:
            print(f"Blocked: {exc}")

        order.lines.append("sku-1")
        engine.transition(order, "place", actor="example")
        engine.transition(order, "ship", actor="example")

        print(f"Order {order.id} is {order.status}")
        for entry in engine.get_history(order):
            print(f"  {entry.transition_id}: {entry.from_state} -> {entry.to_state}")

        print(engine.generate_diagram("order_flow").to_mermaid(), end="")
    finally:
        engine.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
