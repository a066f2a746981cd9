"""Unit tests for the in-process service bus."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from record_workflow.bus import BusEvent, InProcessServiceBus, ServiceNotFound


@pytest.mark.parametrize(
    "service_id", ["journal", "Accounting.create", "accounting..create", "1a.b"]
)
def test_provide_rejects_malformed_service_ids(bus: InProcessServiceBus, service_id: str) -> None:
    with pytest.raises(ValueError, match="Invalid service ID format"):
        bus.provide(service_id, lambda payload: None)


def test_call_passes_payload_and_returns_result(bus: InProcessServiceBus) -> None:
    bus.provide("accounting.journal.create", lambda payload: payload["amount"] * 2, owner="acct")

    assert bus.has_service("accounting.journal.create")
    assert bus.call("accounting.journal.create", {"amount": 21}) == 42


def test_call_unknown_service_raises(bus: InProcessServiceBus) -> None:
    with pytest.raises(ServiceNotFound) as excinfo:
        bus.call("crm.contacts.find", {})

    assert excinfo.value.service_id == "crm.contacts.find"


def test_service_errors_propagate(bus: InProcessServiceBus) -> None:
    def fail(payload: dict[str, Any]) -> None:
        raise RuntimeError("ledger locked")

    bus.provide("accounting.journal.create", fail)

    with pytest.raises(RuntimeError, match="ledger locked"):
        bus.call("accounting.journal.create", {})


def test_services_filter_by_namespace(bus: InProcessServiceBus) -> None:
    bus.provide("crm.contacts.find", lambda p: None, description="Find a contact")
    bus.provide("accounting.journal.create", lambda p: None)
    bus.provide("accounting.invoice.void", lambda p: None)

    assert [s.service_id for s in bus.services("accounting")] == [
        "accounting.invoice.void",
        "accounting.journal.create",
    ]
    assert len(bus.services()) == 3
    assert bus.services("crm")[0].description == "Find a contact"


def test_subscribers_run_in_priority_order(bus: InProcessServiceBus) -> None:
    seen: list[str] = []
    bus.subscribe("order.shipped", lambda e: seen.append("late"), priority=50)
    bus.subscribe("order.shipped", lambda e: seen.append("first"), priority=1)
    bus.subscribe("order.shipped", lambda e: seen.append("default-a"))
    bus.subscribe("order.shipped", lambda e: seen.append("default-b"))

    bus.publish("order.shipped", {"id": 1})

    assert seen == ["first", "default-a", "default-b", "late"]


def test_event_carries_payload_copy_and_publisher(bus: InProcessServiceBus) -> None:
    received: list[BusEvent] = []
    bus.subscribe("order.shipped", received.append)
    payload = {"id": 1}

    bus.publish("order.shipped", payload)
    payload["id"] = 2

    assert received[0].event_id == "order.shipped"
    assert received[0].payload == {"id": 1}
    assert received[0].publisher == "tests"
    assert received[0].timestamp


def test_failing_subscriber_does_not_stop_the_others(
    bus: InProcessServiceBus, caplog: pytest.LogCaptureFixture
) -> None:
    seen: list[str] = []

    def broken(event: BusEvent) -> None:
        raise RuntimeError("mailer down")

    bus.subscribe("order.shipped", broken, priority=1, owner="mailer")
    bus.subscribe("order.shipped", lambda e: seen.append("ok"), priority=2)

    with caplog.at_level(logging.ERROR, logger="record_workflow.bus"):
        bus.publish("order.shipped", {})

    assert seen == ["ok"]
    failure = next(r for r in caplog.records if r.message == "Event handler failed")
    assert failure.subscriber == "mailer"


def test_publish_without_subscribers_is_a_no_op(bus: InProcessServiceBus) -> None:
    bus.publish("nobody.listens", {})


def test_remove_owner_drops_services_and_subscriptions(bus: InProcessServiceBus) -> None:
    seen: list[str] = []
    bus.provide("shop.stock.reserve", lambda p: None, owner="shop")
    bus.provide("crm.contacts.find", lambda p: None, owner="crm")
    bus.subscribe("order.shipped", lambda e: seen.append("shop"), owner="shop")
    bus.subscribe("order.shipped", lambda e: seen.append("crm"), owner="crm")

    assert bus.remove_owner("shop") == 2

    bus.publish("order.shipped", {})
    assert seen == ["crm"]
    assert not bus.has_service("shop.stock.reserve")
    assert bus.has_service("crm.contacts.find")
