"""In-process service bus.

The bus lets a transition's side effect live in another module without an
import-time dependency: modules `provide` namespaced services
("accounting.journal.create") and `subscribe` to events, and the workflow
engine calls or publishes by name.

Service calls are synchronous and propagate handler errors. Event publishing
is fire-and-forget: a failing subscriber is logged and the remaining
subscribers still run.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_SERVICE_ID = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")

ServiceHandler = Callable[[dict[str, Any]], Any]


class ServiceBus(Protocol):
    """What the workflow engine needs from a cross-module bus."""

    def has_service(self, service_id: str) -> bool: ...

    def call(self, service_id: str, payload: dict[str, Any]) -> Any: ...

    def publish(self, event_id: str, payload: dict[str, Any]) -> None: ...


class ServiceNotFound(LookupError):
    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(f"Service not found: {service_id}")


@dataclass(frozen=True, slots=True)
class BusEvent:
    """An event delivered to subscribers.

    Publishers never wait for subscribers and receive no acknowledgement.
    """

    event_id: str
    payload: dict[str, Any]
    timestamp: str
    publisher: str | None = None


EventHandler = Callable[[BusEvent], None]


@dataclass(frozen=True, slots=True)
class ServiceRegistration:
    service_id: str
    handler: ServiceHandler
    owner: str | None = None
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class _Subscription:
    handler: EventHandler
    priority: int
    owner: str | None


class InProcessServiceBus:
    """Service registry and event dispatcher living in the current process."""

    def __init__(self, *, name: str | None = None) -> None:
        self._name = name
        self._services: dict[str, ServiceRegistration] = {}
        self._subscriptions: dict[str, list[_Subscription]] = {}

    # ------------------------------------------------------------------
    # Services

    def provide(
        self,
        service_id: str,
        handler: ServiceHandler,
        *,
        owner: str | None = None,
        description: str = "",
        **metadata: Any,
    ) -> None:
        if not _SERVICE_ID.match(service_id):
            raise ValueError(
                f"Invalid service ID format: {service_id}. Must be dot-separated lowercase "
                "identifiers (e.g., 'accounting.journal.create')"
            )
        self._services[service_id] = ServiceRegistration(
            service_id=service_id,
            handler=handler,
            owner=owner,
            description=description,
            metadata=metadata,
        )
        logger.debug("Service registered", extra={"service": service_id, "owner": owner})

    def has_service(self, service_id: str) -> bool:
        return service_id in self._services

    def call(self, service_id: str, payload: dict[str, Any]) -> Any:
        registration = self._services.get(service_id)
        if registration is None:
            raise ServiceNotFound(service_id)

        logger.debug(
            "Calling service",
            extra={"service": service_id, "provider": registration.owner},
        )
        try:
            return registration.handler(payload)
        except Exception:
            logger.error("Service call failed", extra={"service": service_id}, exc_info=True)
            raise

    def services(self, namespace: str | None = None) -> list[ServiceRegistration]:
        registrations = sorted(self._services.values(), key=lambda r: r.service_id)
        if namespace is None:
            return registrations
        prefix = namespace + "."
        return [r for r in registrations if r.service_id.startswith(prefix)]

    # ------------------------------------------------------------------
    # Events

    def subscribe(
        self,
        event_id: str,
        handler: EventHandler,
        *,
        priority: int = 10,
        owner: str | None = None,
    ) -> None:
        """Subscribe to an event. Lower priorities run first."""

        subscriptions = self._subscriptions.setdefault(event_id, [])
        subscriptions.append(_Subscription(handler=handler, priority=priority, owner=owner))
        # sort() is stable, so equal priorities keep subscription order.
        subscriptions.sort(key=lambda s: s.priority)

    def publish(self, event_id: str, payload: dict[str, Any]) -> None:
        subscriptions = list(self._subscriptions.get(event_id, ()))
        if not subscriptions:
            return

        event = BusEvent(
            event_id=event_id,
            payload=dict(payload),
            timestamp=datetime.now(tz=UTC).isoformat(),
            publisher=self._name,
        )
        logger.debug(
            "Publishing event",
            extra={"event": event_id, "subscriber_count": len(subscriptions)},
        )
        for subscription in subscriptions:
            try:
                subscription.handler(event)
            except Exception:
                logger.error(
                    "Event handler failed",
                    extra={"event": event_id, "subscriber": subscription.owner},
                    exc_info=True,
                )

    def remove_owner(self, owner: str) -> int:
        """Drop every service and subscription registered by `owner`."""

        removed = 0
        for service_id in [s for s, r in self._services.items() if r.owner == owner]:
            del self._services[service_id]
            removed += 1
        for event_id, subscriptions in self._subscriptions.items():
            kept = [s for s in subscriptions if s.owner != owner]
            removed += len(subscriptions) - len(kept)
            self._subscriptions[event_id] = kept
        return removed
