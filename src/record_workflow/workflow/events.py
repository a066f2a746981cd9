"""Events the engine publishes after a transition commits."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


def transitioned_event_id(slug: str) -> str:
    return f"workflow.{slug}.transitioned"


@dataclass(frozen=True, slots=True)
class TransitionedEvent:
    workflow: str
    transition: str
    from_state: str
    to_state: str
    record_type: str
    record_id: str

    @property
    def event_id(self) -> str:
        return transitioned_event_id(self.workflow)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)
