"""The tracked-record contract.

The engine never owns a record's lifecycle. It only needs:
- a stable identity: `record_type` (defaults to the class name) and
  `record_id` (falls back to `id`)
- optionally a state field to mirror the workflow state onto: the field named
  by `state_field` (an attribute or a zero-argument method), else `state`,
  else `status`
- optionally `save()`, called after the engine writes a field
- optionally `to_snapshot()` for history snapshots

Record-specific guards and side effects are registered explicitly per record
type as `RecordCapabilities` instead of being discovered on the record.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# capability condition: fn(record, *params) -> bool
RecordCondition = Callable[..., bool]
# capability action: fn(record, data, *params) -> Any
RecordAction = Callable[..., Any]


@dataclass(frozen=True, slots=True)
class RecordRef:
    record_type: str
    record_id: str

    def __str__(self) -> str:
        return f"{self.record_type}:{self.record_id}"


def record_type_of(record: object) -> str:
    return str(getattr(record, "record_type", None) or type(record).__name__)


def record_id_of(record: object) -> str | None:
    record_id = getattr(record, "record_id", None)
    if record_id is None:
        record_id = getattr(record, "id", None)
    return None if record_id is None else str(record_id)


def record_ref(record: object) -> RecordRef:
    if isinstance(record, RecordRef):
        return record

    record_id = record_id_of(record)
    if record_id is None:
        raise ValueError(f"{type(record).__name__} has no record_id or id to track it by")
    return RecordRef(record_type=record_type_of(record), record_id=record_id)


def read_field(record: object, name: str) -> Any:
    return getattr(record, name, None)


def write_field(record: object, name: str, value: Any) -> None:
    setattr(record, name, value)
    save = getattr(record, "save", None)
    if callable(save):
        save()


def state_field_for(record: object) -> str | None:
    declared = getattr(record, "state_field", None)
    if callable(declared):
        declared = declared()
    if isinstance(declared, str) and declared:
        return declared
    for candidate in ("state", "status"):
        if hasattr(record, candidate):
            return candidate
    return None


def mirror_state(record: object, state: str) -> Callable[[], None] | None:
    """Copy `state` onto the record's state field, if it has one.

    Best-effort: a failing write or `save()` is logged and the previous value
    is put back. Returns a callback restoring the previous value when the
    field was written, else None.
    """
    if isinstance(record, RecordRef):
        return None
    field_name = state_field_for(record)
    if field_name is None:
        return None
    previous = read_field(record, field_name)
    context = {"record_type": record_type_of(record), "field": field_name, "state": state}

    try:
        write_field(record, field_name, state)
    except Exception:
        logger.warning("Could not mirror workflow state onto record", extra=context, exc_info=True)
        setattr(record, field_name, previous)
        return None

    def restore() -> None:
        try:
            write_field(record, field_name, previous)
        except Exception:
            logger.warning("Could not restore record state field", extra=context, exc_info=True)
            setattr(record, field_name, previous)

    return restore


def record_snapshot(record: object) -> dict[str, Any]:
    """JSON-safe copy of the record's fields, for the history ledger."""

    to_snapshot = getattr(record, "to_snapshot", None)
    if callable(to_snapshot):
        raw: Any = to_snapshot()
    elif isinstance(record, BaseModel):
        raw = record.model_dump(mode="json")
    elif dataclasses.is_dataclass(record) and not isinstance(record, type):
        raw = dataclasses.asdict(record)
    else:
        try:
            raw = {k: v for k, v in vars(record).items() if not k.startswith("_")}
        except TypeError:
            raw = {}
    return json.loads(json.dumps(raw, default=str))


@dataclass(slots=True)
class RecordCapabilities:
    """Guards and side effects one record type offers to workflows."""

    conditions: dict[str, RecordCondition] = field(default_factory=dict)
    actions: dict[str, RecordAction] = field(default_factory=dict)

    def condition(self, name: str) -> RecordCondition | None:
        return self.conditions.get(name) or self.conditions.get(f"can_{name}")

    def action(self, name: str) -> RecordAction | None:
        return self.actions.get(name)


class CapabilityRegistry:
    def __init__(self) -> None:
        self._by_type: dict[str, RecordCapabilities] = {}

    def register(
        self,
        record_type: str,
        *,
        conditions: dict[str, RecordCondition] | None = None,
        actions: dict[str, RecordAction] | None = None,
    ) -> RecordCapabilities:
        """Add capabilities for `record_type`; repeated calls merge."""

        capabilities = self._by_type.setdefault(record_type, RecordCapabilities())
        capabilities.conditions.update(conditions or {})
        capabilities.actions.update(actions or {})
        logger.debug(
            "Record capabilities registered",
            extra={
                "record_type": record_type,
                "conditions": sorted(capabilities.conditions),
                "actions": sorted(capabilities.actions),
            },
        )
        return capabilities

    def condition_for(self, record_type: str, name: str) -> RecordCondition | None:
        capabilities = self._by_type.get(record_type)
        return capabilities.condition(name) if capabilities else None

    def action_for(self, record_type: str, name: str) -> RecordAction | None:
        capabilities = self._by_type.get(record_type)
        return capabilities.action(name) if capabilities else None
