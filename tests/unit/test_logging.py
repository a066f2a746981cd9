from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

import pytest

from record_workflow.logging import JsonFormatter, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="record_workflow.workflow.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Workflow transition %s",
        args=("executed",),
        exc_info=None,
    )
    record.__dict__.update(extra)
    return record


def test_json_formatter_lifts_workflow_context() -> None:
    line = JsonFormatter().format(
        _record(
            workflow="order_flow",
            transition="ship",
            record="order:42",
            to_state="shipped",
            _private="hidden",
        )
    )
    payload = json.loads(line)

    assert payload["level"] == "INFO"
    assert payload["logger"] == "record_workflow.workflow.engine"
    assert payload["message"] == "Workflow transition executed"
    assert payload["workflow"] == "order_flow"
    assert payload["transition"] == "ship"
    assert payload["record"] == "order:42"
    assert payload["extra"] == {"to_state": "shipped"}


def test_json_formatter_serializes_non_json_values() -> None:
    at = datetime(2026, 3, 2, 9, 30, tzinfo=UTC)

    payload = json.loads(JsonFormatter().format(_record(transitioned_at=at)))

    assert payload["extra"]["transitioned_at"] == str(at)


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = _record()
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in payload["exception"]


def test_configure_logging_replaces_root_handlers(capsys: pytest.CaptureFixture[str]) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging("debug")
        configure_logging("info")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO

        logging.getLogger("record_workflow.tests").info("hello", extra={"record": "order:1"})
        line = capsys.readouterr().err.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["record"] == "order:1"
        assert "extra" not in payload
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
