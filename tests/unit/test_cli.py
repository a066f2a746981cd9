from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from record_workflow.cli import main


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    # No stray .env or environment overrides; main() reconfigures root logging.
    monkeypatch.chdir(tmp_path)
    for name in ("WORKFLOW_DATABASE_PATH", "WORKFLOW_POST_ACTION_FAILURE", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


@pytest.fixture
def db_args(tmp_path: Path) -> list[str]:
    return ["--database", str(tmp_path / "cli.db")]


@pytest.fixture
def payload_file(tmp_path: Path) -> Path:
    # Guards that need record fields are left out: the CLI only knows record refs.
    payload: dict[str, Any] = {
        "name": "Ticket flow",
        "states": {
            "open": {"label": "Open"},
            "in_progress": {"label": "In progress"},
            "closed": {"label": "Closed", "is_final": True},
        },
        "transitions": {
            "start": {"from": "open", "to": "in_progress", "label": "Start work"},
            "close": {"from": ["open", "in_progress"], "to": "closed", "label": "Close"},
            "escalate": {"from": "open", "to": "in_progress", "conditions": ["exists"]},
        },
    }
    path = tmp_path / "ticket_flow.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def _define(db_args: list[str], payload_file: Path) -> None:
    assert main([*db_args, "define", "ticket_flow", "ticket", str(payload_file)]) == 0


def test_define_and_list_definitions(
    db_args: list[str], payload_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _define(db_args, payload_file)
    out = capsys.readouterr().out
    assert "Defined workflow 'ticket_flow' (3 states, 3 transitions)" in out

    assert main([*db_args, "definitions"]) == 0
    assert capsys.readouterr().out.strip() == "ticket_flow: Ticket flow -> ticket"


def test_define_rejects_invalid_payload(
    tmp_path: Path, db_args: list[str], capsys: pytest.CaptureFixture[str]
) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"states": {"a": {}}, "transitions": {}}), encoding="utf-8")

    assert main([*db_args, "define", "bad", "ticket", str(bad)]) == 2
    assert "workflow must have at least one transition" in capsys.readouterr().err


def test_define_reports_unreadable_payload(
    tmp_path: Path, db_args: list[str], capsys: pytest.CaptureFixture[str]
) -> None:
    assert main([*db_args, "define", "x", "ticket", str(tmp_path / "missing.json")]) == 2
    assert "Could not read input" in capsys.readouterr().err


def test_diagram_formats(
    db_args: list[str], payload_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _define(db_args, payload_file)
    capsys.readouterr()

    assert main([*db_args, "diagram", "ticket_flow"]) == 0
    mermaid = capsys.readouterr().out
    assert mermaid.startswith("stateDiagram-v2\n")
    assert "open --> in_progress : Start work" in mermaid

    assert main([*db_args, "diagram", "ticket_flow", "--format", "json"]) == 0
    diagram = json.loads(capsys.readouterr().out)
    assert diagram["slug"] == "ticket_flow"
    assert [n["id"] for n in diagram["nodes"]] == ["open", "in_progress", "closed"]


def test_diagram_for_unknown_workflow_fails(
    db_args: list[str], capsys: pytest.CaptureFixture[str]
) -> None:
    assert main([*db_args, "diagram", "missing"]) == 2
    assert "No active workflow definition: 'missing'" in capsys.readouterr().err


def test_init_transition_show_and_history(
    db_args: list[str], payload_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _define(db_args, payload_file)
    assert main([*db_args, "init", "ticket", "T-1", "--workflow", "ticket_flow"]) == 0
    assert "ticket:T-1 is in state 'open'" in capsys.readouterr().out

    assert (
        main(
            [
                *db_args,
                "transition",
                "ticket",
                "T-1",
                "start",
                "--actor",
                "alice",
                "--data",
                '{"notes": "picked up", "priority": "high"}',
            ]
        )
        == 0
    )
    assert "ticket:T-1 moved to 'in_progress'" in capsys.readouterr().out

    assert main([*db_args, "show", "ticket", "T-1"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["instance"]["current_state"] == "in_progress"
    assert shown["instance"]["data"] == {"notes": "picked up", "priority": "high"}
    assert [t["id"] for t in shown["available_transitions"]] == ["close"]

    assert main([*db_args, "history", "ticket", "T-1"]) == 0
    history = json.loads(capsys.readouterr().out)
    assert len(history) == 1
    assert history[0]["transition_id"] == "start"
    assert history[0]["triggered_by"] == "alice"
    assert history[0]["notes"] == "picked up"


def test_system_trigger_uses_system_actor(
    db_args: list[str], payload_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _define(db_args, payload_file)
    main([*db_args, "init", "ticket", "T-2", "--workflow", "ticket_flow"])

    assert main([*db_args, "transition", "ticket", "T-2", "close", "--trigger", "system"]) == 0
    capsys.readouterr()

    main([*db_args, "history", "ticket", "T-2"])
    (entry,) = json.loads(capsys.readouterr().out)
    assert entry["trigger_type"] == "system"
    assert entry["triggered_by"] == "system"


def test_transition_errors_exit_with_2(
    db_args: list[str], payload_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _define(db_args, payload_file)

    assert main([*db_args, "transition", "ticket", "T-9", "start"]) == 2
    assert "has no workflow instance" in capsys.readouterr().err

    main([*db_args, "init", "ticket", "T-9", "--workflow", "ticket_flow"])
    main([*db_args, "transition", "ticket", "T-9", "close"])
    capsys.readouterr()

    assert main([*db_args, "transition", "ticket", "T-9", "start"]) == 2
    assert "Cannot execute 'start' from state 'closed'" in capsys.readouterr().err

    assert main([*db_args, "transition", "ticket", "T-9", "fly"]) == 2
    assert "Unknown transition 'fly'" in capsys.readouterr().err


def test_transition_rejects_malformed_data(
    db_args: list[str], payload_file: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _define(db_args, payload_file)
    main([*db_args, "init", "ticket", "T-3", "--workflow", "ticket_flow"])
    capsys.readouterr()

    assert main([*db_args, "transition", "ticket", "T-3", "start", "--data", "{oops"]) == 2
    assert "Could not read input" in capsys.readouterr().err


def test_show_without_instance_exits_with_2(
    db_args: list[str], capsys: pytest.CaptureFixture[str]
) -> None:
    assert main([*db_args, "show", "ticket", "nope"]) == 2
    assert "No workflow instance for ticket:nope" in capsys.readouterr().err


def test_invalid_configuration_exits_with_2(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("WORKFLOW_POST_ACTION_FAILURE", "explode")

    assert main(["definitions"]) == 2
    assert "Configuration error (check your .env):" in capsys.readouterr().err
