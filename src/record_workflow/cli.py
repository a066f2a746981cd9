"""CLI entrypoint for operating on a workflow database.

Records are addressed by (record type, record id) only, so conditions and
actions that read record fields see an empty record here.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from record_workflow import __version__
from record_workflow.config import WorkflowSettings
from record_workflow.errors import WorkflowError
from record_workflow.logging import configure_logging
from record_workflow.models import TriggerType
from record_workflow.workflow.engine import WorkflowEngine
from record_workflow.workflow.records import RecordRef

logger = logging.getLogger(__name__)


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="record-workflow",
        description="Define, inspect and drive schema-based record workflows",
    )
    parser.add_argument("--version", action="version", version=f"record-workflow {__version__}")
    parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help="SQLite database path (overrides WORKFLOW_DATABASE_PATH)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    define = subparsers.add_parser("define", help="Create or replace a workflow definition")
    define.add_argument("slug", help="Workflow identifier")
    define.add_argument("entity_type", help="Record type the workflow governs")
    define.add_argument("payload", type=Path, help="JSON file with states and transitions")
    define.add_argument("--owner", default=None, help="Owning module tag")

    diagram = subparsers.add_parser("diagram", help="Print a workflow diagram")
    diagram.add_argument("slug", help="Workflow identifier")
    diagram.add_argument(
        "--format",
        choices=("mermaid", "json"),
        default="mermaid",
        help="Output format",
    )

    definitions = subparsers.add_parser("definitions", help="List workflow definitions")
    definitions.add_argument(
        "--all",
        action="store_true",
        help="Include deactivated definitions",
    )

    for name, help_text in (
        ("show", "Show a record's workflow instance and available transitions"),
        ("history", "Print a record's transition history"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("record_type")
        sub.add_argument("record_id")
        sub.add_argument("--workflow", default=None, help="Workflow slug")

    init = subparsers.add_parser("init", help="Bind a record to a workflow")
    init.add_argument("record_type")
    init.add_argument("record_id")
    init.add_argument("--workflow", required=True, help="Workflow slug")
    init.add_argument("--actor", default=None)

    transition = subparsers.add_parser("transition", help="Execute a transition on a record")
    transition.add_argument("record_type")
    transition.add_argument("record_id")
    transition.add_argument("transition_id")
    transition.add_argument("--workflow", default=None, help="Workflow slug")
    transition.add_argument("--data", default=None, help="JSON object merged into instance data")
    transition.add_argument("--actor", default=None)
    transition.add_argument(
        "--trigger",
        choices=[t.value for t in TriggerType],
        default=TriggerType.MANUAL.value,
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = WorkflowSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    if args.database is not None:
        settings = settings.model_copy(update={"database_path": args.database})

    configure_logging(settings.log_level)

    engine = WorkflowEngine.from_settings(settings)
    try:
        if args.command == "define":
            definition = engine.define_workflow(
                args.slug, args.entity_type, _load_json(args.payload), owner=args.owner
            )
            print(
                f"Defined workflow '{definition.slug}' "
                f"({len(definition.states)} states, {len(definition.transitions)} transitions)"
            )
            return 0

        if args.command == "diagram":
            diagram = engine.generate_diagram(args.slug)
            if args.format == "json":
                _print_json(diagram.model_dump(mode="json"))
            else:
                print(diagram.to_mermaid(), end="")
            return 0

        if args.command == "definitions":
            for definition in engine.list_definitions(active_only=not args.all):
                status = "" if definition.is_active else " (inactive)"
                owner = f" [{definition.owner}]" if definition.owner else ""
                print(
                    f"{definition.slug}{owner}: {definition.name} "
                    f"-> {definition.entity_type}{status}"
                )
            return 0

        record = RecordRef(args.record_type, args.record_id)

        if args.command == "show":
            instance = engine.get_workflow_instance(record, args.workflow)
            if instance is None:
                print(f"No workflow instance for {record}", file=sys.stderr)
                return 2
            available = engine.get_available_transitions(record, instance.workflow_slug)
            _print_json(
                {
                    "instance": instance.model_dump(mode="json"),
                    "available_transitions": [t.model_dump(mode="json") for t in available],
                }
            )
            return 0

        if args.command == "history":
            entries = engine.get_history(record, args.workflow)
            _print_json([e.model_dump(mode="json") for e in entries])
            return 0

        if args.command == "init":
            instance = engine.initialize_workflow(record, args.workflow, actor=args.actor)
            print(f"{record} is in state '{instance.current_state}'")
            return 0

        if args.command == "transition":
            data = json.loads(args.data) if args.data else None
            instance = engine.transition(
                record,
                args.transition_id,
                data=data,
                slug=args.workflow,
                trigger_type=TriggerType(args.trigger),
                actor=args.actor,
            )
            print(f"{record} moved to '{instance.current_state}'")
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except WorkflowError as e:
        logger.warning(str(e), extra={"command": args.command})
        print(str(e), file=sys.stderr)
        return 2

    except (OSError, json.JSONDecodeError) as e:
        print(f"Could not read input: {e}", file=sys.stderr)
        return 2

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
