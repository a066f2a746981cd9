"""Definition payload validation.

A payload is either accepted whole or rejected whole: every violation is
collected before anything is written.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from record_workflow.entries import InvalidEntry, parse_entry
from record_workflow.errors import DefinitionValidationError
from record_workflow.models import WILDCARD, WorkflowDefinition, humanize

_ENTRY_LISTS = ("conditions", "pre_actions", "actions", "post_actions")


def _source_states(raw: object) -> list[object]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, list | tuple):
        return list(raw)
    return [raw]


def _is_final(spec: object) -> bool:
    return isinstance(spec, Mapping) and bool(spec.get("is_final"))


def collect_violations(
    payload: Mapping[str, Any], *, strict_final_states: bool = False
) -> list[str]:
    """Return every problem found in a definition payload (empty when valid)."""

    if not isinstance(payload, Mapping):
        return ["definition payload must be a mapping"]

    violations: list[str] = []

    states = payload.get("states")
    if not isinstance(states, Mapping) or not states:
        violations.append("workflow must have at least one state")
        states = states if isinstance(states, Mapping) else {}

    transitions = payload.get("transitions")
    if not isinstance(transitions, Mapping) or not transitions:
        violations.append("workflow must have at least one transition")
        transitions = transitions if isinstance(transitions, Mapping) else {}

    for key, spec in states.items():
        if spec is not None and not isinstance(spec, Mapping):
            violations.append(f"state '{key}' must be a mapping")

    initial = payload.get("initial_state")
    if initial is not None and (not isinstance(initial, str) or initial not in states):
        violations.append(f"initial state '{initial}' is not a declared state")

    for transition_id, transition in transitions.items():
        if not isinstance(transition, Mapping):
            violations.append(f"transition '{transition_id}' must be a mapping")
            continue

        sources = _source_states(transition.get("from"))
        if not sources:
            violations.append(f"transition '{transition_id}' has no source state")
        for state in sources:
            if state == WILDCARD:
                continue
            if not isinstance(state, str) or state not in states:
                violations.append(
                    f"transition '{transition_id}' references unknown state: {state}"
                )
            elif strict_final_states and _is_final(states.get(state)):
                violations.append(
                    f"transition '{transition_id}' leaves final state: {state}"
                )

        target = transition.get("to")
        if not isinstance(target, str) or target not in states:
            violations.append(
                f"transition '{transition_id}' has invalid target state: {target}"
            )

        for key in _ENTRY_LISTS:
            entries = transition.get(key)
            if entries is None:
                continue
            if not isinstance(entries, list | tuple):
                violations.append(f"transition '{transition_id}' {key} must be a list")
                continue
            for entry in entries:
                try:
                    parse_entry(entry, allow_negation=key == "conditions")
                except InvalidEntry as exc:
                    violations.append(f"transition '{transition_id}' {key}: {exc}")

    return violations


def build_definition(
    slug: str,
    entity_type: str,
    payload: Mapping[str, Any],
    owner: str | None = None,
    *,
    strict_final_states: bool = False,
) -> WorkflowDefinition:
    """Validate `payload` and build an (unsaved) definition from it.

    Raises:
        DefinitionValidationError: listing every violation found.
    """
    violations = collect_violations(payload, strict_final_states=strict_final_states)
    if violations:
        raise DefinitionValidationError(slug, violations)

    states = {key: dict(spec or {}) for key, spec in payload["states"].items()}
    try:
        return WorkflowDefinition.model_validate(
            {
                "slug": slug,
                "name": payload.get("name") or humanize(slug),
                "entity_type": entity_type,
                "description": payload.get("description"),
                "initial_state": payload.get("initial_state") or next(iter(states)),
                "states": states,
                "transitions": dict(payload["transitions"]),
                "config": dict(payload.get("config") or {}),
                "owner": owner,
                "is_active": True,
            }
        )
    except ValidationError as exc:
        raise DefinitionValidationError(
            slug,
            [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            ],
        ) from exc
