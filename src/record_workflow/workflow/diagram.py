"""Diagram export for workflow definitions.

`build_diagram` is pure: it reads a definition and returns nodes and edges;
`WorkflowDiagram.to_mermaid()` renders them as a Mermaid `stateDiagram-v2`.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

from record_workflow.models import WILDCARD, WorkflowDefinition

_SAFE_ID = re.compile(r"[^A-Za-z0-9_]")


class DiagramNode(BaseModel):
    id: str
    label: str
    color: str = "gray"
    is_initial: bool = False
    is_final: bool = False


class DiagramEdge(BaseModel):
    transition: str
    source: str
    target: str
    label: str
    wildcard: bool = False


class WorkflowDiagram(BaseModel):
    slug: str
    name: str
    nodes: list[DiagramNode] = Field(default_factory=list)
    edges: list[DiagramEdge] = Field(default_factory=list)

    def to_mermaid(self) -> str:
        ids = _mermaid_ids([node.id for node in self.nodes])
        lines = ["stateDiagram-v2"]
        for node in self.nodes:
            lines.append(f'    state "{_quote(node.label)}" as {ids[node.id]}')
        for node in self.nodes:
            if node.is_initial:
                lines.append(f"    [*] --> {ids[node.id]}")
        for edge in self.edges:
            lines.append(f"    {ids[edge.source]} --> {ids[edge.target]} : {_quote(edge.label)}")
        for node in self.nodes:
            if node.is_final:
                lines.append(f"    {ids[node.id]} --> [*]")
        return "\n".join(lines) + "\n"


def _mermaid_ids(keys: list[str]) -> dict[str, str]:
    """Map state keys to Mermaid ids, suffixing `_2`, `_3`... when sanitized keys collide."""

    ids: dict[str, str] = {}
    taken: set[str] = set()
    for key in keys:
        base = _SAFE_ID.sub("_", key)
        candidate, n = base, 1
        while candidate in taken:
            n += 1
            candidate = f"{base}_{n}"
        taken.add(candidate)
        ids[key] = candidate
    return ids


def _quote(text: str) -> str:
    return text.replace('"', "'").replace("\n", " ")


def build_diagram(definition: WorkflowDefinition) -> WorkflowDiagram:
    nodes = [
        DiagramNode(
            id=key,
            label=definition.state_label(key),
            color=spec.color,
            is_initial=key == definition.initial_state,
            is_final=spec.is_final,
        )
        for key, spec in definition.states.items()
    ]

    edges: list[DiagramEdge] = []
    for transition_id, spec in definition.transitions.items():
        label = definition.transition_label(transition_id)
        if spec.is_wildcard:
            sources = list(definition.states)
        else:
            sources = [s for s in spec.from_states if s != WILDCARD]
        for source in sources:
            edges.append(
                DiagramEdge(
                    transition=transition_id,
                    source=source,
                    target=spec.to,
                    label=label,
                    wildcard=spec.is_wildcard,
                )
            )

    return WorkflowDiagram(slug=definition.slug, name=definition.name, nodes=nodes, edges=edges)
