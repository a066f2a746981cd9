"""Parsing of condition and action entries declared on transitions.

An entry is one of:
- a bare name: "has_lines"
- a mapping: {"name": "has_field", "params": ["customer_email"]}
- a list: ["relation_count_min", "line_items", 1]

`params` may be a list (positional arguments), a mapping (keyword arguments)
or a single scalar. Condition names may carry a leading "!" to negate them.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


class InvalidEntry(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class ParsedEntry:
    name: str
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    negated: bool = False

    @property
    def label(self) -> str:
        """The name as reported in failure lists, "!" included."""
        return f"!{self.name}" if self.negated else self.name

    @property
    def params(self) -> Any:
        if self.kwargs:
            return dict(self.kwargs)
        if self.args:
            return list(self.args)
        return None

    @property
    def expression(self) -> str:
        parts = [repr(a) if not isinstance(a, str) else a for a in self.args]
        parts += [f"{k}={v}" for k, v in self.kwargs.items()]
        if not parts:
            return self.label
        return f"{self.label}({', '.join(parts)})"


def parse_entry(entry: object, *, allow_negation: bool = True) -> ParsedEntry:
    if isinstance(entry, str):
        name, params = entry, None
    elif isinstance(entry, Mapping):
        name, params = entry.get("name"), entry.get("params")
    elif isinstance(entry, list | tuple) and entry:
        name, params = entry[0], list(entry[1:]) or None
    else:
        raise InvalidEntry(f"Unsupported entry: {entry!r}")

    if not isinstance(name, str) or not name.strip():
        raise InvalidEntry(f"Entry has no name: {entry!r}")
    name = name.strip()

    negated = False
    if allow_negation and name.startswith("!"):
        negated = True
        name = name[1:].strip()
        if not name:
            raise InvalidEntry(f"Entry has no name: {entry!r}")

    if params is None:
        args: tuple[Any, ...] = ()
        kwargs: dict[str, Any] = {}
    elif isinstance(params, Mapping):
        args, kwargs = (), dict(params)
    elif isinstance(params, list | tuple):
        args, kwargs = tuple(params), {}
    else:
        args, kwargs = (params,), {}

    return ParsedEntry(name=name, args=args, kwargs=kwargs, negated=negated)
