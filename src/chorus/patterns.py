"""
Pattern forms used on the `dst` side of binds and receives and, without
wildcards, as `src` templates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Union

from .errors import MalformedGraphError
from .values import freeze, kind_of

_VARIABLE_RE = re.compile(r"^\$([A-Za-z_][A-Za-z0-9_]*)$")
WILDCARD_TOKEN = "$_"


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Wildcard:
    pass


@dataclass(frozen=True)
class ArrayPattern:
    items: tuple = ()


@dataclass
class ObjectPattern:
    fields: Dict[str, "Pattern"] = field(default_factory=dict)


Pattern = Union[Literal, Variable, Wildcard, ArrayPattern, ObjectPattern]


def compile_pattern(raw: Any, *, location: str | None = None) -> Pattern:
    """
    Turn a document value into a pattern.

    ``"$NAME"`` is a variable, ``"$_"`` the wildcard and ``"$$text"`` the
    literal string ``"$text"``. Anything that is not a JSON-shaped value is a
    :class:`MalformedGraphError`.
    """
    try:
        kind = kind_of(raw)
    except TypeError as exc:
        raise MalformedGraphError(str(exc), code="CH-2007", location=location) from exc
    if kind == "string":
        if raw == WILDCARD_TOKEN:
            return Wildcard()
        if raw.startswith("$$"):
            return Literal(raw[1:])
        match = _VARIABLE_RE.match(raw)
        if match:
            return Variable(match.group(1))
        return Literal(raw)
    if kind == "array":
        return ArrayPattern(tuple(compile_pattern(item, location=location) for item in raw))
    if kind == "object":
        for key in raw:
            if not isinstance(key, str):
                raise MalformedGraphError(
                    f"Object keys must be strings, got {key!r}",
                    code="CH-2007",
                    location=location,
                )
        return ObjectPattern({key: compile_pattern(item, location=location) for key, item in raw.items()})
    return Literal(freeze(raw))


def compile_template(raw: Any, *, location: str | None = None) -> Pattern:
    """Compile a `src` expression; the wildcard is not allowed in one."""
    return check_template(compile_pattern(raw, location=location), location=location)


def check_template(pattern: Pattern, *, location: str | None = None) -> Pattern:
    if any(isinstance(node, Wildcard) for node in walk(pattern)):
        raise MalformedGraphError(
            "Wildcard '$_' cannot be used in a src expression",
            code="CH-2005",
            location=location,
        )
    return pattern


def walk(pattern: Pattern):
    yield pattern
    if isinstance(pattern, ArrayPattern):
        for item in pattern.items:
            yield from walk(item)
    elif isinstance(pattern, ObjectPattern):
        for item in pattern.fields.values():
            yield from walk(item)


def to_document(pattern: Pattern) -> Any:
    """Inverse of :func:`compile_pattern`, used by the renderer and diagnostics."""
    if isinstance(pattern, Wildcard):
        return WILDCARD_TOKEN
    if isinstance(pattern, Variable):
        return f"${pattern.name}"
    if isinstance(pattern, ArrayPattern):
        return [to_document(item) for item in pattern.items]
    if isinstance(pattern, ObjectPattern):
        return {key: to_document(item) for key, item in pattern.fields.items()}
    if isinstance(pattern.value, str) and pattern.value.startswith("$"):
        return "$" + pattern.value
    return pattern.value
