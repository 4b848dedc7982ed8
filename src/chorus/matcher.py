"""
Structural matcher: `resolve` builds values from templates, `match` checks
values against patterns and binds variables atomically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import FatalBindingError
from .patterns import ArrayPattern, Literal, ObjectPattern, Pattern, Variable, Wildcard, to_document
from .scope import UNBOUND, Scope, Txn
from .values import Value, freeze, kind_of, values_equal


@dataclass
class MatchResult:
    matched: bool
    bound: Dict[str, Value] = field(default_factory=dict)
    path: str = ""
    expected: Any = None
    actual: Any = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.matched

    def describe(self) -> str:
        if self.matched:
            return "matched"
        where = self.path or "<root>"
        return f"{self.reason} at {where}"


class _Mismatch(Exception):
    def __init__(self, path: str, expected: Any, actual: Any, reason: str) -> None:
        super().__init__(reason)
        self.path = path
        self.expected = expected
        self.actual = actual
        self.reason = reason


def resolve(expr: Pattern, env: Scope, *, location: str | None = None) -> Value:
    """Materialize a `src` template; an unbound variable is fatal."""
    if isinstance(expr, Literal):
        return freeze(expr.value)
    if isinstance(expr, Variable):
        value = env.get(expr.name)
        if value is UNBOUND:
            raise FatalBindingError(
                f"Variable '${expr.name}' is not bound in scope '{env.name}'",
                code="CH-3001",
                location=location,
                variable=expr.name,
            )
        return freeze(value)
    if isinstance(expr, ArrayPattern):
        return [resolve(item, env, location=location) for item in expr.items]
    if isinstance(expr, ObjectPattern):
        return {key: resolve(item, env, location=location) for key, item in expr.fields.items()}
    if isinstance(expr, Wildcard):
        raise FatalBindingError("Wildcard cannot be resolved to a value", code="CH-3002", location=location)
    raise TypeError(f"Unknown pattern node: {expr!r}")


def match(pattern: Pattern, value: Value, env: Scope, *, txn: Txn | None = None) -> MatchResult:
    """
    Match ``value`` against ``pattern``.

    Binds proposed along the way are candidates; they are committed to
    ``env`` only when the whole match succeeds. When ``txn`` is given the
    caller owns the transaction and decides when to commit.
    """
    own = txn is None
    work = env.txn() if own else txn
    before = dict(work.candidates)
    try:
        _match(pattern, value, work, "")
    except _Mismatch as exc:
        if not own:
            work.candidates = before
        return MatchResult(False, path=exc.path, expected=exc.expected, actual=exc.actual, reason=exc.reason)
    bound = {name: val for name, val in work.candidates.items() if name not in before}
    if own:
        work.commit()
    return MatchResult(True, bound=bound)


def _match(pattern: Pattern, value: Value, txn: Txn, path: str) -> None:
    if isinstance(pattern, Wildcard):
        return
    if isinstance(pattern, Variable):
        if not txn.set_value(pattern.name, value):
            raise _Mismatch(path, txn.value_of(pattern.name), value, f"${pattern.name} is already bound to another value")
        return
    if isinstance(pattern, Literal):
        if not values_equal(pattern.value, value):
            raise _Mismatch(path, pattern.value, value, "value differs")
        return
    if isinstance(pattern, ArrayPattern):
        if kind_of(value) != "array":
            raise _Mismatch(path, to_document(pattern), value, "expected an array")
        if len(value) < len(pattern.items):
            raise _Mismatch(path, to_document(pattern), value, "array is too short")
        for idx, item in enumerate(pattern.items):
            _match(item, value[idx], txn, f"{path}[{idx}]")
        return
    if isinstance(pattern, ObjectPattern):
        if kind_of(value) != "object":
            raise _Mismatch(path, to_document(pattern), value, "expected an object")
        for key, item in pattern.fields.items():
            if key not in value:
                raise _Mismatch(f"{path}.{key}", to_document(item), None, f"missing key '{key}'")
            _match(item, value[key], txn, f"{path}.{key}")
        return
    raise TypeError(f"Unknown pattern node: {pattern!r}")
