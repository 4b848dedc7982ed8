"""
Write-once variable scopes.

One :class:`Scope` exists per frame (the root run, or one call invocation).
Scopes never chain: a callee sees only what a call copies in explicitly.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator

from .values import Value, freeze, values_equal

logger = logging.getLogger("chorus.scope")


class _Unbound:
    def __repr__(self) -> str:  # pragma: no cover - trivial
        return "UNBOUND"

    def __bool__(self) -> bool:
        return False


UNBOUND: Any = _Unbound()


class Scope:
    """Per-frame variable environment."""

    def __init__(self, name: str = "root") -> None:
        self.name = name
        self._values: Dict[str, Value] = {}
        self.version = 0

    def get(self, name: str) -> Any:
        return self._values.get(name, UNBOUND)

    def has(self, name: str) -> bool:
        return name in self._values

    def bind(self, name: str, value: Value) -> bool:
        txn = self.txn()
        if not txn.set_value(name, value):
            return False
        txn.commit()
        return True

    def txn(self) -> "Txn":
        return Txn(self)

    def names(self) -> list[str]:
        return list(self._values)

    def snapshot(self) -> Dict[str, Value]:
        return {name: freeze(value) for name, value in self._values.items()}

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"Scope({self.name!r}, {len(self._values)} bound)"


class Txn:
    """
    Candidate bindings over a scope.

    Lookups see committed values first, then candidates. Nothing reaches the
    scope until :meth:`commit`; dropping the transaction discards it.
    """

    def __init__(self, scope: Scope) -> None:
        self.scope = scope
        self.candidates: Dict[str, Value] = {}
        self._committed = False

    def value_of(self, name: str) -> Any:
        if self.scope.has(name):
            return self.scope.get(name)
        return self.candidates.get(name, UNBOUND)

    def set_value(self, name: str, value: Value) -> bool:
        current = self.value_of(name)
        if current is not UNBOUND:
            return values_equal(current, value)
        self.candidates[name] = freeze(value)
        return True

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("transaction already committed")
        self._committed = True
        if not self.candidates:
            return
        for name, value in self.candidates.items():
            logger.debug("SET %s.%s <- %r", self.scope.name, name, value)
            self.scope._values[name] = value
        self.scope.version += 1
