"""
Value model shared by the matcher, scopes and the message fabric.

Values are plain JSON-shaped Python objects: ``None``, ``bool``, ``int`` /
``float``, ``str``, ``list`` and ``dict`` with string keys.
"""

from __future__ import annotations

import copy
import json
import numbers
from typing import Any, Union

Value = Union[None, bool, int, float, str, list, dict]

SCALAR_TYPES = (type(None), bool, int, float, str)


def kind_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, numbers.Number):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def values_equal(left: Any, right: Any) -> bool:
    """Strict structural equality: no coercion between kinds."""
    left_kind = kind_of(left)
    if left_kind != kind_of(right):
        return False
    if left_kind == "array":
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    if left_kind == "object":
        if left.keys() != right.keys():
            return False
        return all(values_equal(left[key], right[key]) for key in left)
    return left == right


def freeze(value: Any) -> Value:
    """Deep copy into canonical form (tuples become lists)."""
    kind = kind_of(value)
    if kind == "array":
        return [freeze(item) for item in value]
    if kind == "object":
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be strings, got {type(key).__name__}")
        return {key: freeze(item) for key, item in value.items()}
    return copy.copy(value)


def render(value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError):  # pragma: no cover - values are JSON-shaped
        return repr(value)
