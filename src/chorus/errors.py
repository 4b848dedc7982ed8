"""
Custom error types for the chorus scenario engine.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ChorusError(Exception):
    """Base error with optional code and location metadata."""

    message: str
    code: Optional[str] = None
    location: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        prefix = f"{self.code}: " if self.code else ""
        suffix = f" (at {self.location})" if self.location else ""
        return f"{prefix}{self.message}{suffix}"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "location": self.location}


class ScenarioLoadError(ChorusError):
    """Scenario file could not be read, parsed or validated."""


class MalformedGraphError(ChorusError):
    """Scenario graph was rejected before execution."""


@dataclass
class FatalBindingError(ChorusError):
    """A `src` expression referenced a variable with no binding in its scope."""

    variable: Optional[str] = None


class TransportError(ChorusError):
    """The transport could not deliver or route a message."""


def unknown_reference(kind: str, name: str, *, location: str | None = None) -> MalformedGraphError:
    return MalformedGraphError(f"Reference to unknown {kind} '{name}'", code="CH-2002", location=location)
