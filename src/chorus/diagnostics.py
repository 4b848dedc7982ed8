"""
Structured diagnostics reported with a Verdict.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional


@dataclass
class Diagnostic:
    code: str
    category: str
    severity: str
    message: str
    node: Optional[str] = None
    location: Optional[str] = None
    expected: Any = None
    last_seen: Any = None
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DiagnosticDefinition:
    code: str
    category: str
    default_severity: str
    message_template: str


_DEFINITIONS: Dict[str, DiagnosticDefinition] = {
    "CH-3001": DiagnosticDefinition(
        code="CH-3001",
        category="binding",
        default_severity="error",
        message_template="Run aborted: {detail}",
    ),
    "CH-3002": DiagnosticDefinition(
        code="CH-3002",
        category="binding",
        default_severity="error",
        message_template="Run aborted: {detail}",
    ),
    "CH-4001": DiagnosticDefinition(
        code="CH-4001",
        category="transport",
        default_severity="error",
        message_template="Run aborted: {detail}",
    ),
    "CH-4002": DiagnosticDefinition(
        code="CH-4002",
        category="transport",
        default_severity="error",
        message_template="Run aborted: {detail}",
    ),
    "CH-5001": DiagnosticDefinition(
        code="CH-5001",
        category="requirement",
        default_severity="error",
        message_template="Event '{node}' is required to be reached but ended {state}",
    ),
    "CH-5002": DiagnosticDefinition(
        code="CH-5002",
        category="requirement",
        default_severity="error",
        message_template="Event '{node}' is required to stay unreached but completed",
    ),
    "CH-5003": DiagnosticDefinition(
        code="CH-5003",
        category="requirement",
        default_severity="error",
        message_template="Event '{node}' is in subroutine '{target}', which was never called",
    ),
    "CH-5101": DiagnosticDefinition(
        code="CH-5101",
        category="mailbox",
        default_severity="info",
        message_template="{count} message(s) left unconsumed in mailbox '{mailbox}'",
    ),
    "CH-5102": DiagnosticDefinition(
        code="CH-5102",
        category="mailbox",
        default_severity="info",
        message_template="{count} scheduled message(s) for '{target}' were never delivered",
    ),
}


def get_definition(code: str) -> Optional[DiagnosticDefinition]:
    return _DEFINITIONS.get(code)


def all_definitions() -> Iterable[DiagnosticDefinition]:
    return _DEFINITIONS.values()


def create_diagnostic(code: str, *, message_kwargs: Optional[Dict[str, Any]] = None, **fields: Any) -> Diagnostic:
    definition = get_definition(code)
    if not definition:
        raise ValueError(f"Unknown diagnostic code '{code}'")
    message = definition.message_template.format(**(message_kwargs or {}))
    return Diagnostic(
        code=definition.code,
        category=definition.category,
        severity=definition.default_severity,
        message=message,
        **fields,
    )
