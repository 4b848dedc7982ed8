"""
Verdict evaluation after quiescence (or after a fatal abort).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .diagnostics import Diagnostic, create_diagnostic, get_definition
from .errors import ChorusError, TransportError
from .graph import Bind, Call, Node, NodeState, Recv, Requirement, ScenarioGraph
from .patterns import to_document
from .values import Value, render

if TYPE_CHECKING:  # pragma: no cover
    from .scheduler import Frame, Scheduler, TraceEntry


class Status(str, Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass
class NodeRef:
    path: str
    kind: str
    state: NodeState
    require: Optional[Requirement] = None
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "kind": self.kind,
            "state": self.state.value,
            "require": self.require.value if self.require else None,
            "location": self.location,
        }


@dataclass
class Verdict:
    status: Status
    unmet: List[NodeRef] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    bindings: Dict[str, Value] = field(default_factory=dict)
    states: Dict[str, str] = field(default_factory=dict)
    trace: List["TraceEntry"] = field(default_factory=list)
    ticks: int = 0
    error: Optional[ChorusError] = None

    @property
    def ok(self) -> bool:
        return self.status is Status.PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "unmet": [ref.to_dict() for ref in self.unmet],
            "diagnostics": [diag.to_dict() for diag in self.diagnostics],
            "bindings": self.bindings,
            "states": self.states,
            "ticks": self.ticks,
            "error": self.error.to_dict() if self.error else None,
            "trace": [entry.to_dict() for entry in self.trace],
        }

    def report(self) -> str:
        lines = [f"verdict: {self.status.value.upper()} after {self.ticks} tick(s)"]
        for diag in self.diagnostics:
            where = f" [{diag.location}]" if diag.location else ""
            lines.append(f"  {diag.severity} {diag.code}{where}: {diag.message}")
            if diag.expected is not None:
                lines.append(f"      expected:  {render(diag.expected)}")
            if diag.last_seen is not None:
                lines.append(f"      last seen: {render(diag.last_seen)}")
            if diag.hint:
                lines.append(f"      {diag.hint}")
        return "\n".join(lines)


def evaluate(scheduler: "Scheduler") -> Verdict:
    unmet: List[NodeRef] = []
    diagnostics: List[Diagnostic] = []
    states: Dict[str, str] = {}

    if scheduler.fatal is not None:
        exc = scheduler.fatal
        code = exc.code
        if code is None or get_definition(code) is None:
            code = "CH-4001" if isinstance(exc, TransportError) else "CH-3001"
        diagnostics.append(
            create_diagnostic(
                code,
                message_kwargs={"detail": exc.message},
                node=scheduler.failed_node,
                location=exc.location,
            )
        )

    _walk(scheduler.root.graph, scheduler.root, "", None, unmet, diagnostics, states)

    for mailbox, messages in scheduler.fabric.leftovers().items():
        diagnostics.append(
            create_diagnostic(
                "CH-5101",
                message_kwargs={"count": len(messages), "mailbox": mailbox},
                last_seen=messages[0].payload,
            )
        )

    undelivered: Dict[str, List[Value]] = {}
    for message in scheduler.transport.undelivered():
        undelivered.setdefault(message.target or "*", []).append(message.payload)
    for target, payloads in undelivered.items():
        diagnostics.append(
            create_diagnostic(
                "CH-5102",
                message_kwargs={"count": len(payloads), "target": target},
                last_seen=payloads[0],
            )
        )

    failed = bool(unmet) or scheduler.fatal is not None
    return Verdict(
        status=Status.FAIL if failed else Status.PASS,
        unmet=unmet,
        diagnostics=diagnostics,
        bindings=scheduler.root.scope.snapshot(),
        states=states,
        trace=list(scheduler.trace),
        ticks=scheduler.clock.now,
        error=scheduler.fatal,
    )


def _walk(graph: ScenarioGraph, frame: Optional["Frame"], prefix: str, uncalled: Optional[str],
          unmet: List[NodeRef], diagnostics: List[Diagnostic], states: Dict[str, str]) -> None:
    for node in graph.nodes:
        path = f"{prefix}{node.name}"
        rt = frame.runtime[node.index] if frame is not None else None
        state = rt.state if rt is not None else NodeState.PENDING
        states[path] = state.value
        _check(node, path, state, rt, uncalled, unmet, diagnostics)
        if isinstance(node.event, Call):
            callee = rt.frame if rt is not None else None
            if callee is not None:
                _walk(callee.graph, callee, callee.prefix, None, unmet, diagnostics, states)
            else:
                sub = graph.subroutines[node.event.target]
                _walk(sub, None, f"{path}/", uncalled or node.event.target, unmet, diagnostics, states)


def _check(node: Node, path: str, state: NodeState, rt: Any, uncalled: Optional[str],
           unmet: List[NodeRef], diagnostics: List[Diagnostic]) -> None:
    if node.require is None:
        return
    complete = state is NodeState.COMPLETE
    if node.require is Requirement.REACHED and complete:
        return
    if node.require is Requirement.UNREACHED and not complete:
        return
    location = str(node.location) if node.location else None
    unmet.append(NodeRef(path, node.kind, state, node.require, location))
    if node.require is Requirement.UNREACHED:
        diagnostics.append(create_diagnostic("CH-5002", message_kwargs={"node": path}, node=path, location=location))
        return
    if uncalled is not None:
        diagnostics.append(
            create_diagnostic("CH-5003", message_kwargs={"node": path, "target": uncalled}, node=path, location=location)
        )
        return
    mismatch = rt.last_mismatch if rt is not None else None
    hint = mismatch.describe() if mismatch is not None else None
    if rt is not None and rt.timed_out:
        timed_out = f"timed out after {node.event.timeout} tick(s)"
        hint = f"{timed_out}; last attempt: {hint}" if hint else timed_out
    diagnostics.append(
        create_diagnostic(
            "CH-5001",
            message_kwargs={"node": path, "state": state.value},
            node=path,
            location=location,
            expected=_expected(node),
            last_seen=rt.last_seen if rt is not None and rt.attempts else None,
            hint=hint,
        )
    )


def _expected(node: Node) -> Any:
    if isinstance(node.event, (Bind, Recv)):
        return to_document(node.event.dst)
    return None
