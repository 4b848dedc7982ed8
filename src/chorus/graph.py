"""
Scenario graph: an immutable arena of typed event nodes joined by
happens-after edges, plus the named subroutine graphs its calls refer to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import MalformedGraphError, unknown_reference
from .patterns import (
    ArrayPattern,
    Literal,
    ObjectPattern,
    Pattern,
    Variable,
    Wildcard,
    check_template,
    compile_pattern,
    compile_template,
)

logger = logging.getLogger("chorus.graph")

ROUTED = "*"
_PATTERN_TYPES = (Literal, Variable, Wildcard, ArrayPattern, ObjectPattern)


class Requirement(str, Enum):
    REACHED = "reached"
    UNREACHED = "unreached"


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready_incomplete"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceLocation:
    source: Optional[str]
    event: str
    index: int

    def __str__(self) -> str:
        prefix = f"{self.source}:" if self.source else ""
        return f"{prefix}{self.event}#{self.index}"


@dataclass(frozen=True)
class Bind:
    dst: Pattern
    src: Pattern


@dataclass(frozen=True)
class Send:
    src: Pattern
    target: Optional[str] = None
    sender: Optional[str] = None
    type: Optional[str] = None


@dataclass(frozen=True)
class Recv:
    dst: Pattern
    source: Optional[str] = None
    to: Optional[str] = None
    type: Optional[str] = None
    timeout: Optional[int] = None

    @property
    def mailbox(self) -> str:
        return self.to or ROUTED


@dataclass(frozen=True)
class Respond:
    src: Pattern
    request: int
    sender: Optional[str] = None


@dataclass(frozen=True)
class Delay:
    steps: int = 1


@dataclass(frozen=True)
class Call:
    target: str
    inputs: Tuple[Tuple[Pattern, Pattern], ...] = ()
    outputs: Tuple[Tuple[Pattern, Pattern], ...] = ()
    # (caller name, callee name) pairs
    actors: Tuple[Tuple[str, str], ...] = ()
    dummies: Tuple[Tuple[str, str], ...] = ()


Event = Union[Bind, Send, Recv, Respond, Delay, Call]

# bind/call first, then send/respond, then recv/delay
PRIORITY_CLASS = {Bind: 0, Call: 0, Send: 1, Respond: 1, Recv: 2, Delay: 2}
KIND_NAMES = {Bind: "bind", Send: "send", Recv: "recv", Respond: "respond", Delay: "delay", Call: "call"}


@dataclass(frozen=True)
class Node:
    index: int
    name: str
    event: Event
    after: Tuple[int, ...] = ()
    require: Optional[Requirement] = None
    location: Optional[SourceLocation] = None

    @property
    def kind(self) -> str:
        return KIND_NAMES[type(self.event)]

    @property
    def priority_class(self) -> int:
        return PRIORITY_CLASS[type(self.event)]


@dataclass
class ScenarioGraph:
    name: str
    nodes: List[Node] = field(default_factory=list)
    successors: List[Tuple[int, ...]] = field(default_factory=list)
    subroutines: Dict[str, "ScenarioGraph"] = field(default_factory=dict)
    actors: Tuple[str, ...] = ()
    dummies: Tuple[str, ...] = ()
    source: Optional[str] = None

    def __len__(self) -> int:
        return len(self.nodes)

    def node(self, index: int) -> Node:
        return self.nodes[index]

    def by_name(self, name: str) -> Node:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    def entry_points(self) -> List[int]:
        return [node.index for node in self.nodes if not node.after]

    def required(self) -> List[Node]:
        return [node for node in self.nodes if node.require is not None]

    def mailboxes(self) -> List[str]:
        """Every mailbox a run of this graph may observe: dummies and recv targets."""
        names = list(self.dummies)
        for node in self.nodes:
            if isinstance(node.event, Recv) and node.event.to is not None and node.event.to not in names:
                names.append(node.event.to)
        for sub in self.subroutines.values():
            for name in sub.mailboxes():
                if name not in names:
                    names.append(name)
        return [name for name in names if name != ROUTED]

    def topological_order(self) -> List[int]:
        return _toposort(len(self.nodes), self.successors, [n.after for n in self.nodes], self.nodes)


@dataclass
class _PendingNode:
    name: str
    event: Any
    after: Tuple[str, ...]
    require: Optional[Requirement]
    request: Optional[str] = None


class GraphBuilder:
    """
    Collects events in declaration order and validates them into a
    :class:`ScenarioGraph`.

    Event references (``after``, the request a respond answers) are by event
    name and are resolved in :meth:`build`, so events may be declared in any
    order.
    """

    def __init__(self, name: str = "main", *, source: str | None = None) -> None:
        self.name = name
        self.source = source
        self._pending: List[_PendingNode] = []
        self._names: Dict[str, int] = {}
        self._subroutines: Dict[str, ScenarioGraph] = {}
        self._actors: List[str] = []
        self._dummies: List[str] = []

    def declare_actor(self, name: str) -> "GraphBuilder":
        if name in self._actors or name in self._dummies:
            raise MalformedGraphError(f"Duplicate participant name '{name}'", code="CH-2003")
        self._actors.append(name)
        return self

    def declare_dummy(self, name: str) -> "GraphBuilder":
        if name in self._actors or name in self._dummies or name == ROUTED:
            raise MalformedGraphError(f"Duplicate participant name '{name}'", code="CH-2003")
        self._dummies.append(name)
        return self

    def add_subroutine(self, name: str, graph: ScenarioGraph) -> "GraphBuilder":
        if name in self._subroutines:
            raise MalformedGraphError(f"Duplicate subroutine '{name}'", code="CH-2003")
        self._subroutines[name] = graph
        return self

    def add_bind(self, name: str, dst: Any, src: Any, **opts: Any) -> int:
        loc = self._loc(name)
        return self._add(name, Bind(_dst(dst, loc), _src(src, loc)), **opts)

    def add_send(self, name: str, src: Any, *, target: str | None = None, sender: str | None = None,
                 type: str | None = None, **opts: Any) -> int:
        loc = self._loc(name)
        return self._add(name, Send(_src(src, loc), target=target, sender=sender, type=type), **opts)

    def add_recv(self, name: str, dst: Any = "$_", *, source: str | None = None, to: str | None = None,
                 type: str | None = None, timeout: int | None = None, **opts: Any) -> int:
        loc = self._loc(name)
        if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int) or timeout < 1):
            raise MalformedGraphError(
                f"Recv timeout must be a positive number of ticks, got {timeout!r}",
                code="CH-2006",
                location=str(loc),
            )
        return self._add(name, Recv(_dst(dst, loc), source=source, to=to, type=type, timeout=timeout), **opts)

    def add_respond(self, name: str, request: str, src: Any, *, sender: str | None = None, **opts: Any) -> int:
        loc = self._loc(name)
        # request index is filled in by build()
        event = Respond(_src(src, loc), request=-1, sender=sender)
        return self._add(name, event, request=request, **opts)

    def add_delay(self, name: str, steps: int = 1, **opts: Any) -> int:
        if isinstance(steps, bool) or not isinstance(steps, int) or steps < 0:
            raise MalformedGraphError(
                f"Delay steps must be a non-negative integer, got {steps!r}",
                code="CH-2006",
                location=str(self._loc(name)),
            )
        return self._add(name, Delay(steps), **opts)

    def add_call(self, name: str, target: str, inputs: Iterable[Sequence[Any]] = (),
                 outputs: Iterable[Sequence[Any]] = (), *, actors: Dict[str, str] | None = None,
                 dummies: Dict[str, str] | None = None, **opts: Any) -> int:
        """
        ``actors`` and ``dummies`` map caller participant names to the names
        the subroutine uses for them.
        """
        loc = self._loc(name)
        call = Call(
            target=target,
            inputs=tuple((_src(src, loc), _dst(dst, loc)) for src, dst in _pairs(inputs, loc)),
            outputs=tuple((_src(src, loc), _dst(dst, loc)) for src, dst in _pairs(outputs, loc)),
            actors=tuple((actors or {}).items()),
            dummies=tuple((dummies or {}).items()),
        )
        return self._add(name, call, **opts)

    def build(self) -> ScenarioGraph:
        nodes: List[Node] = []
        for index, pending in enumerate(self._pending):
            location = self._loc(pending.name, index)
            after = [self._resolve(ref, location) for ref in pending.after]
            event = pending.event
            if isinstance(event, Respond):
                request = self._resolve(pending.request, location)
                if not isinstance(self._pending[request].event, Recv):
                    raise MalformedGraphError(
                        f"Respond '{pending.name}' answers '{pending.request}', which is not a recv",
                        code="CH-2004",
                        location=str(location),
                    )
                event = Respond(event.src, request=request, sender=event.sender)
                if request not in after:
                    after.append(request)
            if isinstance(event, Call):
                if event.target not in self._subroutines:
                    raise unknown_reference("subroutine", event.target, location=str(location))
                self._check_mapping(event, self._subroutines[event.target], location)
            self._check_participants(event, location)
            nodes.append(
                Node(
                    index=index,
                    name=pending.name,
                    event=event,
                    after=tuple(dict.fromkeys(after)),
                    require=pending.require,
                    location=location,
                )
            )
        successors: List[List[int]] = [[] for _ in nodes]
        for node in nodes:
            for pred in node.after:
                successors[pred].append(node.index)
        frozen = [tuple(items) for items in successors]
        _toposort(len(nodes), frozen, [n.after for n in nodes], nodes)
        graph = ScenarioGraph(
            name=self.name,
            nodes=nodes,
            successors=frozen,
            subroutines=dict(self._subroutines),
            actors=tuple(self._actors),
            dummies=tuple(self._dummies),
            source=self.source,
        )
        logger.debug("built graph %s: %d nodes, %d subroutines", self.name, len(nodes), len(self._subroutines))
        return graph

    def _add(self, name: str, event: Any, *, after: Iterable[str] = (), require: Any = None,
             request: str | None = None) -> int:
        if name in self._names:
            raise MalformedGraphError(f"Duplicate event '{name}'", code="CH-2003", location=str(self._loc(name)))
        index = len(self._pending)
        self._names[name] = index
        requirement = Requirement(require) if require is not None else None
        self._pending.append(_PendingNode(name, event, tuple(after), requirement, request))
        return index

    def _resolve(self, ref: str | None, location: SourceLocation) -> int:
        if ref not in self._names:
            raise unknown_reference("event", str(ref), location=str(location))
        return self._names[ref]

    def _loc(self, name: str, index: int | None = None) -> SourceLocation:
        if index is None:
            index = self._names.get(name, len(self._pending))
        return SourceLocation(self.source, name, index)

    def _check_mapping(self, call: Call, sub: ScenarioGraph, location: SourceLocation) -> None:
        for role, pairs, ours, theirs in (
            ("actor", call.actors, self._actors, sub.actors),
            ("dummy", call.dummies, self._dummies, sub.dummies),
        ):
            seen: set[str] = set()
            for caller_name, callee_name in pairs:
                if caller_name not in ours:
                    raise MalformedGraphError(
                        f"Call maps unknown {role} '{caller_name}'",
                        code="CH-2008",
                        location=str(location),
                    )
                if callee_name not in theirs:
                    raise MalformedGraphError(
                        f"Subroutine '{call.target}' declares no {role} '{callee_name}'",
                        code="CH-2008",
                        location=str(location),
                    )
                if callee_name in seen:
                    raise MalformedGraphError(
                        f"{role.capitalize()} '{callee_name}' of '{call.target}' is mapped twice",
                        code="CH-2003",
                        location=str(location),
                    )
                seen.add(callee_name)

    def _check_participants(self, event: Event, location: SourceLocation) -> None:
        if not self._actors and not self._dummies:
            return
        everyone = set(self._actors) | set(self._dummies) | {ROUTED}
        senders = set(self._dummies) | {ROUTED}
        named: List[Tuple[str, Optional[str], set]] = []
        if isinstance(event, Send):
            named += [("sender", event.sender, senders), ("target", event.target, everyone)]
        elif isinstance(event, Recv):
            named += [("mailbox", event.to, senders), ("source", event.source, everyone)]
        elif isinstance(event, Respond):
            named.append(("sender", event.sender, senders))
        for role, participant, allowed in named:
            if participant is not None and participant not in allowed:
                raise MalformedGraphError(
                    f"Unknown participant '{participant}' used as {role}",
                    code="CH-2008",
                    location=str(location),
                )


def _toposort(count: int, successors: Sequence[Sequence[int]], after: Sequence[Sequence[int]],
              nodes: Sequence[Node]) -> List[int]:
    remaining = [len(preds) for preds in after]
    frontier = [idx for idx in range(count) if remaining[idx] == 0]
    order: List[int] = []
    while frontier:
        idx = frontier.pop(0)
        order.append(idx)
        for succ in successors[idx]:
            remaining[succ] -= 1
            if remaining[succ] == 0:
                frontier.append(succ)
    if len(order) != count:
        stuck = [nodes[idx].name for idx in range(count) if remaining[idx] > 0]
        raise MalformedGraphError(
            f"Happens-after edges form a cycle through: {', '.join(stuck)}",
            code="CH-2001",
        )
    return order


def _dst(raw: Any, location: SourceLocation) -> Pattern:
    return raw if isinstance(raw, _PATTERN_TYPES) else compile_pattern(raw, location=str(location))


def _src(raw: Any, location: SourceLocation) -> Pattern:
    if isinstance(raw, _PATTERN_TYPES):
        return check_template(raw, location=str(location))
    return compile_template(raw, location=str(location))


def _pairs(items: Iterable[Sequence[Any]], location: SourceLocation) -> List[Tuple[Any, Any]]:
    pairs = []
    for item in items:
        if len(item) != 2:
            raise MalformedGraphError(
                f"Call copies are [src, dst] pairs, got {item!r}",
                code="CH-2005",
                location=str(location),
            )
        pairs.append((item[0], item[1]))
    return pairs
