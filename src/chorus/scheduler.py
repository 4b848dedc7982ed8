"""
Event-graph scheduler: readiness tracking, priority selection, call frames
and quiescence detection.

Exactly one event executes at a time. Candidates are ordered by priority
class (bind/call, then send/respond, then recv/delay), then by frame
sequence, then by declaration index.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .clock import Clock
from .config import get_settings
from .errors import ChorusError, FatalBindingError, TransportError
from .fabric import MessageFabric
from .graph import Bind, Call, Delay, Node, NodeState, Recv, Respond, ScenarioGraph, Send
from .matcher import MatchResult, match, resolve
from .scope import Scope
from .transport import LoopbackTransport, Message, Transport
from .values import Value
from .verdict import Verdict, evaluate

logger = logging.getLogger("chorus.scheduler")

_SETTLED = "settled"


@dataclass
class NodeRuntime:
    waiting_on: int
    state: NodeState = NodeState.PENDING
    attempted: Any = None
    attempts: int = 0
    last_seen: Value = None
    last_mismatch: Optional[MatchResult] = None
    message: Optional[Message] = None
    frame: Optional["Frame"] = None
    timed_out: bool = False


@dataclass
class TraceEntry:
    tick: int
    node: str
    kind: str
    outcome: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"tick": self.tick, "node": self.node, "kind": self.kind, "outcome": self.outcome, "detail": self.detail}


class Frame:
    """Runtime instance of a graph: the root run or one call invocation."""

    def __init__(self, graph: ScenarioGraph, scope: Scope, seq: int, prefix: str = "",
                 parent: "Frame | None" = None, call_index: int | None = None,
                 names: Dict[str, str] | None = None) -> None:
        self.graph = graph
        self.scope = scope
        self.seq = seq
        self.prefix = prefix
        self.parent = parent
        self.call_index = call_index
        self.runtime = [NodeRuntime(waiting_on=len(node.after)) for node in graph.nodes]
        self.ready: set[int] = set()
        self.closed = False
        # participant names as the graph spells them -> names used on the wire
        self.names: Dict[str, str] = dict(names or {})

    def ref(self, index: int) -> str:
        return f"{self.prefix}{self.graph.node(index).name}"

    def participant(self, name: Optional[str]) -> Optional[str]:
        if name is None:
            return None
        return self.names.get(name, name)

    def all_complete(self) -> bool:
        return all(rt.state is NodeState.COMPLETE for rt in self.runtime)

    def children(self) -> List["Frame"]:
        return [rt.frame for rt in self.runtime if rt.frame is not None]


class Scheduler:
    def __init__(self, graph: ScenarioGraph, transport: Transport | None = None, *,
                 record_trace: bool | None = None) -> None:
        self.graph = graph
        self.transport = transport if transport is not None else LoopbackTransport()
        self.fabric = MessageFabric(self.transport, graph.mailboxes())
        self.clock = Clock()
        self.record_trace = get_settings().record_trace if record_trace is None else record_trace
        self.trace: List[TraceEntry] = []
        self.fatal: Optional[ChorusError] = None
        self.failed_node: Optional[str] = None
        self.frames: List[Frame] = []
        self._seq = 0
        self._current: Optional[Tuple[Frame, int]] = None
        self.root = self._open_frame(graph, Scope("root"))

    async def run(self) -> Verdict:
        try:
            await self._loop()
        except (FatalBindingError, TransportError) as exc:
            self._abort(exc)
        return evaluate(self)

    async def _loop(self) -> None:
        while True:
            self.fabric.pump()
            if self._step():
                continue
            if await self.transport.wait_for_delivery():
                continue
            if self._settle_next_frame():
                continue
            logger.info("quiescent at tick %d", self.clock.now)
            return

    def _step(self) -> bool:
        candidates = []
        for frame in self.frames:
            for index in frame.ready:
                node = frame.graph.node(index)
                if self._resolvable(frame, node):
                    candidates.append((node.priority_class, frame.seq, index, frame))
        if candidates:
            _, _, index, frame = min(candidates, key=lambda item: item[:3])
            self._execute(frame, index)
            return True
        return self._advance_time()

    def _resolvable(self, frame: Frame, node: Node) -> bool:
        rt = frame.runtime[node.index]
        event = node.event
        if isinstance(event, (Send, Respond)):
            return True
        if isinstance(event, Bind):
            return rt.attempted != frame.scope.version
        if isinstance(event, Call):
            return rt.frame is None and rt.attempted != frame.scope.version
        if isinstance(event, Recv):
            head = self.fabric.head(frame.participant(event.mailbox))
            return head is not None and rt.attempted != (head.serial, frame.scope.version)
        return False

    def _advance_time(self) -> bool:
        expired = self.clock.expired()
        if not expired:
            if not self.clock.active:
                return False
            expired = self.clock.tick()
            self._record(None, "tick", f"now={self.clock.now}")
            self.transport.on_tick(self.clock.now)
        for key in expired:
            self.clock.finish(key)
            frame, index = key
            if isinstance(frame.graph.node(index).event, Recv):
                self._time_out(frame, index)
            else:
                self._complete(frame, index)
        return True

    # execution

    def _execute(self, frame: Frame, index: int) -> None:
        node = frame.graph.node(index)
        event = node.event
        rt = frame.runtime[index]
        rt.attempts += 1
        self._current = (frame, index)
        logger.debug("firing %s (%s)", frame.ref(index), node.kind)
        if isinstance(event, Bind):
            self._exec_bind(frame, node, event)
        elif isinstance(event, Send):
            self._exec_send(frame, node, event)
        elif isinstance(event, Respond):
            self._exec_respond(frame, node, event)
        elif isinstance(event, Recv):
            self._exec_recv(frame, node, event)
        elif isinstance(event, Call):
            self._exec_call(frame, node, event)
        else:  # pragma: no cover - delays never reach here
            raise TypeError(f"Cannot execute {node.kind} directly")
        self._current = None

    def _exec_bind(self, frame: Frame, node: Node, event: Bind) -> None:
        value = resolve(event.src, frame.scope, location=str(node.location))
        result = match(event.dst, value, frame.scope)
        if result:
            self._complete(frame, node.index)
        else:
            self._mismatch(frame, node, value, result, frame.scope.version)

    def _exec_send(self, frame: Frame, node: Node, event: Send) -> None:
        payload = resolve(event.src, frame.scope, location=str(node.location))
        rt = frame.runtime[node.index]
        rt.message = self.fabric.send(
            payload,
            sender=frame.participant(event.sender),
            target=frame.participant(event.target),
            type=event.type,
        )
        self._complete(frame, node.index)

    def _exec_respond(self, frame: Frame, node: Node, event: Respond) -> None:
        request = frame.runtime[event.request].message
        if request is None:  # pragma: no cover - respond always follows its recv
            raise TransportError(f"No request to respond to for '{frame.ref(node.index)}'", code="CH-4002")
        payload = resolve(event.src, frame.scope, location=str(node.location))
        frame.runtime[node.index].message = self.fabric.respond(
            request, payload, sender=frame.participant(event.sender)
        )
        self._complete(frame, node.index)

    def _exec_recv(self, frame: Frame, node: Node, event: Recv) -> None:
        mailbox = frame.participant(event.mailbox)
        source = frame.participant(event.source)
        envelope = self.fabric.peek(mailbox)
        message = envelope.message
        attempt_key = (envelope.serial, frame.scope.version)
        if source is not None and message.sender != source:
            result = MatchResult(False, path="from", expected=source, actual=message.sender,
                                 reason="unexpected sender")
            self._mismatch(frame, node, message.payload, result, attempt_key)
            return
        if event.type is not None and message.type != event.type:
            result = MatchResult(False, path="type", expected=event.type, actual=message.type,
                                 reason="unexpected message type")
            self._mismatch(frame, node, message.payload, result, attempt_key)
            return
        result = match(event.dst, message.payload, frame.scope)
        if not result:
            self._mismatch(frame, node, message.payload, result, attempt_key)
            return
        self.fabric.consume(mailbox)
        frame.runtime[node.index].message = message
        frame.runtime[node.index].last_seen = message.payload
        self._complete(frame, node.index)

    def _exec_call(self, frame: Frame, node: Node, event: Call) -> None:
        callee_graph = frame.graph.subroutines[event.target]
        prefix = f"{frame.prefix}{node.name}/"
        scope = Scope(prefix.rstrip("/"))
        txn = scope.txn()
        for src, dst in event.inputs:
            value = resolve(src, frame.scope, location=str(node.location))
            result = match(dst, value, scope, txn=txn)
            if not result:
                self._mismatch(frame, node, value, result, frame.scope.version)
                return
        txn.commit()
        names = {theirs: frame.participant(ours) for ours, theirs in event.actors + event.dummies}
        callee = self._open_frame(callee_graph, scope, prefix=prefix, parent=frame, call_index=node.index,
                                  names=names)
        frame.runtime[node.index].frame = callee
        self._record(frame.ref(node.index), "enter", f"{event.target} with {len(scope)} input(s)")
        if callee.all_complete():
            self._settle(callee)

    # state transitions

    def _open_frame(self, graph: ScenarioGraph, scope: Scope, *, prefix: str = "",
                    parent: Frame | None = None, call_index: int | None = None,
                    names: Dict[str, str] | None = None) -> Frame:
        frame = Frame(graph, scope, self._seq, prefix=prefix, parent=parent, call_index=call_index, names=names)
        self._seq += 1
        self.frames.append(frame)
        for index in graph.entry_points():
            self._make_ready(frame, index)
        return frame

    def _make_ready(self, frame: Frame, index: int) -> None:
        rt = frame.runtime[index]
        rt.state = NodeState.READY
        frame.ready.add(index)
        event = frame.graph.node(index).event
        if isinstance(event, Delay):
            self.clock.start((frame, index), event.steps)
        elif isinstance(event, Recv) and event.timeout is not None:
            self.clock.start((frame, index), event.timeout)

    def _complete(self, frame: Frame, index: int) -> None:
        rt = frame.runtime[index]
        rt.state = NodeState.COMPLETE
        rt.last_mismatch = None
        frame.ready.discard(index)
        self.clock.finish((frame, index))
        node = frame.graph.node(index)
        self._record(frame.ref(index), node.kind, "complete")
        for succ in frame.graph.successors[index]:
            succ_rt = frame.runtime[succ]
            succ_rt.waiting_on -= 1
            if succ_rt.waiting_on == 0:
                self._make_ready(frame, succ)
        if frame.parent is not None and not frame.closed and frame.all_complete():
            self._settle(frame)

    def _time_out(self, frame: Frame, index: int) -> None:
        rt = frame.runtime[index]
        rt.timed_out = True
        frame.ready.discard(index)
        event = frame.graph.node(index).event
        self._record(frame.ref(index), "recv", "timeout", f"gave up after {event.timeout} tick(s)")
        logger.info("%s timed out at tick %d", frame.ref(index), self.clock.now)

    def _mismatch(self, frame: Frame, node: Node, seen: Value, result: MatchResult, key: Any) -> None:
        rt = frame.runtime[node.index]
        rt.attempted = key
        rt.last_seen = seen
        rt.last_mismatch = result
        self._record(frame.ref(node.index), node.kind, "mismatch", result.describe())
        logger.debug("%s did not match: %s", frame.ref(node.index), result.describe())

    def _settle_next_frame(self) -> bool:
        """Finish the innermost, oldest call frame still open at quiescence."""
        open_frames = [frame for frame in self.frames if frame.parent is not None]
        leaves = [frame for frame in open_frames if not any(child in self.frames for child in frame.children())]
        if not leaves:
            return False
        self._settle(min(leaves, key=lambda frame: frame.seq))
        return True

    def _settle(self, callee: Frame) -> None:
        parent = callee.parent
        call_index = callee.call_index
        node = parent.graph.node(call_index)
        self._close(callee)
        self._current = (parent, call_index)
        txn = parent.scope.txn()
        for src, dst in node.event.outputs:
            value = resolve(src, callee.scope, location=str(node.location))
            result = match(dst, value, parent.scope, txn=txn)
            if not result:
                self._mismatch(parent, node, value, result, _SETTLED)
                self._current = None
                return
        txn.commit()
        self._current = None
        self._record(parent.ref(call_index), "leave", f"{len(node.event.outputs)} output(s)")
        self._complete(parent, call_index)

    def _close(self, frame: Frame) -> None:
        frame.closed = True
        if frame in self.frames:
            self.frames.remove(frame)
        for index in frame.ready:
            self.clock.finish((frame, index))

    def _abort(self, exc: ChorusError) -> None:
        self.fatal = exc
        if self._current is not None:
            frame, index = self._current
            frame.runtime[index].state = NodeState.FAILED
            frame.ready.discard(index)
            self.failed_node = frame.ref(index)
            self._record(self.failed_node, frame.graph.node(index).kind, "fatal", str(exc))
        logger.error("run aborted: %s", exc)
        for frame in list(self.frames):
            if frame.parent is not None:
                self._close(frame)

    def _record(self, node: Optional[str], kind: str, outcome: str, detail: str | None = None) -> None:
        if self.record_trace:
            self.trace.append(TraceEntry(self.clock.now, node or "", kind, outcome, detail))


async def run_async(graph: ScenarioGraph, transport: Transport | None = None, **kwargs: Any) -> Verdict:
    return await Scheduler(graph, transport, **kwargs).run()


def run(graph: ScenarioGraph, transport: Transport | None = None, **kwargs: Any) -> Verdict:
    """Execute ``graph`` to quiescence and return its Verdict."""
    return asyncio.run(run_async(graph, transport, **kwargs))
