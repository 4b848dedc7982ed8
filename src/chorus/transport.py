"""
Transport collaborator interface and an in-memory loopback implementation.

The engine addresses participants by symbolic name only. A transport
accepts outgoing messages through :meth:`Transport.dispatch` and hands back
messages for the engine's mailboxes through :meth:`Transport.deliver`.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .config import get_settings
from .errors import TransportError
from .graph import ROUTED
from .values import Value, freeze

logger = logging.getLogger("chorus.transport")


@dataclass(frozen=True)
class Message:
    sender: str
    target: Optional[str]
    correlation_id: int
    payload: Value = None
    type: Optional[str] = None
    reply_to: Optional[int] = None

    @property
    def is_response(self) -> bool:
        return self.reply_to is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "target": self.target,
            "correlation_id": self.correlation_id,
            "type": self.type,
            "reply_to": self.reply_to,
            "payload": self.payload,
        }


class Transport(ABC):
    """
    Base transport: owns per-participant inboxes of delivered messages.

    Subclasses implement :meth:`dispatch` and call :meth:`push` whenever a
    message for an engine-side participant arrives. ``idle_timeout`` bounds
    how long :meth:`wait_for_delivery` blocks when nothing is queued; the
    engine itself never times out.
    """

    def __init__(self, idle_timeout: float | None = None) -> None:
        self.idle_timeout = get_settings().idle_timeout if idle_timeout is None else idle_timeout
        self._inboxes: Dict[str, Deque[Message]] = {}
        self._arrived: asyncio.Event | None = None
        self._ids = 0

    def attach(self, participants: Iterable[str]) -> None:
        for name in participants:
            self._inboxes.setdefault(name, deque())
        self._inboxes.setdefault(ROUTED, deque())

    def next_correlation_id(self) -> int:
        self._ids += 1
        return self._ids

    @abstractmethod
    def dispatch(self, message: Message) -> None:
        """Send a message into the system under test (or route it)."""

    def deliver(self, participant: str) -> Optional[Message]:
        inbox = self._inboxes.get(participant)
        if not inbox:
            return None
        return inbox.popleft()

    def push(self, participant: str, message: Message) -> None:
        if participant not in self._inboxes:
            raise TransportError(f"No mailbox for participant '{participant}'", code="CH-4001")
        self._inboxes[participant].append(message)
        if self._arrived is not None:
            self._arrived.set()

    def pending(self) -> bool:
        return any(self._inboxes.values())

    async def wait_for_delivery(self) -> bool:
        """Block until something is delivered; False once the transport is idle."""
        if self.pending():
            return True
        if not self.idle_timeout or self.idle_timeout <= 0:
            return False
        self._arrived = asyncio.Event()
        try:
            await asyncio.wait_for(self._arrived.wait(), timeout=self.idle_timeout)
        except asyncio.TimeoutError:
            logger.debug("transport idle for %.3fs", self.idle_timeout)
            return False
        finally:
            self._arrived = None
        return self.pending()

    def on_tick(self, now: int) -> None:
        """Simulated time advanced to ``now``."""

    def undelivered(self) -> List[Message]:
        """Messages accepted for later delivery that never arrived."""
        return []


@dataclass
class ActorContext:
    """Handle given to scripted actors of a :class:`LoopbackTransport`."""

    transport: "LoopbackTransport"
    name: str
    sent: List[Message] = field(default_factory=list)

    @property
    def now(self) -> int:
        return self.transport.now

    def send(self, payload: Value, *, to: str | None = None, type: str | None = None, after: int = 0) -> Message:
        message = Message(
            sender=self.name,
            target=to,
            correlation_id=self.transport.next_correlation_id(),
            payload=freeze(payload),
            type=type,
        )
        self.transport.schedule(message, after=after)
        self.sent.append(message)
        return message

    def respond(self, request: Message, payload: Value, *, after: int = 0) -> Message:
        message = Message(
            sender=self.name,
            target=request.sender,
            correlation_id=request.correlation_id,
            payload=freeze(payload),
            type=request.type,
            reply_to=request.correlation_id,
        )
        self.transport.schedule(message, after=after)
        self.sent.append(message)
        return message


ActorHandler = Callable[[ActorContext, Message], None]


class LoopbackTransport(Transport):
    """
    In-memory transport for self-contained scenarios and tests.

    Messages for engine-side participants loop straight back into their
    inboxes; messages for registered actors are handed to the actor's
    handler. Routed messages (no target) go through ``routes``, keyed by
    message type.
    """

    def __init__(self, routes: Dict[str, str] | None = None, idle_timeout: float = 0.0) -> None:
        super().__init__(idle_timeout=idle_timeout)
        self.routes: Dict[str, str] = dict(routes or {})
        self.actors: Dict[str, ActorHandler] = {}
        self.dispatched: List[Message] = []
        self.now = 0
        self._scheduled: List[Tuple[int, int, Message]] = []
        self._seq = 0

    def route(self, message_type: str, participant: str) -> "LoopbackTransport":
        self.routes[message_type] = participant
        return self

    def actor(self, name: str, handler: ActorHandler) -> "LoopbackTransport":
        self.actors[name] = handler
        return self

    def dispatch(self, message: Message) -> None:
        self.dispatched.append(message)
        self._deliver_now(message)

    def schedule(self, message: Message, *, after: int = 0) -> None:
        if after <= 0:
            self._deliver_now(message)
            return
        self._seq += 1
        self._scheduled.append((self.now + after, self._seq, message))

    def on_tick(self, now: int) -> None:
        self.now = now
        due = sorted(item for item in self._scheduled if item[0] <= now)
        self._scheduled = [item for item in self._scheduled if item[0] > now]
        for _, _, message in due:
            self._deliver_now(message)

    def undelivered(self) -> List[Message]:
        return [message for _, _, message in sorted(self._scheduled)]

    def _deliver_now(self, message: Message) -> None:
        target = message.target or self.routes.get(message.type or "")
        if target is None:
            if message.sender in self.actors:
                target = ROUTED
            else:
                raise TransportError(
                    f"No route for message of type '{message.type}' from '{message.sender}'",
                    code="CH-4001",
                )
        handler = self.actors.get(target)
        if handler is not None:
            logger.debug("actor %s <- %s", target, message)
            handler(ActorContext(self, target), message)
            return
        self.push(target, message)


def echo_actor(ctx: ActorContext, message: Message) -> None:
    """Scripted actor that sends every message straight back to its sender."""
    if message.is_response:
        return
    ctx.send(message.payload, to=message.sender, type=message.type)
