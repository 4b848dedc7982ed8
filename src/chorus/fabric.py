"""
Message fabric: per-participant FIFO mailboxes, sends and correlated replies.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional

from .errors import TransportError
from .graph import ROUTED
from .transport import Message, Transport
from .values import Value, freeze

logger = logging.getLogger("chorus.fabric")


@dataclass
class Envelope:
    serial: int
    message: Message


class Mailbox:
    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._queue: Deque[Envelope] = deque()

    def append(self, envelope: Envelope) -> None:
        self._queue.append(envelope)

    def head(self) -> Optional[Envelope]:
        return self._queue[0] if self._queue else None

    def pop(self) -> Envelope:
        return self._queue.popleft()

    def __len__(self) -> int:
        return len(self._queue)

    def messages(self) -> List[Message]:
        return [envelope.message for envelope in self._queue]


class MessageFabric:
    """
    Owns every mailbox of a run. Only `recv` removes messages (through
    :meth:`consume`); only deliveries from the transport add them.
    """

    def __init__(self, transport: Transport, participants: Iterable[str] = ()) -> None:
        self.transport = transport
        self.mailboxes: Dict[str, Mailbox] = {ROUTED: Mailbox(ROUTED)}
        for name in participants:
            self.mailboxes.setdefault(name, Mailbox(name))
        self.transport.attach(self.mailboxes)
        self._serial = 0
        self.sent: List[Message] = []

    def send(self, payload: Value, *, sender: str | None = None, target: str | None = None,
             type: str | None = None) -> Message:
        message = Message(
            sender=sender or ROUTED,
            target=target,
            correlation_id=self.transport.next_correlation_id(),
            payload=freeze(payload),
            type=type,
        )
        logger.debug("send %s -> %s [%s] #%d", message.sender, target or "<routed>", type, message.correlation_id)
        self._dispatch(message)
        return message

    def respond(self, request: Message, payload: Value, *, sender: str | None = None) -> Message:
        message = Message(
            sender=sender or request.target or ROUTED,
            target=request.sender,
            correlation_id=request.correlation_id,
            payload=freeze(payload),
            type=request.type,
            reply_to=request.correlation_id,
        )
        logger.debug("respond %s -> %s re #%d", message.sender, message.target, request.correlation_id)
        self._dispatch(message)
        return message

    def pump(self) -> int:
        """Move everything the transport has delivered into the mailboxes."""
        moved = 0
        for name, mailbox in self.mailboxes.items():
            while True:
                message = self.transport.deliver(name)
                if message is None:
                    break
                self._serial += 1
                mailbox.append(Envelope(self._serial, message))
                moved += 1
        if moved:
            logger.debug("pumped %d message(s)", moved)
        return moved

    def peek(self, mailbox: str) -> Optional[Envelope]:
        return self._mailbox(mailbox).head()

    def head(self, mailbox: str) -> Optional[Envelope]:
        """Like :meth:`peek`, but a mailbox nobody owns is simply empty."""
        box = self.mailboxes.get(mailbox)
        return box.head() if box is not None else None

    def consume(self, mailbox: str) -> Message:
        envelope = self._mailbox(mailbox).pop()
        return envelope.message

    def has_mail(self) -> bool:
        return any(len(mailbox) for mailbox in self.mailboxes.values())

    def leftovers(self) -> Dict[str, List[Message]]:
        return {name: box.messages() for name, box in self.mailboxes.items() if len(box)}

    def _mailbox(self, name: str) -> Mailbox:
        try:
            return self.mailboxes[name]
        except KeyError as exc:
            raise TransportError(f"No mailbox for participant '{name}'", code="CH-4001") from exc

    def _dispatch(self, message: Message) -> None:
        self.sent.append(message)
        self.transport.dispatch(message)
