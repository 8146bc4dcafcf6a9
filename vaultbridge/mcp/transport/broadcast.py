"""
Broadcast fan-out of server-initiated messages.

Every attached Listener receives each broadcast envelope. Listeners are
passive sinks: the fan-out never waits on them. A sink that raises is
detached and the broadcast carries on with the rest.

Streaming HTTP listeners are backed by a ListenerQueue, a bounded deque.
A stream that falls behind loses its oldest messages and is sent one
``warning`` event saying how many.
"""

import asyncio
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from ..logger import get_logger
from ..utils.config import SSE_QUEUE_SIZE

logger = get_logger("vaultbridge-broadcast")

# Keep-alive period for idle streams
SSE_PING_INTERVAL: float = 15.0


class ListenerClosedError(Exception):
    """Raised by a sink whose consumer has gone away."""


@dataclass(eq=False)
class Listener:
    """An attached consumer of broadcast messages."""

    sink: Callable[[str], None]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attached_at: float = field(default_factory=time.time)


class ListenerQueue:
    """
    Buffer between the fan-out and one event stream.

    ``push`` is the listener's sink. When ``maxlen`` messages are waiting the
    oldest is discarded; the stream learns how many were lost from the next
    ``get_drop_notification``.
    """

    def __init__(self, maxlen: int = SSE_QUEUE_SIZE):
        self.messages: deque[str] = deque(maxlen=maxlen)
        self.closed = False
        self._lost = 0
        self._wakeup = asyncio.Event()

    def push(self, message: str) -> bool:
        """
        Queue one serialised envelope.

        Returns:
            False when the oldest waiting message had to make room

        Raises:
            ListenerClosedError: The stream has ended
        """
        if self.closed:
            raise ListenerClosedError("stream closed")
        overflow = len(self.messages) == self.messages.maxlen
        if overflow:
            self._lost += 1
        self.messages.append(message)
        self._wakeup.set()
        return not overflow

    def popleft(self) -> Optional[str]:
        return self.messages.popleft() if self.messages else None

    def drain(self) -> Iterator[str]:
        while self.messages:
            yield self.messages.popleft()

    async def wait_for_message(self, timeout: float = SSE_PING_INTERVAL) -> bool:
        """Block until a push or close; False if ``timeout`` passes first."""
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._wakeup.clear()
        return True

    def close(self) -> None:
        self.closed = True
        self._wakeup.set()

    def get_drop_notification(self) -> Optional[dict]:
        """SSE ``warning`` event for messages lost since the last call, if any."""
        if not self._lost:
            return None
        lost, self._lost = self._lost, 0
        payload = {
            "type": "messages_dropped",
            "count": lost,
            "message": f"Stream fell behind; {lost} message(s) were discarded",
        }
        return {"event": "warning", "data": json.dumps(payload)}

    def __len__(self):
        return len(self.messages)


class BroadcastFanout:
    """Set of listeners receiving every server-initiated message."""

    def __init__(self):
        self._listeners: dict[str, Listener] = {}

    def attach(self, listener: Listener) -> Listener:
        self._listeners[listener.id] = listener
        logger.info("Listener attached: %s (%d total)", listener.id[:8], len(self))
        return listener

    def detach(self, listener: Listener) -> bool:
        """Remove a listener; detaching twice is harmless."""
        removed = self._listeners.pop(listener.id, None) is not None
        if removed:
            logger.info("Listener detached: %s (%d left)", listener.id[:8], len(self))
        return removed

    def broadcast(self, envelope: dict) -> int:
        """
        Deliver one envelope to every listener attached right now.

        Returns:
            Number of listeners the message was written to
        """
        payload = json.dumps(envelope, ensure_ascii=False)
        delivered = 0
        for listener in list(self._listeners.values()):
            try:
                listener.sink(payload)
            except Exception as e:
                logger.warning(
                    "Dropping listener %s after failed write: %s", listener.id[:8], e
                )
                self.detach(listener)
                continue
            delivered += 1
        logger.debug("Broadcast %s to %d listener(s)", envelope.get("method", "message"), delivered)
        return delivered

    def listeners(self) -> list[Listener]:
        return list(self._listeners.values())

    def __contains__(self, listener: object) -> bool:
        return isinstance(listener, Listener) and listener.id in self._listeners

    def __len__(self) -> int:
        return len(self._listeners)
