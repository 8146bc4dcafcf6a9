"""
Correlation table for in-flight requests.

Each pending request is an asyncio future plus a deadline timer. Entries are
settled exactly once: by a reply, by an explicit rejection, or by the timer.
All methods must be called from the event loop thread; no lock is taken.

Usage:
    table = CorrelationTable()

    future = table.register(request_id, timeout=30)
    await channel.send(envelope)
    reply = await future  # whole reply envelope, or raises
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Hashable, Optional

from ..errors import ConnectionClosedError, DuplicateId, RequestTimeoutError
from ..logger import get_logger

logger = get_logger("vaultbridge-correlation")


@dataclass
class PendingRequest:
    """One request awaiting its reply. Times are event loop timestamps (``loop.time()``)."""

    id: Hashable
    future: asyncio.Future
    created_at: float
    timeout: float
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def deadline(self) -> float:
        return self.created_at + self.timeout

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class CorrelationTable:
    """In-flight requests keyed by id."""

    def __init__(self):
        self._pending: dict[Hashable, PendingRequest] = {}

    def register(self, request_id: Hashable, timeout: float) -> asyncio.Future:
        """
        Track a new request and return the future its reply will settle.

        Args:
            request_id: Envelope id (string or number)
            timeout: Seconds until the entry is rejected with RequestTimeoutError

        Raises:
            DuplicateId: If an entry with this id is still pending
        """
        if request_id in self._pending:
            raise DuplicateId(f"Request id {request_id!r} is already pending")

        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            id=request_id,
            future=loop.create_future(),
            created_at=loop.time(),
            timeout=timeout,
        )
        entry.timer = loop.call_at(entry.deadline, self._expire, request_id, entry)
        self._pending[request_id] = entry
        return entry.future

    def resolve(self, request_id: Hashable, value: Any) -> bool:
        """
        Settle a pending entry with a value.

        Returns:
            True if an entry was settled, False if the id was unknown
        """
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.cancel_timer()
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def reject(self, request_id: Hashable, error: BaseException) -> bool:
        """Settle a pending entry with an error. Unknown ids are ignored."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.cancel_timer()
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def reject_all(self, error: BaseException | None = None) -> int:
        """
        Reject every pending entry (used when the connection drops).

        Returns:
            Number of entries rejected
        """
        if error is None:
            error = ConnectionClosedError("Connection closed")
        count = 0
        for request_id in list(self._pending):
            if self.reject(request_id, error):
                count += 1
        if count:
            logger.info("Rejected %d pending request(s): %s", count, error)
        return count

    def discard(self, request_id: Hashable) -> bool:
        """Forget an entry without settling it (the caller stopped waiting)."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.cancel_timer()
        if not entry.future.done():
            entry.future.cancel()
        return True

    def _expire(self, request_id: Hashable, entry: PendingRequest) -> None:
        # The id may have been settled and re-registered since this timer was armed
        if self._pending.get(request_id) is not entry:
            return
        entry.timer = None
        logger.warning("Request %r timed out after %.1fs", request_id, entry.timeout)
        self.reject(
            request_id,
            RequestTimeoutError(f"Request {request_id!r} timed out after {entry.timeout:g}s"),
        )

    def get(self, request_id: Hashable) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
