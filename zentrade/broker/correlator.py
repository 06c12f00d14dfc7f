"""Request correlator — matches replies to outbound requests by ``req_id``."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from zentrade.clock import Clock, TimerHandle
from zentrade.errors import RequestTimeoutError

logger = logging.getLogger("zentrade.correlator")

REQUEST_TIMEOUT = 30.0  # seconds


@dataclass
class PendingRequest:
    request_id: int
    future: asyncio.Future
    timer: TimerHandle


class RequestCorrelator:
    """Pending-map of request id → future, with a per-request timeout.

    Ids start at 1 and only ever increase for the lifetime of the
    correlator, reconnects included.

    Args:
        clock: Clock used to schedule timeouts.
        timeout: Seconds before an unanswered request is rejected.
    """

    def __init__(self, clock: Clock, timeout: float = REQUEST_TIMEOUT) -> None:
        self._clock = clock
        self._timeout = timeout
        self._next_id = 1
        self._pending: dict[int, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._pending

    def next_id(self) -> int:
        request_id = self._next_id
        self._next_id += 1
        return request_id

    def register(self, request_id: int) -> asyncio.Future:
        """Create the pending entry for *request_id* and arm its timeout."""
        if request_id in self._pending:
            raise ValueError(f"Request id {request_id} is already pending")
        future = asyncio.get_running_loop().create_future()
        timer = self._clock.call_later(self._timeout, lambda: self._expire(request_id))
        self._pending[request_id] = PendingRequest(request_id, future, timer)
        return future

    def resolve(self, request_id: int, message: Any) -> bool:
        """Complete a pending request.  Returns ``False`` if none matched."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(message)
        return True

    def reject(self, request_id: int, exc: BaseException) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(exc)
        return True

    def discard(self, request_id: int) -> None:
        """Drop an entry without completing it (send failed before transmit)."""
        entry = self._pending.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
            entry.future.cancel()

    def reject_all(self, exc: BaseException) -> int:
        """Reject every pending request with *exc*; returns how many there were."""
        ids = list(self._pending)
        for request_id in ids:
            self.reject(request_id, exc)
        return len(ids)

    def _expire(self, request_id: int) -> None:
        if self.reject(request_id, RequestTimeoutError("Request timeout")):
            logger.warning("Request %d timed out after %.0fs", request_id, self._timeout)
