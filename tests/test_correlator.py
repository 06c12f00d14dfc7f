"""Tests for request/reply correlation and request timeouts."""

import asyncio

import pytest

from zentrade.broker.correlator import RequestCorrelator
from zentrade.clock import ManualClock
from zentrade.errors import ConnectionLostError, RequestTimeoutError


class TestRequestCorrelator:
    def test_ids_start_at_one_and_increase(self):
        correlator = RequestCorrelator(ManualClock())
        assert [correlator.next_id() for _ in range(3)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_resolve_completes_future(self):
        correlator = RequestCorrelator(ManualClock())
        future = correlator.register(1)
        assert 1 in correlator
        assert correlator.resolve(1, "reply") is True
        assert await future == "reply"
        assert len(correlator) == 0

    @pytest.mark.asyncio
    async def test_unknown_reply_is_ignored(self):
        correlator = RequestCorrelator(ManualClock())
        assert correlator.resolve(42, "reply") is False

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self):
        correlator = RequestCorrelator(ManualClock())
        correlator.register(1)
        with pytest.raises(ValueError):
            correlator.register(1)

    @pytest.mark.asyncio
    async def test_timeout_rejects_after_deadline(self):
        clock = ManualClock()
        correlator = RequestCorrelator(clock, timeout=30.0)
        future = correlator.register(1)

        await clock.advance(29.9)
        assert not future.done()

        await clock.advance(0.2)
        with pytest.raises(RequestTimeoutError, match="Request timeout"):
            await future
        assert len(correlator) == 0

    @pytest.mark.asyncio
    async def test_resolved_request_never_times_out(self):
        clock = ManualClock()
        correlator = RequestCorrelator(clock, timeout=5.0)
        future = correlator.register(1)
        correlator.resolve(1, "ok")
        await clock.advance(10)
        assert future.result() == "ok"
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_reject_all(self):
        correlator = RequestCorrelator(ManualClock())
        futures = [correlator.register(correlator.next_id()) for _ in range(3)]
        assert correlator.reject_all(ConnectionLostError("Connection lost")) == 3
        for future in futures:
            with pytest.raises(ConnectionLostError):
                await future

    @pytest.mark.asyncio
    async def test_discard_cancels(self):
        correlator = RequestCorrelator(ManualClock())
        future = correlator.register(1)
        correlator.discard(1)
        assert future.cancelled()
        await asyncio.sleep(0)
