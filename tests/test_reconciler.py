"""Tests for the settlement reconciler escalation ladder.

Timing is driven by ``ManualClock``; the API is a duck-typed mock.
"""

import pytest

from zentrade.broker.models import ContractUpdate
from zentrade.clock import ManualClock
from zentrade.errors import RequestTimeoutError
from zentrade.trading.models import Trade, TradeStatus
from zentrade.trading.reconciler import (
    ASSUMED_LOSS_MESSAGE,
    SETTLEMENT_TIMEOUT_MESSAGE,
    SettlementReconciler,
    SettlementStage,
    escalation_schedule,
)


# ── Mock client ──────────────────────────────────────────────────────────


class MockStatusClient:
    """Duck-typed DerivClient replacement for status lookups."""

    def __init__(self, clock: ManualClock) -> None:
        self._clock = clock
        self.statuses: dict[str, object] = {}
        self.portfolio: tuple = ()
        self.status_calls: list[tuple[float, str, bool]] = []
        self.portfolio_calls: list[float] = []
        self.subscribed: list[str] = []
        self.forgotten: list[str] = []

    async def get_contract_status(self, contract_id: str, as_string: bool = False):
        self.status_calls.append((self._clock.now(), contract_id, as_string))
        result = self.statuses.get(contract_id)
        if isinstance(result, Exception):
            self.statuses.pop(contract_id)
            raise result
        return result

    async def get_portfolio(self):
        self.portfolio_calls.append(self._clock.now())
        return self.portfolio

    async def subscribe_contract(self, contract_id: str):
        self.subscribed.append(contract_id)

    async def forget_contract(self, contract_id: str):
        self.forgotten.append(contract_id)


def _bought_trade(clock: ManualClock, contract_id: str = "c1", stake: float = 1.0) -> Trade:
    trade = Trade(
        id=f"zen_{contract_id}",
        timestamp=clock.now(),
        strategy="Even",
        market="R_100",
        contract_type="DIGITEVEN",
        stake=stake,
        duration=1,
        entry_spot=100.0,
    )
    trade.attach_contract(contract_id, stake, round(stake * 1.95, 2), "tx1", clock.now())
    return trade


def _finished(contract_id: str = "c1", exit_tick: float = 100.52, **fields) -> ContractUpdate:
    return ContractUpdate(contract_id=contract_id, is_sold=True, exit_tick=exit_tick, **fields)


def _make_reconciler(subscribe_updates: bool = True):
    clock = ManualClock()
    client = MockStatusClient(clock)
    settled: list[Trade] = []
    reconciler = SettlementReconciler(
        client, clock, on_settled=settled.append, subscribe_updates=subscribe_updates
    )
    return reconciler, client, clock, settled


# ── Schedule ─────────────────────────────────────────────────────────────


class TestEscalationSchedule:
    def test_standard_ladder(self):
        schedule = escalation_schedule()
        offsets = [offset for offset, _ in schedule]
        assert schedule[0] == (3.0, SettlementStage.JUST_BOUGHT)
        assert offsets[1:12] == [5.0 * i for i in range(1, 12)]
        assert offsets[12:19] == [75.0, 90.0, 105.0, 120.0, 135.0, 150.0, 165.0]
        assert schedule[-2] == (180.0, SettlementStage.FINAL_CHECK)
        assert schedule[-1] == (195.0, SettlementStage.FORCE_RESOLVED)

    def test_fast_ladder_polls_every_half_second_first(self):
        schedule = escalation_schedule(fast=True)
        offsets = [offset for offset, _ in schedule]
        assert offsets[:20] == [0.5 * i for i in range(1, 21)]
        assert offsets[20] == 15.0
        assert schedule[-1] == (195.0, SettlementStage.FORCE_RESOLVED)


# ── Push updates ─────────────────────────────────────────────────────────


class TestContractUpdates:
    @pytest.mark.asyncio
    async def test_push_update_settles_with_computed_profit(self):
        reconciler, client, clock, settled = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)

        assert reconciler.handle_contract_update(_finished(profit=5.0)) is True

        assert trade.status == TradeStatus.WON
        assert trade.profit == 0.95
        assert trade.exit_digit == 2
        assert settled == [trade]
        assert reconciler.stage(trade.id) is None
        await clock.advance(0)
        assert client.subscribed == ["c1"]
        assert client.forgotten == ["c1"]

    @pytest.mark.asyncio
    async def test_losing_exit(self):
        reconciler, _, clock, settled = _make_reconciler()
        trade = _bought_trade(clock, stake=2.0)
        reconciler.track(trade)
        reconciler.handle_contract_update(_finished(exit_tick=100.53))
        assert trade.status == TradeStatus.LOST
        assert trade.profit == -2.0

    @pytest.mark.asyncio
    async def test_settlement_is_idempotent(self):
        reconciler, _, clock, settled = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)
        reconciler.handle_contract_update(_finished())

        assert reconciler.handle_contract_update(_finished(exit_tick=100.53)) is False
        assert trade.status == TradeStatus.WON
        assert len(settled) == 1

    @pytest.mark.asyncio
    async def test_finished_without_exit_spot_stays_pending(self):
        reconciler, _, clock, settled = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)

        assert reconciler.handle_contract_update(
            ContractUpdate(contract_id="c1", status="won", profit=0.95)
        ) is False
        assert trade.status == TradeStatus.PENDING
        assert settled == []

    @pytest.mark.asyncio
    async def test_open_contract_ignored(self):
        reconciler, _, clock, _ = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)
        update = ContractUpdate(contract_id="c1", status="open", current_spot=100.5)
        assert reconciler.handle_contract_update(update) is False
        assert reconciler.handle_contract_update(_finished(contract_id="other")) is False
        assert reconciler.handle_contract_update(None) is False
        assert trade.status == TradeStatus.PENDING

    @pytest.mark.asyncio
    async def test_track_requires_contract_id(self):
        reconciler, _, clock, _ = _make_reconciler()
        trade = Trade("t", 0.0, "Even", "R_100", "DIGITEVEN", 1.0, 1, 100.0)
        with pytest.raises(ValueError):
            reconciler.track(trade)


# ── Escalation ───────────────────────────────────────────────────────────


class TestEscalation:
    @pytest.mark.asyncio
    async def test_polling_finds_settlement(self):
        reconciler, client, clock, settled = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)

        await clock.advance(7)
        assert [t for t, _, _ in client.status_calls] == [3.0, 5.0]
        assert reconciler.stage(trade.id) == SettlementStage.QUICK_POLL

        client.statuses["c1"] = _finished()
        await clock.advance(3)

        assert trade.status == TradeStatus.WON
        assert settled == [trade]
        await clock.advance(300)
        assert len(client.status_calls) == 3

    @pytest.mark.asyncio
    async def test_lookup_failure_continues_escalation(self):
        reconciler, client, clock, _ = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)
        client.statuses["c1"] = RequestTimeoutError("Request timeout")

        await clock.advance(3)
        assert trade.status == TradeStatus.PENDING

        client.statuses["c1"] = _finished()
        await clock.advance(2)
        assert trade.status == TradeStatus.WON

    @pytest.mark.asyncio
    async def test_forced_loss_after_195_seconds(self):
        reconciler, client, clock, settled = _make_reconciler()
        trade = _bought_trade(clock, stake=1.5)
        reconciler.track(trade)

        await clock.advance(194)
        assert trade.status == TradeStatus.PENDING
        assert reconciler.stage(trade.id) == SettlementStage.FINAL_CHECK
        assert (180.0, "c1", True) in client.status_calls
        assert client.portfolio_calls == [180.0]

        await clock.advance(1)

        assert trade.status == TradeStatus.LOST
        assert trade.profit == -1.5
        assert trade.error == SETTLEMENT_TIMEOUT_MESSAGE
        assert settled == [trade]
        assert reconciler.pending_trades == []

    @pytest.mark.asyncio
    async def test_final_check_portfolio_scan(self):
        reconciler, client, clock, settled = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)
        client.portfolio = (
            ContractUpdate(contract_id="c9", is_sold=True, exit_tick=1.0),
            _finished(exit_tick=100.57),
        )

        await clock.advance(180)

        assert trade.status == TradeStatus.LOST
        assert trade.profit == -1.0
        assert trade.error is None
        assert settled == [trade]

    @pytest.mark.asyncio
    async def test_sweep_rechecks_old_trades(self):
        reconciler, client, clock, _ = _make_reconciler()
        reconciler.start()
        trade = _bought_trade(clock)
        reconciler.track(trade)

        await clock.advance(60)

        times = [t for t, _, _ in client.status_calls]
        assert times.count(30.0) == 1
        assert times.count(60.0) == 1
        reconciler.close()

    @pytest.mark.asyncio
    async def test_fast_tracking_polls_without_stream(self):
        reconciler, client, clock, _ = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade, fast=True)

        await clock.advance(2)

        assert [t for t, _, _ in client.status_calls] == [0.5, 1.0, 1.5, 2.0]
        assert client.subscribed == []

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self):
        reconciler, client, clock, settled = _make_reconciler()
        reconciler.start()
        trade = _bought_trade(clock)
        reconciler.track(trade)
        reconciler.close()

        await clock.advance(300)

        assert client.status_calls == []
        assert trade.status == TradeStatus.PENDING
        assert settled == []


# ── Manual reconciliation ────────────────────────────────────────────────


class TestManualReconciliation:
    @pytest.mark.asyncio
    async def test_reconcile_all_checks_every_pending_trade(self):
        reconciler, client, clock, settled = _make_reconciler()
        first = _bought_trade(clock, "c1")
        second = _bought_trade(clock, "c2")
        reconciler.track(first)
        reconciler.track(second)
        client.statuses["c1"] = _finished("c1")
        client.portfolio = (_finished("c2", exit_tick=100.53),)

        assert await reconciler.reconcile_all() == 2

        assert first.status == TradeStatus.WON
        assert second.status == TradeStatus.LOST
        assert client.status_calls == [
            (0.0, "c1", False),
            (0.0, "c2", False),
            (0.0, "c2", True),
        ]
        assert settled == [first, second]
        assert reconciler.pending_trades == []

    @pytest.mark.asyncio
    async def test_reconcile_all_keeps_escalation_for_unresolved(self):
        reconciler, _, clock, _ = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)

        assert await reconciler.reconcile_all() == 0
        assert trade.status == TradeStatus.PENDING

        await clock.advance(195)

        assert trade.status == TradeStatus.LOST
        assert trade.error == SETTLEMENT_TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_force_check_assumes_loss_for_stale_trades(self):
        reconciler, client, clock, settled = _make_reconciler()
        stale = _bought_trade(clock, "c1", stake=2.0)
        stale.timestamp = clock.now() - 400.0
        fresh = _bought_trade(clock, "c2")
        reconciler.track(stale)
        reconciler.track(fresh)
        client.statuses["c2"] = _finished("c2")

        assert await reconciler.force_settlement_check() == 2

        assert stale.status == TradeStatus.LOST
        assert stale.profit == -2.0
        assert stale.error == ASSUMED_LOSS_MESSAGE
        assert fresh.status == TradeStatus.WON
        assert [t for _, t, _ in client.status_calls] == ["c2"]
        assert settled == [stale, fresh]

    @pytest.mark.asyncio
    async def test_force_check_leaves_young_unresolved_trade_pending(self):
        reconciler, client, clock, _ = _make_reconciler()
        trade = _bought_trade(clock)
        reconciler.track(trade)

        assert await reconciler.force_settlement_check() == 0

        assert trade.status == TradeStatus.PENDING
        assert client.portfolio_calls == [0.0]
