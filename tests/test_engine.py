"""Scenario tests for the trading engine.

The engine runs against a duck-typed client on a ``ManualClock``: ticks and
contract updates are pushed through the registered listeners, so a whole
trade lifecycle (tick, purchase, settlement, stake/switch decision) runs
without a network or real time.
"""

import asyncio
from collections import defaultdict

import pytest

from zentrade.broker.messages import ContractMessage, TickMessage
from zentrade.broker.models import (
    BuyReceipt,
    ContractUpdate,
    Proposal,
    Subscription,
    SubscriptionType,
    Tick,
)
from zentrade.broker.session import ConnectionState
from zentrade.clock import ManualClock
from zentrade.engine import AUTH_REQUIRED_MESSAGE, TradingEngine
from zentrade.errors import ApiError, AuthorizationError, TradeValidationError
from zentrade.events import EngineEvent
from zentrade.models.trade_config import SwitchingPolicy, TradeConfig
from zentrade.trading.models import TradeStatus
from zentrade.trading.reconciler import SETTLEMENT_TIMEOUT_MESSAGE


# ── Mock client ──────────────────────────────────────────────────────────


class MockClient:
    """Duck-typed DerivClient with scripted authorization and purchases."""

    currency = "USD"

    def __init__(self, token_valid=True, has_credentials=True, fail_with=None):
        self._token_valid = token_valid
        self.has_credentials = has_credentials
        self.authorized = False
        self.last_auth_error = None
        self.state = ConnectionState.DISCONNECTED
        self.fail_with = fail_with
        self.proposal_gate = None
        self.statuses = {}
        self._listeners = defaultdict(list)
        self._state_callbacks = []
        self._error_callbacks = []
        self._epoch = 0
        self._counter = 0
        self.proposals = []
        self.tick_subscriptions = []
        self.forgotten = []
        self.closed = False

    # Session plumbing
    def add_listener(self, message_type, callback):
        self._listeners[message_type].append(callback)

    def on_state_change(self, callback):
        self._state_callbacks.append(callback)

    def on_error(self, callback):
        self._error_callbacks.append(callback)

    async def connect(self):
        if self._token_valid:
            self.authorized = True
            self.set_state(ConnectionState.AUTHORIZED)
        else:
            self.last_auth_error = "The token is invalid."
            self.set_state(ConnectionState.UNAUTHORIZED)

    async def close(self):
        self.closed = True

    # Streams
    async def subscribe_ticks(self, symbol):
        self.tick_subscriptions.append(symbol)
        return Subscription(SubscriptionType.TICKS, {"ticks": symbol})

    async def subscribe_balance(self):
        return Subscription(SubscriptionType.BALANCE, {"balance": 1})

    async def forget(self, subscription):
        self.forgotten.append(subscription)

    async def subscribe_contract(self, contract_id):
        return None

    async def forget_contract(self, contract_id):
        return None

    # Requests
    async def get_proposal(self, **kwargs):
        self.proposals.append(kwargs)
        if self.proposal_gate is not None:
            await self.proposal_gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        self._counter += 1
        return Proposal(id=f"p{self._counter}", ask_price=kwargs["amount"], payout=kwargs["amount"] * 1.95)

    async def buy(self, proposal_id, price):
        return BuyReceipt(
            contract_id=f"c_{proposal_id}",
            buy_price=price,
            payout=round(price * 1.95, 2),
            transaction_id=f"tx_{proposal_id}",
        )

    async def get_contract_status(self, contract_id, as_string=False):
        return self.statuses.get(contract_id)

    async def get_portfolio(self):
        return ()

    async def get_latest_tick(self, symbol):
        return None

    # Test helpers
    def set_state(self, state):
        self.state = state
        for callback in self._state_callbacks:
            callback(state)

    def dispatch(self, message):
        for callback in self._listeners[type(message)]:
            callback(message)

    def push_tick(self, quote=100.0, symbol="R_100"):
        self._epoch += 1
        self.dispatch(TickMessage(Tick(quote=quote, epoch=self._epoch, symbol=symbol)))

    def settle(self, contract_id, exit_tick):
        self.dispatch(ContractMessage(ContractUpdate(contract_id=contract_id, is_sold=True, exit_tick=exit_tick)))


class MockTradeRepo:
    def __init__(self):
        self.records = []

    def record_trade(self, trade, session_id):
        self.records.append((trade.id, trade.status, session_id))


def _make_config(**overrides):
    defaults = dict(strategy="Even", market="R_100", stake=1.0, martingale_multiplier=2.0)
    defaults.update(overrides)
    return TradeConfig(**defaults)


async def _started_engine(client=None, trade_repo=None, **config):
    client = client or MockClient()
    clock = ManualClock()
    engine = TradingEngine(client, clock=clock, trade_repo=trade_repo)
    engine.initialize(_make_config(**config))
    await engine.start()
    return engine, client, clock


async def _place(engine, client, clock):
    """Push a fresh tick and let the purchase it triggers complete."""
    client.push_tick()
    await clock.advance(0)
    return engine.trades[-1]


def _settle(client, trade, won):
    even_wins = trade.contract_type == "DIGITEVEN"
    client.settle(trade.contract_id, 100.52 if won == even_wins else 100.53)


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_without_credentials(self):
        engine = TradingEngine(MockClient(has_credentials=False), clock=ManualClock())
        engine.initialize(_make_config())
        with pytest.raises(AuthorizationError, match=AUTH_REQUIRED_MESSAGE):
            await engine.start()
        assert not engine.running

    @pytest.mark.asyncio
    async def test_start_with_rejected_token(self):
        engine = TradingEngine(MockClient(token_valid=False), clock=ManualClock())
        engine.initialize(_make_config())
        with pytest.raises(AuthorizationError, match="The token is invalid."):
            await engine.start()

    @pytest.mark.asyncio
    async def test_start_before_initialize(self):
        engine = TradingEngine(MockClient(), clock=ManualClock())
        with pytest.raises(RuntimeError):
            await engine.start()

    @pytest.mark.asyncio
    async def test_start_reports_status(self):
        client = MockClient()
        engine = TradingEngine(client, clock=ManualClock())
        engine.initialize(_make_config())
        statuses = []
        engine.on(EngineEvent.STATUS, statuses.append)

        await engine.start()

        assert engine.running
        assert statuses[-1]["running"] is True
        assert statuses[-1]["connection"] == "authorized"
        assert statuses[-1]["strategy"] == "Even"
        assert client.tick_subscriptions == ["R_100"]

    @pytest.mark.asyncio
    async def test_restart_does_not_resubscribe(self):
        engine, client, _ = await _started_engine()
        engine.stop()
        await engine.start()
        assert client.tick_subscriptions == ["R_100"]

    @pytest.mark.asyncio
    async def test_reinitialize_with_new_market_swaps_stream(self):
        engine, client, _ = await _started_engine()
        engine.stop()
        engine.initialize(_make_config(market="R_50"))
        await engine.start()
        assert client.tick_subscriptions == ["R_100", "R_50"]
        assert client.forgotten[0].payload == {"ticks": "R_100"}

    @pytest.mark.asyncio
    async def test_initialize_while_running_rejected(self):
        engine, _, _ = await _started_engine()
        with pytest.raises(RuntimeError):
            engine.initialize(_make_config())

    @pytest.mark.asyncio
    async def test_connection_error_stops_engine(self):
        engine, client, _ = await _started_engine()
        client.set_state(ConnectionState.ERROR)
        assert not engine.running
        assert engine.status()["stop_reason"] == "Connection lost"

    @pytest.mark.asyncio
    async def test_stopped_engine_ignores_ticks(self):
        engine, client, clock = await _started_engine()
        engine.stop()
        client.push_tick()
        await clock.advance(0)
        assert engine.trades == []
        assert client.proposals == []

    @pytest.mark.asyncio
    async def test_close_closes_client(self):
        engine, client, _ = await _started_engine()
        await engine.close()
        assert client.closed
        assert engine.status()["stop_reason"] == "Engine closed"


# ── Trading ──────────────────────────────────────────────────────────────


class TestTrading:
    @pytest.mark.asyncio
    async def test_winning_trade(self):
        engine, client, clock = await _started_engine()
        trades = []
        engine.on(EngineEvent.TRADE, trades.append)

        trade = await _place(engine, client, clock)
        _settle(client, trade, won=True)

        assert trade.status == TradeStatus.WON
        assert trade.profit == 0.95
        assert engine.risk.next_stake() == 1.0
        assert engine.risk.consecutive_losses == 0
        stats = engine.get_stats()
        assert stats["wins"] == 1
        assert stats["total_profit"] == 0.95
        assert engine.get_contract_performance("Even")["total_trades"] == 1
        assert trades[-1].status == TradeStatus.WON

    @pytest.mark.asyncio
    async def test_martingale_progression(self):
        engine, client, clock = await _started_engine()

        stakes = []
        for _ in range(4):
            trade = await _place(engine, client, clock)
            stakes.append(trade.stake)
            _settle(client, trade, won=False)

        assert stakes == [1.0, 2.0, 4.0, 8.0]
        assert engine.risk.session_profit == -15.0

        trade = await _place(engine, client, clock)
        assert trade.stake == 10.0
        _settle(client, trade, won=True)
        assert engine.risk.next_stake() == 1.0

    @pytest.mark.asyncio
    async def test_one_trade_per_tick(self):
        engine, client, clock = await _started_engine()
        await _place(engine, client, clock)

        assert await engine.execute_trade() is None
        assert len(client.proposals) == 1

    @pytest.mark.asyncio
    async def test_zero_stake_rejected(self):
        engine, client, clock = await _started_engine(stake=0)
        errors = []
        engine.on(EngineEvent.ERROR, errors.append)

        client.push_tick()
        await clock.advance(0)

        assert engine.trades == []
        assert client.proposals == []
        assert "Stake must be positive" in errors[0]
        with pytest.raises(TradeValidationError):
            await engine.execute_trade()

    @pytest.mark.asyncio
    async def test_failed_purchase_does_not_touch_streak(self):
        client = MockClient(fail_with=ApiError("InsufficientBalance", "Balance too low"))
        engine, _, clock = await _started_engine(client)

        trade = await _place(engine, client, clock)

        assert trade.status == TradeStatus.ERROR
        assert trade.error == "Insufficient balance to place trade"
        assert engine.risk.results == 0
        assert engine.get_stats()["errors"] == 1

    @pytest.mark.asyncio
    async def test_multi_tick_duration_waits_for_history(self):
        engine, client, clock = await _started_engine(ticks=3)

        client.push_tick()
        client.push_tick()
        await clock.advance(0)
        assert engine.trades == []

        trade = await _place(engine, client, clock)
        assert trade.duration == 3

    @pytest.mark.asyncio
    async def test_settlement_timeout_forces_loss(self):
        engine, client, clock = await _started_engine()
        trade = await _place(engine, client, clock)

        await clock.advance(194)
        assert trade.status == TradeStatus.PENDING
        assert engine.status()["pending_settlements"] == 1

        await clock.advance(1)

        assert trade.status == TradeStatus.LOST
        assert trade.profit == -1.0
        assert trade.error == SETTLEMENT_TIMEOUT_MESSAGE
        assert engine.risk.consecutive_losses == 1
        assert engine.risk.next_stake() == 2.0

    @pytest.mark.asyncio
    async def test_straddle_counts_once(self):
        engine, client, clock = await _started_engine(strategy="Straddle6", stake=2.0)

        client.push_tick()
        await clock.advance(0)
        over, under = engine.trades
        assert over.group_id == under.group_id

        client.settle(over.contract_id, 100.57)
        assert engine.risk.results == 0
        client.settle(under.contract_id, 100.57)

        assert over.profit == 0.95
        assert under.profit == -1.0
        assert engine.risk.results == 1
        assert engine.risk.session_profit == -0.05
        assert engine.risk.consecutive_losses == 1

    @pytest.mark.asyncio
    async def test_terminal_trades_are_journaled(self):
        repo = MockTradeRepo()
        engine, client, clock = await _started_engine(trade_repo=repo)

        trade = await _place(engine, client, clock)
        _settle(client, trade, won=True)
        _settle(client, trade, won=False)

        assert repo.records == [(trade.id, TradeStatus.WON, engine.session_id)]


# ── Stop limits ──────────────────────────────────────────────────────────


class TestStopLimits:
    @pytest.mark.asyncio
    async def test_take_profit(self):
        engine, client, clock = await _started_engine(take_profit=0.9)
        trade = await _place(engine, client, clock)
        _settle(client, trade, won=True)

        assert not engine.running
        assert engine.status()["stop_reason"] == "Take profit reached (0.95)"

    @pytest.mark.asyncio
    async def test_max_loss_streak(self):
        engine, client, clock = await _started_engine(max_loss_streak=2)
        for _ in range(2):
            _settle(client, await _place(engine, client, clock), won=False)

        assert not engine.running
        assert engine.status()["stop_reason"] == "Max loss streak reached (2)"

    @pytest.mark.asyncio
    async def test_round_limit_caps_placements(self):
        engine, client, clock = await _started_engine(rounds=2)
        for _ in range(3):
            client.push_tick()
            await clock.advance(0)

        assert len(engine.trades) == 2
        for trade in engine.trades:
            _settle(client, trade, won=True)

        assert not engine.running
        assert engine.status()["stop_reason"] == "Round limit reached (2)"

    @pytest.mark.asyncio
    async def test_drawdown_protection_halves_next_stake(self):
        engine, client, clock = await _started_engine(
            martingale_multiplier=1.0, drawdown_protection=True, max_drawdown_percent=2.0
        )
        _settle(client, await _place(engine, client, clock), won=False)
        assert engine.risk.next_stake() == 1.0
        _settle(client, await _place(engine, client, clock), won=False)

        trade = await _place(engine, client, clock)

        assert trade.stake == 0.5


# ── Strategy switching ───────────────────────────────────────────────────


class TestSwitching:
    @pytest.mark.asyncio
    async def test_switch_after_loss_threshold(self):
        engine, client, clock = await _started_engine(
            switch_on_loss=True,
            switching=SwitchingPolicy(strategies=("Even", "Odd")),
        )
        switches = []
        engine.on(EngineEvent.SWITCH, switches.append)

        for _ in range(3):
            _settle(client, await _place(engine, client, clock), won=False)

        assert engine.active_strategy == "Odd"
        assert len(switches) == 1
        assert switches[0].from_strategy == "Even"
        assert switches[0].reason == "Sequential rotation"
        assert switches[0].consecutive_losses == 3
        assert engine.risk.consecutive_losses == 0

        trade = await _place(engine, client, clock)
        assert trade.contract_type == "DIGITODD"

    @pytest.mark.asyncio
    async def test_cooldown_blocks_second_switch(self):
        engine, client, clock = await _started_engine(
            switch_on_loss=True,
            switching=SwitchingPolicy(strategies=("Even", "Odd"), cooldown_minutes=5),
        )
        for _ in range(6):
            _settle(client, await _place(engine, client, clock), won=False)

        assert engine.active_strategy == "Odd"
        assert engine.get_contract_switching_stats()["current_switch_cooldown"] == 5
        assert engine.manual_contract_switch() is False

        await clock.advance(301)
        _settle(client, await _place(engine, client, clock), won=False)

        assert engine.active_strategy == "Even"
        assert engine.get_contract_switching_stats()["switches_this_session"] == 2

    @pytest.mark.asyncio
    async def test_win_reverts_to_original(self):
        engine, client, clock = await _started_engine(
            switch_on_loss=True,
            switching=SwitchingPolicy(strategies=("Even", "Odd")),
        )
        for _ in range(3):
            _settle(client, await _place(engine, client, clock), won=False)
        assert engine.active_strategy == "Odd"

        _settle(client, await _place(engine, client, clock), won=True)

        assert engine.active_strategy == "Even"

    @pytest.mark.asyncio
    async def test_manual_switch(self):
        engine, _, _ = await _started_engine()

        assert engine.manual_contract_switch("Rise") is True
        assert engine.active_strategy == "Rise"
        with pytest.raises(ValueError):
            engine.manual_contract_switch("Nope")

        stats = engine.get_contract_switching_stats()
        assert stats["current_strategy"] == "Rise"
        assert stats["original_strategy"] == "Even"
        assert stats["switch_history"][0]["reason"] == "Manual override"

    def test_manual_switch_requires_initialize(self):
        engine = TradingEngine(MockClient(), clock=ManualClock())
        with pytest.raises(RuntimeError):
            engine.manual_contract_switch()

    @pytest.mark.asyncio
    async def test_update_policy(self):
        engine, _, _ = await _started_engine()
        policy = engine.update_switching_policy(mode="performance", cooldown_minutes=2)
        assert policy["mode"] == "performance"
        assert policy["cooldown_minutes"] == 2
        with pytest.raises(ValueError):
            engine.update_switching_policy(mode="random")


# ── Session ──────────────────────────────────────────────────────────────


class TestSession:
    @pytest.mark.asyncio
    async def test_reset_clears_session(self):
        engine, client, clock = await _started_engine()
        _settle(client, await _place(engine, client, clock), won=False)
        old_session = engine.session_id
        resets = []
        engine.on(EngineEvent.RESET, resets.append)

        engine.reset_session_public()

        assert engine.trades == []
        assert engine.risk.results == 0
        assert engine.risk.next_stake() == 1.0
        assert resets == [{"session_id": engine.session_id}]
        assert engine.session_id != old_session
        assert engine.get_contract_performance("Even")["total_trades"] == 1

    @pytest.mark.asyncio
    async def test_late_settlement_after_reset(self):
        repo = MockTradeRepo()
        engine, client, clock = await _started_engine(trade_repo=repo)
        trade = await _place(engine, client, clock)
        old_session = engine.session_id

        engine.reset_session_public()
        _settle(client, trade, won=True)

        assert repo.records == [(trade.id, TradeStatus.WON, old_session)]
        assert engine.risk.results == 0

    @pytest.mark.asyncio
    async def test_reset_during_purchase_keeps_trade_in_old_session(self):
        repo = MockTradeRepo()
        client = MockClient()
        client.proposal_gate = asyncio.Event()
        engine, _, clock = await _started_engine(client, trade_repo=repo)

        client.push_tick()
        await clock.advance(0)
        (trade,) = engine.trades
        old_session = engine.session_id

        engine.reset_session_public()
        client.proposal_gate.set()
        await clock.advance(0)

        assert trade.contract_id is not None
        assert engine.trades == []

        _settle(client, trade, won=False)

        assert engine.trades == []
        assert engine.risk.results == 0
        assert engine.risk.next_stake() == 1.0
        assert repo.records == [(trade.id, TradeStatus.LOST, old_session)]

    @pytest.mark.asyncio
    async def test_recent_trades_newest_first(self):
        engine, client, clock = await _started_engine()
        first = await _place(engine, client, clock)
        _settle(client, first, won=True)
        second = await _place(engine, client, clock)

        recent = engine.get_recent_trades()

        assert [t["id"] for t in recent] == [second.id, first.id]
        assert recent[1]["status"] == "won"

    @pytest.mark.asyncio
    async def test_profit_analytics(self):
        engine, client, clock = await _started_engine()
        _settle(client, await _place(engine, client, clock), won=True)
        _settle(client, await _place(engine, client, clock), won=True)

        analytics = engine.get_profit_analytics()

        assert analytics["profit_curve"] == [0.95, 1.9]
        assert analytics["by_contract_type"]["DIGITEVEN"]["wins"] == 2


# ── Manual reconciliation ────────────────────────────────────────────────


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_reconcile_all_contracts_settles_pending(self):
        engine, client, clock = await _started_engine()
        trade = await _place(engine, client, clock)
        client.statuses[trade.contract_id] = ContractUpdate(
            contract_id=trade.contract_id, is_sold=True, exit_tick=100.53
        )

        result = await engine.reconcile_all_contracts()

        assert result == {"checked": 1, "settled": 1}
        assert trade.status == TradeStatus.LOST
        assert engine.risk.results == 1
        assert engine.risk.next_stake() == 2.0

    @pytest.mark.asyncio
    async def test_force_check_without_pending(self):
        engine, client, clock = await _started_engine()
        _settle(client, await _place(engine, client, clock), won=True)

        assert await engine.force_settlement_check() == {"checked": 0, "settled": 0}
