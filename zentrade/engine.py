"""ZenTrade — Trading engine (orchestration facade).

Connects the tick feed, risk controller, strategy switching, trade executor
and settlement reconciler around one ``DerivClient`` session.  Every tick
may trigger a purchase; every settlement updates stake and streak state,
checks the stop limits and may rotate the active strategy.
"""

import asyncio
import logging
import sqlite3
import uuid
from typing import Any, Callable, Optional, Union

from zentrade.broker.messages import BalanceMessage, ContractMessage, TickMessage
from zentrade.broker.models import Subscription, Tick
from zentrade.broker.session import ConnectionState
from zentrade.clock import Clock, LoopClock, TimerHandle
from zentrade.errors import AuthorizationError, BrokerError, TradeValidationError
from zentrade.events import EngineEvent, EventBus
from zentrade.feed.tick_feed import TickFeed
from zentrade.models.trade_config import TradeConfig
from zentrade.risk.martingale import RiskController
from zentrade.risk.switching import StrategySwitchController
from zentrade.trading.contracts import STRADDLE_STRATEGY
from zentrade.trading.executor import TradeExecutor, TradeIntent
from zentrade.trading.models import SwitchEvent, Trade
from zentrade.trading.reconciler import SettlementReconciler
from zentrade.trading.stats import profit_analytics, session_stats

logger = logging.getLogger("zentrade.engine")

PRICE_POLL_INTERVAL = 1.0
PRICE_POLL_SILENCE = 3.0
AUTH_REQUIRED_MESSAGE = "Authentication required. Please provide a valid API token."

TradeResult = Union[Trade, list[Trade], None]


class TradingEngine:
    """Caller-facing trading engine for one API session.

    Args:
        client: A ``DerivClient`` (or compatible duck-type / mock).
        clock: Clock for timers; defaults to the running asyncio loop.
        trade_repo: Optional ``TradeRepo`` journaling terminal trades.
    """

    def __init__(self, client, clock: Optional[Clock] = None, trade_repo=None) -> None:
        self._client = client
        self._clock: Clock = clock if clock is not None else LoopClock()
        self._trade_repo = trade_repo
        self._events = EventBus()
        self._feed = TickFeed()
        self._feed.subscribe(self._on_tick)
        self._reconciler = SettlementReconciler(
            client, self._clock, on_settled=self._on_trade_settled
        )

        self._config: Optional[TradeConfig] = None
        self._risk: Optional[RiskController] = None
        self._switcher: Optional[StrategySwitchController] = None
        self._executor: Optional[TradeExecutor] = None
        self._active_strategy: Optional[str] = None
        self._running = False
        self._stop_reason: Optional[str] = None
        self._balance = None
        self._tick_subscription: Optional[Subscription] = None
        self._price_poll: Optional[TimerHandle] = None
        self._last_tick_at: Optional[float] = None
        self._tasks: set[asyncio.Task] = set()

        self._trade_sessions: dict[str, str] = {}
        self._reset_session_state()

        client.add_listener(TickMessage, self._on_tick_message)
        client.add_listener(ContractMessage, self._on_contract_message)
        client.add_listener(BalanceMessage, self._on_balance_message)
        client.on_state_change(self._on_connection_state)
        client.on_error(self._on_client_error)

    def _reset_session_state(self) -> None:
        self._session_id = uuid.uuid4().hex[:12]
        self._trades: list[Trade] = []
        self._trade_index: dict[str, Trade] = {}
        self._accounted: set[str] = set()
        self._aggregated_groups: set[str] = set()
        self._placed = 0

    # ── Properties ───────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def config(self) -> Optional[TradeConfig]:
        return self._config

    @property
    def active_strategy(self) -> Optional[str]:
        return self._active_strategy

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def balance(self):
        return self._balance

    @property
    def trades(self) -> list[Trade]:
        return list(self._trades)

    @property
    def feed(self) -> TickFeed:
        return self._feed

    @property
    def risk(self) -> Optional[RiskController]:
        return self._risk

    @property
    def executor(self) -> Optional[TradeExecutor]:
        return self._executor

    @property
    def reconciler(self) -> SettlementReconciler:
        return self._reconciler

    # ── Events ───────────────────────────────────────────────────────────

    def on(self, event: Union[EngineEvent, str], callback: Callable[[Any], None]) -> Callable[[], None]:
        """Subscribe to an engine event; returns an unsubscribe function."""
        return self._events.on(event, callback)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def initialize(self, config: TradeConfig) -> None:
        """Apply a trade configuration and start a fresh session.

        Raises:
            RuntimeError: If the engine is running.
        """
        if self._running:
            raise RuntimeError("Stop the engine before re-initializing")
        self._config = config
        self._active_strategy = config.strategy
        self._feed.set_market(config.market)
        self._risk = RiskController(
            base_stake=config.stake,
            multiplier=config.martingale_multiplier,
            max_steps=config.martingale_max_steps,
            max_position=config.max_position_size,
            reset_losses_on_win=config.reset_losses_on_win,
            take_profit=config.take_profit,
            stop_loss=config.stop_loss,
            max_loss_streak=config.max_loss_streak,
            rounds=config.rounds,
            dynamic_position_sizing=config.dynamic_position_sizing,
            volatility_factor=self._feed.volatility_factor,
            drawdown_protection=config.drawdown_protection,
            max_drawdown_percent=config.max_drawdown_percent,
        )
        if self._switcher is None:
            self._switcher = StrategySwitchController(
                config.policy, self._clock, self._feed, on_switch=self._on_switch
            )
        else:
            self._switcher.policy = config.policy
            self._switcher.reset_session()
        self._executor = TradeExecutor(
            self._client,
            self._reconciler,
            self._clock,
            max_concurrent=config.max_concurrent_trades,
            fire_and_forget=config.fire_and_forget,
            on_trade=self._on_trade_update,
            currency=config.currency,
        )
        self._stop_reason = None
        self._reset_session_state()
        logger.info(
            "Engine initialized: %s on %s, stake %.2f (session %s)",
            config.strategy, config.market, config.stake, self._session_id,
        )

    async def start(self) -> None:
        """Connect, authorize, subscribe to ticks and begin trading.

        Raises:
            RuntimeError: If ``initialize`` was never called.
            AuthorizationError: No credentials, or the token was rejected.
            BrokerError: The tick stream could not be opened.
        """
        if self._config is None:
            raise RuntimeError("Engine not initialized")
        if self._running:
            return
        if not self._client.has_credentials:
            raise AuthorizationError(AUTH_REQUIRED_MESSAGE)
        if not self._client.authorized:
            await self._client.connect()
            if not self._client.authorized:
                raise AuthorizationError(self._client.last_auth_error or AUTH_REQUIRED_MESSAGE)

        await self._subscribe_market()
        try:
            await self._client.subscribe_balance()
        except BrokerError as exc:
            logger.warning("Balance stream unavailable: %s", exc)

        self._reconciler.start()
        self._executor.resume()
        self._running = True
        self._stop_reason = None
        self._last_tick_at = self._clock.now()
        if self._config.high_performance:
            self._price_poll = self._clock.call_every(PRICE_POLL_INTERVAL, self._poll_price)
        logger.info("Engine started (%s on %s)", self._active_strategy, self._config.market)
        self._events.emit(EngineEvent.STATUS, self.status())

    def stop(self, reason: Optional[str] = None) -> None:
        """Stop placing trades.

        Purchases already sent and settlement tracking keep running; trades
        still waiting for a slot are cancelled.
        """
        if not self._running:
            return
        self._running = False
        self._stop_reason = reason
        if self._executor is not None:
            self._executor.pause()
        if self._price_poll is not None:
            self._price_poll.cancel()
            self._price_poll = None
        logger.info("Engine stopped%s", f": {reason}" if reason else "")
        self._events.emit(EngineEvent.STATUS, self.status())

    async def close(self) -> None:
        """Stop, cancel settlement timers and close the session."""
        self.stop("Engine closed")
        self._reconciler.close()
        for task in list(self._tasks):
            task.cancel()
        await self._client.close()

    async def _subscribe_market(self) -> None:
        market = self._config.market
        current = self._tick_subscription
        if current is not None and current.payload.get("ticks") == market:
            return
        if current is not None:
            try:
                await self._client.forget(current)
            except BrokerError as exc:
                logger.warning("Could not stop previous tick stream: %s", exc)
        self._tick_subscription = await self._client.subscribe_ticks(market)

    # ── Trading ──────────────────────────────────────────────────────────

    async def execute_trade(self) -> TradeResult:
        """Place one trade on the current tick, if all preconditions hold.

        Returns:
            The trade (a list of two legs for a straddle), or ``None`` when
            the engine is not ready or the trade is suppressed.

        Raises:
            TradeValidationError: Non-positive stake or missing market.
        """
        config = self._config
        if not self._running or config is None:
            return None
        if not self._client.authorized:
            logger.debug("Skipping trade: session not authorized")
            return None
        tick = self._feed.current
        if tick is None:
            return None
        if not self._feed.has_fresh_tick():
            return None
        if config.rounds and self._placed >= config.rounds:
            return None
        if config.ticks > 1 and not config.every_tick and len(self._feed) < config.ticks:
            return None

        intent = TradeIntent(
            strategy=self._active_strategy,
            market=config.market,
            stake=self._risk.next_stake(),
            duration=config.ticks,
            entry_spot=tick.quote,
            digit=config.default_digit,
        )
        intent.validate()
        self._feed.mark_traded()
        self._placed += 1

        if intent.strategy == STRADDLE_STRATEGY:
            return await self._executor.execute_straddle(intent)
        if config.fire_and_forget:
            return self._executor.execute_detached(intent)
        return await self._executor.execute(intent)

    def _on_tick_message(self, message: TickMessage) -> None:
        if message.tick.symbol == self._feed.market:
            self._feed.push(message.tick)

    def _on_tick(self, tick: Tick) -> None:
        self._last_tick_at = self._clock.now()
        self._events.emit(EngineEvent.TICK, tick)
        if not self._running:
            return
        executor = self._executor
        if executor.queued >= executor.limit:
            logger.debug("Skipping tick %s: purchase queue full", tick.epoch)
            return
        self._spawn(self._run_tick_trade())

    async def _run_tick_trade(self) -> None:
        try:
            await self.execute_trade()
        except TradeValidationError as exc:
            logger.error("Trade rejected: %s", exc)
            self._events.emit(EngineEvent.ERROR, str(exc))

    async def _poll_price(self) -> None:
        if not self._running or self._last_tick_at is None:
            return
        if self._clock.now() - self._last_tick_at <= PRICE_POLL_SILENCE:
            return
        try:
            tick = await self._client.get_latest_tick(self._config.market)
        except BrokerError as exc:
            logger.debug("Price poll failed: %s", exc)
            return
        if tick is not None:
            self._feed.push(tick)

    # ── Settlement ───────────────────────────────────────────────────────

    def _on_contract_message(self, message: ContractMessage) -> None:
        self._reconciler.handle_contract_update(message.update)

    async def reconcile_all_contracts(self) -> dict:
        """Query the status of every pending contract right away."""
        pending = len(self._reconciler.pending_trades)
        settled = await self._reconciler.reconcile_all()
        return {"checked": pending, "settled": settled}

    async def force_settlement_check(self) -> dict:
        """Final check for pending contracts; assumed loss for stale ones."""
        pending = len(self._reconciler.pending_trades)
        settled = await self._reconciler.force_settlement_check()
        return {"checked": pending, "settled": settled}

    def _on_trade_update(self, trade: Trade) -> None:
        # A trade belongs to the session it was opened in, even if it
        # reports back after a reset.
        if trade.id not in self._trade_sessions:
            self._trade_sessions[trade.id] = self._session_id
            self._trade_index[trade.id] = trade
            self._trades.append(trade)
        self._events.emit(EngineEvent.TRADE, trade)
        if trade.is_terminal and not trade.is_settled:
            self._after_terminal(trade)

    def _on_trade_settled(self, trade: Trade) -> None:
        self._events.emit(EngineEvent.TRADE, trade)
        self._after_terminal(trade)

    def _after_terminal(self, trade: Trade) -> None:
        if trade.id in self._accounted:
            return
        self._accounted.add(trade.id)
        self._journal(trade)

        if trade.id not in self._trade_index:
            logger.info("Trade %s settled after its session ended", trade.id)
            return

        if trade.group_id is not None:
            self._after_group_leg(trade)
            return
        if trade.is_settled:
            self._switcher.record_performance(trade.strategy, trade.profit > 0, trade.profit)
            self._apply_result(trade.profit > 0, trade.profit)

    def _after_group_leg(self, trade: Trade) -> None:
        group_id = trade.group_id
        if group_id in self._aggregated_groups:
            return
        legs = [t for t in self._trades if t.group_id == group_id]
        if not all(leg.is_terminal for leg in legs):
            return
        self._aggregated_groups.add(group_id)
        settled = [leg for leg in legs if leg.is_settled]
        if not settled:
            return
        profit = round(sum(leg.profit for leg in settled), 2)
        won = profit > 0
        logger.info("Straddle %s closed: combined profit %.2f", group_id, profit)
        self._switcher.record_performance(trade.strategy, won, profit)
        self._apply_result(won, profit)

    def _apply_result(self, won: bool, profit: float) -> None:
        risk = self._risk
        risk.record_result(won, profit)
        if won:
            self._switcher.revert_on_win(
                self._active_strategy, self._config.strategy, risk.consecutive_losses
            )

        reason = risk.stop_reason()
        if reason is not None:
            self.stop(reason)
            return

        if not won and self._config.switching_enabled:
            self._switcher.maybe_switch(
                self._active_strategy, risk.consecutive_losses, self._config.losses_to_switch
            )

    def _journal(self, trade: Trade) -> None:
        if self._trade_repo is None:
            return
        session_id = self._trade_sessions.get(trade.id, self._session_id)
        try:
            self._trade_repo.record_trade(trade, session_id)
        except sqlite3.Error as exc:
            logger.error("Failed to journal trade %s: %s", trade.id, exc)

    # ── Strategy switching ───────────────────────────────────────────────

    def _on_switch(self, event: SwitchEvent) -> None:
        self._active_strategy = event.to_strategy
        if self._switcher.policy.reset_on_win:
            self._risk.reset_losses()
        self._events.emit(EngineEvent.SWITCH, event)

    def manual_contract_switch(self, target: Optional[str] = None) -> bool:
        """Switch to *target* (next in rotation when ``None``).

        Returns:
            ``False`` when refused by the session budget or cooldown.

        Raises:
            RuntimeError: If the engine was never initialized.
            ValueError: If *target* is not a known strategy.
        """
        if self._switcher is None:
            raise RuntimeError("Engine not initialized")
        event = self._switcher.manual_switch(
            self._active_strategy, target, self._risk.consecutive_losses
        )
        return event is not None

    def update_switching_policy(self, **changes) -> dict:
        if self._switcher is None:
            raise RuntimeError("Engine not initialized")
        policy = self._switcher.update_policy(**changes)
        return {
            "enabled": policy.enabled,
            "mode": policy.mode,
            "max_switches": policy.max_switches,
            "cooldown_minutes": policy.cooldown_minutes,
            "strategies": policy.available_strategies,
        }

    def reset_contract_performance(self) -> None:
        if self._switcher is not None:
            self._switcher.reset_performance()

    def get_contract_switching_stats(self) -> dict:
        if self._switcher is None:
            return {}
        stats = self._switcher.stats()
        stats["current_strategy"] = self._active_strategy
        stats["original_strategy"] = self._config.strategy if self._config else None
        return stats

    def get_contract_performance(self, strategy: str) -> Optional[dict]:
        if self._switcher is None:
            return None
        perf = self._switcher.performance(strategy)
        return perf.to_dict() if perf is not None else None

    # ── Session ──────────────────────────────────────────────────────────

    def reset_session_public(self) -> None:
        """Clear trades, streaks and switch state; keep the connection."""
        self._reset_session_state()
        if self._risk is not None:
            self._risk.reset()
        if self._switcher is not None:
            self._switcher.reset_session()
        if self._config is not None:
            self._active_strategy = self._config.strategy
        self._feed.reset()
        logger.info("Session reset (new session %s)", self._session_id)
        self._events.emit(EngineEvent.RESET, {"session_id": self._session_id})

    def get_stats(self) -> dict:
        stats = session_stats(self._trades)
        if self._risk is not None:
            stats.update(self._risk.snapshot())
        stats["active_strategy"] = self._active_strategy
        stats["session_id"] = self._session_id
        return stats

    def get_recent_trades(self, limit: int = 20) -> list[dict]:
        return [t.to_dict() for t in reversed(self._trades[-limit:])]

    def get_profit_analytics(self) -> dict:
        return profit_analytics(self._trades)

    def status(self) -> dict:
        state = self._client.state
        return {
            "running": self._running,
            "connection": state.value if isinstance(state, ConnectionState) else state,
            "authorized": self._client.authorized,
            "strategy": self._active_strategy,
            "market": self._config.market if self._config else None,
            "session_id": self._session_id,
            "stop_reason": self._stop_reason,
            "pending_settlements": len(self._reconciler.pending_trades),
            "balance": self._balance.balance if self._balance is not None else None,
        }

    # ── Session callbacks ────────────────────────────────────────────────

    def _on_balance_message(self, message: BalanceMessage) -> None:
        self._balance = message.balance
        self._events.emit(EngineEvent.BALANCE, message.balance)

    def _on_connection_state(self, state: ConnectionState) -> None:
        self._events.emit(EngineEvent.CONNECTION, state)
        if state == ConnectionState.ERROR:
            self.stop("Connection lost")

    def _on_client_error(self, message: str) -> None:
        self._events.emit(EngineEvent.ERROR, message)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Engine task failed: %s", exc, exc_info=exc)
