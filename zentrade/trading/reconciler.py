"""Settlement reconciler — drives every bought contract to a terminal status.

Push updates for open contracts are not reliable, so each trade is followed
by an escalation state machine on the clock::

    JUST_BOUGHT  immediate check at 3s
    QUICK_POLL   every 5s until 60s
    MEDIUM_POLL  every 15s until 180s
    FINAL_CHECK  at 180s: status query, string-id status query, portfolio scan
    FORCE_RESOLVED at 195s: assumed loss

A global sweep every 30s re-checks any trade pending for more than 30s.
Fire-and-forget trades first poll every 0.5s for 10s, then join the normal
ladder.  Whatever the source of an update, the outcome is recomputed from the
trade's own prices; handling a terminal trade again is a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from zentrade.broker.models import ContractUpdate
from zentrade.clock import Clock, TimerHandle
from zentrade.errors import BrokerError
from zentrade.trading.contracts import compute_settlement, market_decimals
from zentrade.trading.models import Trade

logger = logging.getLogger("zentrade.reconciler")

IMMEDIATE_CHECK_AT = 3.0
QUICK_POLL_INTERVAL = 5.0
QUICK_POLL_UNTIL = 60.0
MEDIUM_POLL_INTERVAL = 15.0
FINAL_CHECK_AT = 180.0
FORCE_RESOLVE_AT = 195.0
FAST_POLL_INTERVAL = 0.5
FAST_POLL_ATTEMPTS = 20
SWEEP_INTERVAL = 30.0
SWEEP_MIN_AGE = 30.0

SETTLEMENT_TIMEOUT_MESSAGE = "Contract settlement timeout - all monitoring methods failed"
ASSUMED_LOSS_MESSAGE = "Assumed loss due to settlement timeout"
ASSUMED_LOSS_AGE = 300.0

_FINISHED_STATUSES = frozenset({"sold", "expired", "won", "lost"})


class SettlementStage(str, Enum):
    JUST_BOUGHT = "just_bought"
    QUICK_POLL = "quick_poll"
    MEDIUM_POLL = "medium_poll"
    FINAL_CHECK = "final_check"
    FORCE_RESOLVED = "force_resolved"
    SETTLED = "settled"


def escalation_schedule(fast: bool = False) -> list[tuple[float, SettlementStage]]:
    """Check offsets (seconds after purchase) and the stage each one belongs to."""
    steps: list[tuple[float, SettlementStage]] = []
    horizon = 0.0
    if fast:
        for i in range(1, FAST_POLL_ATTEMPTS + 1):
            offset = FAST_POLL_INTERVAL * i
            stage = SettlementStage.JUST_BOUGHT if offset <= IMMEDIATE_CHECK_AT else SettlementStage.QUICK_POLL
            steps.append((offset, stage))
        horizon = FAST_POLL_INTERVAL * FAST_POLL_ATTEMPTS
    else:
        steps.append((IMMEDIATE_CHECK_AT, SettlementStage.JUST_BOUGHT))

    offset = QUICK_POLL_INTERVAL
    while offset < QUICK_POLL_UNTIL:
        if offset > horizon:
            steps.append((offset, SettlementStage.QUICK_POLL))
        offset += QUICK_POLL_INTERVAL

    offset = QUICK_POLL_UNTIL + MEDIUM_POLL_INTERVAL
    while offset < FINAL_CHECK_AT:
        steps.append((offset, SettlementStage.MEDIUM_POLL))
        offset += MEDIUM_POLL_INTERVAL

    steps.append((FINAL_CHECK_AT, SettlementStage.FINAL_CHECK))
    steps.append((FORCE_RESOLVE_AT, SettlementStage.FORCE_RESOLVED))
    return steps


def is_contract_finished(update: ContractUpdate) -> bool:
    """Any one settlement indicator marks the contract as finished."""
    return (
        update.is_settled
        or update.is_sold
        or update.is_expired
        or update.status in _FINISHED_STATUSES
        or (update.sell_price is not None and update.sell_price > 0)
        or update.profit is not None
    )


@dataclass
class _Tracker:
    trade: Trade
    schedule: list[tuple[float, SettlementStage]]
    started_at: float
    stage: SettlementStage = SettlementStage.JUST_BOUGHT
    step: int = 0
    timer: Optional[TimerHandle] = None
    subscribed: bool = False


class SettlementReconciler:
    """Tracks open contracts until each one is won, lost or force-resolved.

    Args:
        client: ``DerivClient`` (or duck-type) used for status lookups.
        clock: Clock driving the escalation timers.
        on_settled: Called synchronously with each trade reaching a
            terminal status.
        subscribe_updates: Also open a ``proposal_open_contract`` stream
            per standard trade.
    """

    def __init__(
        self,
        client,
        clock: Clock,
        on_settled: Callable[[Trade], None],
        subscribe_updates: bool = True,
    ) -> None:
        self._client = client
        self._clock = clock
        self._on_settled = on_settled
        self._subscribe_updates = subscribe_updates
        self._trackers: dict[str, _Tracker] = {}
        self._by_contract: dict[str, str] = {}
        self._sweep: Optional[TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the global sweep."""
        if self._sweep is None:
            self._sweep = self._clock.call_every(SWEEP_INTERVAL, self._sweep_pending)

    def close(self) -> None:
        """Stop the sweep and every per-trade timer."""
        if self._sweep is not None:
            self._sweep.cancel()
            self._sweep = None
        for tracker in self._trackers.values():
            if tracker.timer is not None:
                tracker.timer.cancel()
        self._trackers.clear()
        self._by_contract.clear()
        for task in list(self._tasks):
            task.cancel()

    # ── Tracking ─────────────────────────────────────────────────────────

    def track(self, trade: Trade, fast: bool = False) -> None:
        """Begin reconciling a purchased trade.

        Raises:
            ValueError: If the trade has no contract id yet.
        """
        if trade.contract_id is None:
            raise ValueError(f"Trade {trade.id} has no contract id")
        if trade.is_terminal or trade.id in self._trackers:
            return
        tracker = _Tracker(
            trade=trade,
            schedule=escalation_schedule(fast),
            started_at=trade.purchased_at if trade.purchased_at is not None else self._clock.now(),
        )
        self._trackers[trade.id] = tracker
        self._by_contract[trade.contract_id] = trade.id
        self._schedule_next(tracker)
        if self._subscribe_updates and not fast:
            tracker.subscribed = True
            self._spawn(self._subscribe(trade.contract_id))
        logger.debug("Tracking contract %s (%s)", trade.contract_id, "fast" if fast else "standard")

    def stage(self, trade_id: str) -> Optional[SettlementStage]:
        tracker = self._trackers.get(trade_id)
        return tracker.stage if tracker else None

    @property
    def pending_trades(self) -> list[Trade]:
        return [t.trade for t in self._trackers.values()]

    # ── Settlement ───────────────────────────────────────────────────────

    def handle_contract_update(self, update: Optional[ContractUpdate]) -> bool:
        """Apply a status update from any source.

        Returns:
            ``True`` if this update moved a trade to a terminal status.
        """
        if update is None:
            return False
        trade_id = self._by_contract.get(update.contract_id)
        tracker = self._trackers.get(trade_id) if trade_id else None
        if tracker is None or tracker.trade.is_terminal:
            return False
        if not is_contract_finished(update):
            return False

        trade = tracker.trade
        exit_spot = update.final_spot
        if exit_spot is None:
            logger.debug("Contract %s finished without an exit spot yet", update.contract_id)
            return False

        result = compute_settlement(
            trade.contract_type,
            trade.barrier,
            trade.stake,
            trade.entry_spot,
            exit_spot,
            payout=trade.payout,
            decimals=market_decimals(trade.market),
        )
        if update.profit is not None and abs(update.profit - result.profit) > 0.01:
            logger.info(
                "Contract %s: remote profit %.2f, computed %.2f (using computed)",
                update.contract_id, update.profit, result.profit,
            )
        trade.settle(
            result.won,
            result.profit,
            exit_spot=exit_spot,
            exit_digit=result.exit_digit,
            sell_price=update.sell_price,
        )
        tracker.stage = SettlementStage.SETTLED
        logger.info(
            "Trade %s %s: profit %.2f", trade.id, trade.status.value, result.profit
        )
        self._finish(tracker)
        return True

    def _force_resolve(self, tracker: _Tracker, error: str = SETTLEMENT_TIMEOUT_MESSAGE) -> None:
        trade = tracker.trade
        logger.error(
            "Contract %s unresolved after %.0fs, forcing assumed loss",
            trade.contract_id, self._clock.now() - tracker.started_at,
        )
        trade.settle(False, round(-trade.stake, 2), error=error)
        tracker.stage = SettlementStage.FORCE_RESOLVED
        self._finish(tracker)

    def _finish(self, tracker: _Tracker) -> None:
        trade = tracker.trade
        if tracker.timer is not None:
            tracker.timer.cancel()
            tracker.timer = None
        self._trackers.pop(trade.id, None)
        if trade.contract_id is not None:
            self._by_contract.pop(trade.contract_id, None)
            if tracker.subscribed:
                self._spawn(self._forget(trade.contract_id))
        self._on_settled(trade)

    # ── Manual reconciliation ────────────────────────────────────────────

    async def reconcile_all(self) -> int:
        """Run the final settlement check on every pending trade now.

        Scheduled escalation timers keep running for trades that stay
        pending.

        Returns:
            Number of trades settled by this call.
        """
        pending = [t.trade for t in self._trackers.values()]
        logger.info("Manual reconciliation of %d pending contract(s)", len(pending))
        settled = 0
        for trade in pending:
            if trade.is_terminal:
                continue
            await self._final_check(trade)
            if trade.is_terminal:
                settled += 1
        return settled

    async def force_settlement_check(self) -> int:
        """Resolve pending trades older than ``ASSUMED_LOSS_AGE`` as losses.

        Younger trades get one final check instead.

        Returns:
            Number of trades settled by this call.
        """
        now = self._clock.now()
        trackers = list(self._trackers.values())
        logger.warning("Force settlement check of %d pending contract(s)", len(trackers))
        settled = 0
        for tracker in trackers:
            trade = tracker.trade
            if trade.is_terminal or trade.id not in self._trackers:
                continue
            if now - trade.timestamp > ASSUMED_LOSS_AGE:
                self._force_resolve(tracker, error=ASSUMED_LOSS_MESSAGE)
            else:
                await self._final_check(trade)
            if trade.is_terminal:
                settled += 1
        return settled

    # ── Escalation ───────────────────────────────────────────────────────

    def _schedule_next(self, tracker: _Tracker) -> None:
        if tracker.step >= len(tracker.schedule):
            return
        offset, _ = tracker.schedule[tracker.step]
        delay = tracker.started_at + offset - self._clock.now()
        tracker.timer = self._clock.call_later(delay, lambda: self._run_step(tracker))

    async def _run_step(self, tracker: _Tracker) -> None:
        tracker.timer = None
        if tracker.trade.is_terminal or tracker.trade.id not in self._trackers:
            return
        _, stage = tracker.schedule[tracker.step]
        tracker.stage = stage
        tracker.step += 1

        if stage is SettlementStage.FORCE_RESOLVED:
            self._force_resolve(tracker)
            return
        if stage is SettlementStage.FINAL_CHECK:
            await self._final_check(tracker.trade)
        else:
            await self._check(tracker.trade)

        if not tracker.trade.is_terminal and tracker.trade.id in self._trackers:
            self._schedule_next(tracker)

    async def _check(self, trade: Trade, as_string: bool = False) -> bool:
        try:
            update = await self._client.get_contract_status(trade.contract_id, as_string=as_string)
        except BrokerError as exc:
            logger.warning("Status check for contract %s failed: %s", trade.contract_id, exc)
            return False
        self.handle_contract_update(update)
        return trade.is_terminal

    async def _final_check(self, trade: Trade) -> None:
        logger.warning("Final settlement check for contract %s", trade.contract_id)
        if await self._check(trade):
            return
        if await self._check(trade, as_string=True):
            return
        try:
            contracts = await self._client.get_portfolio()
        except BrokerError as exc:
            logger.warning("Portfolio scan failed: %s", exc)
            return
        for update in contracts:
            if update.contract_id == trade.contract_id:
                self.handle_contract_update(update)
                return

    async def _sweep_pending(self) -> None:
        now = self._clock.now()
        stale = [
            t.trade for t in self._trackers.values()
            if not t.trade.is_terminal and now - t.trade.timestamp > SWEEP_MIN_AGE
        ]
        if stale:
            logger.info("Sweep re-checking %d pending trade(s)", len(stale))
        for trade in stale:
            if not trade.is_terminal:
                await self._check(trade)

    # ── Contract streams ─────────────────────────────────────────────────

    async def _subscribe(self, contract_id: str) -> None:
        try:
            await self._client.subscribe_contract(contract_id)
        except BrokerError as exc:
            logger.warning("Could not subscribe to contract %s: %s", contract_id, exc)

    async def _forget(self, contract_id: str) -> None:
        try:
            await self._client.forget_contract(contract_id)
        except BrokerError as exc:
            logger.debug("Could not forget contract %s: %s", contract_id, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
