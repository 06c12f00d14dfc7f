"""Trade executor — turns a trading intent into proposal + buy requests.

Three paths share one purchase routine:

- ``execute``          awaits the purchase acknowledgement.
- ``execute_detached`` returns the pending trade at once; the purchase runs
  as a tracked background task with fast confirmation polling.
- ``execute_straddle`` splits the stake across an over/under pair submitted
  concurrently.

Purchases hold a slot of a bounded semaphore; excess purchases wait in FIFO
order.  Failures are classified onto the trade and never retried.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from zentrade.clock import Clock
from zentrade.errors import ApiError, BrokerError, TradeValidationError
from zentrade.trading.contracts import STRADDLE_STRATEGY, ContractSpec, contract_specs
from zentrade.trading.models import Trade

logger = logging.getLogger("zentrade.executor")

_ERROR_MESSAGES = {
    "InsufficientBalance": "Insufficient balance to place trade",
    "InvalidSymbol": "Invalid market symbol",
    "MarketIsClosed": "Market is currently closed",
    "InvalidContractType": "Invalid contract type for this market",
}


def classify_error(exc: Exception) -> str:
    """User-facing message for a failed proposal or purchase."""
    if isinstance(exc, ApiError):
        if exc.code in _ERROR_MESSAGES:
            return _ERROR_MESSAGES[exc.code]
        for code, message in _ERROR_MESSAGES.items():
            if code in exc.message:
                return message
        return exc.message
    return str(exc) or type(exc).__name__


@dataclass(frozen=True)
class TradeIntent:
    """What to buy next, as decided by the engine."""

    strategy: str
    market: str
    stake: float
    duration: int
    entry_spot: float
    digit: int = 5

    def validate(self) -> None:
        if self.stake <= 0:
            raise TradeValidationError(f"Stake must be positive, got {self.stake}")
        if not self.market:
            raise TradeValidationError("Market is required")
        if self.duration < 1:
            raise TradeValidationError(f"Duration must be >= 1 tick, got {self.duration}")


class TradeExecutor:
    """Places trades and hands them to the settlement reconciler.

    Args:
        client: ``DerivClient`` (or duck-type) for proposal and buy.
        reconciler: ``SettlementReconciler`` receiving purchased trades.
        clock: Clock for trade timestamps.
        max_concurrent: Purchases allowed in flight at once.
        fire_and_forget: Doubles the concurrency ceiling for detached trades.
        on_trade: Called on every trade creation and status change made here.
        currency: Account currency used when the session reports none.
    """

    def __init__(
        self,
        client,
        reconciler,
        clock: Clock,
        max_concurrent: int = 3,
        fire_and_forget: bool = False,
        on_trade: Optional[Callable[[Trade], None]] = None,
        currency: str = "USD",
    ) -> None:
        self._client = client
        self._reconciler = reconciler
        self._clock = clock
        self._limit = max_concurrent * 2 if fire_and_forget else max_concurrent
        self._slots = asyncio.Semaphore(self._limit)
        self._on_trade = on_trade
        self._currency_default = currency
        self._accepting = True
        self._in_flight = 0
        self._waiting = 0
        self._tasks: set[asyncio.Task] = set()

    # ── State ────────────────────────────────────────────────────────────

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        """Purchases currently talking to the API."""
        return self._in_flight

    @property
    def queued(self) -> int:
        """Purchases waiting for a free slot."""
        return self._waiting

    @property
    def accepting(self) -> bool:
        return self._accepting

    def pause(self) -> None:
        """Stop starting purchases; queued ones are cancelled when they get a slot."""
        self._accepting = False

    def resume(self) -> None:
        self._accepting = True

    # ── Paths ────────────────────────────────────────────────────────────

    async def execute(self, intent: TradeIntent) -> Trade:
        """Buy one contract and wait for the purchase acknowledgement.

        Raises:
            TradeValidationError: Invalid stake, market or duration.
        """
        intent.validate()
        trade = self._open_trade(intent, contract_specs(intent.strategy, intent.digit)[0])
        await self._purchase(trade)
        return trade

    def execute_detached(self, intent: TradeIntent) -> Trade:
        """Start a purchase in the background and return the pending trade."""
        intent.validate()
        trade = self._open_trade(intent, contract_specs(intent.strategy, intent.digit)[0])
        task = asyncio.ensure_future(self._purchase(trade, fast=True))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._detached_done(t, trade))
        return trade

    async def execute_straddle(self, intent: TradeIntent) -> list[Trade]:
        """Buy both legs of a straddle with half the stake each.

        Legs complete independently; one failing does not affect the other.
        """
        intent.validate()
        leg_stake = round(intent.stake / 2, 2)
        if leg_stake <= 0:
            raise TradeValidationError(f"Stake {intent.stake} too small to split")
        group_id = f"straddle_{uuid.uuid4().hex[:12]}"
        legs = [
            self._open_trade(intent, spec, stake=leg_stake, group_id=group_id)
            for spec in contract_specs(STRADDLE_STRATEGY, intent.digit)
        ]
        results = await asyncio.gather(
            *(self._purchase(leg) for leg in legs), return_exceptions=True
        )
        for leg, result in zip(legs, results):
            if isinstance(result, Exception):
                logger.error("Straddle leg %s failed unexpectedly: %s", leg.id, result)
                if not leg.is_terminal:
                    leg.fail(classify_error(result))
                    self._notify(leg)
        return legs

    # ── Internals ────────────────────────────────────────────────────────

    def _open_trade(
        self,
        intent: TradeIntent,
        spec: ContractSpec,
        stake: Optional[float] = None,
        group_id: Optional[str] = None,
    ) -> Trade:
        trade = Trade(
            id=f"zen_{uuid.uuid4().hex[:16]}",
            timestamp=self._clock.now(),
            strategy=intent.strategy,
            market=intent.market,
            contract_type=spec.contract_type,
            stake=round(stake if stake is not None else intent.stake, 2),
            duration=intent.duration,
            entry_spot=intent.entry_spot,
            barrier=spec.barrier,
            group_id=group_id,
        )
        self._notify(trade)
        return trade

    async def _purchase(self, trade: Trade, fast: bool = False) -> None:
        self._waiting += 1
        try:
            await self._slots.acquire()
        finally:
            self._waiting -= 1
        self._in_flight += 1
        try:
            if not self._accepting:
                trade.cancel("Engine stopped before purchase")
                logger.info("Trade %s cancelled before purchase", trade.id)
                self._notify(trade)
                return
            if not await self._buy(trade):
                return
        finally:
            self._in_flight -= 1
            self._slots.release()
        self._reconciler.track(trade, fast=fast)

    async def _buy(self, trade: Trade) -> bool:
        try:
            proposal = await self._client.get_proposal(
                contract_type=trade.contract_type,
                symbol=trade.market,
                amount=trade.stake,
                duration=trade.duration,
                currency=self._currency(),
                barrier=trade.barrier,
            )
            trade.proposal_id = proposal.id
            receipt = await self._client.buy(proposal.id, proposal.ask_price)
        except BrokerError as exc:
            trade.fail(classify_error(exc))
            logger.warning("Trade %s failed: %s", trade.id, trade.error)
            self._notify(trade)
            return False

        trade.attach_contract(
            contract_id=receipt.contract_id,
            buy_price=receipt.buy_price,
            payout=receipt.payout,
            transaction_id=receipt.transaction_id,
            purchased_at=self._clock.now(),
        )
        logger.info(
            "Bought %s %s stake=%.2f contract=%s",
            trade.contract_type, trade.market, trade.stake, receipt.contract_id,
        )
        self._notify(trade)
        return True

    def _detached_done(self, task: asyncio.Task, trade: Trade) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error("Detached purchase for trade %s failed: %s", trade.id, exc, exc_info=exc)
        if not trade.is_terminal:
            trade.fail(classify_error(exc))
            self._notify(trade)

    def _currency(self) -> str:
        return getattr(self._client, "currency", None) or self._currency_default

    def _notify(self, trade: Trade) -> None:
        if self._on_trade is not None:
            self._on_trade(trade)
