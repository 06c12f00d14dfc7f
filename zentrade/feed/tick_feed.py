"""Tick feed — bounded rolling price history with fan-out to subscribers."""

import logging
from collections import deque
from typing import Callable, Optional

import numpy as np

from zentrade.broker.models import Tick
from zentrade.trading.contracts import last_digit, market_decimals

logger = logging.getLogger("zentrade.feed")

HISTORY_SIZE = 100
_VOLATILITY_WINDOW = 20
_VOLATILITY_MIN_SAMPLES = 10
_VOLATILITY_SCALE = 1000.0
_TREND_WINDOW = 10
_TREND_MIN_SAMPLES = 5
_DEFAULT_DIGIT = 5


class TickFeed:
    """Last ``HISTORY_SIZE`` samples of one market.

    The tick index counts every accepted sample since the last reset and is
    never capped by the history size, so the duplicate-trade guard keeps
    working after the buffer fills.

    Args:
        market: Market symbol, used for digit precision.
        history_size: Samples kept in memory.
    """

    def __init__(self, market: str = "", history_size: int = HISTORY_SIZE) -> None:
        self._market = market
        self._decimals = market_decimals(market)
        self._history: deque[Tick] = deque(maxlen=history_size)
        self._subscribers: list[Callable[[Tick], None]] = []
        self._index = -1
        self._last_trade_index = -1

    # ── State ────────────────────────────────────────────────────────────

    @property
    def market(self) -> str:
        return self._market

    @property
    def current(self) -> Optional[Tick]:
        return self._history[-1] if self._history else None

    @property
    def index(self) -> int:
        return self._index

    @property
    def last_trade_index(self) -> int:
        return self._last_trade_index

    def __len__(self) -> int:
        return len(self._history)

    def history(self) -> list[Tick]:
        return list(self._history)

    def subscribe(self, callback: Callable[[Tick], None]) -> None:
        self._subscribers.append(callback)

    def set_market(self, market: str) -> None:
        """Switch to another market; the history of the old one is dropped."""
        self._market = market
        self._decimals = market_decimals(market)
        self.reset()

    def reset(self) -> None:
        self._history.clear()
        self._index = -1
        self._last_trade_index = -1

    # ── Ingest ───────────────────────────────────────────────────────────

    def push(self, tick: Tick) -> bool:
        """Append *tick* and notify subscribers.

        Returns:
            ``False`` when the sample repeats the last epoch of the same
            symbol (a replayed stream re-sending it) and was dropped.
        """
        last = self.current
        if last is not None and last.symbol == tick.symbol and tick.epoch <= last.epoch:
            logger.debug("Dropping repeated tick %s@%d", tick.symbol, tick.epoch)
            return False
        self._history.append(tick)
        self._index += 1
        for callback in list(self._subscribers):
            try:
                callback(tick)
            except Exception:
                logger.exception("Tick subscriber failed")
        return True

    # ── Duplicate-trade guard ────────────────────────────────────────────

    def has_fresh_tick(self) -> bool:
        """A quote is known and no trade was placed on it yet."""
        return self._index >= 0 and self._index > self._last_trade_index

    def mark_traded(self) -> None:
        self._last_trade_index = self._index

    # ── Derived signals ──────────────────────────────────────────────────

    def quotes(self, count: Optional[int] = None) -> list[float]:
        ticks = list(self._history)
        if count is not None:
            ticks = ticks[-count:]
        return [t.quote for t in ticks]

    def volatility(self) -> float:
        """Normalized volatility in ``[0, 1]``.

        Population standard deviation of the last 20 quotes scaled by 1000.
        Returns the neutral 0.5 until 10 samples exist.
        """
        if len(self._history) < _VOLATILITY_MIN_SAMPLES:
            return 0.5
        std = float(np.std(np.asarray(self.quotes(_VOLATILITY_WINDOW))))
        return min(1.0, std * _VOLATILITY_SCALE)

    def volatility_factor(self) -> float:
        """Stake multiplier in ``[0.5, 1.5]``: ``1 - 0.1 × std`` of the last 20 quotes.

        Returns 1.0 until 10 samples exist.
        """
        if len(self._history) < _VOLATILITY_MIN_SAMPLES:
            return 1.0
        std = float(np.std(np.asarray(self.quotes(_VOLATILITY_WINDOW))))
        return min(1.5, max(0.5, 1.0 - std * 0.1))

    def trend(self) -> float:
        """Mean of the newer half minus mean of the older half of the last 10 quotes."""
        if len(self._history) < _TREND_MIN_SAMPLES:
            return 0.0
        window = np.asarray(self.quotes(_TREND_WINDOW))
        half = len(window) // 2
        return float(window[half:].mean() - window[:half].mean())

    def last_digit(self) -> int:
        tick = self.current
        if tick is None:
            return _DEFAULT_DIGIT
        return last_digit(tick.quote, self._decimals)
