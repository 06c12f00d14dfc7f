"""Strategy switch controller — loss-triggered rotation of the active contract type.

Selection policies:

- ``rotation``     next strategy in the pool, cyclic.
- ``performance``  best recent win rate among strategies with >= 3 trades.
- ``adaptive``     picked from live volatility / trend / last digit.
- ``custom``       next entry of a caller-supplied sequence.

Every switch is subject to a per-session budget and a cooldown.
"""

import logging
import math
from typing import Callable, Optional, Protocol

from zentrade.clock import Clock
from zentrade.models.trade_config import SwitchingPolicy
from zentrade.trading.contracts import ALL_STRATEGIES
from zentrade.trading.models import ContractTypePerformance, SwitchEvent

logger = logging.getLogger("zentrade.switching")

REASON_ROTATION = "Sequential rotation"
REASON_PERFORMANCE = "Performance-based selection"
REASON_ADAPTIVE = "Market-adaptive selection"
REASON_CUSTOM = "Custom sequence"
REASON_MANUAL = "Manual override"
REASON_RESET_ON_WIN = "Reset to original on win"

_MIN_TRADES_FOR_RANKING = 3
_HIGH_VOLATILITY = 0.5
_LOW_VOLATILITY = 0.2


class MarketSignals(Protocol):
    def volatility(self) -> float: ...

    def trend(self) -> float: ...

    def last_digit(self) -> int: ...


class StrategySwitchController:
    """Decides when and where to switch strategies, and keeps the switch log.

    Args:
        policy: Switching policy.
        clock: Clock for switch timestamps and cooldown.
        signals: Tick-derived signals used by the adaptive policy.
        on_switch: Called with every ``SwitchEvent`` that is performed.
    """

    def __init__(
        self,
        policy: SwitchingPolicy,
        clock: Clock,
        signals: MarketSignals,
        on_switch: Optional[Callable[[SwitchEvent], None]] = None,
    ) -> None:
        self._policy = policy
        self._clock = clock
        self._signals = signals
        self._on_switch = on_switch
        self._performance: dict[str, ContractTypePerformance] = {
            name: ContractTypePerformance(name) for name in ALL_STRATEGIES
        }
        self.reset_session()

    def reset_session(self) -> None:
        """Clear switch state.  Performance history survives."""
        self.last_switch_time: Optional[float] = None
        self.switches_this_session = 0
        self.history: list[SwitchEvent] = []

    # ── Policy ───────────────────────────────────────────────────────────

    @property
    def policy(self) -> SwitchingPolicy:
        return self._policy

    @policy.setter
    def policy(self, policy: SwitchingPolicy) -> None:
        self._policy = policy

    def update_policy(self, **changes) -> SwitchingPolicy:
        """Replace selected policy fields; raises ``ValueError`` on invalid values."""
        self._policy = self._policy.updated(**changes)
        logger.info("Switching policy updated: %s", changes)
        return self._policy

    # ── Gates ────────────────────────────────────────────────────────────

    def cooldown_remaining(self) -> float:
        """Seconds until another switch is allowed."""
        if self.last_switch_time is None or self._policy.cooldown_minutes <= 0:
            return 0.0
        elapsed = self._clock.now() - self.last_switch_time
        return max(0.0, self._policy.cooldown_minutes * 60.0 - elapsed)

    @property
    def cooldown_active(self) -> bool:
        return self.cooldown_remaining() > 0

    @property
    def budget_exhausted(self) -> bool:
        limit = self._policy.max_switches
        return bool(limit) and self.switches_this_session >= limit

    def can_switch(self) -> bool:
        if self.budget_exhausted:
            logger.info("Switch refused: session budget of %d used", self._policy.max_switches)
            return False
        if self.cooldown_active:
            logger.info("Switch refused: cooldown %.0fs remaining", self.cooldown_remaining())
            return False
        return True

    # ── Triggers ─────────────────────────────────────────────────────────

    def maybe_switch(
        self, current: str, consecutive_losses: int, threshold: int
    ) -> Optional[SwitchEvent]:
        """Switch away from *current* when the losing run reached *threshold*."""
        if consecutive_losses < threshold or not self.can_switch():
            return None
        target, reason = self.select_next(current)
        if target == current:
            return None
        return self._perform(current, target, reason, consecutive_losses)

    def manual_switch(
        self, current: str, target: Optional[str], consecutive_losses: int
    ) -> Optional[SwitchEvent]:
        """Caller-requested switch; *target* ``None`` means next in rotation.

        Raises:
            ValueError: If *target* is not a known strategy.
        """
        if target is not None and target not in ALL_STRATEGIES:
            raise ValueError(f"Unknown strategy '{target}'")
        if not self.can_switch():
            return None
        target = target or self._rotate(current)
        if target == current:
            return None
        return self._perform(current, target, REASON_MANUAL, consecutive_losses)

    def revert_on_win(
        self, current: str, original: str, consecutive_losses: int
    ) -> Optional[SwitchEvent]:
        """Return to *original* after a win, if the policy asks for it."""
        if not self._policy.reset_on_win or current == original:
            return None
        return self._perform(current, original, REASON_RESET_ON_WIN, consecutive_losses)

    # ── Selection ────────────────────────────────────────────────────────

    def select_next(self, current: str) -> tuple[str, str]:
        mode = self._policy.mode
        if mode == "performance":
            best = self._best_performer(current)
            if best is not None:
                return best, REASON_PERFORMANCE
            return self._rotate(current), REASON_ROTATION
        if mode == "adaptive":
            return self._adaptive_pick(), REASON_ADAPTIVE
        if mode == "custom":
            sequence = self._policy.custom_sequence
            if sequence:
                idx = sequence.index(current) if current in sequence else -1
                return sequence[(idx + 1) % len(sequence)], REASON_CUSTOM
        return self._rotate(current), REASON_ROTATION

    def _rotate(self, current: str) -> str:
        pool = self._policy.available_strategies
        if not pool:
            return current
        idx = pool.index(current) if current in pool else -1
        return pool[(idx + 1) % len(pool)]

    def _best_performer(self, current: str) -> Optional[str]:
        window = self._policy.performance_window
        best: Optional[str] = None
        best_rate = -1.0
        for name in self._policy.available_strategies:
            if name == current:
                continue
            perf = self._performance[name]
            if perf.total_trades < _MIN_TRADES_FOR_RANKING:
                continue
            rate = perf.recent_win_rate(window)
            if rate > best_rate:
                best, best_rate = name, rate
        return best

    def _adaptive_pick(self) -> str:
        volatility = self._signals.volatility()
        digit = self._signals.last_digit()
        if volatility > _HIGH_VOLATILITY:
            return "Rise" if self._signals.trend() > 0 else "Fall"
        if volatility < _LOW_VOLATILITY:
            return "Even" if digit % 2 == 0 else "Odd"
        return "Under" if digit > 5 else "Over"

    def _perform(
        self, current: str, target: str, reason: str, consecutive_losses: int
    ) -> SwitchEvent:
        now = self._clock.now()
        event = SwitchEvent(
            timestamp=now,
            from_strategy=current,
            to_strategy=target,
            reason=reason,
            consecutive_losses=consecutive_losses,
        )
        self.last_switch_time = now
        self.switches_this_session += 1
        self.history.append(event)
        logger.info("Strategy switch %s -> %s (%s)", current, target, reason)
        if self._on_switch is not None:
            self._on_switch(event)
        return event

    # ── Performance ──────────────────────────────────────────────────────

    def record_performance(self, strategy: str, won: bool, profit: float) -> None:
        perf = self._performance.get(strategy)
        if perf is None:
            perf = self._performance[strategy] = ContractTypePerformance(strategy)
        perf.record(won, profit, self._clock.now())

    def performance(self, strategy: str) -> Optional[ContractTypePerformance]:
        return self._performance.get(strategy)

    def reset_performance(self) -> None:
        self._performance = {name: ContractTypePerformance(name) for name in ALL_STRATEGIES}

    def best_performing(self) -> Optional[str]:
        """Highest overall win rate among strategies with >= 3 trades."""
        ranked = [
            p for p in self._performance.values() if p.total_trades >= _MIN_TRADES_FOR_RANKING
        ]
        if not ranked:
            return None
        return max(ranked, key=lambda p: p.win_rate).strategy

    def stats(self) -> dict:
        return {
            "total_switches": len(self.history),
            "switches_this_session": self.switches_this_session,
            "last_switch_time": self.last_switch_time,
            "switch_history": [e.to_dict() for e in self.history],
            "performance_by_contract": {
                name: perf.to_dict() for name, perf in self._performance.items()
            },
            "best_performing_contract": self.best_performing(),
            "current_switch_cooldown": math.ceil(self.cooldown_remaining() / 60.0),
        }
