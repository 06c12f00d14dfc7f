"""Martingale staking and session stop limits — pure math, no I/O.

The stake grows geometrically with consecutive losses and snaps back to the
base stake after a win.  Session stop conditions (take-profit, stop-loss,
loss streak, round limit) are evaluated after every settled result.
"""

from typing import Callable, Optional

MIN_STAKE = 0.35
_MAX_STAKE_FACTOR = 10.0


def martingale_stake(
    base_stake: float,
    multiplier: float,
    consecutive_losses: int,
    max_steps: int = 10,
    max_position: Optional[float] = None,
) -> float:
    """Stake for the next trade.

    Formula::

        e     = min(consecutive_losses, max_steps)
        stake = base_stake × multiplier^e
        stake = clamp(stake, 0.35, min(10 × base_stake, max_position))

    The result is rounded to 2 decimals, the finest granularity the API
    accepts.

    Args:
        base_stake: Stake after a win.
        multiplier: Growth factor per loss; ``<= 1`` disables escalation.
        consecutive_losses: Current losing run.
        max_steps: Escalation stops growing after this many losses.
        max_position: Optional hard ceiling on a single stake.

    Raises:
        ValueError: If *base_stake* is not positive.
    """
    if base_stake <= 0:
        raise ValueError(f"base_stake must be positive, got {base_stake}")

    stake = escalated_stake(base_stake, multiplier, consecutive_losses, max_steps)
    return clamp_stake(stake, base_stake, max_position)


def escalated_stake(
    base_stake: float, multiplier: float, consecutive_losses: int, max_steps: int = 10
) -> float:
    """Unclamped ``base_stake × multiplier^min(consecutive_losses, max_steps)``."""
    if multiplier > 1 and consecutive_losses > 0:
        return base_stake * multiplier ** min(consecutive_losses, max_steps)
    return base_stake


def clamp_stake(stake: float, base_stake: float, max_position: Optional[float] = None) -> float:
    """Clamp to ``[0.35, min(10 × base_stake, max_position)]`` and round to cents."""
    ceiling = _MAX_STAKE_FACTOR * base_stake
    if max_position is not None and max_position > 0:
        ceiling = min(ceiling, max_position)
    stake = min(stake, ceiling)
    return round(max(MIN_STAKE, stake), 2)


class RiskController:
    """Streak tracking, stake progression and stop limits for one session.

    Args:
        base_stake: Stake after a win.
        multiplier: Martingale factor.
        max_steps: Maximum escalation exponent.
        max_position: Optional stake ceiling.
        reset_losses_on_win: Clear the losing run after a win.
        take_profit: Stop once session profit reaches this amount.
        stop_loss: Stop once session loss reaches this amount (positive number).
        max_loss_streak: Stop after this many consecutive losses.
        rounds: Stop after this many settled results (0 = unlimited).
        dynamic_position_sizing: Scale the stake by *volatility_factor*.
        volatility_factor: Returns the current market volatility factor.
        drawdown_protection: Halve the stake while the session loss exceeds
            half of *max_drawdown_percent* (in units of the base stake).
        max_drawdown_percent: Drawdown limit used by *drawdown_protection*.
    """

    def __init__(
        self,
        base_stake: float,
        multiplier: float = 1.0,
        max_steps: int = 10,
        max_position: Optional[float] = None,
        reset_losses_on_win: bool = True,
        take_profit: Optional[float] = None,
        stop_loss: Optional[float] = None,
        max_loss_streak: Optional[int] = None,
        rounds: int = 0,
        dynamic_position_sizing: bool = False,
        volatility_factor: Optional[Callable[[], float]] = None,
        drawdown_protection: bool = False,
        max_drawdown_percent: float = 20.0,
    ) -> None:
        self._base_stake = base_stake
        self._multiplier = multiplier
        self._max_steps = max_steps
        self._max_position = max_position
        self._reset_losses_on_win = reset_losses_on_win
        self._take_profit = take_profit
        self._stop_loss = stop_loss
        self._max_loss_streak = max_loss_streak
        self._rounds = rounds
        self._dynamic_position_sizing = dynamic_position_sizing
        self._volatility_factor = volatility_factor
        self._drawdown_protection = drawdown_protection
        self._max_drawdown_percent = max_drawdown_percent
        self.reset()

    def reset(self) -> None:
        self.consecutive_losses = 0
        self.current_streak = 0
        self.best_streak = 0
        self.worst_streak = 0
        self.session_profit = 0.0
        self.results = 0

    # ── Stake ────────────────────────────────────────────────────────────

    @property
    def base_stake(self) -> float:
        return self._base_stake

    def next_stake(self) -> float:
        """Next stake, or 0.0 when the base stake is not tradable."""
        if self._base_stake <= 0:
            return 0.0
        stake = escalated_stake(
            self._base_stake, self._multiplier, self.consecutive_losses, self._max_steps
        )
        if self._dynamic_position_sizing and self._volatility_factor is not None:
            stake *= self._volatility_factor()
        if self._drawdown_protection and self.in_drawdown():
            stake *= 0.5
        return clamp_stake(stake, self._base_stake, self._max_position)

    def in_drawdown(self) -> bool:
        """Session loss, in percent of 100 base stakes, above half the drawdown limit."""
        if self._base_stake <= 0:
            return False
        loss = max(0.0, -self.session_profit)
        return loss / self._base_stake > self._max_drawdown_percent / 2

    # ── Results ──────────────────────────────────────────────────────────

    def record_result(self, won: bool, profit: float) -> None:
        """Fold one settled result (a trade or a straddle pair) into the session."""
        self.results += 1
        self.session_profit = round(self.session_profit + profit, 2)
        if won:
            if self._reset_losses_on_win:
                self.consecutive_losses = 0
            self.current_streak = self.current_streak + 1 if self.current_streak > 0 else 1
            self.best_streak = max(self.best_streak, self.current_streak)
        else:
            self.consecutive_losses += 1
            self.current_streak = self.current_streak - 1 if self.current_streak < 0 else -1
            self.worst_streak = min(self.worst_streak, self.current_streak)

    def reset_losses(self) -> None:
        self.consecutive_losses = 0

    def stop_reason(self) -> Optional[str]:
        """Reason the session must stop now, or ``None``."""
        if self._take_profit is not None and self._take_profit > 0:
            if self.session_profit >= self._take_profit:
                return f"Take profit reached ({self.session_profit:.2f})"
        if self._stop_loss is not None and self._stop_loss > 0:
            if self.session_profit <= -self._stop_loss:
                return f"Stop loss reached ({self.session_profit:.2f})"
        if self._max_loss_streak and self.consecutive_losses >= self._max_loss_streak:
            return f"Max loss streak reached ({self.consecutive_losses})"
        if self._rounds and self.results >= self._rounds:
            return f"Round limit reached ({self.results})"
        return None

    def snapshot(self) -> dict:
        return {
            "consecutive_losses": self.consecutive_losses,
            "current_streak": self.current_streak,
            "best_streak": self.best_streak,
            "worst_streak": self.worst_streak,
            "session_profit": self.session_profit,
            "results": self.results,
            "next_stake": self.next_stake(),
        }
