"""Trade session configuration dataclasses.

One ``TradeConfig`` describes one trading session: what to trade, how to
stake, when to stop and how to rotate strategies after losses.  Instances are
frozen; the engine keeps its own mutable state (active strategy, streaks)
separately.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from zentrade.trading.contracts import ALL_STRATEGIES

SWITCH_MODES = ("rotation", "performance", "adaptive", "custom")


@dataclass(frozen=True)
class SwitchingPolicy:
    """Loss-triggered strategy rotation settings."""

    enabled: bool = True
    mode: str = "rotation"
    custom_sequence: tuple[str, ...] = ()
    reset_on_win: bool = True
    max_switches: int = 10  # 0 = unlimited
    cooldown_minutes: float = 0.0
    performance_window: int = 10
    excluded_strategies: tuple[str, ...] = ()
    strategies: tuple[str, ...] = ALL_STRATEGIES

    def __post_init__(self) -> None:
        if self.mode not in SWITCH_MODES:
            raise ValueError(
                f"Unknown switching mode '{self.mode}'. Expected one of: {', '.join(SWITCH_MODES)}"
            )
        for name in (*self.custom_sequence, *self.excluded_strategies, *self.strategies):
            if name not in ALL_STRATEGIES:
                raise ValueError(f"Unknown strategy '{name}' in switching policy")
        if self.max_switches < 0:
            raise ValueError("max_switches must be >= 0")
        if self.cooldown_minutes < 0:
            raise ValueError("cooldown_minutes must be >= 0")
        if not 1 <= self.performance_window <= 10:
            raise ValueError("performance_window must be between 1 and 10")

    @property
    def available_strategies(self) -> list[str]:
        """Rotation pool in cyclic order, minus excluded strategies."""
        return [s for s in self.strategies if s not in self.excluded_strategies]

    def updated(self, **changes) -> "SwitchingPolicy":
        return replace(self, **changes)


@dataclass(frozen=True)
class TradeConfig:
    """Configuration for one trading session."""

    strategy: str
    market: str
    stake: float
    martingale_multiplier: float = 1.0
    martingale_max_steps: int = 10
    max_position_size: Optional[float] = None
    dynamic_position_sizing: bool = False
    drawdown_protection: bool = False
    max_drawdown_percent: float = 20.0
    ticks: int = 1
    default_digit: int = 5
    switch_on_loss: bool = False
    losses_to_switch: int = 3
    reset_losses_on_win: bool = True
    rounds: int = 0  # 0 = unlimited
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    max_loss_streak: Optional[int] = None
    max_concurrent_trades: int = 3
    high_performance: bool = False
    ultra_fast: bool = False
    every_tick: bool = False
    currency: str = "USD"
    switching: Optional[SwitchingPolicy] = field(default=None)

    def __post_init__(self) -> None:
        if self.strategy not in ALL_STRATEGIES:
            raise ValueError(
                f"Unknown strategy '{self.strategy}'. Available: {', '.join(ALL_STRATEGIES)}"
            )
        if not 0 <= self.default_digit <= 9:
            raise ValueError(f"default_digit must be 0-9, got {self.default_digit}")
        if self.martingale_multiplier < 1:
            raise ValueError("martingale_multiplier must be >= 1")
        if self.martingale_max_steps < 0:
            raise ValueError("martingale_max_steps must be >= 0")
        if self.ticks < 1:
            raise ValueError("ticks must be >= 1")
        if self.losses_to_switch < 1:
            raise ValueError("losses_to_switch must be >= 1")
        if self.max_concurrent_trades < 1:
            raise ValueError("max_concurrent_trades must be >= 1")
        if self.max_drawdown_percent <= 0:
            raise ValueError("max_drawdown_percent must be > 0")

    @property
    def fire_and_forget(self) -> bool:
        """Purchases run as detached tasks with fast confirmation polling."""
        return self.high_performance and self.ultra_fast

    @property
    def switching_enabled(self) -> bool:
        return self.switch_on_loss or (self.switching is not None and self.switching.enabled)

    @property
    def policy(self) -> SwitchingPolicy:
        return self.switching if self.switching is not None else SwitchingPolicy()


def trade_config_from_dict(data: dict) -> TradeConfig:
    """Build a ``TradeConfig`` from a parsed JSON object.

    Raises:
        ValueError: Missing keys or invalid values.
    """
    missing = [k for k in ("strategy", "market", "stake") if k not in data]
    if missing:
        raise ValueError(f"Missing trade config key(s): {', '.join(missing)}")

    fields = dict(data)
    switching = fields.pop("switching", None)
    try:
        if switching is not None:
            switching = dict(switching)
            for key in ("custom_sequence", "excluded_strategies", "strategies"):
                if key in switching:
                    switching[key] = tuple(switching[key])
            fields["switching"] = SwitchingPolicy(**switching)
        return TradeConfig(**fields)
    except TypeError as exc:
        raise ValueError(f"Invalid trade config: {exc}") from exc
