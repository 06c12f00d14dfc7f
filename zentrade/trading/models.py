"""Trading domain models — trades, per-strategy performance, switch events."""

from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from zentrade.errors import TradeStateError

PERFORMANCE_WINDOW = 10


class TradeStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    CANCELLED = "cancelled"
    ERROR = "error"


_TERMINAL = frozenset({TradeStatus.WON, TradeStatus.LOST, TradeStatus.CANCELLED, TradeStatus.ERROR})


@dataclass
class Trade:
    """One purchase attempt.

    Status only moves forward: ``pending`` to exactly one terminal value.
    ``profit`` is set exactly when the trade is won or lost.
    """

    id: str
    timestamp: float
    strategy: str
    market: str
    contract_type: str
    stake: float
    duration: int
    entry_spot: float
    barrier: Optional[int] = None
    group_id: Optional[str] = None
    exit_spot: Optional[float] = None
    exit_digit: Optional[int] = None
    payout: Optional[float] = None
    buy_price: Optional[float] = None
    sell_price: Optional[float] = None
    proposal_id: Optional[str] = None
    contract_id: Optional[str] = None
    transaction_id: Optional[str] = None
    purchased_at: Optional[float] = None
    status: TradeStatus = TradeStatus.PENDING
    profit: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    @property
    def is_settled(self) -> bool:
        return self.status in (TradeStatus.WON, TradeStatus.LOST)

    # ── Transitions ──────────────────────────────────────────────────────

    def attach_contract(
        self,
        contract_id: str,
        buy_price: float,
        payout: float,
        transaction_id: Optional[str],
        purchased_at: float,
    ) -> None:
        """Record the purchase acknowledgement.

        Raises:
            TradeStateError: A contract id is already set or the trade is
                no longer pending.
        """
        if self.contract_id is not None:
            raise TradeStateError(f"Trade {self.id} already has contract {self.contract_id}")
        if self.is_terminal:
            raise TradeStateError(f"Trade {self.id} is already {self.status.value}")
        self.contract_id = contract_id
        self.buy_price = buy_price
        self.payout = payout
        self.transaction_id = transaction_id
        self.purchased_at = purchased_at

    def settle(
        self,
        won: bool,
        profit: float,
        exit_spot: Optional[float] = None,
        exit_digit: Optional[int] = None,
        sell_price: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.is_terminal:
            raise TradeStateError(f"Trade {self.id} is already {self.status.value}")
        self.status = TradeStatus.WON if won else TradeStatus.LOST
        self.profit = profit
        self.exit_spot = exit_spot
        self.exit_digit = exit_digit
        self.sell_price = sell_price
        self.error = error

    def fail(self, message: str) -> None:
        if self.is_terminal:
            raise TradeStateError(f"Trade {self.id} is already {self.status.value}")
        self.status = TradeStatus.ERROR
        self.error = message

    def cancel(self, message: str) -> None:
        if self.is_terminal:
            raise TradeStateError(f"Trade {self.id} is already {self.status.value}")
        self.status = TradeStatus.CANCELLED
        self.error = message

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class ContractTypePerformance:
    """Running win/loss record of one strategy."""

    strategy: str
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    total_profit: float = 0.0
    last_used: Optional[float] = None
    recent: deque = field(default_factory=lambda: deque(maxlen=PERFORMANCE_WINDOW))

    @property
    def win_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.wins / self.total_trades * 100

    @property
    def average_profit(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.total_profit / self.total_trades

    def record(self, won: bool, profit: float, timestamp: float) -> None:
        self.total_trades += 1
        if won:
            self.wins += 1
        else:
            self.losses += 1
        self.total_profit += profit
        self.last_used = timestamp
        self.recent.append(won)

    def recent_win_rate(self, window: int = PERFORMANCE_WINDOW) -> float:
        """Win fraction over the newest *window* outcomes."""
        outcomes = list(self.recent)[-window:]
        if not outcomes:
            return 0.0
        return sum(outcomes) / len(outcomes)

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": round(self.win_rate, 2),
            "average_profit": round(self.average_profit, 2),
            "total_profit": round(self.total_profit, 2),
            "last_used": self.last_used,
            "recent_performance": list(self.recent),
        }


@dataclass(frozen=True)
class SwitchEvent:
    timestamp: float
    from_strategy: str
    to_strategy: str
    reason: str
    consecutive_losses: int

    def to_dict(self) -> dict:
        return asdict(self)
