"""Broker data models — typed representations of streaming API objects."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _flag(value: Any) -> bool:
    """API flags arrive as ``1``/``0``, booleans or strings."""
    if isinstance(value, str):
        return value.lower() in ("1", "true")
    return bool(value)


@dataclass(frozen=True)
class Tick:
    """One timestamped price quote."""

    quote: float
    epoch: int
    symbol: str


@dataclass(frozen=True)
class Proposal:
    """A priced, not yet purchased contract quote."""

    id: str
    ask_price: float
    payout: float
    spot: Optional[float] = None


@dataclass(frozen=True)
class BuyReceipt:
    """Purchase acknowledgement."""

    contract_id: str
    buy_price: float
    payout: float
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class Balance:
    balance: float
    currency: str
    loginid: Optional[str] = None


@dataclass(frozen=True)
class ContractUpdate:
    """Snapshot of an open (or finished) contract.

    Built from ``proposal_open_contract`` payloads and from ``portfolio``
    entries, which share most field names.
    """

    contract_id: str
    is_settled: bool = False
    is_sold: bool = False
    is_expired: bool = False
    status: Optional[str] = None
    sell_price: Optional[float] = None
    profit: Optional[float] = None
    entry_spot: Optional[float] = None
    exit_tick: Optional[float] = None
    exit_spot: Optional[float] = None
    current_spot: Optional[float] = None
    payout: Optional[float] = None
    buy_price: Optional[float] = None

    @classmethod
    def from_payload(cls, data: dict) -> "ContractUpdate":
        status = data.get("status") or data.get("contract_status")
        return cls(
            contract_id=str(data["contract_id"]),
            is_settled=_flag(data.get("is_settled", False)),
            is_sold=_flag(data.get("is_sold", False)),
            is_expired=_flag(data.get("is_expired", False)),
            status=str(status).lower() if status else None,
            sell_price=_opt_float(data.get("sell_price")),
            profit=_opt_float(data.get("profit")),
            entry_spot=_opt_float(data.get("entry_tick", data.get("entry_spot"))),
            exit_tick=_opt_float(data.get("exit_tick")),
            exit_spot=_opt_float(data.get("exit_spot")),
            current_spot=_opt_float(data.get("current_spot")),
            payout=_opt_float(data.get("payout")),
            buy_price=_opt_float(data.get("buy_price")),
        )

    @property
    def final_spot(self) -> Optional[float]:
        """Best available exit price: exit tick, then current spot, then exit spot."""
        for value in (self.exit_tick, self.current_spot, self.exit_spot):
            if value is not None:
                return value
        return None


class SubscriptionType(str, Enum):
    TICKS = "ticks"
    BALANCE = "balance"
    PROPOSAL = "proposal"
    CONTRACT = "contract"


@dataclass
class Subscription:
    """A live stream registered with the session, replayed after reconnects."""

    type: SubscriptionType
    payload: dict
    subscription_id: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.type, tuple(sorted(self.payload.items())))
