"""Contract catalogue — strategy → contract mapping, digit rule and profit math.

Pure functions, no I/O.  Settlement profit is always recomputed here from the
trade's stored prices and contract parameters; the API's own ``profit`` field
is never trusted.
"""

from dataclasses import dataclass
from typing import Optional

ALL_STRATEGIES: tuple[str, ...] = (
    "Even",
    "Odd",
    "Matches",
    "Differs",
    "Over",
    "Under",
    "Rise",
    "Fall",
    "Straddle6",
)

STRADDLE_STRATEGY = "Straddle6"
STRADDLE_BARRIER = 6

STRATEGY_CONTRACT_TYPES: dict[str, str] = {
    "Even": "DIGITEVEN",
    "Odd": "DIGITODD",
    "Matches": "DIGITMATCH",
    "Differs": "DIGITDIFF",
    "Over": "DIGITOVER",
    "Under": "DIGITUNDER",
    "Rise": "CALL",
    "Fall": "PUT",
}

_BARRIER_CONTRACTS = frozenset({"DIGITMATCH", "DIGITDIFF", "DIGITOVER", "DIGITUNDER"})

# Quote precision per market; the last digit is read at this precision.
MARKET_DECIMALS: dict[str, int] = {
    "R_10": 3,
    "R_25": 3,
    "R_50": 4,
    "R_75": 4,
    "R_100": 2,
    "1HZ10V": 2,
    "1HZ25V": 2,
    "1HZ50V": 2,
    "1HZ75V": 2,
    "1HZ100V": 2,
}
_DEFAULT_DECIMALS = 2

# Share of the fair payout the house pays out when no quoted payout exists.
_PAYOUT_RETURN = 0.95


@dataclass(frozen=True)
class ContractSpec:
    """One contract leg to buy."""

    contract_type: str
    barrier: Optional[int] = None


@dataclass(frozen=True)
class SettlementResult:
    won: bool
    profit: float
    exit_digit: Optional[int]


def needs_barrier(contract_type: str) -> bool:
    return contract_type in _BARRIER_CONTRACTS


def contract_type_for(strategy: str) -> str:
    """Map a single-leg strategy to its contract type code.

    Raises:
        KeyError: If *strategy* is unknown or has more than one leg.
    """
    if strategy not in STRATEGY_CONTRACT_TYPES:
        available = ", ".join(sorted(STRATEGY_CONTRACT_TYPES))
        raise KeyError(f"Unknown strategy '{strategy}'. Available: {available}")
    return STRATEGY_CONTRACT_TYPES[strategy]


def contract_specs(strategy: str, digit: int) -> list[ContractSpec]:
    """Contract legs for *strategy* with prediction digit *digit*."""
    if strategy == STRADDLE_STRATEGY:
        return [
            ContractSpec("DIGITOVER", STRADDLE_BARRIER),
            ContractSpec("DIGITUNDER", STRADDLE_BARRIER),
        ]
    contract_type = contract_type_for(strategy)
    return [ContractSpec(contract_type, digit if needs_barrier(contract_type) else None)]


def market_decimals(market: str) -> int:
    return MARKET_DECIMALS.get(market, _DEFAULT_DECIMALS)


def last_digit(quote: float, decimals: int = _DEFAULT_DECIMALS) -> int:
    """Last digit of *quote* printed with *decimals* places.

    ``last_digit(1234.56, 2) == 6``.  Rounding (not truncation) absorbs float
    representation error such as ``0.1 + 0.2``.
    """
    return int(round(quote * 10 ** decimals)) % 10


# ── Outcome ──────────────────────────────────────────────────────────────


def _win_probability(contract_type: str, barrier: Optional[int]) -> float:
    if contract_type in ("DIGITEVEN", "DIGITODD", "CALL", "PUT"):
        return 0.5
    b = barrier if barrier is not None else 0
    if contract_type == "DIGITMATCH":
        return 0.1
    if contract_type == "DIGITDIFF":
        return 0.9
    if contract_type == "DIGITOVER":
        return max(0, 9 - b) / 10
    if contract_type == "DIGITUNDER":
        return max(0, b) / 10
    raise ValueError(f"Unsupported contract type: {contract_type}")


def fallback_payout(contract_type: str, barrier: Optional[int], stake: float) -> float:
    """Deterministic payout used when the purchase carried no quoted payout."""
    p = _win_probability(contract_type, barrier)
    if p <= 0:
        return round(stake, 2)
    return round(stake * _PAYOUT_RETURN / p, 2)


def is_winning(
    contract_type: str,
    barrier: Optional[int],
    entry_spot: float,
    exit_spot: float,
    decimals: int = _DEFAULT_DECIMALS,
) -> bool:
    """Whether a contract finishing at *exit_spot* pays out."""
    if contract_type == "CALL":
        return exit_spot > entry_spot
    if contract_type == "PUT":
        return exit_spot < entry_spot

    digit = last_digit(exit_spot, decimals)
    if contract_type == "DIGITEVEN":
        return digit % 2 == 0
    if contract_type == "DIGITODD":
        return digit % 2 == 1
    if barrier is None:
        raise ValueError(f"{contract_type} requires a barrier digit")
    if contract_type == "DIGITMATCH":
        return digit == barrier
    if contract_type == "DIGITDIFF":
        return digit != barrier
    if contract_type == "DIGITOVER":
        return digit > barrier
    if contract_type == "DIGITUNDER":
        return digit < barrier
    raise ValueError(f"Unsupported contract type: {contract_type}")


def compute_settlement(
    contract_type: str,
    barrier: Optional[int],
    stake: float,
    entry_spot: float,
    exit_spot: float,
    payout: Optional[float] = None,
    decimals: int = _DEFAULT_DECIMALS,
) -> SettlementResult:
    """Win/loss and profit for a finished contract.

    Args:
        contract_type: Contract type code, e.g. ``"DIGITEVEN"``.
        barrier: Prediction digit for digit-threshold contracts.
        stake: Amount paid.
        entry_spot: Price sample the trade was opened on.
        exit_spot: Final price sample.
        payout: Payout quoted at purchase; falls back to
            ``fallback_payout()`` when missing or non-positive.
        decimals: Quote precision of the market.

    Returns:
        ``SettlementResult`` with profit rounded to 2 decimals.
    """
    won = is_winning(contract_type, barrier, entry_spot, exit_spot, decimals)
    digit = None if contract_type in ("CALL", "PUT") else last_digit(exit_spot, decimals)
    if won:
        gross = payout if payout and payout > 0 else fallback_payout(contract_type, barrier, stake)
        profit = round(gross - stake, 2)
    else:
        profit = round(-stake, 2)
    return SettlementResult(won=won, profit=profit, exit_digit=digit)
