"""Session statistics — pure functions over the trade list."""

from collections import defaultdict
from typing import Optional

from zentrade.trading.models import Trade, TradeStatus


def session_stats(trades: list[Trade]) -> dict:
    """Counts and totals for the current session.

    Returns:
        Dict with ``total_trades``, ``wins``, ``losses``, ``pending``,
        ``errors``, ``cancelled``, ``win_rate`` (percent of settled trades),
        ``total_profit`` and ``total_staked``.
    """
    counts = defaultdict(int)
    for trade in trades:
        counts[trade.status] += 1
    settled = [t for t in trades if t.is_settled]
    wins = counts[TradeStatus.WON]
    return {
        "total_trades": len(trades),
        "wins": wins,
        "losses": counts[TradeStatus.LOST],
        "pending": counts[TradeStatus.PENDING],
        "errors": counts[TradeStatus.ERROR],
        "cancelled": counts[TradeStatus.CANCELLED],
        "win_rate": round(wins / len(settled) * 100, 2) if settled else 0.0,
        "total_profit": round(sum(t.profit for t in settled), 2),
        "total_staked": round(sum(t.stake for t in settled), 2),
    }


def profit_analytics(trades: list[Trade]) -> dict:
    """Profit breakdown of settled trades.

    Returns:
        Dict with ``average_win``, ``average_loss``, ``largest_win``,
        ``largest_loss``, ``profit_factor`` (``None`` without losses),
        ``max_drawdown`` (absolute, from the cumulative profit curve),
        ``profit_curve`` and ``by_contract_type``.
    """
    settled = sorted((t for t in trades if t.is_settled), key=lambda t: t.timestamp)
    profits = [t.profit for t in settled]
    wins = [p for p in profits if p > 0]
    losses = [p for p in profits if p <= 0]

    gross_loss = abs(sum(losses))
    profit_factor: Optional[float] = (
        round(sum(wins) / gross_loss, 4) if gross_loss > 0 else None
    )

    by_type: dict[str, dict] = {}
    for trade in settled:
        entry = by_type.setdefault(
            trade.contract_type, {"trades": 0, "wins": 0, "profit": 0.0}
        )
        entry["trades"] += 1
        entry["wins"] += 1 if trade.status == TradeStatus.WON else 0
        entry["profit"] = round(entry["profit"] + trade.profit, 2)

    curve: list[float] = []
    running = 0.0
    for p in profits:
        running = round(running + p, 2)
        curve.append(running)

    return {
        "average_win": round(sum(wins) / len(wins), 2) if wins else 0.0,
        "average_loss": round(sum(losses) / len(losses), 2) if losses else 0.0,
        "largest_win": max(wins) if wins else 0.0,
        "largest_loss": min(losses) if losses else 0.0,
        "profit_factor": profit_factor,
        "max_drawdown": _max_drawdown(profits),
        "profit_curve": curve,
        "by_contract_type": by_type,
    }


def _max_drawdown(profits: list[float]) -> float:
    """Largest peak-to-trough fall of the cumulative profit curve."""
    peak = 0.0
    cumulative = 0.0
    worst = 0.0
    for p in profits:
        cumulative += p
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return round(worst, 2)
