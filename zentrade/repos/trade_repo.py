"""Trade repository — SQLite journal of finished trades."""

from datetime import datetime, timezone
from typing import Optional

from zentrade.repos.db import get_connection
from zentrade.trading.models import Trade

_COLUMNS = (
    "id", "session_id", "strategy", "market", "contract_type", "stake",
    "duration", "barrier", "entry_spot", "exit_spot", "exit_digit", "payout",
    "buy_price", "sell_price", "contract_id", "transaction_id", "group_id",
    "status", "profit", "error", "created_at", "recorded_at",
)


class TradeRepo:
    """Data access layer for journaled trades.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def record_trade(self, trade: Trade, session_id: str) -> None:
        """Insert *trade*, replacing an earlier row with the same id."""
        row = {
            "id": trade.id,
            "session_id": session_id,
            "strategy": trade.strategy,
            "market": trade.market,
            "contract_type": trade.contract_type,
            "stake": trade.stake,
            "duration": trade.duration,
            "barrier": trade.barrier,
            "entry_spot": trade.entry_spot,
            "exit_spot": trade.exit_spot,
            "exit_digit": trade.exit_digit,
            "payout": trade.payout,
            "buy_price": trade.buy_price,
            "sell_price": trade.sell_price,
            "contract_id": trade.contract_id,
            "transaction_id": trade.transaction_id,
            "group_id": trade.group_id,
            "status": trade.status.value,
            "profit": trade.profit,
            "error": trade.error,
            "created_at": trade.timestamp,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        placeholders = ", ".join("?" for _ in _COLUMNS)
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO trades ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in _COLUMNS),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 50,
        status: Optional[str] = None,
        strategy: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> list[dict]:
        """Newest-first journal rows, optionally filtered."""
        clauses: list[str] = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if strategy is not None:
            clauses.append("strategy = ?")
            params.append(strategy)
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM trades {where} ORDER BY created_at DESC LIMIT ?",
                params,
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def get_total_profit(self, session_id: Optional[str] = None) -> float:
        conn = get_connection(self._db_path)
        try:
            if session_id is None:
                row = conn.execute("SELECT COALESCE(SUM(profit), 0) FROM trades").fetchone()
            else:
                row = conn.execute(
                    "SELECT COALESCE(SUM(profit), 0) FROM trades WHERE session_id = ?",
                    (session_id,),
                ).fetchone()
            return round(float(row[0]), 2)
        finally:
            conn.close()
