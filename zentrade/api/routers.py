"""Internal API routers — /status, /trades, /stats, /switching, /settlement, /engine endpoints.

No business logic.  Delegates to the injected ``TradingEngine`` and the
trade journal.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query

from zentrade.errors import ZenTradeError

logger = logging.getLogger("zentrade.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_engine = None       # Set via configure_routers()
_trade_repo = None   # Set via configure_routers()


def configure_routers(engine, trade_repo=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        engine: A ``TradingEngine`` instance (or duck-type for tests).
        trade_repo: Optional ``TradeRepo`` for journal queries.
    """
    global _engine, _trade_repo  # noqa: PLW0603
    _engine = engine
    _trade_repo = trade_repo


# ── Read endpoints ───────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Return engine and connection status."""
    if _engine is None:
        return {"running": False, "error": "No engine"}
    return _engine.status()


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[str] = Query(default=None),
    strategy: Optional[str] = Query(default=None),
    source: str = Query(default="session", pattern="^(session|journal)$"),
):
    """Return recent trades from the live session or the journal."""
    if source == "journal":
        if _trade_repo is None:
            return {"trades": [], "total": 0}
        rows = _trade_repo.get_trades(limit=limit, status=status, strategy=strategy)
        return {"trades": rows, "total": len(rows)}
    if _engine is None:
        return {"trades": [], "total": 0}
    trades = _engine.get_recent_trades(limit=100)
    if status is not None:
        trades = [t for t in trades if t["status"] == status]
    if strategy is not None:
        trades = [t for t in trades if t["strategy"] == strategy]
    trades = trades[:limit]
    return {"trades": trades, "total": len(trades)}


@router.get("/stats")
async def get_stats():
    if _engine is None:
        return {}
    return _engine.get_stats()


@router.get("/analytics")
async def get_analytics():
    """Return profit breakdown of the current session."""
    if _engine is None:
        return {}
    return _engine.get_profit_analytics()


@router.get("/switching")
async def get_switching_stats():
    if _engine is None:
        return {}
    return _engine.get_contract_switching_stats()


@router.get("/switching/performance/{strategy}")
async def get_strategy_performance(strategy: str):
    """Return performance figures for a single strategy."""
    if _engine is None:
        return {"error": "No engine"}
    perf = _engine.get_contract_performance(strategy)
    if perf is None:
        return {"error": f"Unknown strategy: {strategy}"}
    return perf


# ── Control actions ──────────────────────────────────────────────────────


@router.post("/switching/manual")
async def manual_switch(body: dict):
    """Switch strategy; body ``{"target": "Odd"}`` or ``{}`` for next in rotation."""
    if _engine is None:
        return {"error": "No engine"}
    target = body.get("target")
    try:
        switched = _engine.manual_contract_switch(target)
    except (ValueError, RuntimeError) as exc:
        return {"error": str(exc)}
    logger.info("Manual switch via API to %s: %s", target or "next", switched)
    return {"switched": switched, "strategy": _engine.active_strategy}


@router.post("/session/reset")
async def reset_session():
    if _engine is None:
        return {"error": "No engine"}
    _engine.reset_session_public()
    return {"status": "reset", "session_id": _engine.session_id}


@router.post("/settlement/reconcile")
async def reconcile_contracts(force: bool = Query(default=False)):
    """Check all pending contracts now; ``force`` assumes a loss for stale ones."""
    if _engine is None:
        return {"error": "No engine"}
    if force:
        result = await _engine.force_settlement_check()
    else:
        result = await _engine.reconcile_all_contracts()
    logger.info("Settlement reconciliation via API: %s", result)
    return result


@router.post("/engine/start")
async def start_engine():
    """Start trading with the configured strategy."""
    if _engine is None:
        return {"error": "No engine"}
    if _engine.running:
        return {"status": "already_running"}
    try:
        await _engine.start()
    except (ZenTradeError, RuntimeError) as exc:
        logger.warning("Engine start via API failed: %s", exc)
        return {"error": str(exc)}
    logger.info("Engine started via API.")
    return {"status": "running"}


@router.post("/engine/stop")
async def stop_engine():
    if _engine is None:
        return {"error": "No engine"}
    _engine.stop("Stopped via API")
    logger.info("Engine stopped via API.")
    return {"status": "stopped"}
