"""ZenTrade — application entry point.

Boots the FastAPI internal server and provides the CLI entry point that runs
the trading engine alongside it.
"""

import logging

from fastapi import FastAPI

from zentrade.api.routers import router

app = FastAPI(title="ZenTrade Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("zentrade")

_ENGINE_POLL_SECONDS = 1.0


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments, wire the engine and run it."""
    import argparse
    import asyncio
    import signal

    from zentrade.api.routers import configure_routers
    from zentrade.config import load_config, load_trade_config
    from zentrade.credentials import SERVER_KEY, SERVER_URLS, resolve_credentials
    from zentrade.repos.db import init_db
    from zentrade.repos.settings_repo import SettingsRepo
    from zentrade.repos.trade_repo import TradeRepo

    parser = argparse.ArgumentParser(description="ZenTrade trading engine")
    parser.add_argument("--config", help="Trade config JSON (default: TRADE_CONFIG_PATH or zen.json)")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading engine without the API server",
    )
    parser.add_argument(
        "--save-token",
        metavar="TOKEN",
        help="Persist an API token in the settings store before starting",
    )
    parser.add_argument(
        "--server",
        choices=sorted(SERVER_URLS),
        help="Persist the preferred server before starting",
    )
    args = parser.parse_args()

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    init_db(config.db_path)
    settings = SettingsRepo(config.db_path)
    if args.save_token:
        settings.set("zen_token", args.save_token)
        logger.info("API token saved to settings store.")
    if args.server:
        settings.set(SERVER_KEY, args.server)

    trade_config = load_trade_config(args.config or config.trade_config_path)
    credentials = resolve_credentials(config, settings)
    trade_repo = TradeRepo(config.db_path)

    engine = _build_engine(config, credentials, trade_repo)
    engine.initialize(trade_config)
    configure_routers(engine, trade_repo=trade_repo)

    def handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, stopping gracefully.")
        engine.stop("Shutdown requested")

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    if args.engine_only:
        asyncio.run(_run_engine(engine))
    else:
        asyncio.run(_run_with_api(engine, config.api_port))


def _build_engine(config, credentials, trade_repo):
    """Assemble transport, session, client and engine for *credentials*."""
    from zentrade.broker.deriv_client import DerivClient
    from zentrade.broker.session import SessionManager
    from zentrade.broker.transport import WebSocketTransport
    from zentrade.clock import LoopClock
    from zentrade.engine import TradingEngine

    clock = LoopClock()
    session = SessionManager(
        credentials.url,
        WebSocketTransport(),
        clock,
        token=credentials.token,
        request_timeout=config.request_timeout,
    )
    return TradingEngine(DerivClient(session), clock=clock, trade_repo=trade_repo)


async def _run_engine(engine) -> None:
    """Start the engine and keep the process alive until it stops."""
    import asyncio

    from zentrade.errors import ZenTradeError

    try:
        await engine.start()
    except ZenTradeError as exc:
        logger.error("Engine failed to start: %s", exc)
        await engine.close()
        return

    while engine.running:
        await asyncio.sleep(_ENGINE_POLL_SECONDS)
    logger.info("Engine stopped: %s", engine.status().get("stop_reason"))
    await engine.close()


async def _run_with_api(engine, port: int = 8080) -> None:
    """Start the API server and the trading engine concurrently."""
    import asyncio

    import uvicorn

    from zentrade.errors import ZenTradeError

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _start_engine():
        try:
            await engine.start()
        except ZenTradeError as exc:
            logger.error("Engine failed to start: %s (use POST /engine/start to retry)", exc)

    logger.info("Internal API available at http://localhost:%d", port)
    results = await asyncio.gather(
        server.serve(),
        _start_engine(),
        return_exceptions=True,
    )
    await engine.close()
    logger.info("ZenTrade stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
