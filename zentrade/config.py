"""ZenTrade — application configuration.

Loads .env variables into a typed config object and the per-session trade
settings from ``zen.json``.
"""

import json
import os
import pathlib
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from zentrade.models.trade_config import TradeConfig, trade_config_from_dict

SERVERS = ("production", "binary")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables.

    Credentials left unset here are looked up in the settings store (see
    ``zentrade.credentials``).
    """

    api_token: Optional[str]
    app_id: Optional[str]
    server: Optional[str]  # "production" or "binary"
    db_path: str
    log_level: str
    api_port: int
    trade_config_path: str
    request_timeout: float


def _optional(name: str) -> Optional[str]:
    value = os.environ.get(name, "").strip()
    return value or None


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` naming the offending variable when a value is
    invalid.
    """
    load_dotenv(dotenv_path=env_path)

    server = _optional("DERIV_SERVER")
    if server is not None and server not in SERVERS:
        raise ValueError(
            f"DERIV_SERVER must be one of {', '.join(SERVERS)}, got '{server}'"
        )

    try:
        api_port = int(os.environ.get("API_PORT", "8080"))
        request_timeout = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "30"))
    except ValueError as exc:
        raise ValueError(f"Invalid numeric environment variable: {exc}") from exc
    if request_timeout <= 0:
        raise ValueError("REQUEST_TIMEOUT_SECONDS must be positive")

    return Config(
        api_token=_optional("DERIV_API_TOKEN"),
        app_id=_optional("DERIV_APP_ID"),
        server=server,
        db_path=os.environ.get("DB_PATH", "data/zentrade.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        api_port=api_port,
        trade_config_path=os.environ.get("TRADE_CONFIG_PATH", "zen.json"),
        request_timeout=request_timeout,
    )


def load_trade_config(path: str | pathlib.Path) -> TradeConfig:
    """Read and validate the JSON trade configuration.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the file is not valid JSON or holds invalid values.
    """
    path = pathlib.Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return trade_config_from_dict(data)
