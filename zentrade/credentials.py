"""Credential resolution — token, app id and server through ordered fallback chains.

Explicit configuration wins; otherwise the settings store is searched key by
key in the order the client has historically written them.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from zentrade.config import Config

logger = logging.getLogger("zentrade.credentials")

SERVER_URLS = {
    "production": "wss://ws.derivws.com/websockets/v3",
    "binary": "wss://ws.binaryws.com/websockets/v3",
}
DEFAULT_SERVER = "production"
DEFAULT_APP_ID = "1089"

ACCOUNTS_KEY = "client.accounts"
ACTIVE_LOGINID_KEY = "active_loginid"
TOKEN_KEYS = (
    "authToken",
    "deriv_token",
    "api_token",
    "client.token",
    "speed_mode_token",
    "zen_token",
)
APP_ID_KEYS = ("zen_app_id", "speed_mode_app_id", "config.app_id")
SERVER_KEY = "zen_preferred_server"

_MIN_TOKEN_LENGTH = 10
# App id of a retired registration; stored copies must not be used.
_RETIRED_APP_ID = "80058"


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...


@dataclass(frozen=True)
class Credentials:
    token: Optional[str]
    app_id: str
    server: str

    @property
    def url(self) -> str:
        return f"{SERVER_URLS[self.server]}?app_id={self.app_id}"


def _account_token(store: KeyValueStore) -> Optional[str]:
    raw_accounts = store.get(ACCOUNTS_KEY)
    loginid = store.get(ACTIVE_LOGINID_KEY)
    if not raw_accounts or not loginid:
        return None
    try:
        accounts = json.loads(raw_accounts)
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable %s entry", ACCOUNTS_KEY)
        return None
    account = accounts.get(loginid) if isinstance(accounts, dict) else None
    if isinstance(account, dict):
        return account.get("token") or None
    return None


def resolve_token(store: KeyValueStore, explicit: Optional[str] = None) -> Optional[str]:
    """First usable token: explicit, active account, then legacy keys."""
    if explicit:
        return explicit
    token = _account_token(store)
    if token:
        return token
    for key in TOKEN_KEYS:
        value = store.get(key)
        if value and len(value) > _MIN_TOKEN_LENGTH:
            return value
    return None


def resolve_app_id(store: KeyValueStore, explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit
    for key in APP_ID_KEYS:
        value = store.get(key)
        if value and value != _RETIRED_APP_ID:
            return value
    return DEFAULT_APP_ID


def resolve_server(store: KeyValueStore, explicit: Optional[str] = None) -> str:
    for candidate in (explicit, store.get(SERVER_KEY)):
        if candidate in SERVER_URLS:
            return candidate
    return DEFAULT_SERVER


def resolve_credentials(config: Config, store: KeyValueStore) -> Credentials:
    """Combine environment configuration with the persisted settings store."""
    creds = Credentials(
        token=resolve_token(store, config.api_token),
        app_id=resolve_app_id(store, config.app_id),
        server=resolve_server(store, config.server),
    )
    logger.info(
        "Using %s server, app id %s, token %s",
        creds.server, creds.app_id, "present" if creds.token else "missing",
    )
    return creds
