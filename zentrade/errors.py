"""ZenTrade — exception hierarchy.

Connection-level errors are recovered by the session (reconnect), trade-level
errors end up on the trade itself, authorization errors stop ``start()``.
"""

from typing import Optional


class ZenTradeError(Exception):
    """Base class for every error raised by the engine."""


# ── Wire / broker ────────────────────────────────────────────────────────


class BrokerError(ZenTradeError):
    """Any failure talking to the streaming API."""


class ConnectionLostError(BrokerError):
    """The socket closed (or was declared dead) while a request was open."""


class NotConnectedError(BrokerError):
    """A request was issued while no transport is open."""


class RequestTimeoutError(BrokerError):
    """No reply arrived for a correlated request in time."""


class ApiError(BrokerError):
    """An error envelope returned by the API.

    Args:
        code: The API error code, e.g. ``"InsufficientBalance"``.
        message: Human readable message from the API.
        msg_type: The ``msg_type`` of the failed request, when known.
    """

    def __init__(
        self, code: str, message: str, msg_type: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.msg_type = msg_type

    def __repr__(self) -> str:
        return f"ApiError(code={self.code!r}, message={self.message!r})"


# ── Session / trading ────────────────────────────────────────────────────


class AuthorizationError(ZenTradeError):
    """Missing or rejected API token."""


class TradeValidationError(ZenTradeError, ValueError):
    """A trade request failed local validation before any network call."""


class TradeStateError(ZenTradeError):
    """An illegal trade status transition was attempted."""
