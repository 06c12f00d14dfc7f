"""Session manager — connection lifecycle for the streaming API.

Owns the transport and the request correlator.  Drives authorization,
heartbeat pings, a liveness watchdog, exponential-backoff reconnection and
subscription replay, and demultiplexes inbound messages to listeners by type.
"""

import asyncio
import json
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Optional

from zentrade.broker.correlator import REQUEST_TIMEOUT, RequestCorrelator
from zentrade.broker.messages import (
    AuthorizeMessage,
    ErrorMessage,
    Message,
    PingMessage,
    decode_message,
)
from zentrade.broker.models import Subscription, SubscriptionType
from zentrade.broker.transport import Transport
from zentrade.clock import Clock, TimerHandle
from zentrade.errors import (
    ApiError,
    AuthorizationError,
    BrokerError,
    ConnectionLostError,
    NotConnectedError,
)

logger = logging.getLogger("zentrade.session")

HEARTBEAT_INTERVAL = 30.0
WATCHDOG_INTERVAL = 5.0
LIVENESS_TIMEOUT = 10.0
RECONNECT_DELAYS = (1.0, 2.0, 5.0, 10.0)
MAX_RECONNECT_ATTEMPTS = 10

_MIN_TOKEN_LENGTH = 10
_AUTH_ERROR_MESSAGES = {
    "InvalidToken": "Invalid API token. Please check your token and try again.",
    "AuthorizationRequired": "Authorization required. Please provide a valid API token.",
}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"
    ERROR = "error"


_OPEN_STATES = (
    ConnectionState.CONNECTING,
    ConnectionState.CONNECTED,
    ConnectionState.AUTHORIZED,
    ConnectionState.UNAUTHORIZED,
)


class SessionManager:
    """One authorized, self-healing connection.

    Args:
        url: Full websocket endpoint including ``app_id``.
        transport: The socket implementation.
        clock: Clock for timers.
        token: API token; authorization is skipped when ``None``.
        heartbeat_interval: Seconds between ``ping`` requests (``None`` disables).
        watchdog_interval: Seconds between liveness checks (``None`` disables).
        liveness_timeout: Silence, in seconds, after which the socket is
            declared dead.
        request_timeout: Seconds to wait for a correlated reply.
    """

    def __init__(
        self,
        url: str,
        transport: Transport,
        clock: Clock,
        token: Optional[str] = None,
        *,
        heartbeat_interval: Optional[float] = HEARTBEAT_INTERVAL,
        watchdog_interval: Optional[float] = WATCHDOG_INTERVAL,
        liveness_timeout: float = LIVENESS_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._url = url
        self._transport = transport
        self._clock = clock
        self._token = token
        self._heartbeat_interval = heartbeat_interval
        self._watchdog_interval = watchdog_interval
        self._liveness_timeout = liveness_timeout
        self._correlator = RequestCorrelator(clock, timeout=request_timeout)

        self._state = ConnectionState.DISCONNECTED
        self._listeners: dict[type, list[Callable[[Any], None]]] = defaultdict(list)
        self._state_callbacks: list[Callable[[ConnectionState], None]] = []
        self._error_callbacks: list[Callable[[str], None]] = []
        self._registry: dict[tuple, Subscription] = {}

        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[TimerHandle] = None
        self._watchdog: Optional[TimerHandle] = None
        self._reconnect_timer: Optional[TimerHandle] = None
        self._reconnect_attempts = 0
        self._last_message_at = 0.0
        self._closing = False

        self.account: Optional[AuthorizeMessage] = None
        self.last_auth_error: Optional[str] = None

    # ── Properties ───────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def authorized(self) -> bool:
        return self._state == ConnectionState.AUTHORIZED

    @property
    def has_credentials(self) -> bool:
        return bool(self._token)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_requests(self) -> int:
        return len(self._correlator)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._registry.values())

    # ── Callbacks ────────────────────────────────────────────────────────

    def add_listener(self, message_type: type, callback: Callable[[Any], None]) -> None:
        """Receive every inbound message of *message_type*."""
        self._listeners[message_type].append(callback)

    def on_state_change(self, callback: Callable[[ConnectionState], None]) -> None:
        self._state_callbacks.append(callback)

    def on_error(self, callback: Callable[[str], None]) -> None:
        self._error_callbacks.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug("Session state %s -> %s", self._state.value, state.value)
        self._state = state
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("State callback failed")

    def _report_error(self, message: str) -> None:
        for callback in list(self._error_callbacks):
            try:
                callback(message)
            except Exception:
                logger.exception("Error callback failed")

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the socket, authorize and replay registered subscriptions.

        Authorization failure leaves the session ``unauthorized`` with the
        socket open; it is reported through the error callbacks and kept in
        ``last_auth_error``.

        Raises:
            ConnectionLostError: If the socket cannot be opened.
        """
        if self._state in _OPEN_STATES:
            return
        self._closing = False
        self._cancel_reconnect()
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._transport.connect(self._url)
        except ConnectionLostError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise

        self._reconnect_attempts = 0
        self._last_message_at = self._clock.now()
        self._set_state(ConnectionState.CONNECTED)
        self._reader = asyncio.ensure_future(self._read_loop())
        self._start_timers()

        if self._token:
            try:
                await self.authorize()
            except AuthorizationError as exc:
                self._report_error(str(exc))
                return
            except BrokerError as exc:
                logger.warning("Authorization interrupted: %s", exc)
                return
        await self._replay_subscriptions()

    async def authorize(self, token: Optional[str] = None) -> AuthorizeMessage:
        """Authorize the open connection.

        Args:
            token: Token to use; defaults to the configured one.

        Raises:
            AuthorizationError: Token missing, malformed or rejected.
        """
        token = token or self._token
        if not token or len(token) < _MIN_TOKEN_LENGTH:
            message = "Invalid API token format. Please provide a valid API token."
            self.last_auth_error = message
            self._set_state(ConnectionState.UNAUTHORIZED)
            raise AuthorizationError(message)

        try:
            reply = await self.send_and_await({"authorize": token})
        except ApiError as exc:
            message = _AUTH_ERROR_MESSAGES.get(exc.code, exc.message)
            self.last_auth_error = message
            self._set_state(ConnectionState.UNAUTHORIZED)
            raise AuthorizationError(message) from exc

        self._token = token
        self.account = reply if isinstance(reply, AuthorizeMessage) else None
        self.last_auth_error = None
        self._set_state(ConnectionState.AUTHORIZED)
        logger.info(
            "Authorized as %s",
            self.account.loginid if self.account else "unknown account",
        )
        return reply

    async def close(self) -> None:
        """Planned shutdown: forget streams, close the socket, no reconnect."""
        self._closing = True
        self._cancel_reconnect()
        self._stop_timers()
        if self._transport.is_open:
            for sub in list(self._registry.values()):
                if sub.subscription_id is None:
                    continue
                try:
                    await self.send({"forget": sub.subscription_id})
                except BrokerError:
                    break
        self._registry.clear()
        self._stop_reader()
        self._correlator.reject_all(ConnectionLostError("Session closed"))
        await self._close_transport()
        self.account = None
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Session closed")

    # ── Requests ─────────────────────────────────────────────────────────

    async def send(self, payload: dict) -> None:
        """Transmit *payload* without waiting for a reply."""
        if not self._transport.is_open:
            raise NotConnectedError("Not connected")
        await self._transport.send(json.dumps(payload))

    async def send_and_await(self, payload: dict) -> Message:
        """Transmit *payload* with a fresh ``req_id`` and await the reply.

        Raises:
            ApiError: The API answered with an error envelope.
            RequestTimeoutError: No reply within the request timeout.
            ConnectionLostError: The connection dropped while waiting.
            NotConnectedError: No socket is open.
        """
        if not self._transport.is_open:
            raise NotConnectedError("Not connected")
        request_id = self._correlator.next_id()
        future = self._correlator.register(request_id)
        try:
            await self._transport.send(json.dumps({**payload, "req_id": request_id}))
        except BrokerError:
            self._correlator.discard(request_id)
            raise
        return await future

    # ── Subscriptions ────────────────────────────────────────────────────

    async def subscribe(self, kind: SubscriptionType, payload: dict) -> Subscription:
        """Open a stream and register it for replay after reconnects.

        A second subscription with an identical payload replaces the first
        registry entry instead of adding a duplicate.
        """
        request = {**payload, "subscribe": 1}
        reply = await self.send_and_await(request)
        sub = Subscription(type=kind, payload=request, subscription_id=reply.subscription_id)
        self._registry[sub.key] = sub
        return sub

    def find_subscription(self, kind: SubscriptionType, **match: Any) -> Optional[Subscription]:
        for sub in self._registry.values():
            if sub.type == kind and all(sub.payload.get(k) == v for k, v in match.items()):
                return sub
        return None

    async def forget(self, subscription: Subscription) -> None:
        """Drop *subscription* from the registry and tell the server to stop it."""
        self._registry.pop(subscription.key, None)
        if subscription.subscription_id is not None and self._transport.is_open:
            await self.send_and_await({"forget": subscription.subscription_id})

    async def _replay_subscriptions(self) -> None:
        replayed = 0
        for sub in list(self._registry.values()):
            try:
                reply = await self.send_and_await(sub.payload)
            except ApiError as exc:
                logger.warning("Could not replay %s subscription: %s", sub.type.value, exc)
                continue
            except BrokerError as exc:
                logger.warning("Subscription replay interrupted: %s", exc)
                return
            sub.subscription_id = reply.subscription_id
            replayed += 1
        if replayed:
            logger.info("Replayed %d subscription(s)", replayed)

    # ── Inbound ──────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        while True:
            try:
                raw = await self._transport.recv()
            except ConnectionLostError as exc:
                if not self._closing:
                    await self._handle_disconnection(str(exc))
                return
            await self._handle_frame(raw)

    async def _handle_frame(self, raw: str) -> None:
        self._last_message_at = self._clock.now()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            self._report_error(f"Malformed message: {exc}")
            return
        if not isinstance(data, dict):
            logger.warning("Dropping non-object frame")
            return

        message = decode_message(data)
        if isinstance(message, ErrorMessage):
            logger.warning("API error %s: %s", message.code, message.message)
            if message.req_id is not None:
                self._correlator.reject(
                    message.req_id,
                    ApiError(message.code, message.message, message.msg_type),
                )
            self._report_error(message.message)
            return

        if message.req_id is not None:
            self._correlator.resolve(message.req_id, message)

        if isinstance(message, PingMessage) and not message.is_reply:
            try:
                await self.send({"pong": 1})
            except BrokerError as exc:
                logger.warning("Could not answer ping: %s", exc)

        for callback in list(self._listeners.get(type(message), ())):
            try:
                callback(message)
            except Exception:
                logger.exception("Listener for %s failed", type(message).__name__)

    # ── Keep-alive ───────────────────────────────────────────────────────

    def _start_timers(self) -> None:
        self._stop_timers()
        if self._heartbeat_interval:
            self._heartbeat = self._clock.call_every(self._heartbeat_interval, self._send_heartbeat)
        if self._watchdog_interval:
            self._watchdog = self._clock.call_every(self._watchdog_interval, self._check_liveness)

    def _stop_timers(self) -> None:
        for timer in (self._heartbeat, self._watchdog):
            if timer is not None:
                timer.cancel()
        self._heartbeat = None
        self._watchdog = None

    async def _send_heartbeat(self) -> None:
        try:
            await self.send({"ping": 1})
        except BrokerError as exc:
            logger.debug("Heartbeat skipped: %s", exc)

    async def _check_liveness(self) -> None:
        silence = self._clock.now() - self._last_message_at
        if silence > self._liveness_timeout:
            logger.warning("No messages for %.0fs, treating connection as dead", silence)
            await self._handle_disconnection("Liveness watchdog timeout")

    # ── Reconnection ─────────────────────────────────────────────────────

    async def _handle_disconnection(self, reason: str) -> None:
        if self._state not in _OPEN_STATES:
            return
        logger.warning("Connection lost: %s", reason)
        self._stop_timers()
        self.account = None
        self._set_state(ConnectionState.DISCONNECTED)
        rejected = self._correlator.reject_all(ConnectionLostError("Connection lost"))
        if rejected:
            logger.info("Rejected %d pending request(s)", rejected)
        self._stop_reader()
        await self._close_transport()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_attempts >= MAX_RECONNECT_ATTEMPTS:
            logger.error("Giving up after %d reconnection attempts", self._reconnect_attempts)
            self._set_state(ConnectionState.ERROR)
            self._report_error("Max reconnection attempts reached")
            return
        delay = RECONNECT_DELAYS[min(self._reconnect_attempts, len(RECONNECT_DELAYS) - 1)]
        self._reconnect_attempts += 1
        logger.info(
            "Reconnecting in %.0fs (attempt %d/%d)",
            delay, self._reconnect_attempts, MAX_RECONNECT_ATTEMPTS,
        )
        self._reconnect_timer = self._clock.call_later(delay, self._reconnect)

    async def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self._closing:
            return
        try:
            await self.connect()
        except ConnectionLostError as exc:
            logger.warning("Reconnect failed: %s", exc)
            self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

    async def _close_transport(self) -> None:
        try:
            await self._transport.close()
        except (BrokerError, OSError) as exc:
            logger.debug("Ignoring error while closing transport: %s", exc)
