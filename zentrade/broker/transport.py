"""Websocket transport — one persistent duplex connection carrying JSON text frames."""

import logging
from typing import Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from zentrade.errors import ConnectionLostError, NotConnectedError

logger = logging.getLogger("zentrade.transport")

_OPEN_TIMEOUT = 15.0  # seconds
_CLOSE_CODE_NORMAL = 1000


class Transport(Protocol):
    """Minimal socket surface the session needs."""

    @property
    def is_open(self) -> bool: ...

    async def connect(self, url: str) -> None: ...

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """``websockets`` client connection.

    Keep-alive is handled by the session (application-level ``ping``), so the
    library's own ping frames are disabled.
    """

    def __init__(self, open_timeout: float = _OPEN_TIMEOUT) -> None:
        self._open_timeout = open_timeout
        self._ws: Optional[websockets.ClientConnection] = None
        self._lost = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._lost

    async def connect(self, url: str) -> None:
        """Open the socket.

        Raises:
            ConnectionLostError: When the handshake fails or times out.
        """
        try:
            self._ws = await websockets.connect(
                url,
                ping_interval=None,
                open_timeout=self._open_timeout,
                max_size=2 ** 22,
            )
        except (OSError, TimeoutError, websockets.InvalidHandshake) as exc:
            self._ws = None
            self._lost = False
            raise ConnectionLostError(f"Could not connect to {url}: {exc}") from exc
        self._lost = False
        logger.info("Websocket connected to %s", url.split("?")[0])

    async def send(self, text: str) -> None:
        if not self.is_open:
            raise NotConnectedError("Websocket is not connected")
        try:
            await self._ws.send(text)
        except ConnectionClosed as exc:
            self._lost = True
            raise ConnectionLostError("Connection lost") from exc

    async def recv(self) -> str:
        if not self.is_open:
            raise ConnectionLostError("Websocket is not connected")
        try:
            frame = await self._ws.recv()
        except ConnectionClosed as exc:
            self._lost = True
            raise ConnectionLostError(
                f"Connection closed (code={exc.rcvd.code if exc.rcvd else None})"
            ) from exc
        if isinstance(frame, bytes):
            return frame.decode("utf-8")
        return frame

    async def close(self) -> None:
        """Close the socket, including one already reported as lost."""
        ws, self._ws = self._ws, None
        self._lost = False
        if ws is not None:
            await ws.close(code=_CLOSE_CODE_NORMAL)
