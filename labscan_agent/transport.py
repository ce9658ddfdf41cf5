"""Control-channel transport.

The session manager talks to the admin through the small :class:`Transport`
protocol so the state machine can be driven by a scripted fake in tests.
The real implementation wraps a :mod:`websockets` client connection and
translates library errors into :class:`TransportError`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

import websockets
from websockets.asyncio.client import ClientConnection, connect as ws_connect

from .errors import TransportError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Protocol for the control channel — websocket or fake."""

    async def send(self, message: str) -> None:
        ...

    async def recv(self) -> str:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[str], Awaitable[Transport]]


class WebSocketTransport:
    """Transport over a websockets client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except (websockets.WebSocketException, OSError) as e:
            raise TransportError(f"send failed: {e}") from e

    async def recv(self) -> str:
        try:
            raw = await self._ws.recv()
        except (websockets.WebSocketException, OSError) as e:
            raise TransportError(f"connection closed: {e}") from e
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return raw

    async def close(self) -> None:
        try:
            await self._ws.close()
        except (websockets.WebSocketException, OSError):
            logger.debug("Error while closing websocket", exc_info=True)


def websocket_connector(open_timeout: float = 10.0) -> Connector:
    """Return a connector that dials the admin over websockets."""

    async def connect(url: str) -> Transport:
        logger.info("WS dial url=%s", url)
        try:
            ws = await ws_connect(
                url,
                open_timeout=open_timeout,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
        except (websockets.WebSocketException, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"dial failed: {e}") from e
        return WebSocketTransport(ws)

    return connect
