"""
Channel transport.

The supervisor only sees the narrow protocols below; the production
implementation is a websockets client. Closures of any kind surface
as ChannelClosed so the supervisor can classify them without knowing
the library.
"""

from __future__ import annotations

import asyncio
from typing import Protocol, runtime_checkable

from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidURI,
)

from kairo_sync.constants import CHANNEL_HANDSHAKE_TIMEOUT_S


class ChannelOpenError(Exception):
    """Opening the channel failed (refused, timed out, rejected)."""


class ChannelClosed(Exception):
    """
    The channel is gone.

    server_initiated:
        True when the server deliberately closed the channel with a
        normal close code. Such closes call for a fresh connect, not
        for backoff.
    """

    def __init__(self, reason: str, *, server_initiated: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.server_initiated = server_initiated


# ---------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------

@runtime_checkable
class ChannelConnection(Protocol):
    async def send(self, frame: str) -> None: ...
    async def recv(self) -> str | bytes:
        """Next inbound frame. Raises ChannelClosed when the channel ends."""
    async def close(self) -> None: ...


@runtime_checkable
class ChannelTransport(Protocol):
    async def open(self, url: str, auth_token: str | None) -> ChannelConnection:
        """Open a channel. Raises ChannelOpenError on failure."""


# ---------------------------------------------------------------------
# websockets implementation
# ---------------------------------------------------------------------

def _closed(exc: ConnectionClosed) -> ChannelClosed:
    server_initiated = (
        isinstance(exc, ConnectionClosedOK)
        and exc.rcvd is not None
        and (exc.sent is None or bool(exc.rcvd_then_sent))
    )
    reason = "io server disconnect" if server_initiated else f"transport close: {exc}"
    return ChannelClosed(reason, server_initiated=server_initiated)


class WebSocketConnection:
    """ChannelConnection over an open websockets client connection."""

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    async def send(self, frame: str) -> None:
        try:
            await self._ws.send(frame)
        except ConnectionClosed as exc:
            raise _closed(exc) from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            raise _closed(exc) from exc

    async def close(self) -> None:
        await self._ws.close()


class WebSocketTransport:
    """Opens websocket channels with a bearer token."""

    def __init__(self, *, open_timeout_s: float = CHANNEL_HANDSHAKE_TIMEOUT_S) -> None:
        self._open_timeout_s = open_timeout_s

    async def open(self, url: str, auth_token: str | None) -> WebSocketConnection:
        headers: dict[str, str] = {}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        try:
            ws = await ws_connect(
                url,
                additional_headers=headers,
                open_timeout=self._open_timeout_s,
            )
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as exc:
            raise ChannelOpenError(f"{type(exc).__name__}: {exc}") from exc

        return WebSocketConnection(ws)
