"""WebSocket peers for the relay.

FastAPIPeer wraps the accepted downstream socket, WebsocketsPeer wraps the
upstream client connection opened with the websockets library.
"""

import asyncio
import re
import sys
from typing import Optional
from urllib.parse import quote

import websockets
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..interfaces import Frame, FrameError, Peer, PeerClosed, RelayConnectionError


class FastAPIPeer(Peer):
    """Downstream peer: a WebSocket already accepted by the server."""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket
        self._closed = False

    async def send(self, frame: Frame) -> None:
        if self._closed or self._ws.client_state == WebSocketState.DISCONNECTED:
            raise PeerClosed(reason="downstream gone")
        try:
            if isinstance(frame, bytes):
                await self._ws.send_bytes(frame)
            else:
                await self._ws.send_text(frame)
        except WebSocketDisconnect as e:
            self._closed = True
            raise PeerClosed(e.code, e.reason or "") from e
        except RuntimeError as e:
            raise PeerClosed(reason=str(e)) from e

    async def receive(self) -> Frame:
        if self._closed:
            raise PeerClosed(reason="downstream gone")

        message = await self._ws.receive()
        kind = message.get("type")

        if kind == "websocket.disconnect":
            self._closed = True
            raise PeerClosed(message.get("code"), message.get("reason") or "")

        if kind != "websocket.receive":
            raise FrameError(f"Unexpected downstream message: {kind}")

        if message.get("bytes") is not None:
            return message["bytes"]
        if message.get("text") is not None:
            return message["text"]
        raise FrameError("Downstream message carried no data")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True

        if (
            self._ws.client_state == WebSocketState.DISCONNECTED
            or self._ws.application_state == WebSocketState.DISCONNECTED
        ):
            return

        try:
            await self._ws.close(code=code, reason=reason)
        except RuntimeError as e:
            # Client went away between the state check and the close
            print(f"[Relay] Downstream close: {e}", file=sys.stderr)


class WebsocketsPeer(Peer):
    """Upstream peer: a websockets client connection."""

    def __init__(self, connection):
        self._conn = connection

    @staticmethod
    def _closed_error(e: ConnectionClosed) -> PeerClosed:
        frame = e.rcvd or e.sent
        if frame is None:
            # No close frame either way: abnormal closure
            return PeerClosed(1006, "connection lost")
        return PeerClosed(frame.code, frame.reason)

    async def send(self, frame: Frame) -> None:
        try:
            await self._conn.send(frame)
        except ConnectionClosed as e:
            raise self._closed_error(e) from e

    async def receive(self) -> Frame:
        try:
            return await self._conn.recv()
        except ConnectionClosed as e:
            raise self._closed_error(e) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._conn.close(code=code, reason=reason)


def with_credential(url: str, credential: Optional[str]) -> str:
    """Add the credential as the `key` query parameter."""
    if not credential:
        return url
    base, hash_mark, fragment = url.partition("#")
    separator = "&" if "?" in base else "?"
    url = f"{base}{separator}key={quote(credential, safe='')}"
    return f"{url}{hash_mark}{fragment}"


def redact(url: str) -> str:
    """Hide the credential when logging an upstream address."""
    return re.sub(r"([?&]key=)[^&#]*", r"\1***", url)


async def connect_upstream(url: str, timeout: Optional[float] = 30.0) -> Peer:
    """Open the upstream WebSocket.

    Raises:
        RelayConnectionError: Unreachable, refused, bad address or timed out
    """
    try:
        connection = await websockets.connect(url, open_timeout=timeout, max_size=None)
    except (OSError, asyncio.TimeoutError, WebSocketException) as e:
        detail = str(e) or type(e).__name__
        raise RelayConnectionError(f"Upstream connection failed: {detail}") from e
    return WebsocketsPeer(connection)
