"""
Persistent channels used by the Connection Manager.

A channel carries text frames in both directions:
    await channel.send(text)
    text = await channel.recv()   # raises ChannelClosed when the peer goes away
    await channel.close()

A dialer is an async callable returning a fresh open channel. The host side
dials out with ``websocket_dialer``; the relay side is handed channels by its
websocket route through an ``AcceptDialer``.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

import websockets
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..logger import get_logger
from ..utils.config import CONNECT_TIMEOUT

logger = get_logger("vaultbridge-channels")


class ChannelClosed(ConnectionError):
    """The peer closed the channel or the transport failed."""


class Channel(Protocol):
    async def send(self, text: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


Dialer = Callable[[], Awaitable[Channel]]


class WebSocketClientChannel:
    """Outbound channel over a ``websockets`` client connection."""

    def __init__(self, ws):
        self._ws = ws

    async def send(self, text: str) -> None:
        try:
            await self._ws.send(text)
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelClosed(str(e)) from e

    async def recv(self) -> str:
        try:
            raw = await self._ws.recv()
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelClosed(str(e)) from e
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return raw

    async def close(self) -> None:
        await self._ws.close()


def websocket_dialer(
    url: str,
    open_timeout: float = CONNECT_TIMEOUT,
    extra_headers: Optional[dict] = None,
) -> Dialer:
    """Build a dialer that opens a new websocket to ``url`` on each call."""

    async def dial() -> Channel:
        kwargs = {"open_timeout": open_timeout, "ping_interval": 20, "ping_timeout": 20}
        if extra_headers:
            kwargs["additional_headers"] = extra_headers
        ws = await websockets.connect(url, **kwargs)
        return WebSocketClientChannel(ws)

    return dial


class StarletteWebSocketChannel:
    """Inbound channel over an accepted Starlette websocket."""

    def __init__(self, ws: WebSocket):
        self._ws = ws
        self._closed = asyncio.Event()

    async def send(self, text: str) -> None:
        if self._closed.is_set():
            raise ChannelClosed("websocket closed")
        try:
            await self._ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            self._closed.set()
            raise ChannelClosed(str(e)) from e

    async def recv(self) -> str:
        if self._closed.is_set():
            raise ChannelClosed("websocket closed")
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            self._closed.set()
            raise ChannelClosed(f"websocket disconnected ({message.get('code', 1000)})")
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._ws.application_state != WebSocketState.DISCONNECTED:
            try:
                await self._ws.close()
            except RuntimeError:
                # Peer already gone
                pass

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()


class AcceptDialer:
    """
    Dialer for the accepting side.

    ``offer()`` hands over a freshly accepted channel; ``__call__`` waits for
    the next one. An offered channel nobody claimed is closed when a newer
    one arrives.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    async def offer(self, channel: Channel) -> None:
        while not self._queue.empty():
            stale = self._queue.get_nowait()
            logger.debug("Closing unclaimed channel")
            await stale.close()
        self._queue.put_nowait(channel)

    async def __call__(self) -> Channel:
        return await self._queue.get()
