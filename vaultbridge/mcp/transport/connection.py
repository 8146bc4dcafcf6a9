"""
Connection Manager - one persistent channel to a counterpart.

The whole lifecycle is a single task:

    dial -> Connected -> receive until the channel drops -> Disconnected
         -> wait reconnect_interval -> dial again ...

``stop()`` ends it in the terminal ShutDown state.

Inbound frames are classified on arrival: a reply whose id is pending in the
Correlation Table settles that entry with the whole reply envelope; every
other frame (request, notification, unmatched reply) goes to ``on_message``.
Nothing pending survives a disconnect: the table is rejected wholesale with
ConnectionClosedError.
"""

import asyncio
import inspect
import itertools
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from ..envelope import decode, encode, is_reply
from ..errors import (
    JSONRPC_VERSION,
    ConnectionClosedError,
    ProtocolError,
)
from ..logger import bind_peer, envelope_label, get_logger
from ..utils.config import (
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_PROTOCOL_VERSION,
    DEFAULT_RECONNECT_INTERVAL,
    HANDSHAKE_TIMEOUT,
    RELAY_REQUEST_TIMEOUT,
    SERVER_NAME,
    SERVER_VERSION,
)
from .channels import Channel, ChannelClosed, Dialer
from .correlation import CorrelationTable

logger = get_logger("vaultbridge-connection")

MessageHandler = Callable[[dict], Optional[Awaitable[Any]]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SHUT_DOWN = "shut_down"


class ConnectionManager:
    """
    Owns the persistent channel and its reconnect policy.

    Args:
        dial: Async callable returning a new open channel
        on_message: Receives every inbound envelope that is not a pending reply;
            may return an awaitable, which is run as a tracked task
        correlation: Table shared with callers of ``request()``
        reconnect_interval: Fixed delay before each reconnect attempt
        max_attempts: Reconnect attempts allowed after the last successful
            connection (0 = unlimited)
        request_timeout: Default deadline for ``request()``
        handshake: Send ``initialize`` on every successful connect
        client_info: ``clientInfo`` reported in the handshake
        name: Label used in log lines
    """

    def __init__(
        self,
        dial: Dialer,
        *,
        on_message: MessageHandler,
        correlation: Optional[CorrelationTable] = None,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        request_timeout: float = RELAY_REQUEST_TIMEOUT,
        handshake: bool = False,
        client_info: Optional[dict] = None,
        name: str = "connection",
    ):
        self._dial = dial
        self._on_message = on_message
        self.correlation = correlation if correlation is not None else CorrelationTable()
        self.reconnect_interval = reconnect_interval
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout
        self.handshake = handshake
        self.client_info = client_info or {"name": SERVER_NAME, "version": SERVER_VERSION}
        self.name = name

        self.state = ConnectionState.DISCONNECTED
        self.attempt = 0
        self.connect_count = 0
        self._channel: Optional[Channel] = None
        self._task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._handshake_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Begin connecting. No-op when shut down or already running."""
        if self.state is ConnectionState.SHUT_DOWN or self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"{self.name}-lifecycle"
        )

    async def stop(self) -> None:
        """Close the channel and enter ShutDown. Safe to call repeatedly."""
        if self.state is ConnectionState.SHUT_DOWN:
            return
        self._set_state(ConnectionState.SHUT_DOWN)
        self._connected.clear()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        channel, self._channel = self._channel, None
        if channel is not None:
            await self._close_channel(channel)

        self.correlation.reject_all(ConnectionClosedError("Connection shut down"))

        for pending in list(self._tasks):
            pending.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def join(self) -> None:
        """Wait until the lifecycle task ends (shut down or attempts exhausted)."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until Connected. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is ConnectionState.SHUT_DOWN or self.state is state:
            return
        logger.info("%s: %s -> %s", self.name, self.state.value, state.value)
        self.state = state

    async def _run(self) -> None:
        bind_peer(self.name)
        while self.state is not ConnectionState.SHUT_DOWN:
            self._set_state(ConnectionState.CONNECTING)
            try:
                channel = await self._dial()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("%s: connect failed: %s", self.name, e)
                self._on_disconnect(f"connect failed: {e}")
                if not await self._wait_before_retry():
                    return
                continue

            if self.state is ConnectionState.SHUT_DOWN:
                await self._close_channel(channel)
                return

            self._on_connect(channel)
            reason = "closed"
            try:
                await self._receive_loop(channel)
            except ChannelClosed as e:
                reason = str(e) or "closed"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("%s: receive loop failed: %s", self.name, e)
                reason = f"error: {e}"
            finally:
                if self._channel is channel:
                    self._channel = None
                    await self._close_channel(channel)
                    self._on_disconnect(reason)

            if not await self._wait_before_retry():
                return

    def _on_connect(self, channel: Channel) -> None:
        self._channel = channel
        self.attempt = 0
        self.connect_count += 1
        self._set_state(ConnectionState.CONNECTED)
        self._connected.set()
        if self.handshake:
            self._send_handshake()

    def _on_disconnect(self, reason: str) -> None:
        self._connected.clear()
        rejected = self.correlation.reject_all(
            ConnectionClosedError(f"Connection closed ({reason})")
        )
        if rejected:
            logger.warning("%s: %d request(s) lost on disconnect", self.name, rejected)
        self._set_state(ConnectionState.DISCONNECTED)

    async def _wait_before_retry(self) -> bool:
        """
        Count and wait out one reconnect attempt.

        Returns:
            False when the lifecycle should end (shut down or attempts exhausted)
        """
        if self.state is ConnectionState.SHUT_DOWN:
            return False
        if self.max_attempts > 0 and self.attempt >= self.max_attempts:
            logger.error(
                "%s: giving up after %d reconnect attempt(s)", self.name, self.attempt
            )
            return False
        self.attempt += 1
        logger.info(
            "%s: reconnecting in %.1fs (attempt %d%s)",
            self.name,
            self.reconnect_interval,
            self.attempt,
            f"/{self.max_attempts}" if self.max_attempts else "",
        )
        await asyncio.sleep(self.reconnect_interval)
        return self.state is not ConnectionState.SHUT_DOWN

    async def _close_channel(self, channel: Channel) -> None:
        try:
            await channel.close()
        except Exception as e:
            logger.debug("%s: error closing channel: %s", self.name, e)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _receive_loop(self, channel: Channel) -> None:
        while True:
            raw = await channel.recv()
            self._handle_frame(raw)

    def _handle_frame(self, raw: str) -> None:
        try:
            envelope = decode(raw)
        except ProtocolError as e:
            logger.warning("%s: dropping frame: %s", self.name, e.message)
            return
        logger.debug("%s: received %s", self.name, envelope_label(envelope))

        if is_reply(envelope) and envelope["id"] in self.correlation:
            self.correlation.resolve(envelope["id"], envelope)
            return

        try:
            result = self._on_message(envelope)
        except Exception as e:
            logger.error(
                "%s: handler failed for %s: %s", self.name, envelope_label(envelope), e
            )
            return
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, awaitable: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(self._log_task_failure)
        return task

    def _log_task_failure(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, ConnectionClosedError):
            logger.error("%s: background task failed: %s", self.name, exc)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, envelope: dict) -> None:
        """
        Write one envelope as-is.

        Raises:
            ConnectionClosedError: If not Connected or the write fails
        """
        channel = self._channel
        if not self.connected or channel is None:
            raise ConnectionClosedError("Not connected")
        try:
            await channel.send(encode(envelope))
        except ChannelClosed as e:
            raise ConnectionClosedError(f"Connection closed ({e})") from e

    async def notify(self, envelope: dict) -> None:
        """Forward a notification; nothing is tracked."""
        await self.send(envelope)

    async def request(self, envelope: dict, timeout: Optional[float] = None) -> dict:
        """
        Send a request and wait for the reply envelope with the same id.

        Raises:
            ConnectionClosedError: Not Connected, or the connection dropped first
            RequestTimeoutError: No reply before the deadline
            DuplicateId: The id is already pending
        """
        if not self.connected:
            raise ConnectionClosedError("Not connected")
        request_id = envelope.get("id")
        if request_id is None:
            raise ProtocolError("Invalid Request: a request needs an id")

        future = self.correlation.register(
            request_id, self.request_timeout if timeout is None else timeout
        )
        try:
            await self.send(envelope)
        except ConnectionClosedError as e:
            self.correlation.reject(request_id, e)

        try:
            return await future
        except asyncio.CancelledError:
            self.correlation.discard(request_id)
            raise

    def _send_handshake(self) -> None:
        envelope = {
            "jsonrpc": JSONRPC_VERSION,
            "id": f"initialize-{next(self._handshake_ids)}",
            "method": "initialize",
            "params": {
                "protocolVersion": DEFAULT_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": self.client_info,
            },
        }
        task = self._spawn(self.request(envelope, timeout=HANDSHAKE_TIMEOUT))
        task.add_done_callback(self._log_handshake)

    def _log_handshake(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("%s: initialize handshake failed: %s", self.name, exc)
            return
        reply = task.result()
        if "error" in reply:
            logger.warning("%s: initialize rejected: %s", self.name, reply["error"])
        else:
            info = (reply.get("result") or {}).get("serverInfo", {})
            logger.info("%s: initialized with %s", self.name, info.get("name", "peer"))
