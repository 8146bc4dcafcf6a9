"""
Relay Server - bridges HTTP/SSE clients to a host that cannot bind a port.

Two ASGI apps share one Relay:
- Host app (websocket, default :4124/mcp): the host dials in and keeps one
  persistent channel open. Only one host at a time.
- Client app (HTTP, default :4125): clients POST envelopes to /mcp and may
  hold a GET /mcp event stream open for server-initiated messages.

Client requests are registered in the Correlation Table and forwarded over
the channel; whatever settles the entry is the client's reply. Everything
the host sends that is not a pending reply is broadcast to the streams.
"""

import contextlib
import time
from typing import Optional

from sse_starlette.sse import EventSourceResponse
from starlette.applications import Starlette
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from ..envelope import has_id, is_request
from ..errors import (
    ConnectionClosedError,
    DuplicateId,
    ProtocolError,
    RequestTimeoutError,
    error_reply,
    result_reply,
)
from ..logger import envelope_label, get_logger
from ..utils.config import (
    DEFAULT_HOST_SOCKET_PATH,
    DEFAULT_PROTOCOL_VERSION,
    SERVER_DESCRIPTION,
    SERVER_NAME,
    SERVER_VERSION,
    RelayConfig,
)
from .asgi import RequestStats, common_middleware, read_envelope
from .broadcast import SSE_PING_INTERVAL, BroadcastFanout, Listener, ListenerQueue
from .channels import AcceptDialer, StarletteWebSocketChannel
from .connection import ConnectionManager

logger = get_logger("vaultbridge-relay")

# Close code sent to a second host while one is connected (RFC 6455 "try again later")
WS_TRY_AGAIN_LATER = 1013


class Relay:
    """Connection Manager, Correlation Table and fan-out for one relay process."""

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        self.fanout = BroadcastFanout()
        self.accept = AcceptDialer()
        self.connection = ConnectionManager(
            self.accept,
            on_message=self.on_host_message,
            reconnect_interval=self.config.reconnect_interval,
            max_attempts=0,
            request_timeout=self.config.request_timeout,
            handshake=False,
            name="relay",
        )
        self.host_channel: Optional[StarletteWebSocketChannel] = None
        self.started_at = time.time()

    @property
    def host_attached(self) -> bool:
        return self.host_channel is not None and not self.host_channel.closed

    def on_host_message(self, envelope: dict):
        """Answer the host's own handshake; broadcast everything else."""
        if is_request(envelope) and envelope["method"] == "initialize":
            client = (envelope.get("params") or {}).get("clientInfo") or {}
            logger.info("Host initialized: %s %s", client.get("name", "?"), client.get("version", ""))
            return self.connection.send(
                result_reply(
                    envelope["id"],
                    {
                        "protocolVersion": DEFAULT_PROTOCOL_VERSION,
                        "serverInfo": {"name": f"{SERVER_NAME}-relay", "version": SERVER_VERSION},
                        "capabilities": {},
                    },
                )
            )
        self.fanout.broadcast(envelope)
        return None

    def status(self) -> dict:
        return {
            "status": "ok",
            "connected": self.connection.connected,
            "listeners": len(self.fanout),
            "pending": len(self.connection.correlation),
            "state": self.connection.state.value,
            "uptime_seconds": round(time.time() - self.started_at, 2),
        }

    async def start(self) -> None:
        self.connection.start()

    async def stop(self) -> None:
        await self.connection.stop()


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------


async def host_socket_endpoint(websocket: WebSocket):
    relay: Relay = websocket.app.state.relay
    await websocket.accept()

    if relay.host_attached:
        logger.warning("Rejecting second host connection")
        await websocket.close(code=WS_TRY_AGAIN_LATER)
        return

    channel = StarletteWebSocketChannel(websocket)
    relay.host_channel = channel
    logger.info("Host connected from %s", websocket.client.host if websocket.client else "unknown")
    try:
        await relay.accept.offer(channel)
        await channel.wait_closed()
    finally:
        if relay.host_channel is channel:
            relay.host_channel = None
        logger.info("Host disconnected")


def create_host_app(relay: Relay, path: str = DEFAULT_HOST_SOCKET_PATH) -> Starlette:
    app = Starlette(routes=[WebSocketRoute(path, host_socket_endpoint)])
    app.state.relay = relay
    return app


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------


async def health_endpoint(request):
    relay: Relay = request.app.state.relay
    return JSONResponse({**relay.status(), "statistics": request.app.state.stats.as_dict()})


async def ready_endpoint(request):
    relay: Relay = request.app.state.relay
    if relay.connection.connected:
        return JSONResponse(
            {"ready": True, "message": "Bridge is ready to accept MCP requests"}
        )
    return JSONResponse(
        {"ready": False, "message": "Waiting for the host to connect"},
        status_code=503,
    )


async def stream_endpoint(request):
    """
    GET /mcp - event stream of server-initiated messages.

    Requires ``Accept: text/event-stream``. Each broadcast envelope becomes
    one ``data:`` event; if the client falls behind, dropped messages are
    reported with a ``warning`` event.
    """
    if "text/event-stream" not in request.headers.get("accept", ""):
        return PlainTextResponse(
            "Method Not Allowed: GET requires Accept: text/event-stream",
            status_code=405,
            headers={"Allow": "POST"},
        )

    relay: Relay = request.app.state.relay
    queue = ListenerQueue()
    listener = relay.fanout.attach(Listener(sink=queue.push))

    async def event_generator():
        try:
            yield {"comment": "SSE connection established"}

            while not queue.closed:
                drop_notification = queue.get_drop_notification()
                if drop_notification:
                    yield drop_notification

                for message in queue.drain():
                    yield {"data": message}

                await queue.wait_for_message()
        finally:
            relay.fanout.detach(listener)
            queue.close()

    return EventSourceResponse(event_generator(), sep="\n", ping=SSE_PING_INTERVAL)


async def forward_endpoint(request):
    """
    POST /mcp - forward one envelope to the host.

    Requests wait for the host's reply; notifications are answered 202 as
    soon as they are written.
    """
    relay: Relay = request.app.state.relay

    try:
        envelope = await read_envelope(request)
    except ProtocolError as e:
        return JSONResponse(error_reply(None, e), status_code=400)

    request_id = envelope.get("id")
    logger.debug("Forwarding %s to host", envelope_label(envelope))
    if not relay.connection.connected:
        return JSONResponse(
            error_reply(request_id, ConnectionClosedError("Host is not connected")),
            status_code=503,
        )

    if not has_id(envelope):
        try:
            await relay.connection.notify(envelope)
        except ConnectionClosedError as e:
            return JSONResponse(error_reply(None, e), status_code=503)
        return Response(status_code=202)

    try:
        reply = await relay.connection.request(envelope)
    except RequestTimeoutError as e:
        return JSONResponse(error_reply(request_id, e), status_code=504)
    except ConnectionClosedError as e:
        return JSONResponse(error_reply(request_id, e), status_code=503)
    except DuplicateId as e:
        return JSONResponse(error_reply(request_id, e), status_code=409)
    return JSONResponse(reply)


INFO_PAGE = """<!DOCTYPE html>
<html>
  <head><title>{name} relay</title></head>
  <body>
    <h1>{name} relay</h1>
    <p>{description}</p>
    <p>Host: <strong>{host_state}</strong> &middot; streaming listeners: {listeners}</p>
    <h2>Endpoints</h2>
    <ul>
      <li><strong>POST /mcp</strong>: send one JSON-RPC envelope</li>
      <li><strong>GET /mcp</strong> with <code>Accept: text/event-stream</code>: server-initiated messages</li>
      <li><strong>GET /health</strong>: relay status</li>
      <li><strong>GET /ready</strong>: 200 once the host is connected</li>
    </ul>
    <p>The host connects to <code>ws://{host}:{ws_port}{ws_path}</code>.</p>
  </body>
</html>
"""


async def info_endpoint(request):
    relay: Relay = request.app.state.relay
    return HTMLResponse(
        INFO_PAGE.format(
            name=SERVER_NAME,
            description=SERVER_DESCRIPTION,
            host_state="connected" if relay.connection.connected else "not connected",
            listeners=len(relay.fanout),
            host=relay.config.host,
            ws_port=relay.config.ws_port,
            ws_path=DEFAULT_HOST_SOCKET_PATH,
        )
    )


def create_relay_app(relay: Relay, manage_lifecycle: bool = True) -> Starlette:
    """
    Create the client-facing relay application.

    Args:
        relay: Shared relay state
        manage_lifecycle: Start and stop the relay's connection with the app

    Returns:
        Starlette: ASGI application
    """

    @contextlib.asynccontextmanager
    async def lifespan(app):
        if manage_lifecycle:
            await relay.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await relay.stop()

    app = Starlette(
        routes=[
            Route("/", info_endpoint, methods=["GET"]),
            Route("/health", health_endpoint, methods=["GET"]),
            Route("/ready", ready_endpoint, methods=["GET"]),
            Route("/mcp", stream_endpoint, methods=["GET"]),
            Route("/mcp", forward_endpoint, methods=["POST"]),
        ],
        middleware=common_middleware(),
        lifespan=lifespan,
    )
    app.state.relay = relay
    app.state.stats = RequestStats()
    return app
