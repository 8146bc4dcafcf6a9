"""
MCP Transport Layer

Architecture:
    correlation.py: in-flight requests keyed by id, with deadlines
    channels.py:    persistent text channels (websockets client / Starlette socket)
    connection.py:  Connection Manager (dial, receive, reconnect)
    broadcast.py:   fan-out of server-initiated messages to streaming listeners
    asgi.py:        embedded server app and shared middleware
    relay.py:       relay apps (host websocket, client HTTP/SSE)
    host_link.py:   host side of a relay deployment
    http_server.py: uvicorn lifecycle for the embedded server and the relay
"""

from .asgi import create_embedded_app
from .broadcast import BroadcastFanout, Listener, ListenerQueue
from .channels import AcceptDialer, ChannelClosed, websocket_dialer
from .connection import ConnectionManager, ConnectionState
from .correlation import CorrelationTable, PendingRequest
from .host_link import HostLink
from .http_server import EmbeddedServer, RelayServer, ServerManager
from .relay import Relay, create_host_app, create_relay_app

__all__ = [
    "AcceptDialer",
    "BroadcastFanout",
    "ChannelClosed",
    "ConnectionManager",
    "ConnectionState",
    "CorrelationTable",
    "EmbeddedServer",
    "HostLink",
    "Listener",
    "ListenerQueue",
    "PendingRequest",
    "Relay",
    "RelayServer",
    "ServerManager",
    "create_embedded_app",
    "create_host_app",
    "create_relay_app",
    "websocket_dialer",
]
