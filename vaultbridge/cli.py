"""
Command line entry point.

Usage:
    vaultbridge serve   --vault PATH [--host HOST] [--port PORT] [--token TOKEN]
    vaultbridge relay   [--host HOST] [--ws-port PORT] [--http-port PORT]
    vaultbridge connect --vault PATH [--url ws://relay:4124/mcp]
    vaultbridge tools   [--url http://127.0.0.1:4123/mcp]
    vaultbridge call    NAME [--args JSON] [--url ...]
    vaultbridge token

Settings start from the environment (VAULTBRIDGE_* variables, plus HOST,
WS_PORT and HTTP_PORT for the relay); flags override them.
"""

import argparse
import asyncio
import http.client
import itertools
import json
import logging
import secrets
import string
import sys
import urllib.parse
from typing import Optional

from .mcp.capabilities import build_registry
from .mcp.errors import JSONRPC_VERSION
from .mcp.logger import get_logger, setup_logging
from .mcp.transport import EmbeddedServer, HostLink, RelayServer
from .mcp.handlers import Router
from .mcp.utils.config import (
    DEFAULT_AUTH_TOKEN_LENGTH,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    EmbeddedConfig,
    HostLinkConfig,
    RelayConfig,
)
from .vault import HostEnvironment

logger = get_logger("vaultbridge-cli")

DEFAULT_CLIENT_URL = f"http://{DEFAULT_HOST}:{DEFAULT_SERVER_PORT}/mcp"
CLIENT_TIMEOUT = 300  # Tool calls can be slow on large vaults

_request_ids = itertools.count(1)


def generate_token(length=DEFAULT_AUTH_TOKEN_LENGTH):
    """Generate a secure random authentication token."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


# =============================================================================
# Client commands (plain HTTP against an embedded server or a relay)
# =============================================================================


def post_envelope(url: str, envelope: dict, token: str = "") -> Optional[dict]:
    """
    POST one envelope and return the reply (None for 202/204).

    Raises:
        OSError / http.client.HTTPException: If the server cannot be reached
    """
    parsed = urllib.parse.urlparse(url)
    conn = http.client.HTTPConnection(
        parsed.hostname or DEFAULT_HOST, parsed.port or 80, timeout=CLIENT_TIMEOUT
    )
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": "vaultbridge-cli/1.0",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    try:
        conn.request("POST", parsed.path or "/mcp", body=json.dumps(envelope).encode("utf-8"), headers=headers)
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status in (202, 204):
        return None
    if not body:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": envelope.get("id"),
            "error": {"code": -32603, "message": f"HTTP error: {response.status} {response.reason}"},
        }
    return json.loads(body.decode("utf-8"))


def _rpc(args, method: str, params: Optional[dict] = None) -> int:
    envelope = {"jsonrpc": JSONRPC_VERSION, "id": next(_request_ids), "method": method}
    if params is not None:
        envelope["params"] = params
    try:
        reply = post_envelope(args.url, envelope, token=args.token)
    except (http.client.HTTPException, OSError) as e:
        logger.error("Cannot reach %s: %s", args.url, e)
        return 1
    except json.JSONDecodeError as e:
        logger.error("Invalid JSON response: %s", e)
        return 1

    if reply is None:
        return 0
    if "error" in reply:
        error = reply["error"]
        print(f"error {error.get('code')}: {error.get('message')}", file=sys.stderr)
        return 1

    result = reply.get("result")
    if method == "tools/call" and isinstance(result, dict):
        for block in result.get("content", []):
            if block.get("type") == "text":
                print(block.get("text", ""))
    elif method == "tools/list" and isinstance(result, dict):
        for tool in result.get("tools", []):
            print(f"{tool['name']}: {tool.get('description', '')}")
    else:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


def cmd_tools(args) -> int:
    return _rpc(args, "tools/list")


def cmd_call(args) -> int:
    try:
        arguments = json.loads(args.args) if args.args else {}
    except json.JSONDecodeError as e:
        logger.error("--args is not valid JSON: %s", e)
        return 2
    return _rpc(args, "tools/call", {"name": args.name, "arguments": arguments})


def cmd_token(args) -> int:
    print(generate_token(args.length))
    return 0


# =============================================================================
# Server commands
# =============================================================================


def _load_environment(vault_path: str, plugin_entries) -> Optional[HostEnvironment]:
    try:
        return HostEnvironment.from_path(vault_path, plugin_entries)
    except (OSError, ValueError, ImportError, AttributeError) as e:
        logger.error("Cannot open vault %s: %s", vault_path, e)
        return None


def cmd_serve(args) -> int:
    config = EmbeddedConfig.from_env()
    if args.vault:
        config.vault_path = args.vault
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.token is not None:
        config.auth_token = args.token
    config.enable_logs = args.debug

    host = _load_environment(config.vault_path, args.plugin)
    if host is None:
        return 1
    server = EmbeddedServer(build_registry(host), config)
    return 0 if asyncio.run(server.run()) else 1


def cmd_relay(args) -> int:
    config = RelayConfig.from_env()
    if args.host:
        config.host = args.host
    if args.ws_port:
        config.ws_port = args.ws_port
    if args.http_port:
        config.http_port = args.http_port
    if args.timeout:
        config.request_timeout = args.timeout
    config.enable_logs = args.debug

    server = RelayServer(config)
    return 0 if asyncio.run(server.run()) else 1


def cmd_connect(args) -> int:
    config = HostLinkConfig.from_env()
    if args.vault:
        config.vault_path = args.vault
    if args.url:
        config.url = args.url
    if args.reconnect_interval is not None:
        config.reconnect_interval = args.reconnect_interval
    if args.max_attempts is not None:
        config.max_reconnect_attempts = args.max_attempts
    if args.token:
        config.extra_headers["Authorization"] = f"Bearer {args.token}"
    config.enable_logs = args.debug

    host = _load_environment(config.vault_path, args.plugin)
    if host is None:
        return 1
    link = HostLink(Router(build_registry(host)), config)
    asyncio.run(link.run())
    return 0


# =============================================================================
# Argument parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vaultbridge",
        description="MCP bridge for a markdown note vault",
        epilog="Run a command with --help for its options.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging to stderr")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Serve the vault over HTTP (embedded server)")
    serve.add_argument("--vault", help="Vault directory (default: $VAULTBRIDGE_VAULT or .)")
    serve.add_argument("--host", help=f"Bind address (default: {DEFAULT_HOST})")
    serve.add_argument("--port", type=int, help=f"Port (default: {DEFAULT_SERVER_PORT})")
    serve.add_argument("--token", help="Bearer token required on every request")
    serve.add_argument(
        "--plugin",
        action="append",
        default=[],
        metavar="ID=MODULE:ATTR",
        help="Load an extension object (repeatable)",
    )
    serve.set_defaults(func=cmd_serve)

    relay = commands.add_parser("relay", help="Run the relay between HTTP clients and a host")
    relay.add_argument("--host", help=f"Bind address (default: {DEFAULT_HOST})")
    relay.add_argument("--ws-port", type=int, help="Host-facing websocket port")
    relay.add_argument("--http-port", type=int, help="Client-facing HTTP port")
    relay.add_argument("--timeout", type=float, help="Seconds to wait for the host's reply")
    relay.set_defaults(func=cmd_relay)

    connect = commands.add_parser("connect", help="Serve the vault through a relay")
    connect.add_argument("--vault", help="Vault directory (default: $VAULTBRIDGE_VAULT or .)")
    connect.add_argument("--url", help="Relay websocket URL")
    connect.add_argument("--reconnect-interval", type=float, help="Seconds between reconnect attempts")
    connect.add_argument("--max-attempts", type=int, help="Reconnect attempts before giving up (0 = forever)")
    connect.add_argument("--token", help="Bearer token sent when dialing the relay")
    connect.add_argument("--plugin", action="append", default=[], metavar="ID=MODULE:ATTR")
    connect.set_defaults(func=cmd_connect)

    for name, func, help_text in (
        ("tools", cmd_tools, "List the tools of a running server"),
        ("call", cmd_call, "Call one tool on a running server"),
    ):
        client = commands.add_parser(name, help=help_text)
        if name == "call":
            client.add_argument("name", help="Tool name, e.g. vault_list_notes")
            client.add_argument("--args", help="Tool arguments as a JSON object")
        client.add_argument("--url", default=DEFAULT_CLIENT_URL, help=f"Server URL (default: {DEFAULT_CLIENT_URL})")
        client.add_argument("--token", default="", help="Bearer token")
        client.set_defaults(func=func)

    token = commands.add_parser("token", help="Print a new random auth token")
    token.add_argument("--length", type=int, default=DEFAULT_AUTH_TOKEN_LENGTH)
    token.set_defaults(func=cmd_token)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.WARNING)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
