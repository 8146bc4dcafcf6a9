"""
Settings for the three bridge processes.

Each process has a dataclass filled from the environment (``from_env``)
and then overridden by command line flags. Validation runs once before
binding and reports problems as text for the log.
"""

import errno
import os
import socket
from dataclasses import dataclass, field
from typing import List, Optional

# Identity reported by initialize and GET /
SERVER_NAME = "vault-mcp-bridge"
SERVER_VERSION = "0.2.0"
SERVER_DESCRIPTION = "MCP access to a note vault and its extensions"

# MCP protocol versions we can speak; the first one is the fallback
DEFAULT_PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

DEFAULT_HOST = "127.0.0.1"
LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")
DEFAULT_SERVER_PORT = 4123  # embedded server
DEFAULT_WS_PORT = 4124  # relay, host-facing websocket
DEFAULT_HTTP_PORT = 4125  # relay, client-facing HTTP/SSE
DEFAULT_HOST_SOCKET_PATH = "/mcp"
MIN_PORT = 1024
MAX_PORT = 65535

DEFAULT_AUTH_TOKEN_LENGTH = 32
MIN_TOKEN_LENGTH = 16

# Seconds
RELAY_REQUEST_TIMEOUT: float = 30.0  # client request forwarded to the host
HANDSHAKE_TIMEOUT: float = 10.0  # initialize sent by the dialing side
CONNECT_TIMEOUT: float = 10.0  # opening the host -> relay websocket
GRACEFUL_SHUTDOWN_TIMEOUT: float = 1.5

# Reconnect policy: fixed delay, 0 attempts means retry forever
DEFAULT_RECONNECT_INTERVAL: float = 5.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 0

SSE_QUEUE_SIZE = 500  # messages buffered per streaming listener
OUTPUT_SIZE_LIMIT: int = 2 * 1024 * 1024  # bytes of text per tool result

# (host, port) pairs a test bind has already succeeded on
_bindable_ports: set[tuple[str, int]] = set()


def clear_port_validation_cache() -> None:
    _bindable_ports.clear()


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


@dataclass
class EmbeddedConfig:
    """Settings for the embedded (direct) server."""

    vault_path: str = "."
    host: str = DEFAULT_HOST
    port: int = DEFAULT_SERVER_PORT
    auth_token: str = ""
    enable_logs: bool = False

    @property
    def network_access(self) -> bool:
        return not is_loopback(self.host)

    @classmethod
    def from_env(cls) -> "EmbeddedConfig":
        return cls(
            vault_path=os.environ.get("VAULTBRIDGE_VAULT", "."),
            host=os.environ.get("VAULTBRIDGE_HOST", DEFAULT_HOST),
            port=_env_int("VAULTBRIDGE_PORT", DEFAULT_SERVER_PORT),
            auth_token=os.environ.get("VAULTBRIDGE_AUTH_TOKEN", ""),
        )


@dataclass
class RelayConfig:
    """Settings for the relay process."""

    host: str = DEFAULT_HOST
    ws_port: int = DEFAULT_WS_PORT
    http_port: int = DEFAULT_HTTP_PORT
    request_timeout: float = RELAY_REQUEST_TIMEOUT
    reconnect_interval: float = 0.0  # The relay waits for the host to dial back in
    enable_logs: bool = False

    @classmethod
    def from_env(cls) -> "RelayConfig":
        # Unprefixed names are kept for compatibility with existing deployments
        return cls(
            host=os.environ.get("HOST", DEFAULT_HOST),
            ws_port=_env_int("WS_PORT", DEFAULT_WS_PORT),
            http_port=_env_int("HTTP_PORT", DEFAULT_HTTP_PORT),
            request_timeout=_env_float(
                "VAULTBRIDGE_REQUEST_TIMEOUT", RELAY_REQUEST_TIMEOUT
            ),
        )


@dataclass
class HostLinkConfig:
    """Settings for the host side of a relay deployment."""

    vault_path: str = "."
    url: str = f"ws://{DEFAULT_HOST}:{DEFAULT_WS_PORT}{DEFAULT_HOST_SOCKET_PATH}"
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    enable_logs: bool = False
    extra_headers: dict = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "HostLinkConfig":
        return cls(
            vault_path=os.environ.get("VAULTBRIDGE_VAULT", "."),
            url=os.environ.get("VAULTBRIDGE_RELAY_URL", cls.url),
            reconnect_interval=_env_float(
                "VAULTBRIDGE_RECONNECT_INTERVAL", DEFAULT_RECONNECT_INTERVAL
            ),
            max_reconnect_attempts=_env_int(
                "VAULTBRIDGE_MAX_RECONNECT_ATTEMPTS", DEFAULT_MAX_RECONNECT_ATTEMPTS
            ),
        )


@dataclass
class ConfigValidationResult:
    """Problems found before binding; errors stop the server, warnings are logged."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def __bool__(self):
        return self.valid


def is_loopback(host: str) -> bool:
    return host in LOOPBACK_HOSTS


def validate_port(port: int, host: str) -> Optional[str]:
    """
    Check that ``port`` is usable on ``host``.

    A successful test bind is remembered per (host, port) until
    ``clear_port_validation_cache`` is called.

    Returns:
        A description of the problem, or None when the port can be bound
    """
    if not isinstance(port, int):
        return f"Port must be an integer, got {type(port).__name__}"
    if not MIN_PORT <= port <= MAX_PORT:
        return f"Port {port} is outside {MIN_PORT}-{MAX_PORT}"
    if (host, port) in _bindable_ports:
        return None

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
    except OSError as e:
        if e.errno == errno.EADDRINUSE:
            return f"Port {port} on {host} is already taken"
        return f"Cannot bind {host}:{port}: {e}"

    _bindable_ports.add((host, port))
    return None


def _check_token(result: ConfigValidationResult, auth_token: str, exposed: bool, host: str) -> None:
    if auth_token and len(auth_token) < MIN_TOKEN_LENGTH:
        result.warnings.append(
            f"Auth token has only {len(auth_token)} characters; "
            f"`vaultbridge token` prints a {DEFAULT_AUTH_TOKEN_LENGTH}-character one"
        )
    if not exposed:
        if not auth_token:
            result.warnings.append("No auth token set; any local process can read the vault")
        return
    if auth_token:
        result.warnings.append(f"Listening on {host}; the vault is reachable from the network")
    else:
        result.errors.append(f"Binding {host} needs an auth token (VAULTBRIDGE_AUTH_TOKEN)")


def validate_config(
    port: int, network_access: bool, auth_token: str, host: str = DEFAULT_HOST
) -> ConfigValidationResult:
    """
    Validate embedded server settings.

    Args:
        port: Server port
        network_access: Whether the server binds beyond loopback
        auth_token: Bearer token (empty disables authentication)
        host: Bind address used for the availability check
    """
    result = ConfigValidationResult()
    port_problem = validate_port(port, host)
    if port_problem:
        result.errors.append(port_problem)
    _check_token(result, auth_token, network_access, host)
    return result


def validate_relay_config(config: RelayConfig) -> ConfigValidationResult:
    """Validate relay ports and the forwarding timeout."""
    result = ConfigValidationResult()

    if config.ws_port == config.http_port:
        result.errors.append(f"Host socket and client HTTP share port {config.ws_port}")
    for port in (config.ws_port, config.http_port):
        port_problem = validate_port(port, config.host)
        if port_problem:
            result.errors.append(port_problem)

    if config.request_timeout <= 0:
        result.errors.append(f"Request timeout must be positive, got {config.request_timeout}")
    if not is_loopback(config.host):
        result.warnings.append(
            f"Relay listens on {config.host}; clients on the network can reach the vault"
        )
    return result
