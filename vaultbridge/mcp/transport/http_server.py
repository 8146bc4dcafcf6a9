"""
Server lifecycle for the embedded server and the relay.

uvicorn runs inside the caller's event loop via ``Server.serve()``. The
relay serves two apps (host websocket and client HTTP) from one loop; a
bind failure on one of them is logged and the other keeps serving.

Shutdown:
- SIGINT/SIGTERM set the shutdown flag and ask every uvicorn server to exit
- While the flag is set, ShutdownMiddleware answers 503
"""

import asyncio
import contextlib
import logging
import signal
from typing import Optional

import uvicorn

from ..core import CapabilityRegistry
from ..handlers import Router
from ..logger import bind_peer, get_logger, setup_logging
from ..utils.config import (
    GRACEFUL_SHUTDOWN_TIMEOUT,
    EmbeddedConfig,
    RelayConfig,
    clear_port_validation_cache,
    validate_config,
    validate_relay_config,
)
from .asgi import create_embedded_app
from .relay import Relay, create_host_app, create_relay_app

logger = get_logger("vaultbridge-http")


class BackgroundServer(uvicorn.Server):
    @contextlib.contextmanager
    def capture_signals(self):
        # Signals are handled once by the ServerManager, not per server
        yield


class ServerManager:
    """Owns the uvicorn servers of one process and their shutdown."""

    def __init__(self, enable_logs: bool = False):
        self.enable_logs = enable_logs
        self._servers: list[uvicorn.Server] = []
        self._shutting_down = False

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def is_running(self) -> bool:
        return any(server.started for server in self._servers)

    def request_shutdown(self) -> None:
        if not self._shutting_down:
            logger.info("Shutdown requested")
        self._shutting_down = True
        for server in self._servers:
            server.should_exit = True

    def _setup_logging(self) -> None:
        setup_logging(logging.DEBUG if self.enable_logs else logging.INFO)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                # Windows event loops, or not running in the main thread
                logger.debug("Signal handler for %s not installed", sig.name)

    def _create_uvicorn_server(self, app, host: str, port: int) -> BackgroundServer:
        """
        Create and configure uvicorn server instance.

        Args:
            app: ASGI application
            host: Host to bind to
            port: Port to bind to

        Returns:
            BackgroundServer: Configured uvicorn server
        """
        config = uvicorn.Config(
            app=app,
            host=host,
            port=port,
            log_level="debug" if self.enable_logs else "warning",
            timeout_graceful_shutdown=GRACEFUL_SHUTDOWN_TIMEOUT,
            lifespan="on",
            ws="websockets",
            limit_concurrency=50,  # Reasonable limit to prevent resource exhaustion
            backlog=2048,
            timeout_keep_alive=5,
        )
        server = BackgroundServer(config=config)
        self._servers.append(server)
        return server

    async def _serve(self, server: uvicorn.Server, label: str) -> bool:
        """
        Run one server until it exits.

        Returns:
            False if the server could not start (bind failure etc.)
        """
        try:
            await server.serve()
        except (OSError, SystemExit) as e:
            logger.error("Failed to start %s server: %s", label, e)
            return False
        finally:
            clear_port_validation_cache()
        if not server.started:
            logger.error("%s server did not start", label)
            return False
        logger.info("%s server stopped", label)
        return True


class EmbeddedServer(ServerManager):
    """The host binds a port itself and serves its Router directly."""

    def __init__(self, registry: CapabilityRegistry, config: Optional[EmbeddedConfig] = None):
        self.config = config or EmbeddedConfig()
        super().__init__(enable_logs=self.config.enable_logs)
        self.router = Router(registry)

    def create_app(self):
        return create_embedded_app(
            self.router,
            auth_token=self.config.auth_token,
            is_shutting_down_fn=self.is_shutting_down,
        )

    async def run(self) -> bool:
        self._setup_logging()
        bind_peer("embedded")
        config = self.config
        result = validate_config(
            config.port, config.network_access, config.auth_token, config.host
        )
        for warning in result.warnings:
            logger.warning(warning)
        if not result:
            for error in result.errors:
                logger.error(error)
            return False

        server = self._create_uvicorn_server(self.create_app(), config.host, config.port)
        self._install_signal_handlers()
        logger.info(
            "Embedded server on http://%s:%d (%d tools, auth %s)",
            config.host,
            config.port,
            len(self.router.registry),
            "on" if config.auth_token else "off",
        )
        return await self._serve(server, "embedded")


class RelayServer(ServerManager):
    """Websocket endpoint for the host plus HTTP/SSE endpoint for clients."""

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        super().__init__(enable_logs=self.config.enable_logs)
        self.relay = Relay(self.config)

    async def run(self) -> bool:
        self._setup_logging()
        bind_peer("relay")
        result = validate_relay_config(self.config)
        for warning in result.warnings:
            logger.warning(warning)
        for error in result.errors:
            # Port problems only take down that transport, so keep going
            logger.error(error)

        host_app = create_host_app(self.relay)
        client_app = create_relay_app(self.relay, manage_lifecycle=False)
        self._install_signal_handlers()

        ws_server = self._create_uvicorn_server(host_app, self.config.host, self.config.ws_port)
        http_server = self._create_uvicorn_server(client_app, self.config.host, self.config.http_port)
        logger.info(
            "Relay: host socket ws://%s:%d/mcp, clients http://%s:%d/mcp",
            self.config.host,
            self.config.ws_port,
            self.config.host,
            self.config.http_port,
        )

        await self.relay.start()
        try:
            served = await asyncio.gather(
                self._serve(ws_server, "relay websocket"),
                self._serve(http_server, "relay http"),
            )
        finally:
            await self.relay.stop()
        return any(served)
