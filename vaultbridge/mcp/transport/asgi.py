"""
Embedded server app.

Every POST carries one JSON-RPC envelope that goes straight to the Router;
there is no relay and no correlation on this path. The middleware built by
``common_middleware`` is shared with the relay's client-facing app.

Routes:
    GET  /        identity of the server
    POST /, /mcp  one envelope per request
    GET  /tools   tool definitions in dialect form
    GET  /health  uptime, request counters, tool count
"""

import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..envelope import decode
from ..errors import (
    AuthenticationError,
    ConnectionClosedError,
    ProtocolError,
    error_reply,
)
from ..handlers import Router
from ..logger import get_logger, request_context
from ..utils.config import SERVER_DESCRIPTION

request_logger = get_logger("vaultbridge-requests")
auth_logger = get_logger("vaultbridge-auth")

BEARER_PREFIX = "Bearer "
RETRY_AFTER_SECONDS = 5


@dataclass
class RequestStats:
    """Counters reported by the health endpoints."""

    requests: int = 0
    failures: int = 0

    def as_dict(self) -> dict:
        return {"total_requests": self.requests, "error_count": self.failures}


class OptionsMiddleware(BaseHTTPMiddleware):
    """Preflight requests never reach auth or routing."""

    async def dispatch(self, request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200)
        return await call_next(request)


class ShutdownMiddleware(BaseHTTPMiddleware):
    """503 with a connection-closed RPC error once the process is stopping."""

    async def dispatch(self, request, call_next):
        stopping = getattr(request.app.state, "is_shutting_down", None)
        if stopping is None or not stopping():
            return await call_next(request)
        closed = ConnectionClosedError("Bridge is stopping; retry once it is back up")
        return JSONResponse(
            error_reply(None, closed),
            status_code=503,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token check on the Authorization header.

    Tokens are compared with ``secrets.compare_digest``. With no token
    configured every request passes.
    """

    def __init__(self, app, auth_token: str = ""):
        super().__init__(app)
        self.auth_token = auth_token

    def _authorized(self, request) -> bool:
        header = request.headers.get("Authorization", "")
        if not header.startswith(BEARER_PREFIX):
            return False
        presented = header[len(BEARER_PREFIX):].strip()
        return bool(presented) and secrets.compare_digest(presented, self.auth_token)

    async def dispatch(self, request, call_next):
        if not self.auth_token or self._authorized(request):
            return await call_next(request)

        peer = request.client.host if request.client else "unknown"
        auth_logger.warning("Missing or wrong bearer token from %s on %s", peer, request.url.path)
        return JSONResponse(
            error_reply(None, AuthenticationError("A valid bearer token is required")),
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )


class StatsMiddleware(BaseHTTPMiddleware):
    """Count requests, and 5xx answers or crashes as failures."""

    async def dispatch(self, request, call_next):
        stats: Optional[RequestStats] = getattr(request.app.state, "stats", None)
        if stats is None:
            return await call_next(request)

        stats.requests += 1
        try:
            response = await call_next(request)
        except Exception:
            stats.failures += 1
            raise
        if response.status_code >= 500:
            stats.failures += 1
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request; the request id is echoed in X-Request-ID."""

    async def dispatch(self, request, call_next):
        with request_context(request.headers.get("X-Request-ID")) as request_id:
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as e:
                request_logger.error(
                    "%s %s crashed after %.1fms: %s",
                    request.method,
                    request.url.path,
                    (time.perf_counter() - started) * 1000,
                    e,
                )
                raise
            request_logger.info(
                "%s %s %d %.1fms",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000,
            )
            response.headers["X-Request-ID"] = request_id
            return response


def common_middleware(
    auth_token: str = "", allowed_origins: Optional[list[str]] = None
) -> list[Middleware]:
    """Middleware shared by the embedded and relay apps, outermost first."""
    cors = Middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "Mcp-Session-Id"],
        expose_headers=["X-Request-ID"],
    )
    return [
        cors,
        Middleware(OptionsMiddleware),
        Middleware(ShutdownMiddleware),
        Middleware(RequestLoggingMiddleware),
        Middleware(StatsMiddleware),
        Middleware(AuthMiddleware, auth_token=auth_token),
    ]


async def read_envelope(request) -> dict:
    """
    Decode the request body into one envelope.

    Raises:
        ParseError: Body is not JSON
        ProtocolError: Body is JSON but not an object
    """
    return decode(await request.body())


async def rpc_endpoint(request):
    """Reply envelopes (errors included) come back with 200, notifications with 202."""
    router: Router = request.app.state.router

    try:
        envelope = await read_envelope(request)
    except ProtocolError as e:
        return JSONResponse(error_reply(None, e), status_code=400)

    reply = await router.handle(envelope)
    if reply is None:
        return Response(status_code=202)
    return JSONResponse(reply)


async def tools_endpoint(request):
    router: Router = request.app.state.router
    return JSONResponse({"tools": router.registry.list_tools()})


async def identity_endpoint(request):
    router: Router = request.app.state.router
    return JSONResponse(
        {"name": router.name, "version": router.version, "description": SERVER_DESCRIPTION}
    )


async def health_endpoint(request):
    router: Router = request.app.state.router
    state = request.app.state
    return JSONResponse(
        {
            "status": "ok",
            "uptime_seconds": round(time.time() - state.start_time, 2),
            "statistics": state.stats.as_dict(),
            "server": {
                "name": router.name,
                "version": router.version,
                "tools_count": len(router.registry),
            },
        }
    )


def create_embedded_app(
    router: Router,
    auth_token: str = "",
    is_shutting_down_fn: Optional[Callable[[], bool]] = None,
) -> Starlette:
    """
    Build the embedded server's Starlette app.

    Args:
        router: Router over the host's capability registry
        auth_token: Bearer token required on every request (empty disables auth)
        is_shutting_down_fn: Returns True while the process is stopping
    """
    app = Starlette(
        routes=[
            Route("/", identity_endpoint, methods=["GET"]),
            Route("/", rpc_endpoint, methods=["POST"]),
            Route("/mcp", rpc_endpoint, methods=["POST"]),
            Route("/tools", tools_endpoint, methods=["GET"]),
            Route("/health", health_endpoint, methods=["GET"]),
        ],
        middleware=common_middleware(auth_token),
    )
    app.state.router = router
    app.state.start_time = time.time()
    app.state.stats = RequestStats()
    app.state.is_shutting_down = is_shutting_down_fn or (lambda: False)
    return app
