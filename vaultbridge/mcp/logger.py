"""
Logging for the bridge processes.

Every record carries two pieces of context:
- ``peer``: which side of the bridge logged it (embedded, relay, host-link)
- ``request_id``: the HTTP request being served, if any

Both live in context variables, so tasks spawned while serving a request or
a connection inherit them.
"""

import contextlib
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Iterator, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_peer: ContextVar[str] = ContextVar("peer", default="-")

LOG_FORMAT = "%(asctime)s [%(peer)s %(request_id)s] %(name)s %(levelname)s: %(message)s"

# Library loggers that flood the output below WARNING
NOISY_LOGGERS = ("websockets.client", "websockets.server", "uvicorn.access")


class RequestContextFilter(logging.Filter):
    """Add peer and request id to log records."""

    def filter(self, record):
        req_id = _request_id.get()
        record.request_id = req_id[:8] if req_id else "-"
        record.peer = _peer.get()
        return True


def setup_logging(level=logging.WARNING, stream=None):
    """
    Configure the root logger with one handler carrying request context.

    Calling it again replaces the previous handler, so the CLI and the
    server classes can both set the level.

    Args:
        level: Logging level (default: logging.WARNING)
        stream: Output stream (default: stderr; stdout belongs to clients)
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if level <= logging.DEBUG else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Named logger, e.g. "vaultbridge-relay"."""
    return logging.getLogger(name)


@contextlib.contextmanager
def request_context(request_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag log records with a request id for the duration of the block.

    Usage:
        with request_context(request.headers.get("X-Request-ID")) as request_id:
            ...
    """
    request_id = request_id or str(uuid.uuid4())
    token = _request_id.set(request_id)
    try:
        yield request_id
    finally:
        _request_id.reset(token)


def bind_peer(label: str) -> None:
    """Label records from the current task (and tasks it spawns) with ``label``."""
    _peer.set(label)


def envelope_label(envelope: Any) -> str:
    """Short description of an envelope for log lines: ``tools/call#7``, ``reply#7``."""
    if not isinstance(envelope, dict):
        return type(envelope).__name__
    method = envelope.get("method")
    request_id = envelope.get("id")
    if method is None:
        kind = "error" if "error" in envelope else "reply"
        return f"{kind}#{request_id}"
    if request_id is None:
        return str(method)
    return f"{method}#{request_id}"


class RequestTimer:
    """
    Context manager for timing operations with automatic logging.

    Completions are logged at DEBUG, or at INFO once they take longer than
    ``slow_ms`` (a full scan of a large vault shows up this way).

    Usage:
        with RequestTimer(logger, "tool/vault.listNotes"):
            ...
    """

    def __init__(self, logger: logging.Logger, operation: str, slow_ms: float = 1000.0):
        self.logger = logger
        self.operation = operation
        self.slow_ms = slow_ms
        self.start_time: float | None = None
        self.duration_ms: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is None:
            return False
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            self.logger.warning(
                "%s failed after %.2fms: %s: %s",
                self.operation,
                self.duration_ms,
                exc_type.__name__,
                exc_val,
            )
        elif self.duration_ms >= self.slow_ms:
            self.logger.info("%s was slow: %.2fms", self.operation, self.duration_ms)
        else:
            self.logger.debug("%s completed in %.2fms", self.operation, self.duration_ms)
        return False
