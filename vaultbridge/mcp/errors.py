"""
Bridge error taxonomy.

Every error that can reach a client carries the JSON-RPC code it is reported
with, so transports only need ``error_reply()`` to turn an exception into a
wire envelope.
"""

from typing import Any, Optional

JSONRPC_VERSION = "2.0"

# JSON-RPC 2.0 reserved codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Implementation-defined server errors (-32000 .. -32099)
CONNECTION_CLOSED = -32000
REQUEST_TIMEOUT = -32001


class BridgeError(Exception):
    """Base class for errors that are reported to clients as RPC errors."""

    code: int = INTERNAL_ERROR

    def __init__(self, message: str = "", *, code: Optional[int] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code

    def to_error(self) -> dict:
        """Return the ``{"code", "message"}`` object for the wire."""
        return {"code": self.code, "message": self.message}


class ProtocolError(BridgeError):
    """Malformed envelope, unsupported version, or otherwise invalid request."""

    code = INVALID_REQUEST


class ParseError(ProtocolError):
    code = PARSE_ERROR


class MethodNotFound(ProtocolError):
    code = METHOD_NOT_FOUND


class InvalidParams(ProtocolError):
    code = INVALID_PARAMS


class UnknownCapability(MethodNotFound):
    """No capability is registered under the requested name."""


class DuplicateName(BridgeError):
    """A capability with this name is already registered."""


class DuplicateId(ProtocolError):
    """A request with this id is already pending."""


class InvocationError(BridgeError):
    """A capability failed while running."""

    code = INTERNAL_ERROR


class AuthenticationError(BridgeError):
    code = INVALID_REQUEST


class ConnectionClosedError(BridgeError, ConnectionError):
    """The counterpart connection is down or dropped before a reply arrived."""

    code = CONNECTION_CLOSED


class RequestTimeoutError(BridgeError, TimeoutError):
    """No reply arrived before the request deadline."""

    code = REQUEST_TIMEOUT


def error_reply(request_id: Any, error: Exception) -> dict:
    """Build a JSON-RPC error reply for ``error``."""
    if isinstance(error, BridgeError):
        payload = error.to_error()
    else:
        payload = {"code": INTERNAL_ERROR, "message": f"Internal error: {error}"}
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": payload}


def result_reply(request_id: Any, result: Any) -> dict:
    """Build a JSON-RPC success reply."""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}
