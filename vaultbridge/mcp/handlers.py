"""
The MCP dialect in front of the capability registry.

Translates MCP dialect methods onto the capability registry. Used by the
embedded HTTP server and by the host link behind a relay.

A request always gets exactly one reply envelope, even when it fails.
A notification (no id, or a null id) never gets one.
"""

from typing import Any, Optional

from .core import CapabilityRegistry
from .envelope import has_id
from .errors import (
    JSONRPC_VERSION,
    InvalidParams,
    MethodNotFound,
    ProtocolError,
    error_reply,
    result_reply,
)
from .formatting import format_tool_result
from .logger import RequestTimer, get_logger
from .utils.config import (
    DEFAULT_PROTOCOL_VERSION,
    OUTPUT_SIZE_LIMIT,
    SERVER_DESCRIPTION,
    SERVER_NAME,
    SERVER_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
)

logger = get_logger("vaultbridge-handlers")

# External tool names accepted by tools/call -> internal capability names.
# Names missing here are looked up in the registry unchanged.
TOOL_NAME_MAP = {
    "vault_list_notes": "vault.listNotes",
    "vault_get_note": "vault.getNote",
    "vault_search": "vault.search",
    "vault_get_metadata": "vault.getFileMetadata",
    "vault_write_note": "vault.writeNote",
    "dataview_query": "dataview.query",
    "dataview_page": "dataview.page",
    "tasks_query": "tasks.query",
    "tasks_list": "tasks.list",
    "templater_render": "templater.render",
    "plugins_list": "plugins.list",
    "plugins_inspect": "plugins.inspect",
}


def truncate_output(text: str, tool_name: str) -> str:
    """Cut tool text at OUTPUT_SIZE_LIMIT characters and say how much was cut."""
    size = len(text)
    if size <= OUTPUT_SIZE_LIMIT:
        return text
    cut = size - OUTPUT_SIZE_LIMIT
    logger.warning("%s returned %d characters, cutting %d", tool_name, size, cut)
    return f"{text[:OUTPUT_SIZE_LIMIT]}\n\n[... {cut:,} of {size:,} characters cut]"


async def handle_initialize(router: "Router", params: dict) -> dict:
    """Echo the client's protocol version if we speak it, else offer the oldest one."""
    requested = params.get("protocolVersion")
    agreed = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else DEFAULT_PROTOCOL_VERSION
    client_info = params.get("clientInfo") or {}

    logger.info(
        "%s asked for protocol %s, agreed on %s",
        client_info.get("name", "client"),
        requested,
        agreed,
    )

    return {
        "protocolVersion": agreed,
        "serverInfo": {
            "name": router.name,
            "version": router.version,
            "description": SERVER_DESCRIPTION,
        },
        # Discovery happens once at startup, so the list never changes
        "capabilities": {"tools": {"listChanged": False}},
    }


async def handle_ping(router: "Router", params: dict) -> dict:
    return {}


async def handle_tools_list(router: "Router", params: dict) -> dict:
    return {"tools": router.registry.list_tools()}


async def handle_tools_call(router: "Router", params: dict) -> dict:
    """
    Run the capability behind a tool name and render the result as text.

    Returns:
        ``{"content": [{"type": "text", "text": ...}]}``

    Raises:
        InvalidParams: Missing tool name or non-object arguments
        MethodNotFound: Unknown tool
        InvocationError: The capability failed
    """
    tool_name = params.get("name")
    arguments = params.get("arguments")
    if arguments is None:
        arguments = {}

    if not isinstance(tool_name, str) or not tool_name.strip():
        raise InvalidParams("tools/call needs a non-empty string \"name\"")
    if not isinstance(arguments, dict):
        raise InvalidParams("Tool arguments must be an object")

    capability_name = TOOL_NAME_MAP.get(tool_name, tool_name)
    logger.info("tools/call %s (%s)", tool_name, capability_name)

    with RequestTimer(logger, f"tools/call {tool_name}"):
        result = await router.registry.invoke(capability_name, arguments)

    text = truncate_output(format_tool_result(tool_name, result), tool_name)
    return {"content": [{"type": "text", "text": text}]}


async def handle_notifications_initialized(router: "Router", params: dict) -> None:
    logger.debug("Handshake finished by client")


async def handle_notifications_cancelled(router: "Router", params: dict) -> None:
    # Capabilities run to completion; the reply is still sent
    logger.debug("Cancel for %s ignored", params.get("requestId"))


METHOD_HANDLERS = {
    "initialize": handle_initialize,
    "ping": handle_ping,
    "tools/list": handle_tools_list,
    "tools/call": handle_tools_call,
    "notifications/initialized": handle_notifications_initialized,
    "notifications/cancelled": handle_notifications_cancelled,
}


class Router:
    """
    Protocol translator in front of a CapabilityRegistry.

    Dialect methods are served by METHOD_HANDLERS; any other method is taken
    as a capability name and invoked directly with the envelope's params.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        name: str = SERVER_NAME,
        version: str = SERVER_VERSION,
    ):
        self.registry = registry
        self.name = name
        self.version = version

    async def dispatch(self, method: str, params: Optional[dict] = None) -> Any:
        """
        Run one method and return its result.

        Raises:
            MethodNotFound: Neither a dialect method nor a capability
            BridgeError: Whatever the handler or capability raised
        """
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidParams("Invalid params: expected an object")

        handler = METHOD_HANDLERS.get(method)
        if handler is not None:
            return await handler(self, params)

        if method.startswith("notifications/"):
            logger.debug("Ignoring notification: %s", method)
            return None

        if method in self.registry:
            with RequestTimer(logger, method):
                return await self.registry.invoke(method, params)

        raise MethodNotFound(f"Method not found: {method}")

    async def handle(self, envelope: Any) -> Optional[dict]:
        """
        Answer one inbound envelope.

        Never raises.

        Returns:
            The reply envelope for a request. An error reply (-32600) for a
            non-object envelope (with a null id) and for an envelope that has
            an id but no method or a wrong ``jsonrpc``. None for anything
            without an id, including failed notifications.
        """
        if not isinstance(envelope, dict):
            return error_reply(None, ProtocolError("Invalid Request: envelope must be a JSON object"))

        request_id = envelope.get("id")
        notification = not has_id(envelope)
        method = envelope.get("method")

        if envelope.get("jsonrpc", JSONRPC_VERSION) != JSONRPC_VERSION:
            if notification:
                return None
            return error_reply(request_id, ProtocolError("Invalid Request: jsonrpc must be '2.0'"))

        if not isinstance(method, str) or not method:
            if notification:
                return None
            return error_reply(request_id, ProtocolError("Invalid Request: method is required"))

        try:
            result = await self.dispatch(method, envelope.get("params"))
        except Exception as e:
            if notification:
                logger.debug("Notification %s failed: %s", method, e)
                return None
            logger.info("%s failed: %s", method, e)
            return error_reply(request_id, e)

        if notification:
            return None
        return result_reply(request_id, result)
