import pytest

from vaultbridge.mcp.capabilities import build_registry
from vaultbridge.mcp.core import CapabilityRegistry
from vaultbridge.mcp.handlers import TOOL_NAME_MAP, Router, truncate_output
from vaultbridge.vault import HostEnvironment


@pytest.mark.asyncio
async def test_list_notes_on_empty_vault(router) -> None:
    reply = await router.handle(
        {"id": 1, "method": "tools/call", "params": {"name": "vault_list_notes", "arguments": {}}}
    )
    assert reply == {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {"content": [{"type": "text", "text": "# Notes in Vault (0)\n\n"}]},
    }


@pytest.mark.asyncio
async def test_list_notes_renders_bullets(sample_vault) -> None:
    router = Router(build_registry(HostEnvironment(vault=sample_vault)))
    reply = await router.handle(
        {"jsonrpc": "2.0", "id": "a", "method": "tools/call", "params": {"name": "vault_list_notes"}}
    )
    text = reply["result"]["content"][0]["text"]
    assert text == "# Notes in Vault (2)\n\n- inbox.md\n- projects/garden.md"


@pytest.mark.asyncio
async def test_notifications_are_never_answered(router) -> None:
    assert await router.handle({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None
    assert await router.handle({"jsonrpc": "2.0", "id": None, "method": "tools/list"}) is None
    # Even a failing notification stays silent
    assert await router.handle({"jsonrpc": "2.0", "method": "no.such.method"}) is None
    assert await router.handle({"jsonrpc": "1.0", "method": "ping"}) is None


@pytest.mark.asyncio
async def test_unknown_method(router) -> None:
    reply = await router.handle({"jsonrpc": "2.0", "id": 3, "method": "resources/list"})
    assert reply["id"] == 3
    assert reply["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_invalid_envelopes(router) -> None:
    reply = await router.handle(["not", "an", "object"])
    assert reply["id"] is None
    assert reply["error"]["code"] == -32600

    reply = await router.handle({"jsonrpc": "1.0", "id": 1, "method": "ping"})
    assert reply["error"]["code"] == -32600

    reply = await router.handle({"jsonrpc": "2.0", "id": 2})
    assert reply["error"]["code"] == -32600

    reply = await router.handle({"jsonrpc": "2.0", "id": 3, "method": "ping", "params": [1]})
    assert reply["error"]["code"] == -32602


@pytest.mark.asyncio
async def test_reply_shaped_envelopes(router) -> None:
    # An id without a method is answered, even when it looks like a reply
    reply = await router.handle({"jsonrpc": "2.0", "id": 9, "result": {}})
    assert reply["id"] == 9
    assert reply["error"]["code"] == -32600

    assert await router.handle({"jsonrpc": "2.0", "result": {}}) is None


@pytest.mark.asyncio
async def test_initialize_negotiates_protocol(router) -> None:
    reply = await router.handle(
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {"protocolVersion": "2025-03-26", "clientInfo": {"name": "t"}},
        }
    )
    result = reply["result"]
    assert result["protocolVersion"] == "2025-03-26"
    assert result["serverInfo"]["name"] == "vault-mcp-bridge"
    assert result["capabilities"]["tools"] == {"listChanged": False}

    reply = await router.handle(
        {"jsonrpc": "2.0", "id": 2, "method": "initialize", "params": {"protocolVersion": "1999-01-01"}}
    )
    assert reply["result"]["protocolVersion"] == "2024-11-05"


@pytest.mark.asyncio
async def test_ping(router) -> None:
    assert await router.handle({"jsonrpc": "2.0", "id": 9, "method": "ping"}) == {
        "jsonrpc": "2.0",
        "id": 9,
        "result": {},
    }


@pytest.mark.asyncio
async def test_tools_list_uses_capability_names(router) -> None:
    reply = await router.handle({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
    names = [tool["name"] for tool in reply["result"]["tools"]]
    assert names[:5] == [
        "vault.listNotes",
        "vault.getNote",
        "vault.search",
        "vault.getFileMetadata",
        "vault.writeNote",
    ]
    assert "templater.render" in names
    get_note = next(t for t in reply["result"]["tools"] if t["name"] == "vault.getNote")
    assert get_note["inputSchema"]["required"] == ["path"]


@pytest.mark.asyncio
async def test_capability_called_directly_by_name(sample_vault) -> None:
    router = Router(build_registry(HostEnvironment(vault=sample_vault)))
    reply = await router.handle(
        {"jsonrpc": "2.0", "id": 5, "method": "vault.search", "params": {"query": "garden"}}
    )
    assert reply["result"] == ["projects/garden.md"]


@pytest.mark.asyncio
async def test_tools_call_argument_errors(router) -> None:
    reply = await router.handle(
        {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": {"arguments": {}}}
    )
    assert reply["error"]["code"] == -32602

    reply = await router.handle(
        {"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "vault_get_note", "arguments": "x"}}
    )
    assert reply["error"]["code"] == -32602

    reply = await router.handle(
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "vault_get_note", "arguments": {}}}
    )
    assert reply["error"]["code"] == -32602

    reply = await router.handle(
        {"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "nope"}}
    )
    assert reply["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_capability_failure_becomes_error_reply(router) -> None:
    reply = await router.handle(
        {
            "jsonrpc": "2.0",
            "id": 6,
            "method": "tools/call",
            "params": {"name": "vault_get_note", "arguments": {"path": "missing.md"}},
        }
    )
    assert reply["error"] == {"code": -32603, "message": "file not found"}


@pytest.mark.asyncio
async def test_every_external_name_resolves(sample_vault) -> None:
    class Dataview:
        class api:
            @staticmethod
            def queryMarkdown(query):
                return {"successful": True, "value": f"rendered {query}"}

            @staticmethod
            def page(path):
                return {"path": path}

    host = HostEnvironment(vault=sample_vault, plugins={"dataview": Dataview()})
    registry = build_registry(host)
    for external, internal in TOOL_NAME_MAP.items():
        assert internal in registry, external


@pytest.mark.asyncio
async def test_dataview_query_renders_verbatim(sample_vault) -> None:
    class Dataview:
        class api:
            @staticmethod
            async def queryMarkdown(query):
                return {"successful": True, "value": "| File |\n| --- |"}

    router = Router(build_registry(HostEnvironment(vault=sample_vault, plugins={"dataview": Dataview()})))
    reply = await router.handle(
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "tools/call",
            "params": {"name": "dataview_query", "arguments": {"query": "TABLE file.name"}},
        }
    )
    assert reply["result"]["content"][0]["text"] == "| File |\n| --- |"


def test_truncate_output_leaves_small_text_alone() -> None:
    assert truncate_output("short", "vault_get_note") == "short"


def test_router_identity_defaults() -> None:
    router = Router(CapabilityRegistry())
    assert router.name == "vault-mcp-bridge"
    assert router.version == "0.2.0"
