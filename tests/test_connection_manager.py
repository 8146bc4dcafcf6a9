import asyncio

import pytest
from conftest import ScriptedDialer, pong, wait_for

from vaultbridge.mcp.errors import (
    ConnectionClosedError,
    DuplicateId,
    ProtocolError,
    RequestTimeoutError,
)
from vaultbridge.mcp.transport.connection import ConnectionManager, ConnectionState


def make_manager(dialer, **kwargs):
    received = []
    kwargs.setdefault("reconnect_interval", 0.01)
    manager = ConnectionManager(dialer, on_message=received.append, **kwargs)
    return manager, received


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    dialer = ScriptedDialer(failures=100)
    manager, _ = make_manager(dialer, max_attempts=3)

    manager.start()
    await asyncio.wait_for(manager.join(), timeout=2)

    assert dialer.calls == 4  # first try plus three reconnects
    assert manager.attempt == 3
    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.connect_count == 0


@pytest.mark.asyncio
async def test_attempt_counter_resets_on_connect() -> None:
    dialer = ScriptedDialer(failures=2)
    manager, _ = make_manager(dialer, max_attempts=5)

    manager.start()
    assert await manager.wait_connected(timeout=2)
    assert manager.state is ConnectionState.CONNECTED
    assert manager.attempt == 0
    assert manager.connect_count == 1
    await manager.stop()


class OneShotDialer(ScriptedDialer):
    """Connects once, then refuses every later dial."""

    async def __call__(self):
        if self.channels:
            self.calls += 1
            raise ConnectionRefusedError("connection refused")
        return await super().__call__()


@pytest.mark.asyncio
async def test_attempt_limit_counts_from_last_connection() -> None:
    dialer = OneShotDialer()
    manager, _ = make_manager(dialer, max_attempts=3)

    manager.start()
    assert await manager.wait_connected(timeout=2)
    dialer.channels[0].drop()

    await asyncio.wait_for(manager.join(), timeout=2)
    assert dialer.calls == 4  # the connection plus three failed reconnects
    assert manager.attempt == 3
    assert manager.connect_count == 1
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnects_after_channel_drop() -> None:
    dialer = ScriptedDialer()
    manager, _ = make_manager(dialer)

    manager.start()
    assert await manager.wait_connected(timeout=2)
    dialer.channels[0].drop()

    await wait_for(lambda: manager.connect_count == 2)
    assert manager.connected
    assert manager.attempt == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_disconnect_rejects_pending_requests() -> None:
    dialer = ScriptedDialer()
    manager, _ = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)

    pending = asyncio.ensure_future(
        manager.request({"jsonrpc": "2.0", "id": 1, "method": "ping"})
    )
    await wait_for(lambda: 1 in manager.correlation)
    dialer.channels[0].drop()

    with pytest.raises(ConnectionClosedError) as excinfo:
        await pending
    assert excinfo.value.code == -32000
    assert len(manager.correlation) == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_reply_resolves_with_whole_envelope() -> None:
    dialer = ScriptedDialer(autoreply=pong)
    manager, received = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)

    reply = await manager.request({"jsonrpc": "2.0", "id": "r1", "method": "ping"})

    assert reply == {"jsonrpc": "2.0", "id": "r1", "result": {}}
    assert received == []
    await manager.stop()


@pytest.mark.asyncio
async def test_non_replies_go_to_message_handler() -> None:
    dialer = ScriptedDialer()
    manager, received = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)
    channel = dialer.channels[0]

    channel.feed({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
    channel.feed({"jsonrpc": "2.0", "id": 4, "method": "tools/list"})
    # Reply with no pending entry
    channel.feed({"jsonrpc": "2.0", "id": 99, "result": {}})

    await wait_for(lambda: len(received) == 3)
    assert [m.get("method") for m in received] == ["notifications/message", "tools/list", None]
    await manager.stop()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped() -> None:
    dialer = ScriptedDialer()
    manager, received = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)
    channel = dialer.channels[0]

    channel.feed("{not json")
    channel.feed("[1, 2, 3]")
    channel.feed({"jsonrpc": "2.0", "method": "notifications/progress"})

    await wait_for(lambda: len(received) == 1)
    assert received[0]["method"] == "notifications/progress"
    assert manager.connected
    await manager.stop()


@pytest.mark.asyncio
async def test_async_message_handler_runs_as_task() -> None:
    dialer = ScriptedDialer()
    handled = []

    async def on_message(envelope):
        await asyncio.sleep(0)
        handled.append(envelope["method"])

    manager = ConnectionManager(dialer, on_message=on_message, reconnect_interval=0.01)
    manager.start()
    assert await manager.wait_connected(timeout=2)
    dialer.channels[0].feed({"jsonrpc": "2.0", "method": "notifications/initialized"})

    await wait_for(lambda: handled == ["notifications/initialized"])
    await manager.stop()


@pytest.mark.asyncio
async def test_request_while_disconnected_fails_fast() -> None:
    manager, _ = make_manager(ScriptedDialer())
    with pytest.raises(ConnectionClosedError):
        await manager.request({"jsonrpc": "2.0", "id": 1, "method": "ping"})
    with pytest.raises(ConnectionClosedError):
        await manager.send({"jsonrpc": "2.0", "method": "notifications/initialized"})


@pytest.mark.asyncio
async def test_request_needs_an_id() -> None:
    dialer = ScriptedDialer()
    manager, _ = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)
    with pytest.raises(ProtocolError):
        await manager.request({"jsonrpc": "2.0", "id": None, "method": "ping"})
    await manager.stop()


@pytest.mark.asyncio
async def test_request_times_out() -> None:
    dialer = ScriptedDialer()
    manager, _ = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)

    with pytest.raises(RequestTimeoutError):
        await manager.request({"jsonrpc": "2.0", "id": 5, "method": "ping"}, timeout=0.02)
    assert len(manager.correlation) == 0
    await manager.stop()


@pytest.mark.asyncio
async def test_duplicate_pending_id_is_refused() -> None:
    dialer = ScriptedDialer()
    manager, _ = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)

    first = asyncio.ensure_future(manager.request({"jsonrpc": "2.0", "id": 7, "method": "ping"}))
    await wait_for(lambda: 7 in manager.correlation)
    with pytest.raises(DuplicateId):
        await manager.request({"jsonrpc": "2.0", "id": 7, "method": "ping"})

    await manager.stop()
    with pytest.raises(ConnectionClosedError):
        await first


@pytest.mark.asyncio
async def test_handshake_sent_on_every_connect() -> None:
    dialer = ScriptedDialer(autoreply=pong)
    manager, _ = make_manager(dialer, handshake=True, client_info={"name": "test-host", "version": "1"})
    manager.start()
    assert await manager.wait_connected(timeout=2)
    await wait_for(lambda: dialer.channels[0].sent)

    handshake = dialer.channels[0].sent_envelopes()[0]
    assert handshake["method"] == "initialize"
    assert handshake["id"] == "initialize-1"
    assert handshake["params"]["clientInfo"] == {"name": "test-host", "version": "1"}
    assert handshake["params"]["protocolVersion"] == "2024-11-05"

    dialer.channels[0].drop()
    await wait_for(lambda: len(dialer.channels) == 2 and dialer.channels[1].sent)
    assert dialer.channels[1].sent_envelopes()[0]["id"] == "initialize-2"
    await manager.stop()


@pytest.mark.asyncio
async def test_stop_is_terminal_and_idempotent() -> None:
    dialer = ScriptedDialer()
    manager, _ = make_manager(dialer)
    manager.start()
    assert await manager.wait_connected(timeout=2)

    await manager.stop()
    await manager.stop()

    assert manager.state is ConnectionState.SHUT_DOWN
    assert dialer.channels[0].closed
    manager.start()
    assert not manager.running
