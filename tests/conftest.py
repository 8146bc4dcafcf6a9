"""Pytest hooks and fixtures."""

import asyncio
import contextlib
import json

import pytest
import uvicorn

from vaultbridge.mcp.capabilities import build_registry
from vaultbridge.mcp.handlers import Router
from vaultbridge.mcp.transport.channels import ChannelClosed
from vaultbridge.mcp.transport.http_server import BackgroundServer
from vaultbridge.vault import HostEnvironment, Vault


class FakeChannel:
    """In-memory channel; ``feed`` plays the counterpart, ``sent`` records our writes."""

    def __init__(self, autoreply=None):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False
        self.autoreply = autoreply

    async def send(self, text: str) -> None:
        if self.closed:
            raise ChannelClosed("closed")
        self.sent.append(text)
        if self.autoreply is not None:
            reply = self.autoreply(json.loads(text))
            if reply is not None:
                self.feed(reply)

    async def recv(self) -> str:
        item = await self.incoming.get()
        if item is None:
            self.closed = True
            raise ChannelClosed("closed by peer")
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def feed(self, message) -> None:
        self.incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        self.incoming.put_nowait(None)

    def sent_envelopes(self) -> list[dict]:
        return [json.loads(text) for text in self.sent]


def pong(envelope: dict):
    """Autoreply that answers every request with an empty result."""
    if envelope.get("id") is None or "method" not in envelope:
        return None
    return {"jsonrpc": "2.0", "id": envelope["id"], "result": {}}


class ScriptedDialer:
    """Dialer that fails ``failures`` times, then hands out fresh FakeChannels."""

    def __init__(self, failures: int = 0, autoreply=None):
        self.failures = failures
        self.autoreply = autoreply
        self.calls = 0
        self.channels: list[FakeChannel] = []

    async def __call__(self) -> FakeChannel:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionRefusedError("connection refused")
        channel = FakeChannel(autoreply=self.autoreply)
        self.channels.append(channel)
        return channel


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@contextlib.asynccontextmanager
async def running_server(app):
    """Serve ``app`` with uvicorn on a free loopback port; yields ``host:port``."""
    config = uvicorn.Config(
        app,
        host="127.0.0.1",
        port=0,
        log_level="warning",
        ws="websockets",
        timeout_graceful_shutdown=1,
    )
    server = BackgroundServer(config=config)
    task = asyncio.create_task(server.serve())
    try:
        await wait_for(lambda: server.started or task.done(), timeout=5)
        if not server.started:
            raise RuntimeError("uvicorn did not start")
        port = server.servers[0].sockets[0].getsockname()[1]
        yield f"127.0.0.1:{port}"
    finally:
        server.should_exit = True
        await asyncio.wait_for(task, timeout=5)


@pytest.fixture
def vault_dir(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def vault(vault_dir):
    return Vault(vault_dir)


@pytest.fixture
def sample_vault(vault_dir):
    (vault_dir / "projects").mkdir()
    (vault_dir / ".obsidian").mkdir()
    (vault_dir / ".obsidian" / "hidden.md").write_text("- [ ] hidden task", encoding="utf-8")
    (vault_dir / "inbox.md").write_text(
        "# Inbox\n"
        "- [ ] Call the plumber #home [due:: 2024-05-01] [id:: abc123]\n"
        "- [x] Renew passport ⏫\n"
        "  - [ ] Water plants 🔁 every week 📅 2024-06-10\n",
        encoding="utf-8",
    )
    (vault_dir / "projects" / "garden.md").write_text(
        "Garden notes\n- [ ] Buy seeds #garden #home 🔼\n", encoding="utf-8"
    )
    (vault_dir / "readme.txt").write_text("not a note", encoding="utf-8")
    return Vault(vault_dir)


@pytest.fixture
def router(vault):
    return Router(build_registry(HostEnvironment(vault=vault)))
