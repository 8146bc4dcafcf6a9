import asyncio

import pytest

from vaultbridge.mcp.errors import ConnectionClosedError, DuplicateId, RequestTimeoutError
from vaultbridge.mcp.transport.correlation import CorrelationTable


@pytest.mark.asyncio
async def test_resolve_settles_once() -> None:
    table = CorrelationTable()
    future = table.register(1, timeout=5)

    assert 1 in table
    assert table.resolve(1, {"id": 1, "result": "first"}) is True
    assert table.resolve(1, {"id": 1, "result": "second"}) is False
    assert await future == {"id": 1, "result": "first"}
    assert len(table) == 0


@pytest.mark.asyncio
async def test_unknown_id_is_ignored() -> None:
    table = CorrelationTable()
    assert table.resolve("nope", {}) is False
    assert table.reject("nope", RuntimeError("x")) is False


@pytest.mark.asyncio
async def test_deadline_rejects_with_timeout() -> None:
    table = CorrelationTable()
    future = table.register("slow", timeout=0.02)

    with pytest.raises(RequestTimeoutError) as excinfo:
        await future
    assert excinfo.value.code == -32001
    assert "slow" not in table
    # A late reply after the timeout finds nothing to settle
    assert table.resolve("slow", {"result": 1}) is False


@pytest.mark.asyncio
async def test_reply_cancels_deadline() -> None:
    table = CorrelationTable()
    future = table.register(2, timeout=0.02)
    table.resolve(2, "done")
    await asyncio.sleep(0.05)
    assert await future == "done"


@pytest.mark.asyncio
async def test_reject_all_fails_every_entry() -> None:
    table = CorrelationTable()
    futures = [table.register(i, timeout=5) for i in range(3)]

    assert table.reject_all() == 3
    assert len(table) == 0
    for future in futures:
        with pytest.raises(ConnectionClosedError):
            await future
    assert table.reject_all() == 0


@pytest.mark.asyncio
async def test_duplicate_live_id_is_refused() -> None:
    table = CorrelationTable()
    table.register("a", timeout=5)
    with pytest.raises(DuplicateId):
        table.register("a", timeout=5)

    table.resolve("a", None)
    # Reusable once settled
    table.register("a", timeout=5)
    table.reject_all()


@pytest.mark.asyncio
async def test_string_and_number_ids_are_distinct() -> None:
    table = CorrelationTable()
    table.register(1, timeout=5)
    table.register("1", timeout=5)
    assert len(table) == 2
    table.reject_all()


@pytest.mark.asyncio
async def test_discard_cancels_without_settling() -> None:
    table = CorrelationTable()
    future = table.register(9, timeout=5)
    assert table.discard(9) is True
    assert future.cancelled()
    assert table.discard(9) is False


@pytest.mark.asyncio
async def test_entry_times_share_the_loop_clock() -> None:
    loop = asyncio.get_running_loop()
    table = CorrelationTable()
    before = loop.time()
    table.register("timed", timeout=5)

    entry = table.get("timed")
    assert before <= entry.created_at <= loop.time()
    assert entry.deadline == pytest.approx(entry.created_at + 5)
    assert entry.timer.when() == pytest.approx(entry.deadline)

    table.discard("timed")
    assert table.get("timed") is None
