"""Per-key lanes: ordering, isolation, bounds and timeouts."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest

from livebid.auction.errors import SerializationTimeout, TooManyPendingOperations
from livebid.auction.serializer import KeyedSerializer


@pytest.mark.asyncio
async def test_same_key_runs_one_at_a_time_in_order():
    serializer = KeyedSerializer(max_pending=32, slot_timeout_ms=2000)
    running = 0
    peak = 0
    order: list[int] = []

    def job(index: int):
        async def _run() -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            order.append(index)
            running -= 1
            return index

        return _run

    results = await asyncio.gather(*(serializer.run("auc", job(i)) for i in range(10)))

    assert results == list(range(10))
    assert order == list(range(10))
    assert peak == 1
    assert serializer.active_keys == 0


@pytest.mark.asyncio
async def test_different_keys_run_in_parallel():
    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=2000)
    b_started = asyncio.Event()

    async def on_a() -> str:
        await asyncio.wait_for(b_started.wait(), 1)
        return "a"

    async def on_b() -> str:
        b_started.set()
        return "b"

    assert await asyncio.gather(serializer.run("a", on_a), serializer.run("b", on_b)) == ["a", "b"]


@pytest.mark.asyncio
async def test_lane_depth_is_capped():
    serializer = KeyedSerializer(max_pending=2, slot_timeout_ms=2000)
    release = asyncio.Event()

    async def blocked() -> str:
        await release.wait()
        return "done"

    first = asyncio.create_task(serializer.run("auc", blocked))
    second = asyncio.create_task(serializer.run("auc", blocked))
    await asyncio.sleep(0)
    assert serializer.depth("auc") == 2

    with pytest.raises(TooManyPendingOperations) as excinfo:
        await serializer.run("auc", blocked)
    assert excinfo.value.retryable

    release.set()
    assert await asyncio.gather(first, second) == ["done", "done"]


@pytest.mark.asyncio
async def test_timed_out_operation_never_runs():
    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=50)
    release = asyncio.Event()
    ran = []

    async def blocked() -> None:
        await release.wait()

    async def late() -> None:
        ran.append("late")

    holder = asyncio.create_task(serializer.run("auc", blocked))
    await asyncio.sleep(0)
    with pytest.raises(SerializationTimeout):
        await serializer.run("auc", late)

    release.set()
    assert await holder is None
    await asyncio.sleep(0.01)
    assert ran == []
    assert serializer.active_keys == 0


@pytest.mark.asyncio
async def test_failures_propagate_and_lane_continues():
    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=2000)

    async def boom() -> None:
        raise ValueError("boom")

    async def fine() -> str:
        return "ok"

    results = await asyncio.gather(
        serializer.run("auc", boom), serializer.run("auc", fine), return_exceptions=True
    )
    assert isinstance(results[0], ValueError)
    assert results[1] == "ok"


@pytest.mark.asyncio
async def test_lock_failure_maps_to_serialization_timeout():
    @asynccontextmanager
    async def unavailable(key: str):
        raise TimeoutError(f"lock for {key} busy")
        yield

    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=2000, lock_factory=unavailable)
    ran = []

    async def op() -> None:
        ran.append(True)

    with pytest.raises(SerializationTimeout):
        await serializer.run("auc", op)
    assert ran == []


@pytest.mark.asyncio
async def test_lock_is_held_around_each_operation():
    held: list[str] = []
    seen: list[list[str]] = []

    @asynccontextmanager
    async def tracking(key: str):
        held.append(key)
        try:
            yield
        finally:
            held.remove(key)

    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=2000, lock_factory=tracking)

    async def op() -> None:
        seen.append(list(held))

    await serializer.run("auc", op)
    assert seen == [["auc"]]
    assert held == []


@pytest.mark.asyncio
async def test_lock_backend_error_maps_to_serialization_timeout():
    @asynccontextmanager
    async def broken(key: str):
        raise ConnectionError("redis down")
        yield

    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=100, lock_factory=broken)
    ran = []

    async def op() -> None:
        ran.append(True)

    for _ in range(2):
        with pytest.raises(SerializationTimeout):
            await asyncio.wait_for(serializer.run("auc", op), 2)
    assert ran == []
    await asyncio.sleep(0)
    assert serializer.active_keys == 0


@pytest.mark.asyncio
async def test_lock_release_error_keeps_result_and_lane_alive():
    @asynccontextmanager
    async def flaky_release(key: str):
        yield
        raise ConnectionError("lost lock connection")

    serializer = KeyedSerializer(max_pending=4, slot_timeout_ms=100, lock_factory=flaky_release)

    async def op() -> str:
        return "committed"

    first, second = await asyncio.wait_for(
        asyncio.gather(serializer.run("auc", op), serializer.run("auc", op)), 2
    )
    assert (first, second) == ("committed", "committed")


@pytest.mark.asyncio
async def test_timed_out_jobs_do_not_count_toward_depth():
    serializer = KeyedSerializer(max_pending=3, slot_timeout_ms=50)
    release = asyncio.Event()

    async def blocked() -> str:
        await release.wait()
        return "done"

    async def quick() -> str:
        return "quick"

    holder = asyncio.create_task(serializer.run("auc", blocked))
    await asyncio.sleep(0)
    for _ in range(2):
        with pytest.raises(SerializationTimeout):
            await serializer.run("auc", quick)
    assert serializer.depth("auc") == 1

    waiter = asyncio.create_task(serializer.run("auc", quick))
    await asyncio.sleep(0)
    assert serializer.depth("auc") == 2
    release.set()
    assert await holder == "done"
    assert await waiter == "quick"
