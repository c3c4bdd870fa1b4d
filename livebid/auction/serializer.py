"""Single-writer-per-key execution lanes.

Each auction key gets one FIFO lane drained by one worker task, so mutations
for the same auction run strictly one at a time in arrival order while
different auctions proceed in parallel. Lanes are created on demand and
dropped as soon as they drain.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import AbstractAsyncContextManager, AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, TypeVar

from .errors import SerializationTimeout, TooManyPendingOperations

logger = logging.getLogger(__name__)

T = TypeVar("T")

LockFactory = Callable[[str], AbstractAsyncContextManager[None]]


@asynccontextmanager
async def _no_lock(key: str) -> AsyncIterator[None]:
    yield


@dataclass
class _Job:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    started: bool = False
    abandoned: bool = False


@dataclass
class _Lane:
    jobs: Deque[_Job] = field(default_factory=deque)
    worker: asyncio.Task | None = None
    in_flight: bool = False

    @property
    def depth(self) -> int:
        waiting = sum(1 for job in self.jobs if not job.abandoned)
        return waiting + (1 if self.in_flight else 0)


class KeyedSerializer:
    def __init__(
        self,
        *,
        max_pending: int,
        slot_timeout_ms: int,
        lock_factory: LockFactory | None = None,
    ) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._max_pending = max_pending
        self._slot_timeout = slot_timeout_ms / 1000
        self._lock_factory = lock_factory or _no_lock
        self._lanes: dict[str, _Lane] = {}

    def depth(self, key: str) -> int:
        lane = self._lanes.get(key)
        return lane.depth if lane else 0

    @property
    def active_keys(self) -> int:
        return len(self._lanes)

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Queue ``operation`` behind every earlier operation for ``key``."""
        lane = self._lanes.get(key)
        if lane is None:
            lane = _Lane()
            self._lanes[key] = lane
        if lane.depth >= self._max_pending:
            logger.warning("lane %s full (%s pending)", key, lane.depth)
            raise TooManyPendingOperations(
                f"too many pending operations for auction {key}",
                pending=lane.depth,
            )
        job = _Job(operation=operation, future=asyncio.get_running_loop().create_future())
        lane.jobs.append(job)
        if lane.worker is None or lane.worker.done():
            lane.worker = asyncio.create_task(self._drain(key, lane))
        try:
            return await asyncio.wait_for(asyncio.shield(job.future), self._slot_timeout)
        except asyncio.TimeoutError:
            if not job.started:
                job.abandoned = True
                raise SerializationTimeout(
                    f"timed out waiting for a slot on auction {key}",
                    timeout_ms=int(self._slot_timeout * 1000),
                ) from None
        # Already applying; the caller must see the real outcome.
        return await job.future

    async def _drain(self, key: str, lane: _Lane) -> None:
        try:
            while lane.jobs:
                job = lane.jobs.popleft()
                if job.abandoned:
                    continue
                job.started = True
                lane.in_flight = True
                try:
                    await self._apply(key, job)
                finally:
                    lane.in_flight = False
        finally:
            if self._lanes.get(key) is lane and not lane.jobs:
                del self._lanes[key]

    async def _apply(self, key: str, job: _Job) -> None:
        try:
            async with AsyncExitStack() as stack:
                try:
                    await stack.enter_async_context(self._lock_factory(key))
                except Exception as exc:
                    logger.warning("lock acquisition failed for %s: %s", key, exc)
                    _settle(job.future, exc=SerializationTimeout(
                        f"could not acquire lock for auction {key}"
                    ))
                    return
                try:
                    result = await job.operation()
                except asyncio.CancelledError:
                    job.future.cancel()
                    raise
                except Exception as exc:
                    _settle(job.future, exc=exc)
                else:
                    _settle(job.future, result=result)
        except Exception:
            # Raised while releasing the lock; the operation already committed.
            logger.error("lock release failed for %s", key, exc_info=True)
            _settle(job.future, exc=SerializationTimeout(
                f"could not release lock for auction {key}"
            ))

    async def close(self) -> None:
        workers = [lane.worker for lane in self._lanes.values() if lane.worker]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._lanes.clear()


def _settle(future: asyncio.Future, *, result: Any = None, exc: BaseException | None = None) -> None:
    if future.done():
        return
    if exc is not None:
        future.set_exception(exc)
    else:
        future.set_result(result)
