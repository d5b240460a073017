"""Asyncio helpers for the dispatcher worker pool, stage timeouts and retry backoff."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable

T = TypeVar("T")


class WorkerPool(Generic[T]):
    """Run job factories with at most ``max_concurrency`` in flight.

    Jobs are zero-argument factories, so a job's coroutine is only created once it
    holds a slot. Results are yielded in completion order. The first job error is
    re-raised after the remaining jobs are cancelled.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self.max_concurrency = max_concurrency
        self.peak_in_use = 0
        self._in_use = 0
        self._slots = asyncio.Semaphore(max_concurrency)

    async def run(self, jobs: Iterable[Callable[[], Awaitable[T]]]) -> AsyncIterator[T]:
        pending = {asyncio.create_task(self._occupy_slot(job)) for job in jobs}
        try:
            while pending:
                finished, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in finished:
                    yield task.result()
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _occupy_slot(self, job: Callable[[], Awaitable[T]]) -> T:
        async with self._slots:
            self._in_use += 1
            self.peak_in_use = max(self.peak_in_use, self._in_use)
            try:
                return await job()
            finally:
                self._in_use -= 1


async def run_with_timeout(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``awaitable``; raise ``TimeoutError("operation timed out after ...")`` on expiry."""

    if timeout_seconds <= 0:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise ValueError("timeout_seconds must be > 0")
    try:
        async with asyncio.timeout(timeout_seconds):
            return await awaitable
    except TimeoutError as exc:
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds") from exc


def backoff_delay(base_seconds: float, attempt: int, *, exponential: bool = True) -> float:
    """Delay before 1-based ``attempt``: ``base * 2**(attempt - 1)``, or ``base`` when flat."""

    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    if base_seconds < 0:
        raise ValueError("base_seconds must be >= 0")
    factor = 2 ** (attempt - 1) if exponential else 1
    return float(base_seconds) * factor


__all__ = ["WorkerPool", "backoff_delay", "run_with_timeout"]
