"""
docflow — dispatcher

File: src/docflow/control_plane/dispatcher.py

Purpose
- Move work from the queue into the processing ledger and drive the pipeline executor.

Normative behavior
- ``process_next`` dequeues the most urgent item, registers it in the processing
  ledger, runs its stages, and on success writes the completion record and removes
  the ledger record. On failure the ledger record stays for the recovery engine.
- ``process_all`` drains the items present when it starts, either one at a time
  (optionally pausing between items) or through a bounded worker pool.
- With ``stop_on_error`` no further item is dispatched after the first failure;
  items already running in the pool finish normally.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from docflow.constants import BATCH_REPORT_PREFIX
from docflow.domain.models import JSONValue, to_iso8601z, utc_now
from docflow.observability.logging import correlation_scope
from docflow.utils.concurrency import WorkerPool
from docflow.utils.fs import atomic_write

if TYPE_CHECKING:
    from docflow.control_plane.processing_ledger import ProcessingLedger
    from docflow.control_plane.work_queue import WorkQueue
    from docflow.knowledge_plane.completion_ledger import CompletionLedger
    from docflow.pipeline.executor import PipelineExecutor

DEFAULT_MAX_PARALLEL: Final[int] = 3
DEFAULT_DELAY_BETWEEN_ITEMS_SECONDS: Final[float] = 0.5

Sleep = Callable[[float], Awaitable[None]]


class ItemStatus(StrEnum):
    IDLE = "idle"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DispatchOptions:
    parallel: bool = False
    max_parallel: int = DEFAULT_MAX_PARALLEL
    stop_on_error: bool = False
    delay_between_items_seconds: float = DEFAULT_DELAY_BETWEEN_ITEMS_SECONDS

    def __post_init__(self) -> None:
        if self.max_parallel < 1:
            raise ValueError("DispatchOptions.max_parallel must be >= 1")
        if self.delay_between_items_seconds < 0:
            raise ValueError("DispatchOptions.delay_between_items_seconds must be >= 0")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "parallel": self.parallel,
            "max_parallel": self.max_parallel,
            "stop_on_error": self.stop_on_error,
            "delay_between_items_seconds": self.delay_between_items_seconds,
        }


@dataclass(frozen=True, slots=True)
class ItemOutcome:
    status: ItemStatus
    work_id: str | None = None
    file: str | None = None
    final_path: str | None = None
    error: str | None = None
    duration_ms: int = 0
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "work_id": self.work_id,
            "file": self.file,
            "final_path": self.final_path,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "timestamp": to_iso8601z(self.timestamp) if self.timestamp is not None else None,
        }


@dataclass(frozen=True, slots=True)
class BatchReport:
    options: DispatchOptions
    start_time: datetime
    end_time: datetime
    total_duration_ms: int
    total_items: int
    outcomes: tuple[ItemOutcome, ...] = ()

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def completed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is ItemStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is ItemStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is ItemStatus.IDLE)

    @property
    def success_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return round(self.completed / self.processed * 100, 1)

    def to_dict(self) -> dict[str, JSONValue]:
        attempted = [outcome for outcome in self.outcomes if outcome.status is not ItemStatus.IDLE]
        times = [outcome.duration_ms for outcome in attempted]
        minutes = self.total_duration_ms / 60000
        return {
            "summary": {
                "total_items": self.total_items,
                "processed": self.processed,
                "completed": self.completed,
                "failed": self.failed,
                "skipped": self.skipped,
                "success_rate": f"{self.success_rate:.1f}%",
            },
            "timing": {
                "start_time": to_iso8601z(self.start_time),
                "end_time": to_iso8601z(self.end_time),
                "total_duration_ms": self.total_duration_ms,
                "average_time_ms": sum(times) // len(times) if times else 0,
                "min_time_ms": min(times, default=0),
                "max_time_ms": max(times, default=0),
                "throughput_per_min": round(self.processed / minutes, 2)
                if self.processed and minutes > 0
                else 0.0,
            },
            "items": [outcome.to_dict() for outcome in attempted],
            "errors": [
                {
                    "work_id": outcome.work_id,
                    "file": outcome.file,
                    "error": outcome.error,
                    "timestamp": to_iso8601z(outcome.timestamp) if outcome.timestamp else None,
                }
                for outcome in self.outcomes
                if outcome.status is ItemStatus.FAILED
            ],
            "options": self.options.to_dict(),
        }


class Dispatcher:
    """Pull items off the queue and run them to a terminal state."""

    def __init__(
        self,
        queue: WorkQueue,
        ledger: ProcessingLedger,
        executor: PipelineExecutor,
        completion: CompletionLedger,
        *,
        options: DispatchOptions | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._queue = queue
        self._ledger = ledger
        self._executor = executor
        self._completion = completion
        self._options = options or DispatchOptions()
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def options(self) -> DispatchOptions:
        return self._options

    async def process_next(self) -> ItemOutcome:
        """Dispatch one item; ``IDLE`` when the queue is empty."""
        item = await self._queue.dequeue_next()
        if item is None:
            return ItemOutcome(status=ItemStatus.IDLE, timestamp=self._clock())

        started = time.perf_counter()
        with correlation_scope(work_item_id=item.id):
            self._logger.info("dispatch_started", work_item_id=item.id, path=item.file.path)
            await self._ledger.register(item)
            try:
                result = await self._executor.run(item)
                completion = (
                    await self._executor.finalize(item, self._completion)
                    if result.completed
                    else None
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._logger.exception("dispatch_error", work_item_id=item.id, error=str(exc))
                return ItemOutcome(
                    status=ItemStatus.FAILED,
                    work_id=item.id,
                    file=item.file.path,
                    error=f"{type(exc).__name__}: {exc}",
                    duration_ms=_elapsed_ms(started),
                    timestamp=self._clock(),
                )

            if completion is None:
                self._logger.warning(
                    "dispatch_failed",
                    work_item_id=item.id,
                    stage=result.failed_stage,
                    error=result.error,
                )
                return ItemOutcome(
                    status=ItemStatus.FAILED,
                    work_id=item.id,
                    file=item.file.path,
                    error=f"stage {result.failed_stage!r} failed: {result.error}",
                    duration_ms=_elapsed_ms(started),
                    timestamp=self._clock(),
                )

            self._logger.info(
                "dispatch_completed",
                work_item_id=item.id,
                final_path=completion.final_path,
            )
            return ItemOutcome(
                status=ItemStatus.COMPLETED,
                work_id=item.id,
                file=item.file.path,
                final_path=completion.final_path,
                duration_ms=_elapsed_ms(started),
                timestamp=self._clock(),
            )

    async def process_all(self) -> BatchReport:
        start_time = self._clock()
        started = time.perf_counter()
        total = await self._queue.size()
        self._logger.info(
            "batch_started",
            total_items=total,
            parallel=self._options.parallel,
            max_parallel=self._options.max_parallel,
        )

        if total == 0:
            outcomes: list[ItemOutcome] = []
        elif self._options.parallel:
            outcomes = await self._process_parallel(total)
        else:
            outcomes = await self._process_sequential()

        report = BatchReport(
            options=self._options,
            start_time=start_time,
            end_time=self._clock(),
            total_duration_ms=_elapsed_ms(started),
            total_items=total,
            outcomes=tuple(outcomes),
        )
        self._logger.info(
            "batch_finished",
            processed=report.processed,
            completed=report.completed,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    def save_report(self, report: BatchReport, reports_dir: str | Path) -> Path:
        stamp = report.end_time.strftime("%Y%m%dT%H%M%S%fZ")
        target = Path(reports_dir) / f"{BATCH_REPORT_PREFIX}-{stamp}.json"
        atomic_write(target, json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n")
        self._logger.info("batch_report_saved", path=str(target))
        return target

    async def _process_sequential(self) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        while True:
            outcome = await self._guarded_next()
            if outcome.status is ItemStatus.IDLE:
                break
            outcomes.append(outcome)
            if self._options.stop_on_error and outcome.status is ItemStatus.FAILED:
                self._logger.warning("batch_stopped_on_error", work_item_id=outcome.work_id)
                break
            delay = self._options.delay_between_items_seconds
            if delay > 0 and await self._queue.size() > 0:
                await self._sleep(delay)
        return outcomes

    async def _process_parallel(self, total: int) -> list[ItemOutcome]:
        halted = False

        async def job() -> ItemOutcome | None:
            nonlocal halted
            if halted:
                return None
            outcome = await self._guarded_next()
            if self._options.stop_on_error and outcome.status is ItemStatus.FAILED:
                halted = True
            return outcome

        pool: WorkerPool[ItemOutcome | None] = WorkerPool(
            max_concurrency=min(self._options.max_parallel, total)
        )
        outcomes: list[ItemOutcome] = []
        async for outcome in pool.run(job for _ in range(total)):
            if outcome is not None:
                outcomes.append(outcome)
        self._logger.debug("batch_pool_drained", peak_in_use=pool.peak_in_use)
        return outcomes

    async def _guarded_next(self) -> ItemOutcome:
        try:
            return await self.process_next()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._logger.exception("dispatch_error", error=str(exc))
            return ItemOutcome(
                status=ItemStatus.FAILED,
                error=f"{type(exc).__name__}: {exc}",
                timestamp=self._clock(),
            )


def _elapsed_ms(started: float) -> int:
    return int(round(max(time.perf_counter() - started, 0.0) * 1000))


__all__ = [
    "DEFAULT_DELAY_BETWEEN_ITEMS_SECONDS",
    "DEFAULT_MAX_PARALLEL",
    "BatchReport",
    "DispatchOptions",
    "Dispatcher",
    "ItemOutcome",
    "ItemStatus",
]
