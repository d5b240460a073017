"""
docflow — engine controller

File: src/docflow/control_plane/controller.py

Purpose
- Build every engine component from one ``EngineConfig`` and expose the operator
  commands (enqueue, process, recover, cleanup, status, overview, history) on top.

Normative behavior
- All components share the state directory and the configured document root.
- Per-call option overrides (batch and recovery flags from the CLI) never mutate the
  configuration; they build fresh option objects for that call only.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from docflow.control_plane.dispatcher import (
    BatchReport,
    DispatchOptions,
    Dispatcher,
    ItemOutcome,
)
from docflow.control_plane.processing_ledger import LedgerStats, ProcessingLedger
from docflow.control_plane.work_queue import EnqueueResult, QueueStats, WorkQueue
from docflow.domain.models import CompletionRecord, JSONValue, utc_now
from docflow.knowledge_plane.completion_ledger import (
    CompletionLedger,
    CompletionQuery,
    CompletionStatistics,
    TimeRange,
)
from docflow.pipeline.executor import PipelineExecutor
from docflow.pipeline.stages import StageCallable, StageRegistry
from docflow.recovery.engine import (
    CleanupResult,
    RecoveryEngine,
    RecoveryOptions,
    RecoveryReport,
    RecoveryStatus,
)

if TYPE_CHECKING:
    from docflow.config.schema import EngineConfig

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class EngineOverview:
    queue: QueueStats
    processing: LedgerStats
    completions: CompletionStatistics
    recovery: RecoveryStatus

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "queue": self.queue.to_dict(),
            "processing": self.processing.to_dict(),
            "completions": self.completions.to_dict(),
            "recovery": self.recovery.to_dict(),
        }


class EngineController:
    """Owns the wired component graph for one state directory."""

    def __init__(
        self,
        config: EngineConfig,
        *,
        stages: Mapping[str, StageCallable] | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

        state_dir = Path(config.paths.state_dir)
        root = Path(config.paths.root)

        self.registry = StageRegistry.from_references(config.stages)
        for name, stage in (stages or {}).items():
            self.registry.register(name, stage, replace=True)

        self.queue = WorkQueue.open(
            state_dir,
            root=root,
            inbox_marker=config.queue.inbox_marker,
            stage_plan=config.queue.effective_stage_plan(),
            clock=clock,
        )
        self.ledger = ProcessingLedger.open(state_dir, clock=clock)
        self.completion = CompletionLedger.open(state_dir, clock=clock)
        self.executor = PipelineExecutor(
            self.ledger,
            self.registry,
            root=root,
            max_local_retries=config.executor.max_local_retries,
            base_delay_seconds=config.executor.base_delay_seconds,
            stage_timeout_seconds=config.executor.stage_timeout_seconds,
            sleep=sleep,
            clock=clock,
        )
        self.recovery_state = RecoveryEngine.open_state_store(state_dir)

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def reports_dir(self) -> Path:
        return Path(self._config.paths.reports_dir)

    def dispatch_options(self, **overrides: Any) -> DispatchOptions:
        options = DispatchOptions(
            parallel=self._config.dispatch.parallel,
            max_parallel=self._config.dispatch.max_parallel,
            stop_on_error=self._config.dispatch.stop_on_error,
            delay_between_items_seconds=self._config.dispatch.delay_between_items_seconds,
        )
        return _with_overrides(options, overrides)

    def recovery_options(self, **overrides: Any) -> RecoveryOptions:
        options = RecoveryOptions(
            max_retries=self._config.recovery.max_retries,
            retry_delay_seconds=self._config.recovery.retry_delay_seconds,
            exponential_backoff=self._config.recovery.exponential_backoff,
            cleanup_old_failures=self._config.recovery.cleanup_old_failures,
            max_failure_age_seconds=self._config.recovery.max_failure_age_seconds,
        )
        return _with_overrides(options, overrides)

    def dispatcher(self, options: DispatchOptions | None = None) -> Dispatcher:
        return Dispatcher(
            self.queue,
            self.ledger,
            self.executor,
            self.completion,
            options=options or self.dispatch_options(),
            sleep=self._sleep,
            clock=self._clock,
        )

    def recovery_engine(self, options: RecoveryOptions | None = None) -> RecoveryEngine:
        return RecoveryEngine(
            self.ledger,
            self.executor,
            self.completion,
            self.recovery_state,
            options=options or self.recovery_options(),
            sleep=self._sleep,
            clock=self._clock,
        )

    async def enqueue(
        self,
        path: str | Path,
        *,
        source: str = "unknown",
        context: Mapping[str, JSONValue] | None = None,
    ) -> EnqueueResult:
        return await self.queue.enqueue(path, source=source, context=context)

    async def process_next(self) -> ItemOutcome:
        return await self.dispatcher().process_next()

    async def process_all(
        self,
        options: DispatchOptions | None = None,
        *,
        save_report: bool = False,
    ) -> tuple[BatchReport, Path | None]:
        dispatcher = self.dispatcher(options)
        report = await dispatcher.process_all()
        saved = dispatcher.save_report(report, self.reports_dir) if save_report else None
        return report, saved

    async def recover(
        self,
        options: RecoveryOptions | None = None,
        *,
        save_report: bool = False,
    ) -> tuple[RecoveryReport, Path | None]:
        engine = self.recovery_engine(options)
        report = await engine.recover_all()
        saved = engine.save_report(report, self.reports_dir) if save_report else None
        return report, saved

    async def cleanup(self) -> CleanupResult:
        return await self.recovery_engine().cleanup()

    async def recovery_status(self) -> RecoveryStatus:
        return await self.recovery_engine().status()

    async def history(self, query: CompletionQuery | None = None) -> tuple[CompletionRecord, ...]:
        return await self.completion.query(query)

    async def prune_history(self, max_age_days: int | None = None) -> int:
        days = self._config.completion.retention_days if max_age_days is None else max_age_days
        return await self.completion.cleanup(days)

    async def overview(self, time_range: TimeRange | str = TimeRange.WEEK) -> EngineOverview:
        overview = EngineOverview(
            queue=await self.queue.stats(),
            processing=await self.ledger.stats(),
            completions=await self.completion.statistics(time_range),
            recovery=await self.recovery_status(),
        )
        self._logger.debug(
            "overview_collected",
            queued=overview.queue.total_items,
            processing=overview.processing.total_processing,
        )
        return overview


def _with_overrides(options: Any, overrides: Mapping[str, Any]) -> Any:
    selected = {key: value for key, value in overrides.items() if value is not None}
    return dataclasses.replace(options, **selected) if selected else options


__all__ = ["EngineController", "EngineOverview"]
