"""
docflow — pipeline executor

File: src/docflow/pipeline/executor.py

Purpose
- Run a work item's stages in order against the processing ledger.

Normative behavior
- Stages of one item run strictly in sequence; completed and skipped stages are
  never re-entered, so a resumed run starts at the first unfinished stage.
- A failing stage is attempted once plus up to ``max_local_retries`` more times,
  waiting ``base_delay_seconds * 2**(retry-1)`` before each retry; every retry is
  counted on the record via ``increment_retry``.
- Sync stage callables run in a worker thread via ``asyncio.to_thread``; sync and
  async stages alike are bounded by ``stage_timeout_seconds``, and a timeout counts
  as a failure for retry purposes.
- When retries run out the stage is marked failed and the run stops. The ledger
  record is left in place; the ledger, not the returned value, is the durable
  record of failure.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog

from docflow.control_plane.processing_ledger import RecordNotFound
from docflow.domain.models import (
    TERMINAL_STAGE_STATUSES,
    FinalOutput,
    ProcessingRecord,
    StageStatus,
    WorkItem,
    as_json_object,
    clamp_text,
    utc_now,
)
from docflow.observability.logging import correlation_scope
from docflow.pipeline.stages import (
    DocumentLoadError,
    StageRegistry,
    StageResult,
    load_document_state,
    normalize_stage_output,
)
from docflow.utils.concurrency import backoff_delay, run_with_timeout

if TYPE_CHECKING:
    from datetime import datetime

    from docflow.control_plane.processing_ledger import ProcessingLedger
    from docflow.domain.models import CompletionRecord
    from docflow.knowledge_plane.completion_ledger import CompletionLedger

DEFAULT_MAX_LOCAL_RETRIES: Final[int] = 3
DEFAULT_BASE_DELAY_SECONDS: Final[float] = 1.0
DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 300.0

Sleep = Callable[[float], Awaitable[None]]


class TransientStageError(RuntimeError):
    """Error a stage raises to ask for another attempt; timeouts are wrapped as this too."""


class StageExhausted(RuntimeError):
    """A stage kept failing after all local retries were used."""

    def __init__(self, work_id: str, stage: str, error: str, attempts: int) -> None:
        super().__init__(f"{work_id}: stage {stage!r} failed after {attempts} attempt(s): {error}")
        self.work_id = work_id
        self.stage = stage
        self.error = error
        self.attempts = attempts


class PipelineStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PipelineResult:
    """Outcome of one ``PipelineExecutor.run`` call."""

    work_id: str
    status: PipelineStatus
    stages_run: tuple[str, ...] = ()
    failed_stage: str | None = None
    error: str | None = None
    attempts: int = 0
    duration_ms: int = 0

    @property
    def completed(self) -> bool:
        return self.status is PipelineStatus.COMPLETED

    def raise_for_status(self) -> None:
        if self.status is PipelineStatus.FAILED:
            raise StageExhausted(
                self.work_id,
                self.failed_stage or "<unknown>",
                self.error or "stage failed",
                self.attempts,
            )


@dataclass(frozen=True, slots=True)
class _Attempt:
    result: StageResult | None
    error: str | None
    duration_ms: int


class PipelineExecutor:
    """Drive stage collaborators for one work item at a time, recording progress in the ledger."""

    def __init__(
        self,
        ledger: ProcessingLedger,
        registry: StageRegistry,
        *,
        root: str | Path = ".",
        max_local_retries: int = DEFAULT_MAX_LOCAL_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        stage_timeout_seconds: float | None = DEFAULT_STAGE_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        if max_local_retries < 0:
            raise ValueError("max_local_retries must be >= 0")
        if base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if stage_timeout_seconds is not None and stage_timeout_seconds <= 0:
            raise ValueError("stage_timeout_seconds must be > 0 when provided")
        self._ledger = ledger
        self._registry = registry
        self._root = Path(root)
        self._max_local_retries = max_local_retries
        self._base_delay_seconds = base_delay_seconds
        self._stage_timeout_seconds = stage_timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def ledger(self) -> ProcessingLedger:
        return self._ledger

    @property
    def max_local_retries(self) -> int:
        return self._max_local_retries

    async def run(self, item: WorkItem, from_stage_index: int = 0) -> PipelineResult:
        """Run ``item.stages[from_stage_index:]``; the item must already be registered."""
        if not 0 <= from_stage_index <= len(item.stages):
            raise ValueError(
                f"from_stage_index must be within 0..{len(item.stages)}, got {from_stage_index}"
            )

        started = time.perf_counter()
        with correlation_scope(work_item_id=item.id):
            record = await self._ledger.get(item.id)
            if record is None:
                raise RecordNotFound(f"no processing record for work item {item.id}")

            stages_run: list[str] = []
            total_attempts = 0
            for index in range(from_stage_index, len(item.stages)):
                stage_name = item.stages[index]
                if record.stage_pipeline[index].status in TERMINAL_STAGE_STATUSES:
                    continue

                record = await self._ledger.transition(item.id, stage_name, StageStatus.IN_PROGRESS)
                stages_run.append(stage_name)
                record, attempts, error = await self._run_stage(item, stage_name, record)
                total_attempts += attempts
                if error is not None:
                    self._logger.error(
                        "pipeline_stage_exhausted",
                        work_item_id=item.id,
                        stage=stage_name,
                        attempts=attempts,
                        error=error,
                    )
                    return PipelineResult(
                        work_id=item.id,
                        status=PipelineStatus.FAILED,
                        stages_run=tuple(stages_run),
                        failed_stage=stage_name,
                        error=error,
                        attempts=total_attempts,
                        duration_ms=_elapsed_ms(started),
                    )

            self._logger.info(
                "pipeline_completed",
                work_item_id=item.id,
                stages_run=stages_run,
                resumed_from=from_stage_index,
            )
            return PipelineResult(
                work_id=item.id,
                status=PipelineStatus.COMPLETED,
                stages_run=tuple(stages_run),
                attempts=total_attempts,
                duration_ms=_elapsed_ms(started),
            )

    async def final_output(self, record: ProcessingRecord) -> FinalOutput:
        """Describe where the document ended up, read from its latest reported path."""
        final_path = record.current_document_path()
        destination = PurePosixPath(final_path).parent.as_posix()
        try:
            state = load_document_state(self._root, final_path)
        except DocumentLoadError as exc:
            self._logger.warning(
                "pipeline_final_state_unreadable",
                work_item_id=record.work_id,
                path=final_path,
                error=str(exc),
            )
            return FinalOutput(final_path=final_path, destination_folder=destination)
        return FinalOutput(
            final_path=final_path,
            keywords_extracted=len(state.keywords),
            links_created=len(state.linked_concepts),
            tags_added=state.tags,
            destination_folder=destination,
        )

    async def finalize(
        self,
        item: WorkItem,
        completion: CompletionLedger,
        *,
        recovery_attempts: int = 0,
    ) -> CompletionRecord:
        """Move a fully finished item from the processing ledger into completion history.

        History is written before the ledger record is removed, so an interrupted
        finalize leaves the item in at least one ledger; replaying it is a no-op for
        the history because ``add`` keeps one entry per work id.
        """
        record = await self._ledger.get(item.id)
        if record is None:
            raise RecordNotFound(f"no processing record for work item {item.id}")
        final = await self.final_output(record)
        snapshot = await self._ledger.completion_snapshot(item.id, final)
        entry = await completion.add(snapshot, final, recovery_attempts=recovery_attempts)
        await self._ledger.complete(item.id, final)
        return entry

    async def _run_stage(
        self,
        item: WorkItem,
        stage_name: str,
        record: ProcessingRecord,
    ) -> tuple[ProcessingRecord, int, str | None]:
        max_attempts = self._max_local_retries + 1
        for attempt in range(1, max_attempts + 1):
            outcome = await self._attempt(stage_name, record.current_document_path())
            if outcome.result is not None:
                result = outcome.result
                if result.status is StageStatus.SKIPPED:
                    record = await self._ledger.transition(
                        item.id, stage_name, StageStatus.SKIPPED, {"reason": result.reason}
                    )
                    return record, attempt, None
                record = await self._ledger.transition(
                    item.id,
                    stage_name,
                    StageStatus.COMPLETED,
                    {
                        "output": result.output,
                        "duration_ms": result.duration_ms
                        if result.duration_ms is not None
                        else outcome.duration_ms,
                    },
                )
                self._logger.info(
                    "pipeline_stage_completed",
                    work_item_id=item.id,
                    stage=stage_name,
                    attempt=attempt,
                    duration_ms=outcome.duration_ms,
                )
                return record, attempt, None

            error = outcome.error or "stage failed"
            if attempt < max_attempts:
                retry_number = await self._ledger.increment_retry(item.id)
                delay = backoff_delay(self._base_delay_seconds, attempt)
                self._logger.warning(
                    "pipeline_stage_retry",
                    work_item_id=item.id,
                    stage=stage_name,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    retry_count=retry_number,
                    delay_seconds=delay,
                    error=error,
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            record = await self._ledger.transition(
                item.id,
                stage_name,
                StageStatus.FAILED,
                {"error": error, "duration_ms": outcome.duration_ms},
            )
            return record, attempt, error

        raise AssertionError("unreachable: stage attempt loop exited without an outcome")

    async def _attempt(self, stage_name: str, document_path: str) -> _Attempt:
        started = time.perf_counter()
        stage = self._registry.get(stage_name)
        if stage is None:
            return _Attempt(None, f"stage {stage_name!r} is not registered", 0)

        try:
            state = load_document_state(self._root, document_path)
            raw_output = await self._invoke(stage, state)
            result = normalize_stage_output(raw_output)
            if result.status is StageStatus.FAILED:
                raise TransientStageError(result.error or "stage reported failure")
            as_json_object(result.output, f"{stage_name}.output")
        except asyncio.CancelledError:
            raise
        except TransientStageError as exc:
            return _Attempt(None, clamp_text(str(exc) or "stage failed"), _elapsed_ms(started))
        except Exception as exc:  # noqa: BLE001
            message = clamp_text(f"{type(exc).__name__}: {exc}")
            return _Attempt(None, message, _elapsed_ms(started))
        return _Attempt(result, None, _elapsed_ms(started))

    async def _invoke(self, stage: Callable[..., Any], state: Any) -> object:
        if inspect.iscoroutinefunction(stage) or inspect.iscoroutinefunction(
            getattr(stage, "__call__", None)
        ):
            pending: Awaitable[object] = stage(state)
        else:
            # Sync stages run in a worker thread, under the same timeout as async ones.
            pending = _await_result(asyncio.to_thread(stage, state))
        if self._stage_timeout_seconds is None:
            return await pending
        try:
            return await run_with_timeout(pending, self._stage_timeout_seconds)
        except TimeoutError as exc:
            raise TransientStageError(str(exc)) from exc


async def _await_result(pending: Awaitable[object]) -> object:
    result = await pending
    if inspect.isawaitable(result):
        return await result
    return result


def _elapsed_ms(started: float) -> int:
    return int(round(max(time.perf_counter() - started, 0.0) * 1000))


__all__ = [
    "DEFAULT_BASE_DELAY_SECONDS",
    "DEFAULT_MAX_LOCAL_RETRIES",
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "PipelineExecutor",
    "PipelineResult",
    "PipelineStatus",
    "StageExhausted",
    "TransientStageError",
]
