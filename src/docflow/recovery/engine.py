"""
docflow — recovery engine

File: src/docflow/recovery/engine.py

Purpose
- Find in-flight items that failed, resume them from their last completed stage,
  and quarantine items whose recovery budget is used up.

Normative behavior
- Candidates are ledger records with a failed stage, or whose local retry count has
  reached the executor's limit when local retries are enabled. With stale-failure
  cleanup enabled, records that started processing more than ``max_failure_age_seconds``
  ago are left out of the pass (they stay in the ledger). Age runs from ``started_at``,
  so an item that keeps failing recovery still ages out.
- The checkpoint is the last stage in pipeline order with status ``completed``;
  resumption starts one past it and never re-enters completed stages.
- Each pass over a still-failing item raises its recovery attempt counter by exactly
  one. The pass on which the counter reaches ``max_retries`` and the item still
  fails quarantines it: the id joins ``permanentFailures`` and the ledger record is
  removed. A record already at the limit when a pass starts is quarantined at once,
  without running any stage.
- A successful resume writes a completion record, removes the ledger record and
  clears the item's recovery counters.

Persisted document
- ``{"retries": {id: n}, "lastRetry": {id: iso8601}, "permanentFailures": [id]}``
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from docflow.constants import RECOVERY_DOCUMENT, RECOVERY_REPORT_PREFIX
from docflow.control_plane.processing_ledger import RecordNotFound
from docflow.domain.models import (
    JSONValue,
    ProcessingRecord,
    RecoveryState,
    StageStatus,
    to_iso8601z,
    utc_now,
)
from docflow.observability.logging import correlation_scope
from docflow.persistence.store import Document, JsonDocumentStore
from docflow.utils.concurrency import backoff_delay
from docflow.utils.fs import atomic_write

if TYPE_CHECKING:
    from docflow.control_plane.processing_ledger import ProcessingLedger
    from docflow.knowledge_plane.completion_ledger import CompletionLedger
    from docflow.pipeline.executor import PipelineExecutor

DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_RETRY_DELAY_SECONDS: Final[float] = 2.0
DEFAULT_MAX_FAILURE_AGE_SECONDS: Final[float] = 24 * 60 * 60
START_CHECKPOINT: Final[str] = "start"

Sleep = Callable[[float], Awaitable[None]]


class RecoveryExhausted(RuntimeError):
    """Raised when a retry is requested for an item that is already quarantined."""

    def __init__(self, work_id: str) -> None:
        super().__init__(f"work item {work_id} is permanently failed and will not be retried")
        self.work_id = work_id


class RecoveryOutcome(StrEnum):
    RECOVERED = "recovered"
    FAILED = "failed"
    PERMANENT_FAILURE = "permanent_failure"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class RecoveryOptions:
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    exponential_backoff: bool = True
    cleanup_old_failures: bool = True
    max_failure_age_seconds: float = DEFAULT_MAX_FAILURE_AGE_SECONDS

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("RecoveryOptions.max_retries must be >= 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("RecoveryOptions.retry_delay_seconds must be >= 0")
        if self.max_failure_age_seconds <= 0:
            raise ValueError("RecoveryOptions.max_failure_age_seconds must be > 0")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "max_retries": self.max_retries,
            "retry_delay_seconds": self.retry_delay_seconds,
            "exponential_backoff": self.exponential_backoff,
            "cleanup_old_failures": self.cleanup_old_failures,
            "max_failure_age_seconds": self.max_failure_age_seconds,
        }


@dataclass(frozen=True, slots=True)
class Checkpoint:
    last_completed_stage: str | None
    resume_from_index: int
    resume_from_stage: str | None

    @property
    def label(self) -> str:
        return self.last_completed_stage or START_CHECKPOINT


@dataclass(frozen=True, slots=True)
class RecoveryDetail:
    work_id: str
    file: str
    status: RecoveryOutcome
    checkpoint: str
    retry_count: int
    duration_ms: int
    timestamp: datetime
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "work_id": self.work_id,
            "file": self.file,
            "status": self.status.value,
            "checkpoint": self.checkpoint,
            "retry_count": self.retry_count,
            "duration_ms": self.duration_ms,
            "timestamp": to_iso8601z(self.timestamp),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True, slots=True)
class RecoveryReport:
    """Operator-facing summary of one ``recover_all`` pass."""

    options: RecoveryOptions
    start_time: datetime
    end_time: datetime
    total_duration_ms: int
    failures_found: int
    details: tuple[RecoveryDetail, ...] = ()

    def _count(self, outcome: RecoveryOutcome) -> int:
        return sum(1 for detail in self.details if detail.status is outcome)

    @property
    def recovered(self) -> int:
        return self._count(RecoveryOutcome.RECOVERED)

    @property
    def failed(self) -> int:
        return self._count(RecoveryOutcome.FAILED)

    @property
    def permanent_failures(self) -> int:
        return self._count(RecoveryOutcome.PERMANENT_FAILURE)

    @property
    def skipped(self) -> int:
        return self._count(RecoveryOutcome.SKIPPED)

    @property
    def recovery_rate(self) -> float:
        if self.failures_found == 0:
            return 0.0
        return round(self.recovered / self.failures_found * 100, 1)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "summary": {
                "failures_found": self.failures_found,
                "recovered": self.recovered,
                "failed": self.failed,
                "permanent_failures": self.permanent_failures,
                "skipped": self.skipped,
                "recovery_rate": f"{self.recovery_rate:.1f}%",
            },
            "timing": {
                "start_time": to_iso8601z(self.start_time),
                "end_time": to_iso8601z(self.end_time),
                "total_duration_ms": self.total_duration_ms,
                "total_duration_sec": self.total_duration_ms // 1000,
            },
            "recoveries": [
                detail.to_dict()
                for detail in self.details
                if detail.status is RecoveryOutcome.RECOVERED
            ],
            "errors": [
                detail.to_dict()
                for detail in self.details
                if detail.status in (RecoveryOutcome.FAILED, RecoveryOutcome.PERMANENT_FAILURE)
            ],
            "skipped": [
                detail.to_dict()
                for detail in self.details
                if detail.status is RecoveryOutcome.SKIPPED
            ],
            "options": self.options.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class CleanupResult:
    cleaned: int
    permanent_failures: int

    def to_dict(self) -> dict[str, JSONValue]:
        return {"cleaned": self.cleaned, "permanent_failures": self.permanent_failures}


@dataclass(frozen=True, slots=True)
class RecoveryStatus:
    max_retries: int
    retries: dict[str, int] = field(default_factory=dict)
    last_retry: dict[str, datetime] = field(default_factory=dict)
    permanent_failures: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "max_retries": self.max_retries,
            "active_retries": len(self.retries),
            "retries": dict(sorted(self.retries.items())),
            "last_retry": {
                work_id: to_iso8601z(value) for work_id, value in sorted(self.last_retry.items())
            },
            "permanent_failures": list(self.permanent_failures),
        }


def default_recovery_document() -> Document:
    return RecoveryState().to_dict()


def validate_recovery_document(document: Mapping[str, Any]) -> None:
    RecoveryState.from_dict(document)


def find_checkpoint(record: ProcessingRecord) -> Checkpoint:
    """Locate the last completed stage and the index to resume from."""
    last_index: int | None = None
    for index, stage in enumerate(record.stage_pipeline):
        if stage.status is StageStatus.COMPLETED:
            last_index = index

    resume = 0 if last_index is None else last_index + 1
    return Checkpoint(
        last_completed_stage=None if last_index is None else record.stage_pipeline[last_index].name,
        resume_from_index=resume,
        resume_from_stage=record.stage_pipeline[resume].name
        if resume < len(record.stage_pipeline)
        else None,
    )


class RecoveryEngine:
    """Resume failed items from their checkpoints with a bounded, persisted retry budget."""

    def __init__(
        self,
        ledger: ProcessingLedger,
        executor: PipelineExecutor,
        completion: CompletionLedger,
        state_store: JsonDocumentStore,
        *,
        options: RecoveryOptions | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._ledger = ledger
        self._executor = executor
        self._completion = completion
        self._state_store = state_store
        self._options = options or RecoveryOptions()
        self._sleep = sleep
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @staticmethod
    def open_state_store(state_dir: str | Path, *, logger: Any | None = None) -> JsonDocumentStore:
        return JsonDocumentStore(
            Path(state_dir) / RECOVERY_DOCUMENT,
            name="recovery-state",
            default_factory=default_recovery_document,
            validator=validate_recovery_document,
            logger=logger,
        )

    @property
    def options(self) -> RecoveryOptions:
        return self._options

    async def load_state(self) -> RecoveryState:
        return RecoveryState.from_dict(await self._state_store.read())

    async def detect_candidates(self) -> list[ProcessingRecord]:
        """Return ledger records eligible for a recovery pass, in ledger order."""
        state = await self.load_state()
        now = self._clock()
        max_age = timedelta(seconds=self._options.max_failure_age_seconds)
        local_limit = self._executor.max_local_retries

        candidates: list[ProcessingRecord] = []
        too_old = 0
        for record in await self._ledger.list_all():
            if state.is_quarantined(record.work_id):
                # Quarantine was interrupted between the state write and the ledger removal.
                await self._ledger.remove(record.work_id)
                self._logger.warning("recovery_purged_quarantined", work_item_id=record.work_id)
                continue
            exhausted = local_limit > 0 and record.retry_count >= local_limit
            if not (record.has_failed_stage or exhausted):
                continue
            if self._options.cleanup_old_failures and now - record.started_at > max_age:
                too_old += 1
                continue
            candidates.append(record)

        self._logger.info(
            "recovery_candidates_detected",
            candidates=len(candidates),
            filtered_old=too_old,
        )
        return candidates

    def checkpoint(self, record: ProcessingRecord) -> Checkpoint:
        return find_checkpoint(record)

    async def retry(self, record: ProcessingRecord) -> RecoveryDetail:
        """Run one recovery attempt for ``record`` and report what happened."""
        work_id = record.work_id
        started = time.perf_counter()
        checkpoint = self.checkpoint(record)

        def finish(
            status: RecoveryOutcome,
            retry_count: int,
            error: str | None = None,
        ) -> RecoveryDetail:
            return self._detail(record, status, checkpoint, retry_count, started, error=error)

        with correlation_scope(work_item_id=work_id):
            state = await self.load_state()
            if state.is_quarantined(work_id):
                raise RecoveryExhausted(work_id)

            attempts = state.attempts(work_id)
            if attempts >= self._options.max_retries:
                reason = "quarantined without running: exceeded maximum recovery attempts"
                await self.quarantine(work_id, reason)
                return finish(RecoveryOutcome.PERMANENT_FAILURE, attempts, reason)

            if checkpoint.resume_from_index >= len(record.stage_pipeline):
                if not record.is_finished:
                    return finish(RecoveryOutcome.SKIPPED, attempts, "no stages left to resume")
                await self._executor.finalize(
                    record.work_item, self._completion, recovery_attempts=attempts
                )
                await self._forget(work_id)
                return finish(RecoveryOutcome.RECOVERED, attempts)

            attempt = await self._record_attempt(work_id)
            delay = backoff_delay(
                self._options.retry_delay_seconds,
                attempt,
                exponential=self._options.exponential_backoff,
            )
            self._logger.info(
                "recovery_attempt",
                work_item_id=work_id,
                attempt=attempt,
                max_retries=self._options.max_retries,
                checkpoint=checkpoint.label,
                resume_from=checkpoint.resume_from_stage,
                delay_seconds=delay,
            )
            if delay > 0:
                await self._sleep(delay)

            try:
                for stage in record.stage_pipeline[checkpoint.resume_from_index :]:
                    if stage.status is StageStatus.FAILED:
                        await self._ledger.transition(work_id, stage.name, StageStatus.PENDING)
                result = await self._executor.run(record.work_item, checkpoint.resume_from_index)
            except RecordNotFound:
                return finish(
                    RecoveryOutcome.SKIPPED,
                    attempt,
                    "processing record disappeared during recovery",
                )

            if result.completed:
                await self._executor.finalize(
                    record.work_item, self._completion, recovery_attempts=attempt
                )
                await self._forget(work_id)
                self._logger.info("recovery_succeeded", work_item_id=work_id, attempt=attempt)
                return finish(RecoveryOutcome.RECOVERED, attempt)

            error = result.error or "stage failed"
            if attempt >= self._options.max_retries:
                await self.quarantine(
                    work_id, f"failed after {attempt} recovery attempt(s): {error}"
                )
                return finish(RecoveryOutcome.PERMANENT_FAILURE, attempt, error)

            self._logger.warning(
                "recovery_failed",
                work_item_id=work_id,
                attempt=attempt,
                error=error,
            )
            return finish(RecoveryOutcome.FAILED, attempt, error)

    async def quarantine(self, work_id: str, reason: str) -> None:
        """Mark ``work_id`` permanently failed and drop its ledger record."""
        async with self._state_store.transaction() as document:
            state = RecoveryState.from_dict(document)
            if not state.is_quarantined(work_id):
                state.permanent_failures.append(work_id)
            state.forget(work_id)
            _replace_contents(document, state)
        await self._ledger.remove(work_id)
        self._logger.warning("recovery_quarantined", work_item_id=work_id, reason=reason)

    async def recover_all(self) -> RecoveryReport:
        start_time = self._clock()
        started = time.perf_counter()
        candidates = await self.detect_candidates()

        details: list[RecoveryDetail] = []
        for record in candidates:
            current = await self._ledger.get(record.work_id)
            if current is None:
                details.append(
                    self._skipped(record, started, "processing record no longer present")
                )
                continue
            try:
                details.append(await self.retry(current))
            except RecoveryExhausted as exc:
                details.append(self._skipped(current, started, str(exc)))

        report = RecoveryReport(
            options=self._options,
            start_time=start_time,
            end_time=self._clock(),
            total_duration_ms=_elapsed_ms(started),
            failures_found=len(candidates),
            details=tuple(details),
        )
        self._logger.info(
            "recovery_pass_finished",
            failures_found=report.failures_found,
            recovered=report.recovered,
            failed=report.failed,
            permanent_failures=report.permanent_failures,
            skipped=report.skipped,
        )
        return report

    async def cleanup(self) -> CleanupResult:
        """Drop retry counters for items that are neither in the ledger nor quarantined."""
        active = {record.work_id for record in await self._ledger.list_all()}
        async with self._state_store.transaction() as document:
            state = RecoveryState.from_dict(document)
            stale = [
                work_id
                for work_id in sorted(set(state.retries) | set(state.last_retry))
                if work_id not in active and not state.is_quarantined(work_id)
            ]
            for work_id in stale:
                state.forget(work_id)
            _replace_contents(document, state)

        self._logger.info(
            "recovery_state_cleaned",
            cleaned=len(stale),
            permanent_failures=len(state.permanent_failures),
        )
        return CleanupResult(cleaned=len(stale), permanent_failures=len(state.permanent_failures))

    async def status(self) -> RecoveryStatus:
        state = await self.load_state()
        return RecoveryStatus(
            max_retries=self._options.max_retries,
            retries=dict(state.retries),
            last_retry=dict(state.last_retry),
            permanent_failures=tuple(state.permanent_failures),
        )

    def save_report(self, report: RecoveryReport, reports_dir: str | Path) -> Path:
        stamp = report.end_time.strftime("%Y%m%dT%H%M%S%fZ")
        target = Path(reports_dir) / f"{RECOVERY_REPORT_PREFIX}-{stamp}.json"
        atomic_write(target, json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n")
        self._logger.info("recovery_report_saved", path=str(target))
        return target

    async def _record_attempt(self, work_id: str) -> int:
        async with self._state_store.transaction() as document:
            state = RecoveryState.from_dict(document)
            attempt = state.attempts(work_id) + 1
            state.retries[work_id] = attempt
            state.last_retry[work_id] = self._clock()
            _replace_contents(document, state)
        return attempt

    async def _forget(self, work_id: str) -> None:
        async with self._state_store.transaction() as document:
            state = RecoveryState.from_dict(document)
            state.forget(work_id)
            _replace_contents(document, state)

    def _detail(
        self,
        record: ProcessingRecord,
        status: RecoveryOutcome,
        checkpoint: Checkpoint,
        retry_count: int,
        started: float,
        *,
        error: str | None = None,
    ) -> RecoveryDetail:
        return RecoveryDetail(
            work_id=record.work_id,
            file=record.file_path,
            status=status,
            checkpoint=checkpoint.label,
            retry_count=retry_count,
            duration_ms=_elapsed_ms(started),
            timestamp=self._clock(),
            error=error,
        )

    def _skipped(self, record: ProcessingRecord, started: float, reason: str) -> RecoveryDetail:
        return self._detail(
            record, RecoveryOutcome.SKIPPED, find_checkpoint(record), 0, started, error=reason
        )


def _replace_contents(document: Document, state: RecoveryState) -> None:
    document.clear()
    document.update(state.to_dict())


def _elapsed_ms(started: float) -> int:
    return int(round(max(time.perf_counter() - started, 0.0) * 1000))


__all__ = [
    "DEFAULT_MAX_FAILURE_AGE_SECONDS",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_DELAY_SECONDS",
    "START_CHECKPOINT",
    "Checkpoint",
    "CleanupResult",
    "RecoveryDetail",
    "RecoveryEngine",
    "RecoveryExhausted",
    "RecoveryOptions",
    "RecoveryOutcome",
    "RecoveryReport",
    "RecoveryStatus",
    "default_recovery_document",
    "find_checkpoint",
    "validate_recovery_document",
]
