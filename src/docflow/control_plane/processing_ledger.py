"""
docflow — processing ledger

File: src/docflow/control_plane/processing_ledger.py

Purpose
- Track every in-flight work item: one record per item, one status per stage.

Functional requirements
- Stage transitions follow ``pending -> in-progress -> {completed, failed, skipped}``;
  ``failed -> pending`` is allowed so recovery can replay a stage; completed and
  skipped stages are never re-entered.
- A failed transition appends to the record's error list and never removes the record.
- Every mutation persists the whole ledger document inside one store transaction.
- Error and skip-reason text is clamped to ``MAX_TEXT_LENGTH`` so the document
  always passes validation on the next load.
- ``completion_snapshot`` stamps a finished record without removing it; ``complete``
  removes it once the completion history holds the entry.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from docflow.constants import DOCUMENT_SCHEMA_VERSION, LEDGER_DOCUMENT
from docflow.domain.models import (
    FinalOutput,
    JSONValue,
    ProcessingRecord,
    StageErrorEntry,
    StageStatus,
    WorkItem,
    clamp_text,
    duration_ms,
    utc_now,
)
from docflow.persistence.store import Document, JsonDocumentStore

if TYPE_CHECKING:
    from datetime import datetime

ALLOWED_TRANSITIONS: Final[dict[StageStatus, frozenset[StageStatus]]] = {
    StageStatus.PENDING: frozenset({StageStatus.IN_PROGRESS, StageStatus.SKIPPED}),
    StageStatus.IN_PROGRESS: frozenset(
        {
            StageStatus.IN_PROGRESS,
            StageStatus.COMPLETED,
            StageStatus.FAILED,
            StageStatus.SKIPPED,
        }
    ),
    StageStatus.FAILED: frozenset({StageStatus.PENDING}),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
}


class LedgerError(ValueError):
    """Base class for processing ledger contract violations."""


class RecordNotFound(LedgerError, KeyError):
    """Raised when a work id has no processing record."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "record not found"


class DuplicateRecord(LedgerError):
    """Raised when registering a work item that already has a processing record."""


class InvalidTransition(LedgerError):
    """Raised when a stage status change violates the stage state machine."""


@dataclass(frozen=True, slots=True)
class LedgerStats:
    total_processing: int
    ready_to_complete: int
    in_progress: int
    not_started: int
    failed: int
    errors: int

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total_processing": self.total_processing,
            "by_status": {
                "ready_to_complete": self.ready_to_complete,
                "in_progress": self.in_progress,
                "not_started": self.not_started,
                "failed": self.failed,
            },
            "errors": self.errors,
        }


def default_ledger_document() -> Document:
    return {"version": DOCUMENT_SCHEMA_VERSION, "current_processing": []}


def validate_ledger_document(document: Mapping[str, Any]) -> None:
    entries = document["current_processing"]
    if not isinstance(entries, list):
        raise ValueError("current_processing must be a list")
    for entry in entries:
        ProcessingRecord.from_dict(entry)


class ProcessingLedger:
    """Durable record of in-flight items, keyed by work id."""

    def __init__(
        self,
        store: JsonDocumentStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def open(cls, state_dir: str | Path, **kwargs: Any) -> ProcessingLedger:
        store = JsonDocumentStore(
            Path(state_dir) / LEDGER_DOCUMENT,
            name="processing-ledger",
            default_factory=default_ledger_document,
            validator=validate_ledger_document,
            logger=kwargs.get("logger"),
        )
        return cls(store, **kwargs)

    @property
    def store(self) -> JsonDocumentStore:
        return self._store

    async def register(self, item: WorkItem) -> ProcessingRecord:
        record = ProcessingRecord.for_item(item, started_at=self._clock())
        async with self._store.transaction() as document:
            if _find_index(document, item.id) is not None:
                raise DuplicateRecord(f"work item {item.id} is already in the processing ledger")
            document["current_processing"].append(record.to_dict())
        self._logger.info(
            "ledger_registered",
            work_item_id=item.id,
            path=item.file.path,
            stages=list(item.stages),
        )
        return record

    async def transition(
        self,
        work_id: str,
        stage_name: str,
        new_status: StageStatus | str,
        payload: Mapping[str, JSONValue] | None = None,
    ) -> ProcessingRecord:
        """Move one stage to ``new_status`` and persist the updated record.

        ``payload`` keys by target status: ``output`` and ``duration_ms`` for
        completed, ``error`` for failed, ``reason`` for skipped.
        """
        target = StageStatus(new_status)
        details = dict(payload or {})
        now = self._clock()

        async with self._store.transaction() as document:
            index, record = _require(document, work_id)
            try:
                stage = record.stage_pipeline[record.stage_index(stage_name)]
            except KeyError as exc:
                raise InvalidTransition(
                    f"stage {stage_name!r} is not part of the pipeline for {work_id}"
                ) from exc

            if target not in ALLOWED_TRANSITIONS[stage.status]:
                raise InvalidTransition(
                    f"{work_id}: stage {stage_name!r} cannot move from "
                    f"{stage.status.value} to {target.value}"
                )

            if target is StageStatus.IN_PROGRESS:
                if stage.status is StageStatus.PENDING or stage.started_at is None:
                    stage.started_at = now
            elif target is StageStatus.COMPLETED:
                stage.completed_at = now
                stage.output = details.get("output")
                stage.duration_ms = _stage_duration(details, stage.started_at, now)
                stage.error = None
            elif target is StageStatus.FAILED:
                message = clamp_text(str(details.get("error") or "stage failed"))
                stage.completed_at = now
                stage.duration_ms = _stage_duration(details, stage.started_at, now)
                stage.error = message
                record.errors.append(
                    StageErrorEntry(stage=stage_name, error=message, timestamp=now)
                )
            elif target is StageStatus.SKIPPED:
                stage.completed_at = now
                reason = details.get("reason")
                stage.reason = clamp_text(str(reason)) if reason is not None else None
            else:
                stage.started_at = None
                stage.completed_at = None
                stage.duration_ms = None
                stage.output = None

            stage.status = target
            document["current_processing"][index] = record.to_dict()

        self._logger.debug(
            "ledger_stage_transition",
            work_item_id=work_id,
            stage=stage_name,
            status=target.value,
        )
        return record

    async def get(self, work_id: str) -> ProcessingRecord | None:
        document = await self._store.read()
        index = _find_index(document, work_id)
        if index is None:
            return None
        return ProcessingRecord.from_dict(document["current_processing"][index])

    async def list_all(self) -> tuple[ProcessingRecord, ...]:
        document = await self._store.read()
        return tuple(ProcessingRecord.from_dict(entry) for entry in document["current_processing"])

    async def increment_retry(self, work_id: str) -> int:
        async with self._store.transaction() as document:
            index, record = _require(document, work_id)
            record.retry_count += 1
            document["current_processing"][index] = record.to_dict()
        return record.retry_count

    async def completion_snapshot(
        self, work_id: str, final_output: FinalOutput
    ) -> ProcessingRecord:
        """Return the record stamped for completion history, leaving it in the ledger."""
        document = await self._store.read()
        _, record = _require(document, work_id)
        _check_finished(record)
        return _stamp_completed(record, final_output, self._clock())

    async def complete(self, work_id: str, final_output: FinalOutput) -> ProcessingRecord:
        """Remove the record and return it stamped with completion time and final output.

        Callers write the completion history entry first, from ``completion_snapshot``.
        """
        now = self._clock()
        async with self._store.transaction() as document:
            index, record = _require(document, work_id)
            _check_finished(record)
            del document["current_processing"][index]

        record = _stamp_completed(record, final_output, now)
        self._logger.info(
            "ledger_completed",
            work_item_id=work_id,
            total_duration_ms=record.total_duration_ms,
            final_path=final_output.final_path,
        )
        return record

    async def remove(self, work_id: str) -> bool:
        """Purge a record; used only on the success path or for quarantine."""
        async with self._store.transaction() as document:
            index = _find_index(document, work_id)
            if index is not None:
                del document["current_processing"][index]
        if index is not None:
            self._logger.info("ledger_removed", work_item_id=work_id)
        return index is not None

    async def stats(self) -> LedgerStats:
        records = await self.list_all()
        ready = in_progress = not_started = failed = 0
        for record in records:
            statuses = [stage.status for stage in record.stage_pipeline]
            if any(status is StageStatus.FAILED for status in statuses):
                failed += 1
            elif all(_is_done(status) for status in statuses):
                ready += 1
            elif all(status is StageStatus.PENDING for status in statuses):
                not_started += 1
            else:
                in_progress += 1
        return LedgerStats(
            total_processing=len(records),
            ready_to_complete=ready,
            in_progress=in_progress,
            not_started=not_started,
            failed=failed,
            errors=sum(len(record.errors) for record in records),
        )


def _is_done(status: StageStatus) -> bool:
    return status in (StageStatus.COMPLETED, StageStatus.SKIPPED)


def _check_finished(record: ProcessingRecord) -> None:
    unfinished = [stage.name for stage in record.stage_pipeline if not _is_done(stage.status)]
    if unfinished:
        raise InvalidTransition(
            f"{record.work_id}: cannot complete while stages are unfinished: {unfinished}"
        )


def _stamp_completed(
    record: ProcessingRecord, final_output: FinalOutput, now: datetime
) -> ProcessingRecord:
    record.completed_at = now
    record.total_duration_ms = duration_ms(record.started_at, now)
    record.final_output = final_output
    return record


def _stage_duration(
    details: Mapping[str, JSONValue],
    started_at: datetime | None,
    now: datetime,
) -> int | None:
    reported = details.get("duration_ms")
    if isinstance(reported, int) and not isinstance(reported, bool) and reported >= 0:
        return reported
    if started_at is None:
        return None
    return duration_ms(started_at, now)


def _find_index(document: Mapping[str, Any], work_id: str) -> int | None:
    for index, entry in enumerate(document["current_processing"]):
        if entry.get("work_id") == work_id:
            return index
    return None


def _require(document: Mapping[str, Any], work_id: str) -> tuple[int, ProcessingRecord]:
    index = _find_index(document, work_id)
    if index is None:
        raise RecordNotFound(f"no processing record for work item {work_id}")
    return index, ProcessingRecord.from_dict(document["current_processing"][index])


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DuplicateRecord",
    "InvalidTransition",
    "LedgerError",
    "LedgerStats",
    "ProcessingLedger",
    "RecordNotFound",
    "default_ledger_document",
    "validate_ledger_document",
]
