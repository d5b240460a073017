"""
docflow — completion ledger

File: src/docflow/knowledge_plane/completion_ledger.py

Purpose
- Append-only history of successfully finished work items, with query and statistics access.

Functional requirements
- ``add`` writes exactly one immutable ``CompletionRecord`` per work id.
- ``query`` filters by completion date range, work id, path substring (original or
  final path), error presence and retry presence; newest first; optional limit.
- ``statistics`` aggregates totals, mean duration, success rate, per-stage timing
  and per-destination counts over ``today`` / ``week`` / ``month`` / ``all``.
- ``cleanup`` is the only operation that removes records, and only by age.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

import structlog

from docflow.constants import COMPLETION_DOCUMENT, DOCUMENT_SCHEMA_VERSION
from docflow.domain.models import (
    CompletionRecord,
    FinalOutput,
    JSONValue,
    ProcessingRecord,
    StageStatus,
    StageSummary,
    duration_ms,
    to_iso8601z,
    utc_now,
)
from docflow.persistence.store import Document, JsonDocumentStore

DEFAULT_RETENTION_DAYS: Final[int] = 30
DEFAULT_RECENT_LIMIT: Final[int] = 10


class TimeRange(StrEnum):
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


@dataclass(frozen=True, slots=True)
class CompletionQuery:
    """Filters accepted by ``CompletionLedger.query``; unset fields do not filter."""

    start: datetime | None = None
    end: datetime | None = None
    work_id: str | None = None
    path_contains: str | None = None
    has_errors: bool = False
    has_retries: bool = False
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.limit is not None and self.limit <= 0:
            raise ValueError("CompletionQuery.limit must be > 0 when provided")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("CompletionQuery.start must not be after end")

    def matches(self, record: CompletionRecord) -> bool:
        if self.start is not None and record.completed_at < self.start:
            return False
        if self.end is not None and record.completed_at > self.end:
            return False
        if self.work_id is not None and record.work_id != self.work_id:
            return False
        if self.path_contains and not (
            self.path_contains in record.file_path or self.path_contains in record.final_path
        ):
            return False
        if self.has_errors and not record.has_errors:
            return False
        return not (self.has_retries and not record.has_retries)


@dataclass(slots=True)
class StageTiming:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    total_duration_ms: int = 0

    @property
    def average_duration_ms(self) -> int:
        return round(self.total_duration_ms / self.total) if self.total else 0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_duration_ms": self.total_duration_ms,
            "average_duration_ms": self.average_duration_ms,
        }


@dataclass(frozen=True, slots=True)
class CompletionStatistics:
    time_range: TimeRange
    total_completed: int
    total_errors: int
    total_retries: int
    average_duration_ms: int
    success_rate: int
    keywords_total: int
    links_total: int
    by_stage: dict[str, StageTiming] = field(default_factory=dict)
    by_destination: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "time_range": self.time_range.value,
            "total_completed": self.total_completed,
            "total_errors": self.total_errors,
            "total_retries": self.total_retries,
            "average_duration_ms": self.average_duration_ms,
            "success_rate": self.success_rate,
            "keywords_total": self.keywords_total,
            "links_total": self.links_total,
            "by_stage": {name: timing.to_dict() for name, timing in self.by_stage.items()},
            "by_destination": dict(self.by_destination),
        }


def default_completion_document() -> Document:
    return {"version": DOCUMENT_SCHEMA_VERSION, "completed": []}


def validate_completion_document(document: Mapping[str, Any]) -> None:
    entries = document["completed"]
    if not isinstance(entries, list):
        raise ValueError("completed must be a list")
    for entry in entries:
        CompletionRecord.from_dict(entry)


def range_start(time_range: TimeRange | str, now: datetime) -> datetime | None:
    """Return the inclusive lower bound for ``time_range``; ``None`` means unbounded."""
    selected = TimeRange(time_range)
    if selected is TimeRange.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if selected is TimeRange.WEEK:
        return now - timedelta(days=7)
    if selected is TimeRange.MONTH:
        return now - timedelta(days=30)
    return None


class CompletionLedger:
    """Durable, append-only log of finished work."""

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
    def open(cls, state_dir: str | Path, **kwargs: Any) -> CompletionLedger:
        store = JsonDocumentStore(
            Path(state_dir) / COMPLETION_DOCUMENT,
            name="completion-log",
            default_factory=default_completion_document,
            validator=validate_completion_document,
            logger=kwargs.get("logger"),
        )
        return cls(store, **kwargs)

    @property
    def store(self) -> JsonDocumentStore:
        return self._store

    async def add(
        self,
        record: ProcessingRecord,
        final_output: FinalOutput,
        *,
        recovery_attempts: int = 0,
    ) -> CompletionRecord:
        """Append the history entry for ``record``; a work id is recorded at most once."""
        completed_at = record.completed_at or self._clock()
        entry = CompletionRecord(
            work_id=record.work_id,
            file_path=record.file_path,
            final_path=final_output.final_path or record.file_path,
            started_at=record.started_at,
            completed_at=completed_at,
            total_duration_ms=record.total_duration_ms
            if record.total_duration_ms is not None
            else duration_ms(record.started_at, completed_at),
            stage_pipeline=tuple(StageSummary.from_state(stage) for stage in record.stage_pipeline),
            metadata=final_output,
            errors=tuple(record.errors),
            retries=record.retry_count,
            recovery_attempts=recovery_attempts,
        )

        async with self._store.transaction() as document:
            for existing in document["completed"]:
                if existing.get("work_id") == record.work_id:
                    self._logger.warning(
                        "completion_duplicate_ignored",
                        work_item_id=record.work_id,
                    )
                    return CompletionRecord.from_dict(existing)
            document["completed"].append(entry.to_dict())

        self._logger.info(
            "completion_recorded",
            work_item_id=entry.work_id,
            file_path=entry.file_path,
            final_path=entry.final_path,
            total_duration_ms=entry.total_duration_ms,
        )
        return entry

    async def all_records(self) -> tuple[CompletionRecord, ...]:
        document = await self._store.read()
        return tuple(CompletionRecord.from_dict(entry) for entry in document["completed"])

    async def query(self, filters: CompletionQuery | None = None) -> tuple[CompletionRecord, ...]:
        selected = filters or CompletionQuery()
        matched = [record for record in await self.all_records() if selected.matches(record)]
        matched.sort(key=lambda record: record.completed_at, reverse=True)
        if selected.limit is not None:
            matched = matched[: selected.limit]
        return tuple(matched)

    async def recent(self, limit: int = DEFAULT_RECENT_LIMIT) -> tuple[CompletionRecord, ...]:
        return await self.query(CompletionQuery(limit=limit))

    async def was_processed(self, path: str) -> bool:
        return bool(await self.file_history(path))

    async def file_history(self, path: str) -> tuple[CompletionRecord, ...]:
        return tuple(
            record
            for record in await self.all_records()
            if path in (record.file_path, record.final_path)
        )

    async def statistics(self, time_range: TimeRange | str = TimeRange.ALL) -> CompletionStatistics:
        selected = TimeRange(time_range)
        lower = range_start(selected, self._clock())
        records = [
            record
            for record in await self.all_records()
            if lower is None or record.completed_at >= lower
        ]

        by_stage: dict[str, StageTiming] = {}
        by_destination: dict[str, int] = {}
        for record in records:
            for stage in record.stage_pipeline:
                timing = by_stage.setdefault(stage.name, StageTiming())
                timing.total += 1
                if stage.status is StageStatus.COMPLETED:
                    timing.completed += 1
                elif stage.status is StageStatus.FAILED:
                    timing.failed += 1
                elif stage.status is StageStatus.SKIPPED:
                    timing.skipped += 1
                timing.total_duration_ms += stage.duration_ms or 0
            destination = record.metadata.destination_folder or "unknown"
            by_destination[destination] = by_destination.get(destination, 0) + 1

        total = len(records)
        clean = sum(1 for record in records if not record.has_errors)
        return CompletionStatistics(
            time_range=selected,
            total_completed=total,
            total_errors=sum(len(record.errors) for record in records),
            total_retries=sum(record.retries for record in records),
            average_duration_ms=round(sum(r.total_duration_ms for r in records) / total)
            if total
            else 0,
            success_rate=round(clean / total * 100) if total else 0,
            keywords_total=sum(record.metadata.keywords_extracted for record in records),
            links_total=sum(record.metadata.links_created for record in records),
            by_stage=dict(sorted(by_stage.items())),
            by_destination=dict(sorted(by_destination.items())),
        )

    async def cleanup(self, max_age_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Drop records completed before ``now - max_age_days``; return how many were removed."""
        if max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")
        cutoff = self._clock() - timedelta(days=max_age_days)
        async with self._store.transaction() as document:
            kept = [
                entry
                for entry in document["completed"]
                if CompletionRecord.from_dict(entry).completed_at >= cutoff
            ]
            removed = len(document["completed"]) - len(kept)
            document["completed"] = kept

        if removed:
            self._logger.info(
                "completion_pruned",
                removed=removed,
                max_age_days=max_age_days,
                cutoff=to_iso8601z(cutoff),
            )
        return removed


__all__ = [
    "DEFAULT_RECENT_LIMIT",
    "DEFAULT_RETENTION_DAYS",
    "CompletionLedger",
    "CompletionQuery",
    "CompletionStatistics",
    "StageTiming",
    "TimeRange",
    "default_completion_document",
    "range_start",
    "validate_completion_document",
]
