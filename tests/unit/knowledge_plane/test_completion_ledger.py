"""
docflow — unit tests for the completion ledger

File: tests/unit/knowledge_plane/test_completion_ledger.py

Purpose
- Validate the append-only completion history and its read side.

What this test file should cover
- One history entry per work id, even when ``add`` is repeated.
- Query filters, newest-first ordering, and limits.
- Statistics per time range, including per-stage timing and destinations.
- Age-based cleanup as the only removal path.
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from docflow.domain.models import (
    FinalOutput,
    ProcessingRecord,
    StageErrorEntry,
    StageStatus,
)
from docflow.knowledge_plane.completion_ledger import (
    CompletionLedger,
    CompletionQuery,
    TimeRange,
    range_start,
)

from .. import BASE_TIME, FakeClock, make_work_item

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path


def _finished(
    root: Path,
    relative: str,
    *,
    completed_at: datetime,
    retries: int = 0,
    failed_once: bool = False,
) -> ProcessingRecord:
    item = make_work_item(root, relative, stages=("normalization", "tagging"))
    started_at = completed_at - timedelta(seconds=4)
    record = ProcessingRecord.for_item(item, started_at=started_at)
    record.stage_pipeline[0].status = StageStatus.COMPLETED
    record.stage_pipeline[0].duration_ms = 1000
    record.stage_pipeline[1].status = StageStatus.SKIPPED
    record.completed_at = completed_at
    record.total_duration_ms = 4000
    record.retry_count = retries
    if failed_once:
        record.errors.append(
            StageErrorEntry(stage="normalization", error="flaky", timestamp=started_at)
        )
    return record


def _output(record: ProcessingRecord, destination: str = "Areas") -> FinalOutput:
    name = record.file_path.rsplit("/", 1)[-1]
    return FinalOutput(
        final_path=f"{destination}/{name}",
        keywords_extracted=2,
        links_created=1,
        destination_folder=destination,
    )


def _ledger(tmp_path: Path, clock: FakeClock) -> CompletionLedger:
    return CompletionLedger.open(tmp_path / "state", clock=clock)


async def test_add_is_idempotent_per_work_id(tmp_path: Path) -> None:
    clock = FakeClock()
    ledger = _ledger(tmp_path, clock)
    record = _finished(tmp_path, "notes/a.md", completed_at=BASE_TIME, retries=1)

    first = await ledger.add(record, _output(record), recovery_attempts=2)
    again = await ledger.add(record, _output(record, "Elsewhere"))

    assert again == first
    assert first.final_path == "Areas/a.md"
    assert first.retries == 1
    assert first.recovery_attempts == 2
    assert first.total_duration_ms == 4000
    assert [stage.status for stage in first.stage_pipeline] == [
        StageStatus.COMPLETED,
        StageStatus.SKIPPED,
    ]
    document = json.loads((tmp_path / "state" / "completion-log.json").read_text("utf-8"))
    assert len(document["completed"]) == 1


async def test_query_filters_and_orders_newest_first(tmp_path: Path) -> None:
    clock = FakeClock(BASE_TIME + timedelta(days=1))
    ledger = _ledger(tmp_path, clock)
    old = _finished(tmp_path, "notes/old.md", completed_at=BASE_TIME - timedelta(days=2))
    retried = _finished(tmp_path, "notes/retried.md", completed_at=BASE_TIME, retries=2)
    errored = _finished(
        tmp_path, "clips/errored.md", completed_at=BASE_TIME + timedelta(hours=1), failed_once=True
    )
    for record in (old, retried, errored):
        await ledger.add(record, _output(record))

    everything = await ledger.query()
    assert [record.work_id for record in everything] == [
        errored.work_id,
        retried.work_id,
        old.work_id,
    ]

    since = await ledger.query(CompletionQuery(start=BASE_TIME - timedelta(hours=1)))
    assert {record.work_id for record in since} == {retried.work_id, errored.work_id}
    assert [r.work_id for r in await ledger.query(CompletionQuery(has_errors=True))] == [
        errored.work_id
    ]
    assert [r.work_id for r in await ledger.query(CompletionQuery(has_retries=True))] == [
        retried.work_id
    ]
    assert [r.work_id for r in await ledger.query(CompletionQuery(path_contains="clips/"))] == [
        errored.work_id
    ]
    assert [r.work_id for r in await ledger.query(CompletionQuery(work_id=old.work_id))] == [
        old.work_id
    ]
    assert len(await ledger.query(CompletionQuery(limit=2))) == 2
    assert [r.work_id for r in await ledger.recent(1)] == [errored.work_id]


async def test_file_history_matches_original_or_final_path(tmp_path: Path) -> None:
    ledger = _ledger(tmp_path, FakeClock())
    record = _finished(tmp_path, "00_Inbox/idea.md", completed_at=BASE_TIME)
    await ledger.add(record, _output(record, "Projects"))

    assert await ledger.was_processed("00_Inbox/idea.md")
    assert await ledger.was_processed("Projects/idea.md")
    assert not await ledger.was_processed("notes/other.md")
    assert len(await ledger.file_history("Projects/idea.md")) == 1


def test_query_validation() -> None:
    with pytest.raises(ValueError, match="limit"):
        CompletionQuery(limit=0)
    with pytest.raises(ValueError, match="start"):
        CompletionQuery(start=BASE_TIME, end=BASE_TIME - timedelta(seconds=1))


def test_range_start_boundaries() -> None:
    now = BASE_TIME.replace(hour=15, minute=30)
    assert range_start(TimeRange.TODAY, now) == now.replace(hour=0, minute=0)
    assert range_start("week", now) == now - timedelta(days=7)
    assert range_start(TimeRange.MONTH, now) == now - timedelta(days=30)
    assert range_start(TimeRange.ALL, now) is None
    with pytest.raises(ValueError):
        range_start("year", now)


async def test_statistics_aggregate_per_range(tmp_path: Path) -> None:
    clock = FakeClock(BASE_TIME)
    ledger = _ledger(tmp_path, clock)
    today = _finished(tmp_path, "notes/today.md", completed_at=BASE_TIME, retries=1)
    this_week = _finished(
        tmp_path, "notes/week.md", completed_at=BASE_TIME - timedelta(days=3), failed_once=True
    )
    long_ago = _finished(tmp_path, "notes/ancient.md", completed_at=BASE_TIME - timedelta(days=90))
    await ledger.add(today, _output(today, "Projects"))
    await ledger.add(this_week, _output(this_week))
    await ledger.add(long_ago, _output(long_ago))

    daily = await ledger.statistics(TimeRange.TODAY)
    assert daily.total_completed == 1
    assert daily.total_retries == 1

    weekly = await ledger.statistics("week")
    assert weekly.total_completed == 2
    assert weekly.total_errors == 1
    assert weekly.success_rate == 50
    assert weekly.by_destination == {"Areas": 1, "Projects": 1}

    overall = await ledger.statistics()
    assert overall.total_completed == 3
    assert overall.average_duration_ms == 4000
    assert overall.keywords_total == 6
    assert overall.links_total == 3
    normalization = overall.by_stage["normalization"]
    assert (normalization.total, normalization.completed) == (3, 3)
    assert normalization.average_duration_ms == 1000
    assert overall.by_stage["tagging"].skipped == 3
    assert overall.to_dict()["time_range"] == "all"


async def test_statistics_on_empty_history(tmp_path: Path) -> None:
    stats = await _ledger(tmp_path, FakeClock()).statistics(TimeRange.MONTH)
    assert stats.total_completed == 0
    assert stats.success_rate == 0
    assert stats.average_duration_ms == 0
    assert stats.by_stage == {}


async def test_cleanup_removes_only_records_older_than_cutoff(tmp_path: Path) -> None:
    clock = FakeClock(BASE_TIME)
    ledger = _ledger(tmp_path, clock)
    fresh = _finished(tmp_path, "notes/fresh.md", completed_at=BASE_TIME - timedelta(days=5))
    stale = _finished(tmp_path, "notes/stale.md", completed_at=BASE_TIME - timedelta(days=45))
    await ledger.add(fresh, _output(fresh))
    await ledger.add(stale, _output(stale))

    assert await ledger.cleanup(30) == 1
    assert [record.work_id for record in await ledger.all_records()] == [fresh.work_id]
    assert await ledger.cleanup(30) == 0
    with pytest.raises(ValueError):
        await ledger.cleanup(-1)
