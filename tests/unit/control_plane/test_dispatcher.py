"""
docflow — unit tests for the dispatcher

File: tests/unit/control_plane/test_dispatcher.py

Purpose
- Validate the queue -> ledger -> executor -> completion hand-off for single items
  and batches.

What this test file should cover
- Success writes exactly one completion record and removes the ledger record.
- Failure keeps the ledger record and writes no completion record.
- Sequential batches honour ``stop_on_error`` and the inter-item delay.
- Parallel batches drain the queue without exceeding ``max_parallel``.
- Batch report summary and the saved report file.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import pytest

from docflow.control_plane.dispatcher import (
    DispatchOptions,
    Dispatcher,
    ItemStatus,
)
from docflow.domain.models import StageStatus
from docflow.pipeline.executor import TransientStageError

from .. import ALWAYS, Engine, ScriptedStage, build_engine, write_document

if TYPE_CHECKING:
    from pathlib import Path

    from docflow.pipeline.stages import DocumentState


def _dispatcher(engine: Engine, **options: Any) -> Dispatcher:
    return Dispatcher(
        engine.queue,
        engine.ledger,
        engine.executor,
        engine.completion,
        options=DispatchOptions(**options),
        sleep=engine.sleep,
        clock=engine.clock,
    )


async def _enqueue(engine: Engine, *names: str) -> list[str]:
    work_ids: list[str] = []
    for name in names:
        write_document(engine.root, f"notes/{name}.md")
        result = await engine.queue.enqueue(f"notes/{name}.md")
        assert result.work_id is not None
        work_ids.append(result.work_id)
        engine.clock.advance(seconds=1)
    return work_ids


@dataclass(slots=True)
class Gauge:
    active: int = 0
    peak: int = 0

    async def __call__(self, state: DocumentState) -> bool:
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.01)
        self.active -= 1
        return True


async def test_successful_item_moves_from_queue_to_completion(tmp_path: Path) -> None:
    engine = build_engine(
        tmp_path, {"normalization": ScriptedStage(), "filing": ScriptedStage()}
    )
    (work_id,) = await _enqueue(engine, "a")

    outcome = await _dispatcher(engine).process_next()

    assert outcome.status is ItemStatus.COMPLETED
    assert outcome.work_id == work_id
    assert outcome.final_path == "notes/a.md"
    assert await engine.queue.size() == 0
    assert await engine.ledger.get(work_id) is None
    (completed,) = await engine.completion.all_records()
    assert completed.work_id == work_id
    assert [stage.status for stage in completed.stage_pipeline] == [StageStatus.COMPLETED] * 2


async def test_failed_item_keeps_ledger_record_for_recovery(tmp_path: Path) -> None:
    engine = build_engine(
        tmp_path,
        {"normalization": ScriptedStage(), "filing": ScriptedStage(failures=ALWAYS, error="nope")},
    )
    (work_id,) = await _enqueue(engine, "a")

    outcome = await _dispatcher(engine).process_next()

    assert outcome.status is ItemStatus.FAILED
    assert outcome.error == "stage 'filing' failed: nope"
    record = await engine.ledger.get(work_id)
    assert record is not None and record.has_failed_stage
    assert await engine.completion.all_records() == ()
    assert await engine.queue.size() == 0


async def test_empty_queue_is_idle(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {})
    outcome = await _dispatcher(engine).process_next()
    assert outcome.status is ItemStatus.IDLE
    assert outcome.work_id is None


async def test_sequential_batch_pauses_between_items(tmp_path: Path) -> None:
    engine = build_engine(
        tmp_path, {"normalization": ScriptedStage(), "filing": ScriptedStage()}
    )
    work_ids = await _enqueue(engine, "a", "b", "c")

    report = await _dispatcher(engine, delay_between_items_seconds=0.25).process_all()

    assert report.total_items == 3
    assert report.completed == 3
    assert [outcome.work_id for outcome in report.outcomes] == work_ids
    assert engine.sleep.delays == [0.25, 0.25]


async def test_stop_on_error_leaves_remaining_items_queued(tmp_path: Path) -> None:
    def picky(state: DocumentState) -> bool:
        if state.path.endswith("a.md"):
            raise TransientStageError("cannot parse")
        return True

    engine = build_engine(tmp_path, {"normalization": picky, "filing": ScriptedStage()})
    await _enqueue(engine, "a", "b", "c")

    report = await _dispatcher(
        engine, stop_on_error=True, delay_between_items_seconds=0
    ).process_all()

    assert report.processed == 1
    assert report.failed == 1
    assert await engine.queue.size() == 2


async def test_parallel_batch_respects_max_parallel(tmp_path: Path) -> None:
    gauge = Gauge()
    engine = build_engine(tmp_path, {"normalization": gauge, "filing": ScriptedStage()})
    await _enqueue(engine, "a", "b", "c", "d", "e")

    report = await _dispatcher(engine, parallel=True, max_parallel=2).process_all()

    assert report.completed == 5
    assert gauge.peak <= 2
    assert await engine.queue.size() == 0
    assert await engine.ledger.list_all() == []
    assert len(await engine.completion.all_records()) == 5


async def test_batch_report_summary_and_saved_file(tmp_path: Path) -> None:
    def picky(state: DocumentState) -> bool:
        return not state.path.endswith("b.md")

    engine = build_engine(tmp_path, {"normalization": picky, "filing": ScriptedStage()})
    _, failing = await _enqueue(engine, "a", "b")
    dispatcher = _dispatcher(engine, delay_between_items_seconds=0)

    report = await dispatcher.process_all()
    payload = report.to_dict()

    assert payload["summary"] == {
        "total_items": 2,
        "processed": 2,
        "completed": 1,
        "failed": 1,
        "skipped": 0,
        "success_rate": "50.0%",
    }
    assert [entry["work_id"] for entry in payload["errors"]] == [failing]
    assert payload["options"]["parallel"] is False

    target = dispatcher.save_report(report, tmp_path / "reports")
    assert target.name.startswith("batch-report-")
    assert json.loads(target.read_text(encoding="utf-8"))["summary"]["failed"] == 1


async def test_empty_batch(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {})
    report = await _dispatcher(engine).process_all()
    assert report.total_items == 0
    assert report.success_rate == 0.0
    assert report.to_dict()["timing"]["throughput_per_min"] == 0.0


def test_dispatch_options_validation() -> None:
    with pytest.raises(ValueError, match="max_parallel"):
        DispatchOptions(max_parallel=0)
    with pytest.raises(ValueError, match="delay_between_items_seconds"):
        DispatchOptions(delay_between_items_seconds=-0.1)
