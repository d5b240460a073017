"""
docflow — unit tests for the recovery engine

File: tests/unit/recovery/test_engine.py

Purpose
- Validate checkpoint resumption, the persisted recovery budget, and quarantine.

What this test file should cover
- Resumption starts one past the last completed stage and never re-runs completed stages.
- Each pass over a failing item raises its recovery counter by exactly one.
- With ``max_retries=3`` a stuck item is quarantined on the third pass and never
  seen again.
- Interrupted quarantines are purged; stale counters are cleaned; old failures are
  filtered only when cleanup is enabled.
- Reports and status snapshots expose what operators read.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from docflow.domain.models import ProcessingRecord, RecoveryState, StageStatus
from docflow.recovery.engine import (
    RecoveryExhausted,
    RecoveryOptions,
    RecoveryOutcome,
    find_checkpoint,
)

from .. import ALWAYS, BASE_TIME, Engine, ScriptedStage, build_engine, make_work_item

if TYPE_CHECKING:
    from pathlib import Path

    from docflow.domain.models import WorkItem


async def _fail_once_through_pipeline(engine: Engine, item: WorkItem) -> ProcessingRecord:
    await engine.ledger.register(item)
    result = await engine.executor.run(item)
    assert not result.completed
    record = await engine.ledger.get(item.id)
    assert record is not None
    return record


async def _mark(engine: Engine, work_id: str, stage: str, status: StageStatus) -> None:
    await engine.ledger.transition(work_id, stage, StageStatus.IN_PROGRESS)
    payload = {"error": f"{stage} broke"} if status is StageStatus.FAILED else None
    await engine.ledger.transition(work_id, stage, status, payload)


async def test_checkpoint_resumes_after_last_completed_stage(tmp_path: Path) -> None:
    stages = {name: ScriptedStage() for name in ("a", "b", "c", "d")}
    engine = build_engine(tmp_path, stages)
    item = make_work_item(engine.root, stages=("a", "b", "c", "d"))
    await engine.ledger.register(item)
    await _mark(engine, item.id, "a", StageStatus.COMPLETED)
    await _mark(engine, item.id, "b", StageStatus.COMPLETED)
    await _mark(engine, item.id, "c", StageStatus.FAILED)

    record = await engine.ledger.get(item.id)
    assert record is not None
    checkpoint = find_checkpoint(record)
    assert checkpoint.last_completed_stage == "b"
    assert checkpoint.resume_from_index == 2
    assert checkpoint.resume_from_stage == "c"

    detail = await engine.recovery(retry_delay_seconds=0).retry(record)

    assert detail.status is RecoveryOutcome.RECOVERED
    assert detail.checkpoint == "b"
    assert stages["a"].calls == [] and stages["b"].calls == []
    assert len(stages["c"].calls) == 1 and len(stages["d"].calls) == 1
    assert await engine.ledger.get(item.id) is None
    (completed,) = await engine.completion.all_records()
    assert completed.recovery_attempts == 1
    assert (await engine.recovery().status()).retries == {}


def test_checkpoint_without_completed_stages_starts_at_zero(tmp_path: Path) -> None:
    item = make_work_item(tmp_path, stages=("a", "b"))
    checkpoint = find_checkpoint(ProcessingRecord.for_item(item, started_at=BASE_TIME))
    assert checkpoint.label == "start"
    assert checkpoint.resume_from_index == 0
    assert checkpoint.resume_from_stage == "a"


async def test_stuck_item_is_quarantined_after_max_retries_passes(tmp_path: Path) -> None:
    stuck = ScriptedStage(failures=ALWAYS, error="index unavailable")
    engine = build_engine(tmp_path, {"normalization": ScriptedStage(), "filing": stuck})
    item = make_work_item(engine.root)
    await _fail_once_through_pipeline(engine, item)
    recovery = engine.recovery(max_retries=3, retry_delay_seconds=2.0)

    outcomes: list[RecoveryOutcome] = []
    for expected_attempt in (1, 2, 3):
        report = await recovery.recover_all()
        assert report.failures_found == 1
        (detail,) = report.details
        assert detail.retry_count == expected_attempt
        assert detail.checkpoint == "normalization"
        outcomes.append(detail.status)
        if expected_attempt < 3:
            assert (await recovery.status()).retries == {item.id: expected_attempt}

    assert outcomes == [
        RecoveryOutcome.FAILED,
        RecoveryOutcome.FAILED,
        RecoveryOutcome.PERMANENT_FAILURE,
    ]
    assert engine.sleep.delays == [2.0, 4.0, 8.0]
    assert await engine.ledger.get(item.id) is None

    fourth = await recovery.recover_all()
    assert fourth.failures_found == 0
    status = await recovery.status()
    assert status.permanent_failures == (item.id,)
    assert status.retries == {}
    assert len(stuck.calls) == 4

    with pytest.raises(RecoveryExhausted):
        await recovery.retry(ProcessingRecord.for_item(item, started_at=BASE_TIME))


async def test_item_one_attempt_short_of_limit_is_quarantined_on_next_pass(
    tmp_path: Path,
) -> None:
    engine = build_engine(tmp_path, {"normalization": ScriptedStage(failures=ALWAYS)})
    item = make_work_item(engine.root, stages=("normalization",))
    await _fail_once_through_pipeline(engine, item)
    recovery = engine.recovery(max_retries=3, retry_delay_seconds=0)
    await engine.recovery_state().replace(RecoveryState(retries={item.id: 2}).to_dict())

    report = await recovery.recover_all()

    assert report.permanent_failures == 1
    assert await engine.ledger.get(item.id) is None
    assert (await recovery.recover_all()).failures_found == 0


async def test_record_already_at_limit_is_quarantined_without_running(tmp_path: Path) -> None:
    stage = ScriptedStage(failures=ALWAYS)
    engine = build_engine(tmp_path, {"normalization": stage})
    item = make_work_item(engine.root, stages=("normalization",))
    record = await _fail_once_through_pipeline(engine, item)
    await engine.recovery_state().replace(RecoveryState(retries={item.id: 3}).to_dict())

    detail = await engine.recovery(max_retries=3).retry(record)

    assert detail.status is RecoveryOutcome.PERMANENT_FAILURE
    assert detail.error == "quarantined without running: exceeded maximum recovery attempts"
    assert len(stage.calls) == 1
    assert (await engine.recovery().status()).permanent_failures == (item.id,)


async def test_interrupted_quarantine_is_purged_during_detection(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {"normalization": ScriptedStage(failures=ALWAYS)})
    item = make_work_item(engine.root, stages=("normalization",))
    await _fail_once_through_pipeline(engine, item)
    await engine.recovery_state().replace(RecoveryState(permanent_failures=[item.id]).to_dict())

    assert await engine.recovery().detect_candidates() == []
    assert await engine.ledger.get(item.id) is None


async def test_detection_includes_exhausted_local_retries(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {"normalization": ScriptedStage()}, max_local_retries=2)
    fresh = make_work_item(engine.root, "notes/fresh.md", stages=("normalization",))
    retried = make_work_item(engine.root, "notes/retried.md", stages=("normalization",))
    await engine.ledger.register(fresh)
    await engine.ledger.register(retried)
    await engine.ledger.increment_retry(retried.id)
    await engine.ledger.increment_retry(retried.id)

    candidates = await engine.recovery().detect_candidates()
    assert [record.work_id for record in candidates] == [retried.id]


async def test_old_failures_are_filtered_only_when_cleanup_enabled(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {"normalization": ScriptedStage(failures=ALWAYS)})
    item = make_work_item(engine.root, stages=("normalization",))
    await _fail_once_through_pipeline(engine, item)
    engine.clock.advance(hours=25)

    filtered = await engine.recovery(max_failure_age_seconds=24 * 3600).detect_candidates()
    assert filtered == []
    assert await engine.ledger.get(item.id) is not None

    kept = await engine.recovery(cleanup_old_failures=False).detect_candidates()
    assert [record.work_id for record in kept] == [item.id]


async def test_failure_age_runs_from_start_not_latest_error(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {"normalization": ScriptedStage(failures=ALWAYS)})
    item = make_work_item(engine.root, stages=("normalization",))
    await engine.ledger.register(item)
    engine.clock.advance(hours=25)
    result = await engine.executor.run(item)
    assert not result.completed

    recovery = engine.recovery(max_failure_age_seconds=24 * 3600)
    assert await recovery.detect_candidates() == []
    assert await engine.ledger.get(item.id) is not None


async def test_finished_record_is_finalized_without_running_stages(tmp_path: Path) -> None:
    stage = ScriptedStage()
    engine = build_engine(tmp_path, {"normalization": stage})
    item = make_work_item(engine.root, stages=("normalization",))
    await engine.ledger.register(item)
    await _mark(engine, item.id, "normalization", StageStatus.COMPLETED)
    record = await engine.ledger.get(item.id)
    assert record is not None

    detail = await engine.recovery().retry(record)

    assert detail.status is RecoveryOutcome.RECOVERED
    assert stage.calls == []
    assert [entry.work_id for entry in await engine.completion.all_records()] == [item.id]


async def test_cleanup_drops_counters_for_departed_items(tmp_path: Path) -> None:
    engine = build_engine(tmp_path, {})
    active = make_work_item(engine.root, stages=("normalization",))
    await engine.ledger.register(active)
    await engine.recovery_state().replace(
        RecoveryState(
            retries={active.id: 1, "wi-gone": 2},
            last_retry={"wi-gone": BASE_TIME},
            permanent_failures=["wi-dead"],
        ).to_dict()
    )
    recovery = engine.recovery()

    result = await recovery.cleanup()

    assert result.to_dict() == {"cleaned": 1, "permanent_failures": 1}
    status = await recovery.status()
    assert status.retries == {active.id: 1}
    assert status.to_dict()["active_retries"] == 1
    assert status.permanent_failures == ("wi-dead",)


async def test_report_shape_and_saved_file(tmp_path: Path) -> None:
    engine = build_engine(
        tmp_path,
        {"normalization": ScriptedStage(failures=1), "filing": ScriptedStage(failures=ALWAYS)},
    )
    healed = make_work_item(engine.root, "notes/healed.md", stages=("normalization",))
    broken = make_work_item(engine.root, "notes/broken.md", stages=("filing",))
    await _fail_once_through_pipeline(engine, healed)
    await _fail_once_through_pipeline(engine, broken)
    recovery = engine.recovery(retry_delay_seconds=0)

    report = await recovery.recover_all()
    payload = report.to_dict()

    assert payload["summary"] == {
        "failures_found": 2,
        "recovered": 1,
        "failed": 1,
        "permanent_failures": 0,
        "skipped": 0,
        "recovery_rate": "50.0%",
    }
    assert [entry["work_id"] for entry in payload["recoveries"]] == [healed.id]
    assert [entry["work_id"] for entry in payload["errors"]] == [broken.id]
    assert payload["options"]["max_retries"] == 3

    target = recovery.save_report(report, tmp_path / "reports")
    assert target.name == "recovery-report-20260301T120000000000Z.json"
    assert json.loads(target.read_text(encoding="utf-8"))["summary"]["recovered"] == 1


def test_recovery_options_validation() -> None:
    with pytest.raises(ValueError, match="max_retries"):
        RecoveryOptions(max_retries=0)
    with pytest.raises(ValueError, match="retry_delay_seconds"):
        RecoveryOptions(retry_delay_seconds=-1)
    with pytest.raises(ValueError, match="max_failure_age_seconds"):
        RecoveryOptions(max_failure_age_seconds=0)
