"""Unit tests for the engine controller wiring and operator commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

from docflow.config.schema import EngineConfig
from docflow.control_plane.controller import EngineController
from docflow.knowledge_plane.completion_ledger import CompletionQuery

from .. import ALWAYS, FakeClock, RecordingSleep, ScriptedStage, write_document

if TYPE_CHECKING:
    from pathlib import Path

    from docflow.pipeline.stages import StageCallable


def _controller(
    tmp_path: Path,
    injected: dict[str, StageCallable] | None = None,
    *,
    clock: FakeClock | None = None,
    **sections: object,
) -> EngineController:
    (tmp_path / "vault").mkdir(exist_ok=True)
    config = EngineConfig.from_mapping(
        {
            "paths": {
                "root": str(tmp_path / "vault"),
                "state_dir": str(tmp_path / "state"),
                "reports_dir": str(tmp_path / "reports"),
            },
            "executor": {"max_local_retries": 0},
            "dispatch": {"delay_between_items_seconds": 0},
            **sections,
        }
    )
    return EngineController(
        config,
        stages=injected,
        sleep=RecordingSleep(),
        clock=clock or FakeClock(),
    )


async def test_batch_then_history_and_overview(tmp_path: Path) -> None:
    controller = _controller(
        tmp_path, {"normalization": ScriptedStage(), "filing": ScriptedStage()}
    )
    write_document(tmp_path / "vault", "notes/a.md")
    enqueued = await controller.enqueue("notes/a.md", source="manual")
    assert enqueued.admitted

    report, saved = await controller.process_all(save_report=True)

    assert report.completed == 1
    assert saved is not None and saved.parent == tmp_path / "reports"
    assert saved.exists()
    history = await controller.history(CompletionQuery(path_contains="notes/"))
    assert [record.work_id for record in history] == [enqueued.work_id]

    overview = (await controller.overview("week")).to_dict()
    assert overview["queue"]["total_items"] == 0
    assert overview["processing"]["total_processing"] == 0
    assert overview["completions"]["total_completed"] == 1
    assert overview["recovery"]["permanent_failures"] == []


async def test_recover_quarantines_with_overridden_budget(tmp_path: Path) -> None:
    controller = _controller(
        tmp_path,
        {"normalization": ScriptedStage(failures=ALWAYS), "filing": ScriptedStage()},
    )
    write_document(tmp_path / "vault", "notes/a.md")
    enqueued = await controller.enqueue("notes/a.md")
    batch, _ = await controller.process_all()
    assert batch.failed == 1

    report, saved = await controller.recover(
        controller.recovery_options(max_retries=1), save_report=True
    )

    assert report.permanent_failures == 1
    assert saved is not None and saved.name.startswith("recovery-report-")
    status = await controller.recovery_status()
    assert status.permanent_failures == (enqueued.work_id,)
    assert (await controller.cleanup()).permanent_failures == 1


def test_option_overrides_ignore_unset_values(tmp_path: Path) -> None:
    controller = _controller(tmp_path, recovery={"max_failure_age_hours": 2.0})

    dispatch = controller.dispatch_options(parallel=None, max_parallel=5)
    assert dispatch.parallel is False
    assert dispatch.max_parallel == 5

    recovery = controller.recovery_options(max_retries=None)
    assert recovery.max_retries == 3
    assert recovery.max_failure_age_seconds == 7200
    assert controller.config.recovery.max_retries == 3


def test_registry_combines_configured_and_injected_stages(tmp_path: Path) -> None:
    injected = ScriptedStage()
    controller = _controller(
        tmp_path,
        {"filing": injected},
        stages={
            "normalization": "docflow.pipeline.stages:passthrough_stage",
            "filing": "docflow.pipeline.stages:passthrough_stage",
        },
    )
    assert controller.registry.names() == ("filing", "normalization")
    assert controller.registry.get("filing") is injected


async def test_prune_history_uses_configured_retention(tmp_path: Path) -> None:
    clock = FakeClock()
    controller = _controller(
        tmp_path, {"normalization": ScriptedStage(), "filing": ScriptedStage()}, clock=clock
    )
    write_document(tmp_path / "vault", "notes/a.md")
    await controller.enqueue("notes/a.md")
    await controller.process_all()

    assert await controller.prune_history() == 0
    clock.advance(days=31)
    assert await controller.prune_history() == 1
