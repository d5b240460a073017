"""Shared builders and test doubles for docflow unit tests."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from docflow.control_plane.processing_ledger import ProcessingLedger
from docflow.control_plane.work_queue import WorkQueue
from docflow.domain import ids
from docflow.domain.models import FileRef, StageStatus, WorkItem, WorkKind, priority_for
from docflow.knowledge_plane.completion_ledger import CompletionLedger
from docflow.persistence.store import JsonDocumentStore
from docflow.pipeline.executor import PipelineExecutor, TransientStageError
from docflow.pipeline.stages import DocumentState, StageCallable, StageRegistry, StageResult
from docflow.recovery.engine import RecoveryEngine, RecoveryOptions
from docflow.utils.hashing import file_fingerprint

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
ALWAYS = 10**6


@dataclass(slots=True)
class FakeClock:
    now: datetime = BASE_TIME

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@dataclass(slots=True)
class RecordingSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass(slots=True)
class ScriptedStage:
    """Stage double that raises for the first ``failures`` calls, then succeeds."""

    failures: int = 0
    output: dict[str, Any] = field(default_factory=dict)
    error: str = "collaborator unavailable"
    calls: list[str] = field(default_factory=list)

    def __call__(self, state: DocumentState) -> StageResult:
        self.calls.append(state.path)
        if len(self.calls) <= self.failures:
            raise TransientStageError(self.error)
        return StageResult(status=StageStatus.COMPLETED, output=dict(self.output))


@dataclass(slots=True)
class Engine:
    root: Path
    state_dir: Path
    clock: FakeClock
    sleep: RecordingSleep
    registry: StageRegistry
    queue: WorkQueue
    ledger: ProcessingLedger
    completion: CompletionLedger
    executor: PipelineExecutor

    def recovery_state(self) -> JsonDocumentStore:
        return RecoveryEngine.open_state_store(self.state_dir)

    def recovery(self, **options: Any) -> RecoveryEngine:
        return RecoveryEngine(
            self.ledger,
            self.executor,
            self.completion,
            self.recovery_state(),
            options=RecoveryOptions(**options),
            sleep=self.sleep,
            clock=self.clock,
        )


def build_engine(
    tmp_path: Path,
    stages: Mapping[str, StageCallable],
    *,
    max_local_retries: int = 0,
    base_delay_seconds: float = 1.0,
    stage_timeout_seconds: float | None = 5.0,
) -> Engine:
    root = tmp_path / "vault"
    root.mkdir(parents=True, exist_ok=True)
    state_dir = tmp_path / "state"
    clock = FakeClock()
    sleep = RecordingSleep()
    registry = StageRegistry(stages)
    ledger = ProcessingLedger.open(state_dir, clock=clock)
    return Engine(
        root=root,
        state_dir=state_dir,
        clock=clock,
        sleep=sleep,
        registry=registry,
        queue=WorkQueue.open(state_dir, root=root, clock=clock),
        ledger=ledger,
        completion=CompletionLedger.open(state_dir, clock=clock),
        executor=PipelineExecutor(
            ledger,
            registry,
            root=root,
            max_local_retries=max_local_retries,
            base_delay_seconds=base_delay_seconds,
            stage_timeout_seconds=stage_timeout_seconds,
            sleep=sleep,
            clock=clock,
        ),
    )


def write_document(
    root: Path,
    relative: str,
    body: str = "Body text.\n",
    *,
    frontmatter: str | None = None,
) -> Path:
    target = root / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    text = body if frontmatter is None else f"---\n{frontmatter}\n---\n{body}"
    target.write_text(text, encoding="utf-8")
    return target


def make_work_item(
    root: Path,
    relative: str = "notes/a.md",
    *,
    stages: tuple[str, ...] = ("normalization", "filing"),
    kind: WorkKind = WorkKind.UNKNOWN,
    created_at: datetime = BASE_TIME,
    priority: int | None = None,
) -> WorkItem:
    path = root / relative
    if not path.exists():
        write_document(root, relative)
    return WorkItem(
        id=ids.generate_work_item_id(),
        kind=kind,
        priority=priority_for(kind) if priority is None else priority,
        created_at=created_at,
        file=FileRef(
            path=relative,
            size_bytes=path.stat().st_size,
            hash=file_fingerprint(path),
        ),
        stages=stages,
    )


__all__ = [
    "ALWAYS",
    "BASE_TIME",
    "Engine",
    "FakeClock",
    "RecordingSleep",
    "ScriptedStage",
    "build_engine",
    "make_work_item",
    "write_document",
]
