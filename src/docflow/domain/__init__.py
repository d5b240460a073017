"""Domain layer: work items, ledger records, and identifier helpers."""

from docflow.domain import ids
from docflow.domain.models import (
    DEFAULT_STAGE_PLAN,
    PRIORITY_BY_KIND,
    CompletionRecord,
    FileRef,
    FinalOutput,
    ProcessingRecord,
    Provenance,
    RecoveryState,
    StageErrorEntry,
    StageState,
    StageStatus,
    StageSummary,
    WorkItem,
    WorkKind,
    classify_work,
    priority_for,
)

__all__ = [
    "DEFAULT_STAGE_PLAN",
    "PRIORITY_BY_KIND",
    "CompletionRecord",
    "FileRef",
    "FinalOutput",
    "ProcessingRecord",
    "Provenance",
    "RecoveryState",
    "StageErrorEntry",
    "StageState",
    "StageStatus",
    "StageSummary",
    "WorkItem",
    "WorkKind",
    "classify_work",
    "ids",
    "priority_for",
]
