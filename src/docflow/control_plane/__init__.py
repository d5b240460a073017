"""Control-plane public API: work admission and in-flight bookkeeping."""

from docflow.control_plane.processing_ledger import (
    DuplicateRecord,
    InvalidTransition,
    LedgerError,
    LedgerStats,
    ProcessingLedger,
    RecordNotFound,
)
from docflow.control_plane.work_queue import (
    EnqueueResult,
    EnqueueStatus,
    QueueStats,
    SourceNotFound,
    WorkQueue,
)

__all__ = [
    "DuplicateRecord",
    "EnqueueResult",
    "EnqueueStatus",
    "InvalidTransition",
    "LedgerError",
    "LedgerStats",
    "ProcessingLedger",
    "QueueStats",
    "RecordNotFound",
    "SourceNotFound",
    "WorkQueue",
]
