"""Stable constants shared across engine components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions written into persisted documents.
DOCUMENT_SCHEMA_VERSION: Final[str] = "1.0"
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Persisted document file names (relative to the state directory).
QUEUE_DOCUMENT: Final[str] = "work-queue.json"
LEDGER_DOCUMENT: Final[str] = "processing-ledger.json"
COMPLETION_DOCUMENT: Final[str] = "completion-log.json"
RECOVERY_DOCUMENT: Final[str] = "recovery-state.json"

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".docflow/state")
REPORTS_DIR: Final[PurePosixPath] = PurePosixPath(".docflow/reports")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".docflow/logs")

# Report file name prefixes.
RECOVERY_REPORT_PREFIX: Final[str] = "recovery-report"
BATCH_REPORT_PREFIX: Final[str] = "batch-report"

__all__ = [
    "BATCH_REPORT_PREFIX",
    "COMPLETION_DOCUMENT",
    "CONFIG_SCHEMA_VERSION",
    "DOCUMENT_SCHEMA_VERSION",
    "LEDGER_DOCUMENT",
    "LOG_DIR",
    "QUEUE_DOCUMENT",
    "RECOVERY_DOCUMENT",
    "RECOVERY_REPORT_PREFIX",
    "REPORTS_DIR",
    "STATE_DIR",
]
