"""Crash and failure recovery for in-flight work."""

from docflow.recovery.engine import (
    Checkpoint,
    CleanupResult,
    RecoveryDetail,
    RecoveryEngine,
    RecoveryExhausted,
    RecoveryOptions,
    RecoveryOutcome,
    RecoveryReport,
    RecoveryStatus,
    find_checkpoint,
)

__all__ = [
    "Checkpoint",
    "CleanupResult",
    "RecoveryDetail",
    "RecoveryEngine",
    "RecoveryExhausted",
    "RecoveryOptions",
    "RecoveryOutcome",
    "RecoveryReport",
    "RecoveryStatus",
    "find_checkpoint",
]
