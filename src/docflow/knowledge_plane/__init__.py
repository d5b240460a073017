"""Knowledge-plane public API: completion history."""

from docflow.knowledge_plane.completion_ledger import (
    CompletionLedger,
    CompletionQuery,
    CompletionStatistics,
    TimeRange,
)

__all__ = [
    "CompletionLedger",
    "CompletionQuery",
    "CompletionStatistics",
    "TimeRange",
]
