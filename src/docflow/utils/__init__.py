"""Filesystem, fingerprint and asyncio helpers shared across the engine."""

from docflow.utils.concurrency import WorkerPool, backoff_delay, run_with_timeout
from docflow.utils.fs import atomic_write, preserve_copy
from docflow.utils.hashing import file_fingerprint, is_fingerprint

__all__ = [
    "WorkerPool",
    "atomic_write",
    "backoff_delay",
    "file_fingerprint",
    "is_fingerprint",
    "preserve_copy",
    "run_with_timeout",
]
