"""
docflow — filesystem helpers

File: src/docflow/utils/fs.py

Purpose
- Crash-safe replacement of the JSON documents and report files the engine writes.

Normative behavior
- ``atomic_write`` stages bytes in a hidden sibling temp file, fsyncs it, then swaps
  it in with ``os.replace``; readers see either the old or the new file, never a mix.
- On any failure the temp file is removed and the original target is untouched.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` in one step, creating parent directories."""

    target = Path(path)
    directory = target.parent
    directory.mkdir(parents=True, exist_ok=True)
    payload = data.encode(encoding) if isinstance(data, str) else data

    fd, staged_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=directory)
    staged = Path(staged_name)
    try:
        with os.fdopen(fd, "wb") as staged_file:
            staged_file.write(payload)
            staged_file.flush()
            os.fsync(staged_file.fileno())
        os.replace(staged, target)
    except BaseException:
        with contextlib.suppress(OSError):
            staged.unlink(missing_ok=True)
        raise
    _sync_directory(directory)


def preserve_copy(path: PathLike, suffix: str) -> Path | None:
    """Snapshot ``path`` as ``<name>.<suffix>`` beside it; ``None`` when it does not exist."""

    source = Path(path)
    if not source.is_file():
        return None
    snapshot = source.with_name(f"{source.name}.{suffix}")
    atomic_write(snapshot, source.read_bytes())
    return snapshot


def _sync_directory(directory: Path) -> None:
    # Persists the rename itself; not every platform can open a directory for fsync.
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)


__all__ = ["atomic_write", "preserve_copy"]
