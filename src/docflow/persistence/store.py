"""
docflow — durable JSON document store

File: src/docflow/persistence/store.py

Purpose
- Back every engine component with one named JSON document on disk.
- Serialize all read-modify-write cycles on a document through a single lock.

Functional requirements
- Writes replace the document atomically; a crash never leaves a torn file.
- A transaction that raises leaves the persisted document untouched.
- A document that fails to parse or validate is preserved beside the original,
  reported at WARNING level, and replaced by the default document. In strict mode
  the same condition raises ``StoreCorruption`` instead.

Non-functional requirements
- One writer per process per document; no cross-process locking is attempted.
"""

from __future__ import annotations

import asyncio
import copy
import json
from collections.abc import Callable, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from docflow.domain.models import utc_now
from docflow.utils.fs import atomic_write, preserve_copy

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

Document = dict[str, Any]
DocumentFactory = Callable[[], Document]
DocumentValidator = Callable[[Mapping[str, Any]], None]

_CORRUPT_SUFFIX: Final[str] = "corrupt"

__all__ = [
    "Document",
    "DocumentFactory",
    "DocumentValidator",
    "JsonDocumentStore",
    "StoreCorruption",
]


class StoreCorruption(ValueError):
    """Raised in strict mode when a persisted document cannot be parsed or validated."""


class JsonDocumentStore:
    """Single-writer JSON document persisted with atomic replace."""

    def __init__(
        self,
        path: str | Path,
        *,
        name: str,
        default_factory: DocumentFactory,
        validator: DocumentValidator | None = None,
        strict: bool = False,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._path = Path(path)
        self._name = name
        self._default_factory = default_factory
        self._validator = validator
        self._strict = strict
        self._clock = clock
        self._lock = asyncio.Lock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self.corruption_events = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def name(self) -> str:
        return self._name

    async def read(self) -> Document:
        """Return a private copy of the current document."""
        async with self._lock:
            return copy.deepcopy(self._load())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Document]:
        """Hold the document lock, yield a mutable document, and persist it on clean exit."""
        async with self._lock:
            document = self._load()
            yield document
            self._write(document)

    async def replace(self, document: Mapping[str, Any]) -> None:
        async with self._lock:
            self._write(dict(document))

    def _load(self) -> Document:
        if not self._path.exists():
            return self._default_factory()

        try:
            raw = self._path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return self._recover(f"document is not valid UTF-8: {exc}")

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            return self._recover(f"invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}")

        if not isinstance(parsed, dict):
            return self._recover(f"document root must be an object, got {type(parsed).__name__}")

        if self._validator is not None:
            try:
                self._validator(parsed)
            except (KeyError, TypeError, ValueError) as exc:
                return self._recover(f"document failed validation: {exc}")

        return parsed

    def _write(self, document: Mapping[str, Any]) -> None:
        payload = json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        atomic_write(self._path, payload)

    def _recover(self, detail: str) -> Document:
        if self._strict:
            raise StoreCorruption(f"{self._name} document {self._path} is corrupted: {detail}")

        self.corruption_events += 1
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%fZ")
        preserved = preserve_copy(self._path, f"{_CORRUPT_SUFFIX}-{stamp}")
        self._logger.warning(
            "store_document_corrupt",
            document=self._name,
            path=str(self._path),
            detail=detail,
            preserved_copy=str(preserved) if preserved is not None else None,
            fallback="default_document",
        )
        document = self._default_factory()
        self._write(document)
        return document
