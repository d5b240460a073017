"""Priority work queue with path de-duplication, persisted as a single JSON document."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from docflow.constants import DOCUMENT_SCHEMA_VERSION, QUEUE_DOCUMENT
from docflow.domain import ids
from docflow.domain.models import (
    DEFAULT_INBOX_MARKER,
    DEFAULT_STAGE_PLAN,
    FileRef,
    JSONValue,
    Provenance,
    WorkItem,
    WorkKind,
    classify_work,
    priority_for,
    to_iso8601z,
    utc_now,
)
from docflow.persistence.store import Document, JsonDocumentStore
from docflow.utils.hashing import file_fingerprint

if TYPE_CHECKING:
    from datetime import datetime


class SourceNotFound(FileNotFoundError):
    """Raised when a producer tries to admit a document that does not exist."""


class EnqueueStatus(StrEnum):
    ADMITTED = "admitted"
    ALREADY_QUEUED = "already_queued"


@dataclass(frozen=True, slots=True)
class EnqueueResult:
    status: EnqueueStatus
    item: WorkItem | None = None

    @property
    def admitted(self) -> bool:
        return self.status is EnqueueStatus.ADMITTED

    @property
    def work_id(self) -> str | None:
        return self.item.id if self.item is not None else None


@dataclass(frozen=True, slots=True)
class QueueStats:
    total_items: int
    by_kind: dict[str, int]
    by_priority: dict[str, int]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total_items": self.total_items,
            "by_kind": dict(self.by_kind),
            "by_priority": dict(self.by_priority),
        }


def default_queue_document() -> Document:
    return {"version": DOCUMENT_SCHEMA_VERSION, "last_updated": None, "queue": []}


def validate_queue_document(document: Mapping[str, Any]) -> None:
    entries = document["queue"]
    if not isinstance(entries, list):
        raise ValueError("queue must be a list")
    for entry in entries:
        WorkItem.from_dict(entry)


def dispatch_order(items: list[WorkItem]) -> list[WorkItem]:
    """Order items by priority, then admission time, then position in the document."""
    indexed = sorted(
        enumerate(items),
        key=lambda pair: (pair[1].priority, pair[1].created_at, pair[0]),
    )
    return [item for _, item in indexed]


class WorkQueue:
    """Holds admitted, not-yet-started work items.

    ``dequeue_next`` removes and returns the most urgent item inside one store
    transaction, so no two consumers in this process can receive the same item.
    """

    def __init__(
        self,
        store: JsonDocumentStore,
        *,
        root: str | Path = ".",
        inbox_marker: str = DEFAULT_INBOX_MARKER,
        stage_plan: Mapping[WorkKind, tuple[str, ...]] | None = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = ids.generate_work_item_id,
        logger: Any | None = None,
    ) -> None:
        self._store = store
        self._root = Path(root)
        self._inbox_marker = inbox_marker
        self._stage_plan = dict(DEFAULT_STAGE_PLAN)
        if stage_plan:
            self._stage_plan.update(stage_plan)
        self._clock = clock
        self._id_factory = id_factory
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def open(cls, state_dir: str | Path, **kwargs: Any) -> WorkQueue:
        store = JsonDocumentStore(
            Path(state_dir) / QUEUE_DOCUMENT,
            name="work-queue",
            default_factory=default_queue_document,
            validator=validate_queue_document,
            logger=kwargs.get("logger"),
        )
        return cls(store, **kwargs)

    @property
    def store(self) -> JsonDocumentStore:
        return self._store

    def stages_for(self, kind: WorkKind) -> tuple[str, ...]:
        return self._stage_plan[kind]

    async def enqueue(
        self,
        path: str | Path,
        *,
        source: str = Provenance.UNKNOWN.value,
        context: Mapping[str, JSONValue] | None = None,
    ) -> EnqueueResult:
        """Admit the document at ``path``; a path already in the queue is not admitted twice."""
        document_path = self._document_path(path)
        async with self._store.transaction() as document:
            entries: list[dict[str, Any]] = document["queue"]
            if any(entry["file"]["path"] == document_path for entry in entries):
                self._logger.info(
                    "queue_enqueue_skipped",
                    path=document_path,
                    reason="already_queued",
                )
                return EnqueueResult(status=EnqueueStatus.ALREADY_QUEUED)

            absolute = self.resolve(document_path)
            if not absolute.is_file():
                raise SourceNotFound(f"source document does not exist: {absolute}")

            kind = classify_work(document_path, source, inbox_marker=self._inbox_marker)
            now = self._clock()
            item = WorkItem(
                id=self._id_factory(),
                kind=kind,
                priority=priority_for(kind),
                created_at=now,
                file=FileRef(
                    path=document_path,
                    size_bytes=absolute.stat().st_size,
                    hash=file_fingerprint(absolute),
                    source=source,
                ),
                stages=self.stages_for(kind),
                context=dict(context or {}),
            )
            entries.append(item.to_dict())
            document["last_updated"] = to_iso8601z(now)

        self._logger.info(
            "queue_enqueued",
            work_item_id=item.id,
            path=document_path,
            kind=item.kind.value,
            priority=item.priority,
        )
        return EnqueueResult(status=EnqueueStatus.ADMITTED, item=item)

    async def dequeue_next(self) -> WorkItem | None:
        """Remove and return the most urgent item, or ``None`` when the queue is empty."""
        async with self._store.transaction() as document:
            items = _parse_items(document)
            if not items:
                return None
            selected = dispatch_order(items)[0]
            document["queue"] = [entry for entry in document["queue"] if entry["id"] != selected.id]
            document["last_updated"] = to_iso8601z(self._clock())

        self._logger.info(
            "queue_dequeued",
            work_item_id=selected.id,
            path=selected.file.path,
            priority=selected.priority,
        )
        return selected

    async def peek_next(self) -> WorkItem | None:
        items = await self.list_items()
        return items[0] if items else None

    async def remove(self, work_id: str) -> bool:
        async with self._store.transaction() as document:
            before = len(document["queue"])
            document["queue"] = [entry for entry in document["queue"] if entry["id"] != work_id]
            removed = len(document["queue"]) != before
            if removed:
                document["last_updated"] = to_iso8601z(self._clock())
        if removed:
            self._logger.info("queue_removed", work_item_id=work_id)
        return removed

    async def list_items(self) -> tuple[WorkItem, ...]:
        """Return queued items in dispatch order."""
        return tuple(dispatch_order(_parse_items(await self._store.read())))

    async def size(self) -> int:
        return len((await self._store.read())["queue"])

    async def stats(self) -> QueueStats:
        items = _parse_items(await self._store.read())
        by_kind = Counter(item.kind.value for item in items)
        by_priority = Counter(f"priority_{item.priority}" for item in items)
        return QueueStats(
            total_items=len(items),
            by_kind=dict(sorted(by_kind.items())),
            by_priority=dict(sorted(by_priority.items())),
        )

    def resolve(self, document_path: str) -> Path:
        candidate = Path(document_path)
        return candidate if candidate.is_absolute() else self._root / candidate

    def _document_path(self, path: str | Path) -> str:
        candidate = Path(path)
        if candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self._root.resolve())
            except ValueError:
                return candidate.as_posix()
        return candidate.as_posix()


def _parse_items(document: Mapping[str, Any]) -> list[WorkItem]:
    return [WorkItem.from_dict(entry) for entry in document["queue"]]


__all__ = [
    "EnqueueResult",
    "EnqueueStatus",
    "QueueStats",
    "SourceNotFound",
    "WorkQueue",
    "default_queue_document",
    "dispatch_order",
    "validate_queue_document",
]
