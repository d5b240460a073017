"""Unit tests for work queue admission, de-duplication and dispatch ordering."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from docflow.control_plane.work_queue import (
    EnqueueStatus,
    SourceNotFound,
    WorkQueue,
    dispatch_order,
)
from docflow.domain import ids
from docflow.domain.models import (
    DEFAULT_STAGE_PLAN,
    FileRef,
    Provenance,
    WorkItem,
    WorkKind,
)

from .. import BASE_TIME, FakeClock, write_document

if TYPE_CHECKING:
    from pathlib import Path

_HASH = "sha256:" + "0" * 64


def _queue(tmp_path: Path, clock: FakeClock | None = None, **kwargs: object) -> WorkQueue:
    root = tmp_path / "vault"
    root.mkdir(exist_ok=True)
    return WorkQueue.open(tmp_path / "state", root=root, clock=clock or FakeClock(), **kwargs)


def _item(priority: int, offset_seconds: int) -> WorkItem:
    return WorkItem(
        id=ids.generate_work_item_id(),
        kind=WorkKind.UNKNOWN,
        priority=priority,
        created_at=BASE_TIME + timedelta(seconds=offset_seconds),
        file=FileRef(path=f"n/{priority}-{offset_seconds}.md", size_bytes=0, hash=_HASH),
        stages=("normalization",),
    )


@given(
    entries=st.lists(
        st.tuples(st.integers(min_value=1, max_value=4), st.integers(min_value=0, max_value=5)),
        min_size=1,
        max_size=25,
    )
)
@settings(max_examples=60, deadline=None)
def test_dispatch_order_prefers_priority_then_admission_time(
    entries: list[tuple[int, int]],
) -> None:
    items = [_item(priority, offset) for priority, offset in entries]
    ordered = dispatch_order(items)

    assert ordered[0].priority == min(item.priority for item in items)
    keys = [(item.priority, item.created_at) for item in ordered]
    assert keys == sorted(keys)
    for earlier, later in zip(ordered, ordered[1:], strict=False):
        if (earlier.priority, earlier.created_at) == (later.priority, later.created_at):
            assert items.index(earlier) < items.index(later)


async def test_dequeue_returns_most_urgent_item_then_empty(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = _queue(tmp_path, clock)
    write_document(tmp_path / "vault", "00_Inbox/b.md")
    write_document(tmp_path / "vault", "notes/a.md")

    b = await queue.enqueue("00_Inbox/b.md", source=Provenance.MANUAL)
    clock.advance(seconds=1)
    a = await queue.enqueue("notes/a.md", source=Provenance.GIT_COMMIT)
    assert a.item is not None and a.item.priority == 1
    assert b.item is not None and b.item.priority == 3

    first = await queue.dequeue_next()
    assert first is not None and first.id == a.work_id
    assert await queue.size() == 1
    second = await queue.dequeue_next()
    assert second is not None and second.id == b.work_id
    assert await queue.dequeue_next() is None


async def test_fifo_within_same_priority(tmp_path: Path) -> None:
    clock = FakeClock()
    queue = _queue(tmp_path, clock)
    admitted = []
    for name in ("c", "a", "b"):
        write_document(tmp_path / "vault", f"notes/{name}.md")
        admitted.append((await queue.enqueue(f"notes/{name}.md")).work_id)
        clock.advance(seconds=1)

    assert [item.id for item in await queue.list_items()] == admitted


async def test_enqueue_same_path_is_a_noop(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    document = write_document(tmp_path / "vault", "notes/a.md")

    first = await queue.enqueue("notes/a.md")
    document.write_text("changed content", encoding="utf-8")
    second = await queue.enqueue("notes/a.md")

    assert first.admitted
    assert second.status is EnqueueStatus.ALREADY_QUEUED
    assert second.item is None
    assert await queue.size() == 1
    (queued,) = await queue.list_items()
    assert first.item is not None
    assert queued.file.hash == first.item.file.hash


async def test_enqueue_absolute_path_under_root_is_stored_relative(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    document = write_document(tmp_path / "vault", "notes/a.md")

    result = await queue.enqueue(document)
    assert result.item is not None
    assert result.item.file.path == "notes/a.md"
    assert (await queue.enqueue("notes/a.md")).status is EnqueueStatus.ALREADY_QUEUED


async def test_enqueue_missing_source_fails_immediately(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    with pytest.raises(SourceNotFound):
        await queue.enqueue("notes/missing.md")
    assert await queue.size() == 0


async def test_enqueue_records_fingerprint_stages_and_context(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    write_document(tmp_path / "vault", "clips/page.md", "clipped\n")

    result = await queue.enqueue(
        "clips/page.md", source=Provenance.WEB_CLIPPER, context={"url": "https://example.org"}
    )
    item = result.item
    assert item is not None
    assert item.kind is WorkKind.WEB_CLIP
    assert item.stages == DEFAULT_STAGE_PLAN[WorkKind.WEB_CLIP]
    assert item.file.size_bytes == len(b"clipped\n")
    assert item.file.hash.startswith("sha256:")
    assert item.file.source == "web-clipper"
    assert item.context == {"url": "https://example.org"}


async def test_stage_plan_override_applies_per_kind(tmp_path: Path) -> None:
    queue = _queue(tmp_path, stage_plan={WorkKind.UNKNOWN: ("only",)})
    write_document(tmp_path / "vault", "notes/a.md")
    result = await queue.enqueue("notes/a.md")
    assert result.item is not None and result.item.stages == ("only",)
    assert queue.stages_for(WorkKind.GIT_COMMIT) == DEFAULT_STAGE_PLAN[WorkKind.GIT_COMMIT]


async def test_custom_inbox_marker_classifies_inbox_files(tmp_path: Path) -> None:
    queue = _queue(tmp_path, inbox_marker="Inbox")
    write_document(tmp_path / "vault", "Inbox/a.md")
    result = await queue.enqueue("Inbox/a.md", source=Provenance.MANUAL)
    assert result.item is not None and result.item.kind is WorkKind.INBOX_FILE


async def test_remove_stats_and_persisted_document(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    write_document(tmp_path / "vault", "notes/a.md")
    write_document(tmp_path / "vault", "notes/b.md")
    a = await queue.enqueue("notes/a.md", source=Provenance.GIT_COMMIT)
    await queue.enqueue("notes/b.md")

    stats = await queue.stats()
    assert stats.total_items == 2
    assert stats.by_kind == {"git-commit": 1, "unknown": 1}
    assert stats.by_priority == {"priority_1": 1, "priority_4": 1}

    assert a.work_id is not None
    assert await queue.remove(a.work_id)
    assert not await queue.remove(a.work_id)

    persisted = json.loads((tmp_path / "state" / "work-queue.json").read_text(encoding="utf-8"))
    assert persisted["version"] == "1.0"
    assert persisted["last_updated"] is not None
    assert [entry["file"]["path"] for entry in persisted["queue"]] == ["notes/b.md"]


async def test_queue_survives_reopen(tmp_path: Path) -> None:
    queue = _queue(tmp_path)
    write_document(tmp_path / "vault", "notes/a.md")
    admitted = await queue.enqueue("notes/a.md")

    reopened = _queue(tmp_path)
    peeked = await reopened.peek_next()
    assert peeked is not None and peeked.id == admitted.work_id
    assert await reopened.size() == 1
