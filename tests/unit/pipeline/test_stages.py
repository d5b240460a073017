"""Unit tests for stage output normalization, front-matter parsing and stage references."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from docflow.domain.models import StageStatus
from docflow.pipeline.stages import (
    DocumentLoadError,
    StageReferenceError,
    StageRegistry,
    StageResult,
    load_document_state,
    load_stage_reference,
    normalize_stage_output,
    passthrough_stage,
    split_frontmatter,
)

from .. import write_document

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.parametrize(
    ("output", "status", "error"),
    [
        (None, StageStatus.COMPLETED, None),
        (True, StageStatus.COMPLETED, None),
        (False, StageStatus.FAILED, "stage returned False"),
        ({"status": "FAILED", "error": "quota"}, StageStatus.FAILED, "quota"),
        ({"output": {"words": 3}}, StageStatus.COMPLETED, None),
    ],
)
def test_normalize_stage_output_variants(
    output: object, status: StageStatus, error: str | None
) -> None:
    result = normalize_stage_output(output)
    assert result.status is status
    assert result.error == error


def test_normalize_wraps_scalar_output_and_ignores_bad_duration() -> None:
    result = normalize_stage_output({"output": 7, "duration_ms": "fast", "reason": "  "})
    assert result.output == {"value": 7}
    assert result.duration_ms is None
    assert result.reason is None


def test_normalize_rejects_unknown_shapes() -> None:
    with pytest.raises(TypeError, match="stage output"):
        normalize_stage_output(42)
    with pytest.raises(ValueError):
        normalize_stage_output({"status": "in-progress"})


def test_stage_result_reports_moved_path() -> None:
    moved = StageResult(status=StageStatus.COMPLETED, output={"path": " a/b.md "})
    assert moved.reported_path == "a/b.md"
    assert StageResult(status=StageStatus.COMPLETED).reported_path is None
    assert StageResult(status=StageStatus.FAILED).error == "stage reported failure"


def test_split_frontmatter() -> None:
    frontmatter, body = split_frontmatter("---\ntitle: Hello\ntags: [a]\n---\nBody\n")
    assert frontmatter == {"title": "Hello", "tags": ["a"]}
    assert body == "Body\n"

    assert split_frontmatter("No fence here\n") == ({}, "No fence here\n")
    assert split_frontmatter("---\nunterminated\n") == ({}, "---\nunterminated\n")
    assert split_frontmatter("---\n---\nBody") == ({}, "Body")


def test_invalid_frontmatter_raises_document_load_error() -> None:
    with pytest.raises(DocumentLoadError, match="invalid YAML"):
        split_frontmatter("---\nkey: [unclosed\n---\n")
    with pytest.raises(DocumentLoadError, match="mapping"):
        split_frontmatter("---\n- a\n- b\n---\n")


def test_load_document_state_reads_metadata(tmp_path: Path) -> None:
    write_document(
        tmp_path,
        "notes/a.md",
        "\nText\n",
        frontmatter="keywords: [x, y]\ntags: solo\nlinked_concepts:",
    )
    state = load_document_state(tmp_path, "notes/a.md")

    assert state.absolute_path == tmp_path / "notes" / "a.md"
    assert state.body == "Text"
    assert state.keywords == ("x", "y")
    assert state.tags == ("solo",)
    assert state.linked_concepts == ()
    assert state.size_bytes > 0

    with pytest.raises(DocumentLoadError, match="cannot read"):
        load_document_state(tmp_path, "notes/missing.md")


def test_registry_registration_rules() -> None:
    registry = StageRegistry({"filing": passthrough_stage})
    assert "filing" in registry
    assert registry.names() == ("filing",)

    with pytest.raises(ValueError, match="already registered"):
        registry.register("filing", passthrough_stage)
    registry.register("filing", passthrough_stage, replace=True)
    with pytest.raises(ValueError, match="non-empty"):
        registry.register("  ", passthrough_stage)
    with pytest.raises(TypeError, match="callable"):
        registry.register("tagging", "not callable")  # type: ignore[arg-type]
    assert len(registry) == 1


def test_load_stage_reference() -> None:
    assert load_stage_reference("docflow.pipeline.stages:passthrough_stage") is passthrough_stage
    registry = StageRegistry.from_references(
        {"normalization": "docflow.pipeline.stages:passthrough_stage"}
    )
    assert list(registry) == ["normalization"]

    for reference, message in [
        ("no-colon", "module:attribute"),
        ("docflow.does_not_exist:stage", "cannot import"),
        ("docflow.pipeline.stages:missing", "has no attribute"),
        ("docflow.pipeline.stages:STAGE_RESULT_STATUSES", "does not name a callable"),
    ]:
        with pytest.raises(StageReferenceError, match=message):
            load_stage_reference(reference)
