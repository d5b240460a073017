"""
docflow — stage collaborator contract

File: src/docflow/pipeline/stages.py

Purpose
- Define what a stage receives (``DocumentState``) and what it may return.
- Keep a registry of stage callables keyed by stage name.

Functional requirements
- Stages may be sync or async callables taking one ``DocumentState``.
- Accepted outputs: ``StageResult``, a mapping with ``status`` plus ``output`` / ``error`` /
  ``reason``, a bare ``bool``, or ``None`` (completed with no output).
- Raised exceptions are failures; the executor decides whether to retry them.
- Document state is re-read from disk for every invocation; YAML front-matter is
  parsed with ``yaml.safe_load``.
- Stage references in configuration use ``"package.module:attribute"`` form.
"""

from __future__ import annotations

import importlib
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, TypeAlias

import yaml

from docflow.domain.models import JSONValue, StageStatus

_FRONTMATTER_FENCE: Final[str] = "---"

STAGE_RESULT_STATUSES: Final[frozenset[StageStatus]] = frozenset(
    {StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED}
)


class DocumentLoadError(ValueError):
    """Raised when a document cannot be read or its front-matter cannot be parsed."""


class StageReferenceError(ValueError):
    """Raised when a ``module:attribute`` stage reference cannot be resolved."""


@dataclass(frozen=True, slots=True)
class DocumentState:
    """Snapshot of one document as seen by a stage."""

    path: str
    absolute_path: Path
    frontmatter: dict[str, Any]
    body: str
    size_bytes: int
    keywords: tuple[str, ...] = ()
    linked_concepts: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class StageResult:
    """Normalized outcome of one stage invocation."""

    status: StageStatus
    output: dict[str, JSONValue] = field(default_factory=dict)
    error: str | None = None
    reason: str | None = None
    duration_ms: int | None = None

    def __post_init__(self) -> None:
        status = StageStatus(self.status)
        if status not in STAGE_RESULT_STATUSES:
            raise ValueError(
                f"StageResult.status must be completed, failed or skipped, got {status.value}"
            )
        object.__setattr__(self, "status", status)
        object.__setattr__(self, "output", dict(self.output))
        if status is StageStatus.FAILED and not self.error:
            object.__setattr__(self, "error", "stage reported failure")
        if self.duration_ms is not None and self.duration_ms < 0:
            raise ValueError("StageResult.duration_ms must be >= 0")

    @property
    def reported_path(self) -> str | None:
        moved = self.output.get("path")
        if isinstance(moved, str) and moved.strip():
            return moved.strip()
        return None


StageOutput: TypeAlias = StageResult | Mapping[str, object] | bool | None
StageCallable: TypeAlias = Callable[[DocumentState], Awaitable[StageOutput] | StageOutput]


class StageRegistry:
    """Name -> callable lookup for the stages a pipeline may invoke."""

    def __init__(self, stages: Mapping[str, StageCallable] | None = None) -> None:
        self._stages: dict[str, StageCallable] = {}
        for name, stage in (stages or {}).items():
            self.register(name, stage)

    @classmethod
    def from_references(cls, references: Mapping[str, str]) -> StageRegistry:
        registry = cls()
        for name, reference in sorted(references.items()):
            registry.register(name, load_stage_reference(reference))
        return registry

    def register(self, name: str, stage: StageCallable, *, replace: bool = False) -> None:
        key = name.strip() if isinstance(name, str) else ""
        if not key:
            raise ValueError("stage name must be non-empty")
        if not callable(stage):
            raise TypeError(f"stage {key!r} must be callable, got {type(stage).__name__}")
        if key in self._stages and not replace:
            raise ValueError(f"stage already registered: {key!r}")
        self._stages[key] = stage

    def get(self, name: str) -> StageCallable | None:
        return self._stages.get(name)

    def names(self) -> tuple[str, ...]:
        return tuple(sorted(self._stages))

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._stages)


def load_stage_reference(reference: str) -> StageCallable:
    """Import ``package.module:attribute`` and return the callable it names."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name.strip() or not attribute.strip():
        raise StageReferenceError(
            f"stage reference must look like 'module:attribute', got {reference!r}"
        )
    try:
        module = importlib.import_module(module_name.strip())
    except ImportError as exc:
        raise StageReferenceError(f"cannot import stage module {module_name!r}: {exc}") from exc

    target: Any = module
    for part in attribute.strip().split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise StageReferenceError(f"{module_name!r} has no attribute {attribute!r}") from exc
    if not callable(target):
        raise StageReferenceError(f"stage reference {reference!r} does not name a callable")
    return target


def load_document_state(root: str | Path, document_path: str) -> DocumentState:
    candidate = Path(document_path)
    absolute = candidate if candidate.is_absolute() else Path(root) / candidate
    try:
        text = absolute.read_text(encoding="utf-8")
        size_bytes = absolute.stat().st_size
    except (OSError, UnicodeDecodeError) as exc:
        raise DocumentLoadError(f"cannot read document {absolute}: {exc}") from exc

    frontmatter, body = split_frontmatter(text)
    return DocumentState(
        path=document_path,
        absolute_path=absolute,
        frontmatter=frontmatter,
        body=body.strip(),
        size_bytes=size_bytes,
        keywords=_string_tuple(frontmatter.get("keywords")),
        linked_concepts=_string_tuple(frontmatter.get("linked_concepts")),
        tags=_string_tuple(frontmatter.get("tags")),
    )


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split a leading ``---`` fenced YAML block from the document body."""
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n") != _FRONTMATTER_FENCE:
        return {}, text

    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n") == _FRONTMATTER_FENCE:
            raw = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        return {}, text

    try:
        loaded = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as exc:
        raise DocumentLoadError(f"invalid YAML front-matter: {exc}") from exc
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise DocumentLoadError(
            f"front-matter must be a mapping, got {type(loaded).__name__}"
        )
    return {str(key): value for key, value in loaded.items()}, body


def normalize_stage_output(output: object) -> StageResult:
    if isinstance(output, StageResult):
        return output
    if output is None:
        return StageResult(status=StageStatus.COMPLETED)
    if isinstance(output, bool):
        if output:
            return StageResult(status=StageStatus.COMPLETED)
        return StageResult(status=StageStatus.FAILED, error="stage returned False")
    if isinstance(output, Mapping):
        raw_status = output.get("status", StageStatus.COMPLETED.value)
        status = StageStatus(str(raw_status).strip().lower())
        payload = output.get("output", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            payload = {"value": payload}
        duration = output.get("duration_ms")
        if isinstance(duration, bool) or not isinstance(duration, int):
            duration = None
        return StageResult(
            status=status,
            output={str(key): value for key, value in payload.items()},
            error=_optional_text(output.get("error")),
            reason=_optional_text(output.get("reason")),
            duration_ms=duration,
        )
    raise TypeError(
        "stage output must be StageResult, bool, None, or Mapping[str, object]; "
        f"got {type(output).__name__}"
    )


def passthrough_stage(state: DocumentState) -> StageResult:
    """Stage that leaves the document untouched; useful as a placeholder in configuration."""
    return StageResult(
        status=StageStatus.COMPLETED,
        output={"path": state.path, "size_bytes": state.size_bytes},
    )


def _string_tuple(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value if item is not None)
    return ()


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


__all__ = [
    "STAGE_RESULT_STATUSES",
    "DocumentLoadError",
    "DocumentState",
    "StageCallable",
    "StageOutput",
    "StageReferenceError",
    "StageRegistry",
    "StageResult",
    "load_document_state",
    "load_stage_reference",
    "normalize_stage_output",
    "passthrough_stage",
    "split_frontmatter",
]
