"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import PurePosixPath
from typing import Final, NoReturn, TypeVar, cast

from docflow.domain import ids as domain_ids
from docflow.utils.hashing import is_fingerprint

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

MAX_TEXT_LENGTH: Final[int] = 8192
_MAX_JSON_DEPTH: Final[int] = 16

DEFAULT_INBOX_MARKER: Final[str] = "00_Inbox"


class WorkKind(StrEnum):
    GIT_COMMIT = "git-commit"
    WEB_CLIP = "web-clip"
    INBOX_FILE = "inbox-file"
    UNKNOWN = "unknown"


class Provenance(StrEnum):
    """Producer tags recognised when classifying admitted documents."""

    GIT_COMMIT = "git-commit"
    WEB_CLIPPER = "web-clipper"
    MANUAL = "manual"
    UNKNOWN = "unknown"


class StageStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STAGE_STATUSES: Final[frozenset[StageStatus]] = frozenset(
    {StageStatus.COMPLETED, StageStatus.SKIPPED}
)

PRIORITY_BY_KIND: Final[dict[WorkKind, int]] = {
    WorkKind.GIT_COMMIT: 1,
    WorkKind.WEB_CLIP: 2,
    WorkKind.INBOX_FILE: 3,
    WorkKind.UNKNOWN: 4,
}

DEFAULT_STAGE_PLAN: Final[dict[WorkKind, tuple[str, ...]]] = {
    WorkKind.GIT_COMMIT: ("normalization", "keyword-extraction", "linking", "tagging", "filing"),
    WorkKind.WEB_CLIP: ("normalization", "keyword-extraction", "linking", "filing"),
    WorkKind.INBOX_FILE: ("normalization", "keyword-extraction", "linking", "filing"),
    WorkKind.UNKNOWN: ("normalization", "filing"),
}


def classify_work(path: str, source: str, *, inbox_marker: str = DEFAULT_INBOX_MARKER) -> WorkKind:
    """Derive the work kind from provenance; explicit producer tags win over path hints."""

    if source == Provenance.GIT_COMMIT:
        return WorkKind.GIT_COMMIT
    if source == Provenance.WEB_CLIPPER:
        return WorkKind.WEB_CLIP
    if inbox_marker and inbox_marker in path:
        return WorkKind.INBOX_FILE
    return WorkKind.UNKNOWN


def priority_for(kind: WorkKind) -> int:
    return PRIORITY_BY_KIND[kind]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def duration_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def clamp_text(value: str, limit: int = MAX_TEXT_LENGTH) -> str:
    """Cut ``value`` to at most ``limit`` characters, marking the cut with a trailing note."""
    if len(value) <= limit:
        return value
    marker = f"... [truncated {len(value) - limit} chars]"
    if limit <= len(marker):
        return value[:limit]
    return value[: limit - len(marker)] + marker


def as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    """Validate that ``value`` is a JSON-compatible object; raise ``ValueError`` otherwise."""
    return _as_json_object(value, path)


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


@dataclass(slots=True)
class FileRef(CanonicalModel):
    path: str
    size_bytes: int
    hash: str
    source: str = Provenance.UNKNOWN.value

    def __post_init__(self) -> None:
        self.path = _as_document_path(self.path, "FileRef.path")
        self.size_bytes = _as_int(self.size_bytes, "FileRef.size_bytes", minimum=0)
        if not is_fingerprint(self.hash):
            _fail("FileRef.hash", f"expected 'sha256:<hex>' fingerprint, got {self.hash!r}")
        self.source = _as_str(self.source, "FileRef.source", max_len=128)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FileRef:
        parsed = _expect_object(
            data, "FileRef", required={"path", "size_bytes", "hash"}, optional={"source"}
        )
        return cls(
            path=_as_str(parsed["path"], "FileRef.path"),
            size_bytes=_as_int(parsed["size_bytes"], "FileRef.size_bytes", minimum=0),
            hash=_as_str(parsed["hash"], "FileRef.hash"),
            source=_as_str(parsed.get("source", Provenance.UNKNOWN.value), "FileRef.source"),
        )


@dataclass(slots=True)
class WorkItem(CanonicalModel):
    id: str
    kind: WorkKind
    priority: int
    created_at: datetime
    file: FileRef
    stages: tuple[str, ...]
    context: dict[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "WorkItem.id")
        domain_ids.validate_work_item_id(self.id)
        self.kind = _as_enum(WorkKind, self.kind, "WorkItem.kind")
        self.priority = _as_int(self.priority, "WorkItem.priority", minimum=0)
        self.created_at = _as_datetime(self.created_at, "WorkItem.created_at")
        if not isinstance(self.file, FileRef):
            _fail("WorkItem.file", f"expected FileRef, got {type(self.file).__name__}")
        self.stages = _as_stage_names(self.stages, "WorkItem.stages")
        self.context = _as_json_object(self.context, "WorkItem.context")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        parsed = _expect_object(
            data,
            "WorkItem",
            required={"id", "kind", "priority", "created_at", "file", "stages"},
            optional={"context"},
        )
        return cls(
            id=_as_str(parsed["id"], "WorkItem.id"),
            kind=_as_enum(WorkKind, parsed["kind"], "WorkItem.kind"),
            priority=_as_int(parsed["priority"], "WorkItem.priority", minimum=0),
            created_at=_as_datetime(parsed["created_at"], "WorkItem.created_at"),
            file=FileRef.from_dict(_as_mapping(parsed["file"], "WorkItem.file")),
            stages=_as_stage_names(parsed["stages"], "WorkItem.stages"),
            context=_as_json_object(parsed.get("context", {}), "WorkItem.context"),
        )


@dataclass(slots=True)
class StageState(CanonicalModel):
    """Live status of one stage inside a processing record."""

    name: str
    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    output: JSONValue = None
    error: str | None = None
    reason: str | None = None

    def __post_init__(self) -> None:
        self.name = _as_str(self.name, "StageState.name", max_len=128)
        self.status = _as_enum(StageStatus, self.status, "StageState.status")
        self.started_at = _as_optional_datetime(self.started_at, "StageState.started_at")
        self.completed_at = _as_optional_datetime(self.completed_at, "StageState.completed_at")
        if self.duration_ms is not None:
            self.duration_ms = _as_int(self.duration_ms, "StageState.duration_ms", minimum=0)
        self.output = _as_json_value(self.output, "StageState.output")
        self.error = _as_optional_str(self.error, "StageState.error")
        self.reason = _as_optional_str(self.reason, "StageState.reason")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageState:
        parsed = _expect_object(
            data,
            "StageState",
            required={"name", "status"},
            optional={"started_at", "completed_at", "duration_ms", "output", "error", "reason"},
        )
        return cls(
            name=_as_str(parsed["name"], "StageState.name"),
            status=_as_enum(StageStatus, parsed["status"], "StageState.status"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "StageState.started_at"),
            completed_at=_as_optional_datetime(
                parsed.get("completed_at"), "StageState.completed_at"
            ),
            duration_ms=cast("int | None", parsed.get("duration_ms")),
            output=_as_json_value(parsed.get("output"), "StageState.output"),
            error=_as_optional_str(parsed.get("error"), "StageState.error"),
            reason=_as_optional_str(parsed.get("reason"), "StageState.reason"),
        )


@dataclass(frozen=True, slots=True)
class StageErrorEntry(CanonicalModel):
    stage: str
    error: str
    timestamp: datetime

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageErrorEntry:
        parsed = _expect_object(data, "StageErrorEntry", required={"stage", "error", "timestamp"})
        return cls(
            stage=_as_str(parsed["stage"], "StageErrorEntry.stage"),
            error=_as_str(parsed["error"], "StageErrorEntry.error", strip=False),
            timestamp=_as_datetime(parsed["timestamp"], "StageErrorEntry.timestamp"),
        )


@dataclass(slots=True)
class FinalOutput(CanonicalModel):
    """Business metadata describing where a finished document ended up."""

    final_path: str
    keywords_extracted: int = 0
    links_created: int = 0
    tags_added: tuple[str, ...] = ()
    destination_folder: str = "."

    def __post_init__(self) -> None:
        self.final_path = _as_str(self.final_path, "FinalOutput.final_path")
        self.keywords_extracted = _as_int(
            self.keywords_extracted, "FinalOutput.keywords_extracted", minimum=0
        )
        self.links_created = _as_int(self.links_created, "FinalOutput.links_created", minimum=0)
        self.tags_added = tuple(
            _as_str(tag, f"FinalOutput.tags_added[{index}]")
            for index, tag in enumerate(_as_sequence(self.tags_added, "FinalOutput.tags_added"))
        )
        self.destination_folder = _as_str(self.destination_folder, "FinalOutput.destination_folder")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FinalOutput:
        parsed = _expect_object(
            data,
            "FinalOutput",
            required={"final_path"},
            optional={"keywords_extracted", "links_created", "tags_added", "destination_folder"},
        )
        return cls(
            final_path=_as_str(parsed["final_path"], "FinalOutput.final_path"),
            keywords_extracted=cast("int", parsed.get("keywords_extracted", 0)),
            links_created=cast("int", parsed.get("links_created", 0)),
            tags_added=cast(
                "tuple[str, ...]",
                tuple(_as_sequence(parsed.get("tags_added", ()), "FinalOutput.tags_added")),
            ),
            destination_folder=_as_str(
                parsed.get("destination_folder", "."), "FinalOutput.destination_folder"
            ),
        )


@dataclass(slots=True)
class ProcessingRecord(CanonicalModel):
    """Ledger entry for one in-flight work item; ``stage_pipeline`` mirrors ``work_item.stages``."""

    work_id: str
    file_path: str
    started_at: datetime
    stage_pipeline: list[StageState]
    work_item: WorkItem
    retry_count: int = 0
    errors: list[StageErrorEntry] = field(default_factory=list)
    completed_at: datetime | None = None
    total_duration_ms: int | None = None
    final_output: FinalOutput | None = None

    def __post_init__(self) -> None:
        self.work_id = _as_str(self.work_id, "ProcessingRecord.work_id")
        self.file_path = _as_str(self.file_path, "ProcessingRecord.file_path")
        self.started_at = _as_datetime(self.started_at, "ProcessingRecord.started_at")
        self.retry_count = _as_int(self.retry_count, "ProcessingRecord.retry_count", minimum=0)
        if self.work_item.id != self.work_id:
            _fail("ProcessingRecord.work_item", "work_item.id must equal work_id")
        names = tuple(stage.name for stage in self.stage_pipeline)
        if names != self.work_item.stages:
            _fail(
                "ProcessingRecord.stage_pipeline",
                f"stage order {list(names)} does not match work item stages "
                f"{list(self.work_item.stages)}",
            )

    @classmethod
    def for_item(cls, item: WorkItem, *, started_at: datetime) -> ProcessingRecord:
        return cls(
            work_id=item.id,
            file_path=item.file.path,
            started_at=started_at,
            stage_pipeline=[StageState(name=name) for name in item.stages],
            work_item=item,
        )

    def stage_index(self, stage_name: str) -> int:
        for index, stage in enumerate(self.stage_pipeline):
            if stage.name == stage_name:
                return index
        raise KeyError(stage_name)

    @property
    def has_failed_stage(self) -> bool:
        return any(stage.status is StageStatus.FAILED for stage in self.stage_pipeline)

    @property
    def is_finished(self) -> bool:
        return all(stage.status in TERMINAL_STAGE_STATUSES for stage in self.stage_pipeline)

    def current_document_path(self) -> str:
        """Return the newest document path reported by a completed stage, else the original."""
        current = self.file_path
        for stage in self.stage_pipeline:
            if stage.status is StageStatus.COMPLETED and isinstance(stage.output, dict):
                moved = stage.output.get("path")
                if isinstance(moved, str) and moved.strip():
                    current = moved.strip()
        return current

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProcessingRecord:
        parsed = _expect_object(
            data,
            "ProcessingRecord",
            required={"work_id", "file_path", "started_at", "stage_pipeline", "work_item"},
            optional={"retry_count", "errors", "completed_at", "total_duration_ms", "final_output"},
        )
        final_raw = parsed.get("final_output")
        total = parsed.get("total_duration_ms")
        return cls(
            work_id=_as_str(parsed["work_id"], "ProcessingRecord.work_id"),
            file_path=_as_str(parsed["file_path"], "ProcessingRecord.file_path"),
            started_at=_as_datetime(parsed["started_at"], "ProcessingRecord.started_at"),
            stage_pipeline=_as_model_list(
                parsed["stage_pipeline"], "ProcessingRecord.stage_pipeline", StageState
            ),
            work_item=WorkItem.from_dict(
                _as_mapping(parsed["work_item"], "ProcessingRecord.work_item")
            ),
            retry_count=_as_int(
                parsed.get("retry_count", 0), "ProcessingRecord.retry_count", minimum=0
            ),
            errors=_as_model_list(
                parsed.get("errors", []), "ProcessingRecord.errors", StageErrorEntry
            ),
            completed_at=_as_optional_datetime(
                parsed.get("completed_at"), "ProcessingRecord.completed_at"
            ),
            total_duration_ms=_as_optional_int(total, "ProcessingRecord.total_duration_ms"),
            final_output=None
            if final_raw is None
            else FinalOutput.from_dict(_as_mapping(final_raw, "ProcessingRecord.final_output")),
        )


@dataclass(frozen=True, slots=True)
class StageSummary(CanonicalModel):
    name: str
    status: StageStatus
    duration_ms: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_state(cls, state: StageState) -> StageSummary:
        return cls(
            name=state.name,
            status=state.status,
            duration_ms=state.duration_ms,
            started_at=state.started_at,
            completed_at=state.completed_at,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StageSummary:
        parsed = _expect_object(
            data,
            "StageSummary",
            required={"name", "status"},
            optional={"duration_ms", "started_at", "completed_at"},
        )
        duration = parsed.get("duration_ms")
        return cls(
            name=_as_str(parsed["name"], "StageSummary.name"),
            status=_as_enum(StageStatus, parsed["status"], "StageSummary.status"),
            duration_ms=_as_optional_int(duration, "StageSummary.duration_ms"),
            started_at=_as_optional_datetime(parsed.get("started_at"), "StageSummary.started_at"),
            completed_at=_as_optional_datetime(
                parsed.get("completed_at"), "StageSummary.completed_at"
            ),
        )


@dataclass(frozen=True, slots=True)
class CompletionRecord(CanonicalModel):
    """Immutable history entry written once per successfully finished work item."""

    work_id: str
    file_path: str
    final_path: str
    started_at: datetime
    completed_at: datetime
    total_duration_ms: int
    stage_pipeline: tuple[StageSummary, ...]
    metadata: FinalOutput
    errors: tuple[StageErrorEntry, ...] = ()
    retries: int = 0
    recovery_attempts: int = 0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_retries(self) -> bool:
        return self.retries > 0 or self.recovery_attempts > 0

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CompletionRecord:
        parsed = _expect_object(
            data,
            "CompletionRecord",
            required={
                "work_id",
                "file_path",
                "final_path",
                "started_at",
                "completed_at",
                "total_duration_ms",
                "stage_pipeline",
                "metadata",
            },
            optional={"errors", "retries", "recovery_attempts"},
        )
        return cls(
            work_id=_as_str(parsed["work_id"], "CompletionRecord.work_id"),
            file_path=_as_str(parsed["file_path"], "CompletionRecord.file_path"),
            final_path=_as_str(parsed["final_path"], "CompletionRecord.final_path"),
            started_at=_as_datetime(parsed["started_at"], "CompletionRecord.started_at"),
            completed_at=_as_datetime(parsed["completed_at"], "CompletionRecord.completed_at"),
            total_duration_ms=_as_int(
                parsed["total_duration_ms"], "CompletionRecord.total_duration_ms", minimum=0
            ),
            stage_pipeline=tuple(
                _as_model_list(
                    parsed["stage_pipeline"], "CompletionRecord.stage_pipeline", StageSummary
                )
            ),
            metadata=FinalOutput.from_dict(
                _as_mapping(parsed["metadata"], "CompletionRecord.metadata")
            ),
            errors=tuple(
                _as_model_list(
                    parsed.get("errors", []), "CompletionRecord.errors", StageErrorEntry
                )
            ),
            retries=_as_int(parsed.get("retries", 0), "CompletionRecord.retries", minimum=0),
            recovery_attempts=_as_int(
                parsed.get("recovery_attempts", 0), "CompletionRecord.recovery_attempts", minimum=0
            ),
        )


@dataclass(slots=True)
class RecoveryState(CanonicalModel):
    """Process-wide recovery counters, kept apart from per-record local retries."""

    retries: dict[str, int] = field(default_factory=dict)
    last_retry: dict[str, datetime] = field(default_factory=dict)
    permanent_failures: list[str] = field(default_factory=list)

    def attempts(self, work_id: str) -> int:
        return self.retries.get(work_id, 0)

    def is_quarantined(self, work_id: str) -> bool:
        return work_id in self.permanent_failures

    def forget(self, work_id: str) -> None:
        self.retries.pop(work_id, None)
        self.last_retry.pop(work_id, None)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "retries": dict(sorted(self.retries.items())),
            "lastRetry": {
                key: to_iso8601z(value) for key, value in sorted(self.last_retry.items())
            },
            "permanentFailures": list(self.permanent_failures),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RecoveryState:
        parsed = _expect_object(
            data,
            "RecoveryState",
            required=set(),
            optional={"retries", "lastRetry", "permanentFailures"},
        )
        retries_raw = _as_mapping(parsed.get("retries", {}), "RecoveryState.retries")
        last_raw = _as_mapping(parsed.get("lastRetry", {}), "RecoveryState.lastRetry")
        permanent: list[str] = []
        raw_permanent = _as_sequence(
            parsed.get("permanentFailures", []), "RecoveryState.permanentFailures"
        )
        for index, item in enumerate(raw_permanent):
            work_id = _as_str(item, f"RecoveryState.permanentFailures[{index}]")
            if work_id not in permanent:
                permanent.append(work_id)
        return cls(
            retries={
                str(key): _as_int(value, f"RecoveryState.retries.{key}", minimum=0)
                for key, value in retries_raw.items()
            },
            last_retry={
                str(key): _as_datetime(value, f"RecoveryState.lastRetry.{key}")
                for key, value in last_raw.items()
            },
            permanent_failures=permanent,
        )


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = MAX_TEXT_LENGTH,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = MAX_TEXT_LENGTH) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len, strip=False)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_optional_int(value: object, path: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, path, minimum=0)


def _as_model_list(value: object, path: str, model: type[TModel]) -> list[TModel]:
    return [
        model.from_dict(_as_mapping(item, f"{path}[{index}]"))
        for index, item in enumerate(_as_sequence(value, path))
    ]


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_stage_names(value: object, path: str) -> tuple[str, ...]:
    names = tuple(
        _as_str(item, f"{path}[{index}]", max_len=128)
        for index, item in enumerate(_as_sequence(value, path))
    )
    if not names:
        _fail(path, "must contain at least one stage")
    if len(set(names)) != len(names):
        _fail(path, f"stage names must be unique, got {list(names)}")
    return names


def _as_document_path(value: object, path: str) -> str:
    text = _as_str(value, path, max_len=4096)
    return PurePosixPath(text.replace("\\", "/")).as_posix()


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, datetime):
        return to_iso8601z(value)
    if isinstance(value, Mapping):
        return {
            str(key): _as_json_value(item, f"{path}.{key}", depth=depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{index}]", depth=depth + 1)
            for index, item in enumerate(value)
        ]
    _fail(path, f"unsupported JSON value type {type(value).__name__}")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, Enum):
        return cast("JSONValue", value.value)
    if isinstance(value, datetime):
        return to_iso8601z(value)
    if isinstance(value, Sequence):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialize_value(item, f"{path}.{key}") for key, item in value.items()}
    if is_dataclass(value):
        out: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


__all__ = [
    "DEFAULT_INBOX_MARKER",
    "DEFAULT_STAGE_PLAN",
    "MAX_TEXT_LENGTH",
    "PRIORITY_BY_KIND",
    "TERMINAL_STAGE_STATUSES",
    "CanonicalModel",
    "CompletionRecord",
    "FileRef",
    "FinalOutput",
    "JSONValue",
    "ProcessingRecord",
    "Provenance",
    "RecoveryState",
    "StageErrorEntry",
    "StageState",
    "StageStatus",
    "StageSummary",
    "WorkItem",
    "WorkKind",
    "as_json_object",
    "clamp_text",
    "classify_work",
    "duration_ms",
    "priority_for",
    "to_iso8601z",
    "utc_now",
]
