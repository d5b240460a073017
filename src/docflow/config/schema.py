"""
docflow — configuration schema and validation.

File: src/docflow/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.
- Materialize validated payloads into typed, frozen section objects.

Functional requirements
- Unknown sections and keys are rejected with the dotted field path in the message.
- Numeric fields are range-checked; booleans are never accepted where numbers are expected.
- ``[stages]`` maps stage names to ``"module:attribute"`` references.
- ``[queue.stage_plan]`` may override the stage list of any work kind.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from docflow.constants import CONFIG_SCHEMA_VERSION, LOG_DIR, REPORTS_DIR, STATE_DIR
from docflow.domain.models import DEFAULT_INBOX_MARKER, DEFAULT_STAGE_PLAN, WorkKind

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "root"),
    ("paths", "state_dir"),
    ("paths", "reports_dir"),
    ("observability", "log_dir"),
)

# Sections whose keys are user-defined rather than fixed by the schema.
OPEN_SECTIONS: Final[frozenset[tuple[str, ...]]] = frozenset(
    {("stages",), ("queue", "stage_plan")}
)


class ConfigValidationError(ValueError):
    """Raised when a configuration payload violates the schema."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("invalid configuration: " + "; ".join(self.errors))


def default_config() -> dict[str, Any]:
    return {
        "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
        "paths": {
            "root": ".",
            "state_dir": STATE_DIR.as_posix(),
            "reports_dir": REPORTS_DIR.as_posix(),
        },
        "queue": {
            "inbox_marker": DEFAULT_INBOX_MARKER,
            "stage_plan": {},
        },
        "executor": {
            "max_local_retries": 3,
            "base_delay_seconds": 1.0,
            "stage_timeout_seconds": 300.0,
        },
        "recovery": {
            "max_retries": 3,
            "retry_delay_seconds": 2.0,
            "exponential_backoff": True,
            "cleanup_old_failures": True,
            "max_failure_age_hours": 24.0,
        },
        "dispatch": {
            "parallel": False,
            "max_parallel": 3,
            "delay_between_items_seconds": 0.5,
            "stop_on_error": False,
        },
        "completion": {
            "retention_days": 30,
        },
        "observability": {
            "log_level": "INFO",
            "log_to_stdout": False,
            "log_dir": LOG_DIR.as_posix(),
        },
        "stages": {},
    }


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; mappings merge, everything else replaces."""

    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(config: Mapping[str, object]) -> list[str]:
    """Return a sorted list of ``field.path: message`` violations; empty means valid."""

    errors: list[str] = []
    _check_keys(config, default_config(), (), errors)

    meta = _section(config, "meta")
    version = meta.get("schema_version")
    if version != CONFIG_SCHEMA_VERSION:
        errors.append(
            f"meta.schema_version: unsupported schema version {version!r}, "
            f"expected {CONFIG_SCHEMA_VERSION}"
        )

    paths = _section(config, "paths")
    for key in ("root", "state_dir", "reports_dir"):
        _require_text(paths.get(key), f"paths.{key}", errors)

    queue = _section(config, "queue")
    _require_text(queue.get("inbox_marker"), "queue.inbox_marker", errors, allow_empty=True)
    stage_plan = queue.get("stage_plan", {})
    if isinstance(stage_plan, Mapping):
        known_kinds = {kind.value for kind in WorkKind}
        for kind, stages in stage_plan.items():
            where = f"queue.stage_plan.{kind}"
            if kind not in known_kinds:
                errors.append(f"{where}: unknown work kind (expected one of {sorted(known_kinds)})")
                continue
            if (
                not isinstance(stages, list)
                or not stages
                or not all(isinstance(name, str) and name.strip() for name in stages)
            ):
                errors.append(f"{where}: must be a non-empty list of stage names")

    executor = _section(config, "executor")
    _require_int(executor.get("max_local_retries"), "executor.max_local_retries", errors, minimum=0)
    _require_number(
        executor.get("base_delay_seconds"), "executor.base_delay_seconds", errors, minimum=0.0
    )
    _require_number(
        executor.get("stage_timeout_seconds"),
        "executor.stage_timeout_seconds",
        errors,
        minimum=0.0,
        exclusive=True,
    )

    recovery = _section(config, "recovery")
    _require_int(recovery.get("max_retries"), "recovery.max_retries", errors, minimum=1)
    _require_number(
        recovery.get("retry_delay_seconds"), "recovery.retry_delay_seconds", errors, minimum=0.0
    )
    _require_bool(recovery.get("exponential_backoff"), "recovery.exponential_backoff", errors)
    _require_bool(recovery.get("cleanup_old_failures"), "recovery.cleanup_old_failures", errors)
    _require_number(
        recovery.get("max_failure_age_hours"), "recovery.max_failure_age_hours", errors, minimum=0.0
    )

    dispatch = _section(config, "dispatch")
    _require_bool(dispatch.get("parallel"), "dispatch.parallel", errors)
    _require_int(dispatch.get("max_parallel"), "dispatch.max_parallel", errors, minimum=1)
    _require_number(
        dispatch.get("delay_between_items_seconds"),
        "dispatch.delay_between_items_seconds",
        errors,
        minimum=0.0,
    )
    _require_bool(dispatch.get("stop_on_error"), "dispatch.stop_on_error", errors)

    completion = _section(config, "completion")
    _require_int(completion.get("retention_days"), "completion.retention_days", errors, minimum=0)

    observability = _section(config, "observability")
    level = observability.get("log_level")
    if not isinstance(level, str) or level.upper() not in LOG_LEVELS:
        errors.append(f"observability.log_level: must be one of {list(LOG_LEVELS)}")
    _require_bool(observability.get("log_to_stdout"), "observability.log_to_stdout", errors)
    _require_text(observability.get("log_dir"), "observability.log_dir", errors)

    stages = config.get("stages", {})
    if isinstance(stages, Mapping):
        for name, reference in stages.items():
            if not isinstance(reference, str) or ":" not in reference:
                errors.append(f"stages.{name}: must be a 'module:attribute' reference")

    return sorted(set(errors))


def assert_valid_config(config: Mapping[str, object]) -> dict[str, Any]:
    errors = validate_config(config)
    if errors:
        raise ConfigValidationError(errors)
    return merge_config({}, config)


@dataclass(frozen=True, slots=True)
class PathsConfig:
    root: str
    state_dir: str
    reports_dir: str


@dataclass(frozen=True, slots=True)
class QueueConfig:
    inbox_marker: str = DEFAULT_INBOX_MARKER
    stage_plan: dict[WorkKind, tuple[str, ...]] = field(default_factory=dict)

    def effective_stage_plan(self) -> dict[WorkKind, tuple[str, ...]]:
        plan = dict(DEFAULT_STAGE_PLAN)
        plan.update(self.stage_plan)
        return plan


@dataclass(frozen=True, slots=True)
class ExecutorConfig:
    max_local_retries: int
    base_delay_seconds: float
    stage_timeout_seconds: float


@dataclass(frozen=True, slots=True)
class RecoveryConfig:
    max_retries: int
    retry_delay_seconds: float
    exponential_backoff: bool
    cleanup_old_failures: bool
    max_failure_age_hours: float

    @property
    def max_failure_age_seconds(self) -> float:
        return self.max_failure_age_hours * 3600


@dataclass(frozen=True, slots=True)
class DispatchConfig:
    parallel: bool
    max_parallel: int
    delay_between_items_seconds: float
    stop_on_error: bool


@dataclass(frozen=True, slots=True)
class CompletionConfig:
    retention_days: int


@dataclass(frozen=True, slots=True)
class ObservabilityConfig:
    log_level: str
    log_to_stdout: bool
    log_dir: str


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Validated, typed view of the effective configuration."""

    paths: PathsConfig
    queue: QueueConfig
    executor: ExecutorConfig
    recovery: RecoveryConfig
    dispatch: DispatchConfig
    completion: CompletionConfig
    observability: ObservabilityConfig
    stages: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, config: Mapping[str, object]) -> EngineConfig:
        payload = assert_valid_config(merge_config(default_config(), config))
        queue = payload["queue"]
        observability = payload["observability"]
        return cls(
            paths=PathsConfig(**payload["paths"]),
            queue=QueueConfig(
                inbox_marker=queue["inbox_marker"],
                stage_plan={
                    WorkKind(kind): tuple(stages)
                    for kind, stages in sorted(queue["stage_plan"].items())
                },
            ),
            executor=ExecutorConfig(
                max_local_retries=payload["executor"]["max_local_retries"],
                base_delay_seconds=float(payload["executor"]["base_delay_seconds"]),
                stage_timeout_seconds=float(payload["executor"]["stage_timeout_seconds"]),
            ),
            recovery=RecoveryConfig(
                max_retries=payload["recovery"]["max_retries"],
                retry_delay_seconds=float(payload["recovery"]["retry_delay_seconds"]),
                exponential_backoff=payload["recovery"]["exponential_backoff"],
                cleanup_old_failures=payload["recovery"]["cleanup_old_failures"],
                max_failure_age_hours=float(payload["recovery"]["max_failure_age_hours"]),
            ),
            dispatch=DispatchConfig(
                parallel=payload["dispatch"]["parallel"],
                max_parallel=payload["dispatch"]["max_parallel"],
                delay_between_items_seconds=float(
                    payload["dispatch"]["delay_between_items_seconds"]
                ),
                stop_on_error=payload["dispatch"]["stop_on_error"],
            ),
            completion=CompletionConfig(retention_days=payload["completion"]["retention_days"]),
            observability=ObservabilityConfig(
                log_level=observability["log_level"].upper(),
                log_to_stdout=observability["log_to_stdout"],
                log_dir=observability["log_dir"],
            ),
            stages=dict(sorted(payload["stages"].items())),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
            "paths": {
                "root": self.paths.root,
                "state_dir": self.paths.state_dir,
                "reports_dir": self.paths.reports_dir,
            },
            "queue": {
                "inbox_marker": self.queue.inbox_marker,
                "stage_plan": {
                    kind.value: list(stages) for kind, stages in self.queue.stage_plan.items()
                },
            },
            "executor": {
                "max_local_retries": self.executor.max_local_retries,
                "base_delay_seconds": self.executor.base_delay_seconds,
                "stage_timeout_seconds": self.executor.stage_timeout_seconds,
            },
            "recovery": {
                "max_retries": self.recovery.max_retries,
                "retry_delay_seconds": self.recovery.retry_delay_seconds,
                "exponential_backoff": self.recovery.exponential_backoff,
                "cleanup_old_failures": self.recovery.cleanup_old_failures,
                "max_failure_age_hours": self.recovery.max_failure_age_hours,
            },
            "dispatch": {
                "parallel": self.dispatch.parallel,
                "max_parallel": self.dispatch.max_parallel,
                "delay_between_items_seconds": self.dispatch.delay_between_items_seconds,
                "stop_on_error": self.dispatch.stop_on_error,
            },
            "completion": {"retention_days": self.completion.retention_days},
            "observability": {
                "log_level": self.observability.log_level,
                "log_to_stdout": self.observability.log_to_stdout,
                "log_dir": self.observability.log_dir,
            },
            "stages": dict(self.stages),
        }


def _check_keys(
    payload: Mapping[str, object],
    schema: Mapping[str, object],
    prefix: tuple[str, ...],
    errors: list[str],
) -> None:
    if prefix in OPEN_SECTIONS:
        if not isinstance(payload, Mapping):
            errors.append(f"{'.'.join(prefix)}: must be a table")
        return
    for key in payload:
        path = (*prefix, str(key))
        where = ".".join(path)
        if key not in schema:
            errors.append(f"{where}: unknown configuration key")
            continue
        expected = schema[key]
        value = payload[key]
        if isinstance(expected, Mapping):
            if not isinstance(value, Mapping):
                errors.append(f"{where}: must be a table")
                continue
            _check_keys(value, expected, path, errors)


def _section(config: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _require_text(
    value: object,
    where: str,
    errors: list[str],
    *,
    allow_empty: bool = False,
) -> None:
    if not isinstance(value, str):
        errors.append(f"{where}: must be a string")
    elif not allow_empty and not value.strip():
        errors.append(f"{where}: must be a non-empty string")


def _require_bool(value: object, where: str, errors: list[str]) -> None:
    if not isinstance(value, bool):
        errors.append(f"{where}: must be a boolean")


def _require_int(value: object, where: str, errors: list[str], *, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{where}: must be an integer")
        return
    if value < minimum:
        errors.append(f"{where}: must be >= {minimum}")


def _require_number(
    value: object,
    where: str,
    errors: list[str],
    *,
    minimum: float,
    exclusive: bool = False,
) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append(f"{where}: must be a number")
        return
    if exclusive and value <= minimum:
        errors.append(f"{where}: must be > {minimum}")
    elif not exclusive and value < minimum:
        errors.append(f"{where}: must be >= {minimum}")


__all__ = [
    "LOG_LEVELS",
    "OPEN_SECTIONS",
    "PATH_FIELDS",
    "CompletionConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "DispatchConfig",
    "EngineConfig",
    "ExecutorConfig",
    "ObservabilityConfig",
    "PathsConfig",
    "QueueConfig",
    "RecoveryConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "validate_config",
]
