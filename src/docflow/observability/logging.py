"""
docflow — structured logging

File: src/docflow/observability/logging.py

Purpose
- Write one JSON object per log line into ``<log_dir>/<run_id>/docflow.jsonl``.
- Route structlog events from engine components into the same sink.

Normative behavior
- Emitters never block: records go through a bounded queue drained by a listener
  thread, and a full queue drops the record and counts it.
- Correlation fields (``run_id``, ``command``, ``work_item_id``) are bound with
  ``correlation_scope`` and written as top-level keys; every other keyword argument
  lands under ``fields``.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from docflow.constants import LOG_DIR

if TYPE_CHECKING:
    from docflow.config.schema import ObservabilityConfig

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

LOG_FILENAME: Final[str] = "docflow.jsonl"
ROOT_LOGGER_NAME: Final[str] = "docflow"

_CORRELATION_KEYS: Final[frozenset[str]] = frozenset({"run_id", "command", "work_item_id"})
# Attributes every LogRecord carries; anything else on a record is a caller extra.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Resolved options for one run's JSON-lines sink."""

    run_id: str
    base_log_dir: Path | str = Path(LOG_DIR)
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stdout: bool = False


def setup_logging(
    observability_config: ObservabilityConfig | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Start the JSON sink for one CLI run and point structlog at it.

    ``log_dir`` overrides ``observability_config.log_dir`` when given.
    """

    options = LoggingConfig(run_id=run_id, logger_name=logger_name)
    if observability_config is not None:
        options = LoggingConfig(
            run_id=run_id,
            base_log_dir=observability_config.log_dir,
            logger_name=logger_name,
            level=observability_config.log_level,
            log_to_stdout=observability_config.log_to_stdout,
        )
    if log_dir is not None:
        options = LoggingConfig(
            run_id=options.run_id,
            base_log_dir=log_dir,
            logger_name=options.logger_name,
            level=options.level,
            log_to_stdout=options.log_to_stdout,
        )

    handle = setup_structured_logging(options)
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Hand structlog events to stdlib logging; event kwargs become record extras."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for every record emitted inside the block.

    ``None`` values are ignored. Previous values are restored on exit.
    """

    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, str]:
    return {key: str(value) for key, value in structlog.contextvars.get_contextvars().items()}


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    """Snapshot the caller's correlation context and enqueue without blocking."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this context, so copy it onto the record.
        record.correlation = get_correlation_context()
        return super().prepare(record)  # type: ignore[no-any-return]

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "run_id": self._run_id,
        }
        correlation = getattr(record, "correlation", None)
        if isinstance(correlation, Mapping):
            event.update({key: str(value) for key, value in correlation.items()})

        fields: dict[str, object] = {}
        for key, value in vars(record).items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            if key in _CORRELATION_KEYS:
                event[key] = str(value)
            else:
                fields[key] = value
        if fields:
            event["fields"] = _to_json(fields)

        if record.exc_info is not None:
            event["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            event["stack"] = str(record.stack_info)
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class StructuredLoggingHandle:
    """Owns the queue, listener thread and sinks of one logging setup."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        log_path: Path,
        log_queue: queue.Queue[object],
        queue_handler: _DroppingQueueHandler,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = logging.handlers.QueueListener(
            log_queue, *sinks, respect_handler_level=True
        )
        self._lock = threading.Lock()
        self._is_shutdown = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def start(self) -> None:
        self._listener.start()
        self.logger.addHandler(self._queue_handler)

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks > 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._is_shutdown:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._is_shutdown = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Replace any active setup with a fresh queue-backed JSON sink."""

    global _active, _atexit_registered

    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    log_filename = _require_text(config.log_filename, "log_filename")
    if Path(log_filename).name != log_filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _parse_level(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / log_filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = _JsonLineFormatter(run_id)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
    )
    handle.start()

    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Drain and close ``handle``, or the active setup when none is given."""

    global _active

    with _active_lock:
        target = handle if handle is not None else _active
        if target is None:
            return
        if _active is target:
            _active = None
    target.shutdown(timeout_seconds=timeout_seconds)


def _require_text(value: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _parse_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if not isinstance(parsed, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return parsed


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return str(value)


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
