"""
docflow config package public API.

File: src/docflow/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``docflow.toml`` + ``DOCFLOW_`` env overrides.
- Fail fast with clear validation/load errors.
"""

from docflow.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from docflow.config.schema import (
    PATH_FIELDS,
    CompletionConfig,
    ConfigValidationError,
    DispatchConfig,
    EngineConfig,
    ExecutorConfig,
    ObservabilityConfig,
    PathsConfig,
    QueueConfig,
    RecoveryConfig,
    assert_valid_config,
    default_config,
    merge_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "CompletionConfig",
    "ConfigLoadError",
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
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "validate_config",
]
