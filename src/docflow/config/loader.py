"""
docflow — runtime config loader.

File: src/docflow/config/loader.py

Purpose
- Resolve the effective ``EngineConfig`` from built-in defaults, ``docflow.toml``,
  ``DOCFLOW_<SECTION>_<KEY>`` environment variables and CLI flags, in that order of
  increasing precedence.

Normative behavior
- An explicit ``config_path`` (or ``DOCFLOW_CONFIG``) must exist; the implicit
  ``./docflow.toml`` is optional.
- Environment values are coerced to the type of the default they replace.
- Relative paths resolve against the directory holding the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from docflow.config.schema import (
    OPEN_SECTIONS,
    PATH_FIELDS,
    EngineConfig,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "docflow.toml"
ENV_PREFIX: Final[str] = "DOCFLOW_"
CONFIG_PATH_ENV: Final[str] = f"{ENV_PREFIX}CONFIG"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when the config file cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Build the effective configuration.

    ``cli_overrides`` maps dotted keys (``"recovery.max_retries"``) to values; ``None``
    values mean "flag not given" and are skipped.
    """

    env = dict(os.environ if environ is None else environ)
    source, required = _locate_config_file(config_path, env)

    layered = merge_config(default_config(), _read_toml(source, required=required))
    layered = assert_valid_config(layered)
    layered = merge_config(layered, env_overrides(env))
    layered = merge_config(layered, _dotted_to_nested(cli_overrides or {}))
    layered = assert_valid_config(layered)

    return EngineConfig.from_mapping(normalize_paths(layered, base_dir=source.parent))


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``DOCFLOW_*`` overrides for every scalar setting that has a default."""

    overrides: dict[str, Any] = {}
    for path, default in _scalar_settings(default_config()):
        name = ENV_PREFIX + "_".join(part.upper() for part in path)
        raw = environ.get(name)
        if raw is not None:
            _assign(overrides, path, _coerce(raw, default, name, ".".join(path)))
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every path setting made absolute."""

    normalized = merge_config({}, config)
    for path in PATH_FIELDS:
        section = normalized.get(path[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(path[1])
        if not isinstance(raw, str):
            continue
        candidate = Path(os.path.expandvars(raw)).expanduser()
        if not candidate.is_absolute():
            candidate = base_dir / candidate
        section[path[1]] = Path(os.path.normpath(candidate)).as_posix()
    return normalized


def dump_effective_config(config: EngineConfig) -> str:
    """Serialize ``config`` as canonical JSON (sorted keys, compact separators)."""

    return json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _locate_config_file(
    config_path: str | Path | None, environ: Mapping[str, str]
) -> tuple[Path, bool]:
    if config_path is not None:
        return Path(config_path).expanduser().resolve(), True
    from_env = environ.get(CONFIG_PATH_ENV, "").strip()
    if from_env:
        return Path(from_env).expanduser().resolve(), True
    return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve(), False


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _scalar_settings(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        path = (*prefix, key)
        if path[0] == "meta" or path in OPEN_SECTIONS:
            continue
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _scalar_settings(value, path)
        elif isinstance(value, (bool, int, float, str)):
            yield path, value


def _coerce(raw: str, default: object, name: str, dotted: str) -> object:
    value = raw.strip()
    if isinstance(default, bool):
        lowered = value.lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
        raise ConfigLoadError(f"{name} -> {dotted} must be a boolean (true/false/yes/no/1/0)")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {dotted} must be an integer") from exc
    if isinstance(default, float):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {dotted} must be a number") from exc
    return value


def _dotted_to_nested(overrides: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(nested, path, value)
    return nested


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        target = target.setdefault(part, {})
    target[path[-1]] = value


__all__ = [
    "CONFIG_PATH_ENV",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "normalize_paths",
]
