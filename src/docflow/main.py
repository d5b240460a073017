"""Process boundary for the ``docflow`` command: run the CLI and map failures to exit codes."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    PARTIAL_FAILURE = 1
    CONFIG_ERROR = 2
    STORE_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m docflow`` and the ``docflow`` script.

    Never raises: unexpected exceptions are reported on stderr and turned into an
    ``ExitCode`` (a traceback is printed only for ``INTERNAL_ERROR``).
    """

    try:
        from docflow.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _stderr(str(exc).strip() or type(exc).__name__)
        return int(code)


def classify_exception(exc: BaseException) -> ExitCode:
    """Pick the exit code for the first recognised error along the cause chain."""

    from docflow.config import ConfigLoadError, ConfigValidationError
    from docflow.persistence.store import StoreCorruption

    for error in _cause_chain(exc):
        if isinstance(error, (ConfigLoadError, ConfigValidationError)):
            return ExitCode.CONFIG_ERROR
        if isinstance(error, (StoreCorruption, OSError)):
            return ExitCode.STORE_ERROR
    return ExitCode.INTERNAL_ERROR


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in set(ExitCode):
        return raw
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
