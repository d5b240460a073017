"""Plain-text renderer for human-readable docflow command output.

Colour is used only for the OK/FAIL markers, and only when stdout is a TTY and
neither ``NO_COLOR`` nor ``--no-color`` is set.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

_MARKER_COLORS: Final[dict[bool, str]] = {True: "\033[32m", False: "\033[31m"}
_RESET: Final[str] = "\033[0m"
_INDENT: Final[str] = "  "


class CLIRenderer:
    """Formats headings, key/value pairs, lists and tables onto one stream."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream if stream is not None else sys.stdout
        self._color = (
            not no_color
            and not os.environ.get("NO_COLOR")
            and getattr(self._stream, "isatty", lambda: False)()
        )

    def _emit(self, line: str = "") -> None:
        print(line, file=self._stream)

    def text(self, line: str) -> None:
        self._emit(line)

    def heading(self, text: str) -> None:
        self._emit(text)
        self._emit("=" * len(text))

    def section(self, title: str) -> None:
        self._emit()
        self._emit(title)

    def kv(self, key: str, value: object) -> None:
        self._emit(f"{key}: {value}")

    def items(self, entries: Sequence[str]) -> None:
        for entry in entries:
            self._emit(f"{_INDENT}- {entry}")

    def status(self, label: str, *, ok: bool) -> None:
        marker = "OK" if ok else "FAIL"
        if self._color:
            marker = f"{_MARKER_COLORS[ok]}{marker}{_RESET}"
        self._emit(f"{_INDENT}{marker}  {label}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        """Left-aligned columns separated by two spaces; nothing is printed for no rows."""

        if not rows:
            return
        grid = [[str(cell) for cell in headers]]
        grid.extend([str(cell) for cell in row][: len(headers)] for row in rows)
        widths = [
            max(len(line[i]) if i < len(line) else 0 for line in grid)
            for i in range(len(headers))
        ]

        def render(cells: Sequence[str]) -> str:
            padded = [
                (cells[i] if i < len(cells) else "").ljust(width)
                for i, width in enumerate(widths)
            ]
            return _INDENT + "  ".join(padded).rstrip()

        self._emit(render(grid[0]))
        self._emit(_INDENT + "  ".join("-" * width for width in widths))
        for line in grid[1:]:
            self._emit(render(line))

    def next_steps(self, commands: Sequence[str]) -> None:
        if not commands:
            return
        self.section("Next steps:")
        for command in commands:
            self._emit(f"{_INDENT}$ {command}")


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
