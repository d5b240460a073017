"""Module entrypoint for ``python -m docflow``."""

from __future__ import annotations

from docflow.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
