"""Content fingerprints (``sha256:<hex>``) for admitted documents."""

from __future__ import annotations

import hashlib
import os
import re
from typing import Final

FINGERPRINT_ALGORITHM: Final[str] = "sha256"
_FINGERPRINT_RE: Final[re.Pattern[str]] = re.compile(rf"^{FINGERPRINT_ALGORITHM}:[0-9a-f]{{64}}$")


def file_fingerprint(path: str | os.PathLike[str]) -> str:
    """Hash the file at ``path`` without loading it whole into memory."""

    with open(path, "rb") as handle:
        digest = hashlib.file_digest(handle, FINGERPRINT_ALGORITHM)
    return f"{FINGERPRINT_ALGORITHM}:{digest.hexdigest()}"


def is_fingerprint(value: object) -> bool:
    return isinstance(value, str) and _FINGERPRINT_RE.fullmatch(value) is not None


__all__ = [
    "FINGERPRINT_ALGORITHM",
    "file_fingerprint",
    "is_fingerprint",
]
