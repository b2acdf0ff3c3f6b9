from __future__ import annotations

import hashlib
from pathlib import Path


def content_hash(data: str | bytes) -> str:
    """SHA-256 hex digest of text (UTF-8) or raw bytes."""

    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def file_hash(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()
