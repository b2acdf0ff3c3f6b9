from __future__ import annotations

import os
from pathlib import Path


def home_dir() -> Path:
    """Home directory that holds the global provider trees (~/.claude, ~/.codex, ...)."""

    override = os.environ.get("CTXPACK_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home().resolve()


def data_dir() -> Path:
    override = os.environ.get("CTXPACK_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return home_dir() / ".ctxpack"


def config_path() -> Path:
    return data_dir() / "config.toml"


def db_path(configured: str | None = None) -> Path:
    """Resolve the SQLite database path.

    Precedence: CTXPACK_DB, then the configured [store] path (relative to the
    data dir), then `<data dir>/ctxpack.db`.
    """

    override = os.environ.get("CTXPACK_DB")
    if override:
        return Path(override).expanduser().resolve()
    if configured:
        p = Path(configured).expanduser()
        return p if p.is_absolute() else data_dir() / p
    return data_dir() / "ctxpack.db"
