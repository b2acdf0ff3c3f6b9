from __future__ import annotations

from pathlib import Path

import pytest

from ctxpack.core import ContextCore, open_core
from ctxpack.models import CtxpackConfig


@pytest.fixture
def home(tmp_path: Path, monkeypatch) -> Path:
    h = tmp_path / "home"
    h.mkdir()
    monkeypatch.setenv("CTXPACK_HOME", str(h))
    monkeypatch.setenv("CTXPACK_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("CTXPACK_DB", raising=False)
    return h.resolve()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    p = tmp_path / "proj"
    p.mkdir()
    return p.resolve()


@pytest.fixture
def core(home: Path):
    c: ContextCore = open_core(config=CtxpackConfig(), db_path=":memory:", home=home)
    yield c
    c.close()
