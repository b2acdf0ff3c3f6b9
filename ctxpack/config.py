from __future__ import annotations

import re
from dataclasses import replace
from pathlib import Path
from typing import Any

from . import paths
from .errors import ConfigParseError, ConfigValidationError
from .models import CtxpackConfig, LogConfig, ProvidersConfig, RenderConfig, StoreConfig


try:  # Python 3.11+
    import tomllib as _tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover (dev envs < 3.11)
    import tomli as _tomllib  # type: ignore


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_TOML_LOCATION = re.compile(r"\s*\(at line (\d+), column (\d+)\)$")


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(path=path, message="file not found") from e
    except OSError as e:
        raise ConfigValidationError(path=path, message=f"unable to read file: {e}") from e

    try:
        data = _tomllib.loads(text)
    except Exception as e:
        msg = getattr(e, "msg", None) or str(e)
        lineno = getattr(e, "lineno", None)
        colno = getattr(e, "colno", None)
        # Older tomllib/tomli only carry the location in the message text.
        m = _TOML_LOCATION.search(msg)
        if m:
            msg = msg[: m.start()]
            if lineno is None:
                lineno, colno = int(m.group(1)), int(m.group(2))
        raise ConfigParseError(path=path, message=str(msg), lineno=lineno, colno=colno) from e

    if not isinstance(data, dict):
        raise ConfigValidationError(path=path, message="top-level TOML must be a table")
    return data


def _unknown_keys_message(unknown: set[str]) -> str:
    keys = ", ".join(sorted(unknown))
    return f"unknown keys: {keys}"


def _optional_table(path: Path, value: Any, where: str) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigValidationError(path=path, message=f"{where}: expected table")
    return value


def _require_str(path: Path, value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ConfigValidationError(path=path, message=f"{where}: expected string")
    return value


def _require_int(path: Path, value: Any, where: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigValidationError(path=path, message=f"{where}: expected integer")
    return value


def _require_str_list(path: Path, value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(path=path, message=f"{where}: expected list of strings")
    return value


def _check_keys(path: Path, tbl: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = set(tbl.keys()) - allowed
    if unknown:
        raise ConfigValidationError(path=path, message=f"{where}: {_unknown_keys_message(unknown)}")


def load_config(path: Path | None = None) -> CtxpackConfig:
    """Load + validate config.toml; a missing default config yields defaults.

    An explicitly passed path must exist.
    """

    if path is None:
        p = paths.config_path()
        if not p.exists():
            return CtxpackConfig()
    else:
        p = path
    data = _load_toml(p)
    return parse_config(p, data)


def parse_config(path: Path, data: dict[str, Any]) -> CtxpackConfig:
    _check_keys(path, data, {"version", "store", "providers", "render", "log"}, "config")

    cfg = CtxpackConfig()
    if "version" in data:
        version = _require_int(path, data.get("version"), "version")
        if version != 1:
            raise ConfigValidationError(path=path, message=f"version: expected 1, got {version}")

    store_tbl = _optional_table(path, data.get("store"), "store")
    if store_tbl is not None:
        _check_keys(path, store_tbl, {"path"}, "store")
        store = StoreConfig()
        if "path" in store_tbl:
            store = replace(store, path=_require_str(path, store_tbl.get("path"), "store.path"))
        cfg = replace(cfg, store=store)

    prov_tbl = _optional_table(path, data.get("providers"), "providers")
    if prov_tbl is not None:
        _check_keys(path, prov_tbl, {"enabled"}, "providers")
        providers = ProvidersConfig()
        if "enabled" in prov_tbl:
            enabled = _require_str_list(path, prov_tbl.get("enabled"), "providers.enabled")
            providers = replace(providers, enabled=tuple(enabled))
        cfg = replace(cfg, providers=providers)

    render_tbl = _optional_table(path, data.get("render"), "render")
    if render_tbl is not None:
        _check_keys(path, render_tbl, {"descriptionMaxLength"}, "render")
        render = RenderConfig()
        if "descriptionMaxLength" in render_tbl:
            n = _require_int(path, render_tbl.get("descriptionMaxLength"), "render.descriptionMaxLength")
            if n < 16:
                raise ConfigValidationError(path=path, message="render.descriptionMaxLength: must be >= 16")
            render = replace(render, description_max_length=n)
        cfg = replace(cfg, render=render)

    log_tbl = _optional_table(path, data.get("log"), "log")
    if log_tbl is not None:
        _check_keys(path, log_tbl, {"level"}, "log")
        log = LogConfig()
        if "level" in log_tbl:
            level = _require_str(path, log_tbl.get("level"), "log.level").upper()
            if level not in _LOG_LEVELS:
                raise ConfigValidationError(
                    path=path,
                    message=f"log.level: expected one of {sorted(_LOG_LEVELS)}, got {level!r}",
                )
            log = replace(log, level=level)
        cfg = replace(cfg, log=log)

    return cfg
