"""MCP server config files, one adapter per provider file format.

Writable targets own a dedicated file (`.mcp.json`, `.cursor/mcp.json`).
Read-only targets share a file with the provider's other settings, so they
are only ever read (and never pruned).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .errors import (
    McpConfigError,
    PathNotAllowedError,
    ProviderDisabledError,
    ProviderReadOnlyError,
    ValidationError,
)
from .fsguard import GuardedFS
from .layout import to_project_relative
from .models import DeletedEntry
from .registry import ProviderRegistry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class McpServer:
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"command": self.command, "args": list(self.args)}
        if self.env:
            out["env"] = dict(self.env)
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "McpServer":
        """Strict constructor for user input."""

        cmd = raw.get("command")
        if not isinstance(cmd, str) or not cmd.strip():
            raise ValidationError("server.command must be a non-empty string")
        args = raw.get("args") or []
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ValidationError("server.args must be a list of strings")
        env = raw.get("env") or None
        if env is not None:
            if not isinstance(env, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
                raise ValidationError("server.env must be a string map")
        return cls(command=cmd, args=tuple(args), env=dict(env) if env else None)


def _coerce_env(value: Any) -> dict[str, str] | None:
    if not isinstance(value, dict) or not value:
        return None
    return {str(k): str(v) for k, v in value.items()}


def _coerce_server(value: Any) -> McpServer | None:
    """Lenient read of an entry found on disk; non-table entries are skipped."""

    if not isinstance(value, dict):
        return None
    args = value.get("args")
    return McpServer(
        command=str(value.get("command") or ""),
        args=tuple(str(a) for a in args) if isinstance(args, list) else (),
        env=_coerce_env(value.get("env")),
    )


def _load_document(text: str | None) -> dict[str, Any]:
    if text is None or not text.strip():
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("top-level JSON must be an object")
    return data


def _dump_document(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


@dataclass(frozen=True)
class JsonServersAdapter:
    """A JSON document holding servers under one top-level key."""

    relative_path: str
    servers_key: str = "mcpServers"
    writable: bool = True

    def _entry(self, value: Any) -> McpServer | None:
        return _coerce_server(value)

    def _encode(self, server: McpServer) -> dict[str, Any]:
        return server.to_dict()

    def _servers_table(self, data: dict[str, Any]) -> dict[str, Any]:
        raw = data.get(self.servers_key)
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ValueError(f"{self.servers_key}: expected object")
        return raw

    def read(self, text: str) -> dict[str, McpServer]:
        raw = self._servers_table(_load_document(text))
        out: dict[str, McpServer] = {}
        for key, value in raw.items():
            server = self._entry(value)
            if server is not None:
                out[key] = server
        return out

    def write(self, existing: str | None, servers: Mapping[str, McpServer]) -> str:
        data = _load_document(existing)
        old = self._servers_table(data)
        table: dict[str, Any] = {}
        for key, server in servers.items():
            # Unchanged entries keep their raw JSON, unknown fields included.
            if key in old and self._entry(old[key]) == server:
                table[key] = old[key]
            else:
                table[key] = self._encode(server)
        data[self.servers_key] = table
        return _dump_document(data)


@dataclass(frozen=True)
class OpenCodeAdapter(JsonServersAdapter):
    """opencode.json: `mcp` entries tagged `"type": "local"`.

    The native shape stores the argv as a `command` list and the environment
    under `environment`; the older `command` + `args` + `env` shape is read too.
    """

    relative_path: str = "opencode.json"
    servers_key: str = "mcp"
    writable: bool = False

    def _entry(self, value: Any) -> McpServer | None:
        if not isinstance(value, dict):
            return None
        cmd = value.get("command")
        env = _coerce_env(value.get("environment")) or _coerce_env(value.get("env"))
        if isinstance(cmd, list):
            argv = [str(a) for a in cmd]
            return McpServer(command=argv[0] if argv else "", args=tuple(argv[1:]), env=env)
        server = _coerce_server(value)
        if server is None:
            return None
        return McpServer(command=server.command, args=server.args, env=env)

    def _encode(self, server: McpServer) -> dict[str, Any]:
        out: dict[str, Any] = {"type": "local", "command": [server.command, *server.args]}
        if server.env:
            out["environment"] = dict(server.env)
        return out


McpAdapter = JsonServersAdapter

ADAPTERS: dict[str, McpAdapter] = {
    "claude": JsonServersAdapter(".mcp.json"),
    "cursor": JsonServersAdapter(".cursor/mcp.json"),
    "gemini": JsonServersAdapter(".gemini/settings.json", writable=False),
    "opencode": OpenCodeAdapter(),
}


def adapter_for(provider: str) -> McpAdapter | None:
    return ADAPTERS.get(provider)


@dataclass(frozen=True)
class McpConfigFile:
    provider: str
    path: str
    exists: bool
    writable: bool
    servers: dict[str, McpServer] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "path": self.path,
            "exists": self.exists,
            "writable": self.writable,
            "servers": {k: v.to_dict() for k, v in self.servers.items()},
        }


class McpConfigService:
    def __init__(self, registry: ProviderRegistry, fs: GuardedFS) -> None:
        self.registry = registry
        self.fs = fs

    def _file_path(self, project_root: Path, adapter: McpAdapter) -> Path:
        return Path(project_root).resolve() / adapter.relative_path

    def discover(self, project_root: Path) -> list[McpConfigFile]:
        """Read every configurable target. Missing or broken files come back empty."""

        out: list[McpConfigFile] = []
        for provider in self.registry.list_configurable():
            adapter = adapter_for(provider)
            if adapter is None:
                continue
            path = self._file_path(project_root, adapter)
            exists = False
            servers: dict[str, McpServer] = {}
            try:
                exists = self.fs.exists(path, project_root)
                if exists:
                    servers = adapter.read(self.fs.read(path, project_root))
            except (OSError, ValueError, PathNotAllowedError) as e:
                logger.debug("ignoring unreadable MCP config %s: %s", path, e)
                servers = {}
            out.append(
                McpConfigFile(
                    provider=provider,
                    path=adapter.relative_path,
                    exists=exists,
                    writable=adapter.writable,
                    servers=servers,
                )
            )
        return out

    def _writable_target(self, provider: str) -> McpAdapter:
        if not self.registry.is_configurable_mcp_target(provider):
            raise ProviderDisabledError(provider)
        adapter = adapter_for(provider)
        if adapter is None:
            raise ProviderDisabledError(provider)
        if not adapter.writable or not self.registry.is_mcp_writable(provider):
            raise ProviderReadOnlyError(provider)
        return adapter

    def _read_existing(self, path: Path, project_root: Path, adapter: McpAdapter) -> tuple[str | None, dict[str, McpServer]]:
        if not self.fs.exists(path, project_root):
            return None, {}
        try:
            text = self.fs.read(path, project_root)
            return text, adapter.read(text)
        except (OSError, ValueError) as e:
            raise McpConfigError(path=path, message=str(e)) from e

    def write_server(self, project_root: Path, provider: str, key: str, server: McpServer) -> McpConfigFile:
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("server key must be a non-empty string")
        adapter = self._writable_target(provider)
        path = self._file_path(project_root, adapter)
        self.fs.check(path, project_root)

        existing, servers = self._read_existing(path, project_root, adapter)
        servers[key] = server
        self.fs.write(path, adapter.write(existing, servers), project_root)
        logger.info("set MCP server %s for %s", key, provider)
        return McpConfigFile(
            provider=provider, path=adapter.relative_path, exists=True, writable=True, servers=servers
        )

    def remove_server(self, project_root: Path, provider: str, key: str) -> bool:
        """Drop one server. A missing file or key is a no-op (returns False)."""

        adapter = self._writable_target(provider)
        path = self._file_path(project_root, adapter)
        self.fs.check(path, project_root)

        existing, servers = self._read_existing(path, project_root, adapter)
        if existing is None or key not in servers:
            return False
        del servers[key]
        self.fs.write(path, adapter.write(existing, servers), project_root)
        logger.info("removed MCP server %s for %s", key, provider)
        return True

    def prune(self, project_root: Path, enabled: set[str] | frozenset[str]) -> list[DeletedEntry]:
        """Delete dedicated MCP files of disabled providers and empty ones of enabled providers."""

        root = Path(project_root).resolve()
        deleted: list[DeletedEntry] = []
        for provider, adapter in ADAPTERS.items():
            if not self.registry.is_configurable(provider) or not adapter.writable:
                continue
            path = self._file_path(root, adapter)
            if not self.fs.is_path_allowed(path, root) or not path.is_file():
                continue

            if provider in enabled:
                try:
                    servers = adapter.read(self.fs.read(path, root))
                except (OSError, ValueError) as e:
                    logger.debug("keeping malformed MCP config %s: %s", path, e)
                    continue
                if servers:
                    continue

            self.fs.delete(path, root)
            deleted.append(DeletedEntry(path=to_project_relative(root, path), provider=provider, kind="mcp"))
        return deleted
