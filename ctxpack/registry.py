"""Provider registry.

Static table of every supported CLI provider: where it expects project files,
where its global (home directory) tree lives, and what it can do with MCP
config. The registry is an immutable value built once by `default_registry()`
and passed to the components that need it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping


@dataclass(frozen=True)
class ProviderPaths:
    """Project-relative paths (POSIX separators)."""

    root_instructions: str | None
    skills_dir: str | None
    commands_dir: str | None = None


@dataclass(frozen=True)
class GlobalProviderPaths:
    base_dir: str  # relative to $HOME
    instructions: str | None = None  # relative to base_dir
    skills_dir: str | None = None
    commands_dir: str | None = None


@dataclass(frozen=True)
class ProviderCapabilities:
    configurable: bool
    mcp_readable: bool
    mcp_writable: bool


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    label: str
    paths: ProviderPaths
    capabilities: ProviderCapabilities
    global_paths: GlobalProviderPaths | None = None
    # Skills rendered at the canonical SKILL.md get a name/description header.
    skill_header: bool = False
    # Skills used to live at <skills_dir>/<slug>.md before the nested layout.
    legacy_flat_skills: bool = False


SKILL_FILENAME = "SKILL.md"


@dataclass(frozen=True)
class ProviderRegistry:
    providers: Mapping[str, ProviderSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "providers", MappingProxyType(dict(self.providers)))

    @property
    def order(self) -> tuple[str, ...]:
        return tuple(self.providers.keys())

    def spec(self, provider: str) -> ProviderSpec:
        try:
            return self.providers[provider]
        except KeyError:
            raise KeyError(f"unknown provider: {provider}") from None

    def paths(self, provider: str) -> ProviderPaths:
        return self.spec(provider).paths

    def label(self, provider: str) -> str:
        spec = self.providers.get(provider)
        return spec.label if spec is not None else provider

    def is_configurable(self, provider: str) -> bool:
        spec = self.providers.get(provider)
        return spec is not None and spec.capabilities.configurable

    def filter_configurable(self, providers: Iterable[str]) -> list[str]:
        out: list[str] = []
        for p in providers:
            if not isinstance(p, str) or not self.is_configurable(p):
                continue
            if p not in out:
                out.append(p)
        return out

    def configurable(self) -> list[str]:
        return [p for p in self.order if self.is_configurable(p)]

    def is_configurable_mcp_target(self, provider: str) -> bool:
        spec = self.providers.get(provider)
        return spec is not None and spec.capabilities.configurable and spec.capabilities.mcp_readable

    def is_mcp_writable(self, provider: str) -> bool:
        return self.is_configurable_mcp_target(provider) and self.spec(provider).capabilities.mcp_writable

    def list_configurable(self, *, writable_only: bool = False) -> list[str]:
        """MCP targets that can be configured, in registry order."""

        out: list[str] = []
        for p in self.order:
            if not self.is_configurable_mcp_target(p):
                continue
            if writable_only and not self.is_mcp_writable(p):
                continue
            out.append(p)
        return out

    def global_base_dirs(self, home: Path) -> dict[str, Path]:
        out: dict[str, Path] = {}
        for p in self.configurable():
            g = self.providers[p].global_paths
            if g is not None:
                out[p] = home / g.base_dir
        return out


def default_registry() -> ProviderRegistry:
    return ProviderRegistry(
        providers={
            "claude": ProviderSpec(
                id="claude",
                label="Claude Code",
                paths=ProviderPaths(
                    root_instructions="CLAUDE.md",
                    skills_dir=".claude/skills",
                    commands_dir=".claude/commands",
                ),
                capabilities=ProviderCapabilities(configurable=True, mcp_readable=True, mcp_writable=True),
                global_paths=GlobalProviderPaths(base_dir=".claude", instructions="CLAUDE.md"),
                skill_header=True,
                legacy_flat_skills=True,
            ),
            "codex": ProviderSpec(
                id="codex",
                label="Codex",
                paths=ProviderPaths(root_instructions="AGENTS.md", skills_dir=".agents/skills"),
                capabilities=ProviderCapabilities(configurable=True, mcp_readable=False, mcp_writable=False),
                global_paths=GlobalProviderPaths(base_dir=".codex", instructions="AGENTS.md"),
            ),
            "cursor": ProviderSpec(
                id="cursor",
                label="Cursor Agent",
                paths=ProviderPaths(root_instructions="AGENTS.md", skills_dir=".cursor/skills"),
                capabilities=ProviderCapabilities(configurable=True, mcp_readable=True, mcp_writable=True),
            ),
            "gemini": ProviderSpec(
                id="gemini",
                label="Gemini",
                paths=ProviderPaths(root_instructions="GEMINI.md", skills_dir=".gemini/skills"),
                capabilities=ProviderCapabilities(configurable=True, mcp_readable=True, mcp_writable=False),
                global_paths=GlobalProviderPaths(
                    base_dir=".gemini",
                    instructions="GEMINI.md",
                    skills_dir="skills",
                    commands_dir="commands",
                ),
            ),
            "opencode": ProviderSpec(
                id="opencode",
                label="OpenCode",
                paths=ProviderPaths(root_instructions="OPENCODE.md", skills_dir="skill"),
                capabilities=ProviderCapabilities(configurable=True, mcp_readable=True, mcp_writable=False),
                global_paths=GlobalProviderPaths(
                    base_dir=".config/opencode",
                    instructions="AGENTS.md",
                    skills_dir="skills",
                    commands_dir="commands",
                ),
            ),
        }
    )
