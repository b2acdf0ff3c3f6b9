"""Where each item lands on disk for a given provider.

Skills live at `<skills_dir>/<slug>/SKILL.md`. Providers flagged with
`legacy_flat_skills` used `<skills_dir>/<slug>.md` before that; selections
recorded with the old shape are rewritten by `canonical_target_path`.
"""

from __future__ import annotations

import posixpath
from pathlib import Path, PurePosixPath

from .registry import SKILL_FILENAME, ProviderRegistry


def skill_path(registry: ProviderRegistry, provider: str, slug: str) -> str | None:
    skills_dir = registry.paths(provider).skills_dir
    if not skills_dir:
        return None
    return f"{skills_dir}/{slug}/{SKILL_FILENAME}"


def command_path(registry: ProviderRegistry, provider: str, slug: str) -> str | None:
    commands_dir = registry.paths(provider).commands_dir
    if not commands_dir:
        return None
    return f"{commands_dir}/{slug}.md"


def instructions_path(registry: ProviderRegistry, provider: str) -> str | None:
    return registry.paths(provider).root_instructions


def target_path(registry: ProviderRegistry, provider: str, item_type: str, slug: str) -> str | None:
    """Default project-relative target for an item, or None if the provider can't hold it."""

    if item_type == "skill":
        return skill_path(registry, provider, slug)
    if item_type == "command":
        return command_path(registry, provider, slug)
    if item_type == "instructions":
        return instructions_path(registry, provider)
    return None


def legacy_skill_path(registry: ProviderRegistry, provider: str, item_type: str, slug: str) -> str | None:
    if item_type != "skill" or not registry.spec(provider).legacy_flat_skills:
        return None
    skills_dir = registry.paths(provider).skills_dir
    if not skills_dir:
        return None
    return f"{skills_dir}/{slug}.md"


def _posix(p: str) -> str:
    return p.replace("\\", "/")


def is_legacy_skill_target(registry: ProviderRegistry, provider: str, slug: str, target: str) -> bool:
    skills_dir = registry.paths(provider).skills_dir
    if not skills_dir:
        return False
    t = _posix(target)
    if posixpath.basename(t) != f"{slug}.md":
        return False
    parent = posixpath.dirname(t)
    while parent.startswith("./"):
        parent = parent[2:]
    return parent == skills_dir or parent.endswith("/" + skills_dir)


def canonical_target_path(
    registry: ProviderRegistry,
    provider: str,
    item_type: str,
    slug: str,
    target: str,
) -> str:
    """Rewrite a legacy flat skill path to the nested layout; anything else is returned as-is."""

    if item_type != "skill" or not registry.spec(provider).legacy_flat_skills:
        return target
    if not is_legacy_skill_target(registry, provider, slug, target):
        return target

    if Path(target).is_absolute():
        return str(Path(target).parent / slug / SKILL_FILENAME)
    parent = posixpath.normpath(posixpath.dirname(_posix(target)))
    return str(PurePosixPath(parent) / slug / SKILL_FILENAME)


def resolve_target(project_root: Path, target: str) -> Path:
    p = Path(target)
    if p.is_absolute():
        return p
    return project_root / p


def to_project_relative(project_root: Path, file_path: Path) -> str:
    try:
        return file_path.resolve().relative_to(project_root.resolve()).as_posix()
    except ValueError:
        return str(file_path)
