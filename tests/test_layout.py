from __future__ import annotations

from pathlib import Path

from ctxpack.layout import canonical_target_path, legacy_skill_path, resolve_target, target_path
from ctxpack.registry import default_registry


REG = default_registry()


def test_target_paths_per_provider() -> None:
    assert target_path(REG, "claude", "skill", "foo") == ".claude/skills/foo/SKILL.md"
    assert target_path(REG, "codex", "skill", "foo") == ".agents/skills/foo/SKILL.md"
    assert target_path(REG, "cursor", "skill", "foo") == ".cursor/skills/foo/SKILL.md"
    assert target_path(REG, "opencode", "skill", "foo") == "skill/foo/SKILL.md"
    assert target_path(REG, "claude", "command", "go") == ".claude/commands/go.md"
    assert target_path(REG, "gemini", "command", "go") is None
    assert target_path(REG, "gemini", "instructions", "instructions") == "GEMINI.md"


def test_legacy_skill_path_only_for_legacy_provider() -> None:
    assert legacy_skill_path(REG, "claude", "skill", "foo") == ".claude/skills/foo.md"
    assert legacy_skill_path(REG, "codex", "skill", "foo") is None
    assert legacy_skill_path(REG, "claude", "command", "foo") is None


def test_canonicalizes_legacy_flat_skill_paths() -> None:
    assert canonical_target_path(REG, "claude", "skill", "foo", ".claude/skills/foo.md") == ".claude/skills/foo/SKILL.md"
    assert canonical_target_path(REG, "claude", "skill", "foo", "./.claude/skills/foo.md") == ".claude/skills/foo/SKILL.md"

    absolute = str(Path("/work/proj/.claude/skills/foo.md"))
    assert canonical_target_path(REG, "claude", "skill", "foo", absolute) == str(
        Path("/work/proj/.claude/skills/foo/SKILL.md")
    )


def test_leaves_other_paths_unchanged() -> None:
    for target in (
        ".claude/skills/foo/SKILL.md",  # already canonical
        ".claude/skills/bar.md",  # a different slug
        "docs/foo.md",  # not under the skills dir
    ):
        assert canonical_target_path(REG, "claude", "skill", "foo", target) == target

    assert canonical_target_path(REG, "claude", "command", "foo", ".claude/skills/foo.md") == ".claude/skills/foo.md"
    assert canonical_target_path(REG, "codex", "skill", "foo", ".agents/skills/foo.md") == ".agents/skills/foo.md"


def test_canonical_path_is_stable() -> None:
    once = canonical_target_path(REG, "claude", "skill", "foo", ".claude/skills/foo.md")
    assert canonical_target_path(REG, "claude", "skill", "foo", once) == once


def test_resolve_target(tmp_path: Path) -> None:
    assert resolve_target(tmp_path, "a/b.md") == tmp_path / "a" / "b.md"
    absolute = tmp_path / "elsewhere.md"
    assert resolve_target(tmp_path / "proj", str(absolute)) == absolute
