from __future__ import annotations

import json
from pathlib import Path

import pytest

from ctxpack.core import ContextCore
from ctxpack.errors import NoCompatibleProvidersError, PathNotAllowedError, SelectionNotFoundError, ValidationError
from ctxpack.hashing import content_hash


PID = "p1"


def _skill(core: ContextCore, slug: str = "foo", content: str = "# Foo\n\nDo the thing.\n"):
    return core.create_item("skill", "global", slug, content=content)


def test_load_global_item_writes_and_links(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    entry = core.load_global_item(PID, project, item.id, ["claude"])
    assert entry is not None
    assert entry.relative_path == ".claude/skills/foo/SKILL.md"

    text = (project / entry.relative_path).read_text(encoding="utf-8")
    assert text.startswith('---\nname: foo\ndescription: "Foo"\n---\n\n# Foo')

    (sel,) = core.list_selections(PID)
    assert sel.provider == "claude"
    assert sel.selection.content_hash == content_hash(text)


def test_load_global_item_skips_providers_without_target(core: ContextCore, project: Path) -> None:
    cmd = core.create_item("command", "global", "go", content="go!")
    assert core.load_global_item(PID, project, cmd.id, ["gemini"]) is None
    entry = core.load_global_item(PID, project, cmd.id, ["gemini", "claude"])
    assert entry is not None and entry.relative_path == ".claude/commands/go.md"
    assert (project / ".claude/commands/go.md").read_text(encoding="utf-8") == "go!"


def test_load_global_item_manual_path_is_guarded(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    with pytest.raises(PathNotAllowedError):
        core.load_global_item(PID, project, item.id, ["claude"], manual_path="../escape.md")
    assert not (project.parent / "escape.md").exists()
    assert core.list_selections(PID) == []

    entry = core.load_global_item(PID, project, item.id, ["codex"], manual_path="docs/foo.md")
    assert entry is not None and entry.provider == "codex"
    assert (project / "docs/foo.md").read_text(encoding="utf-8") == item.content


def test_sync_all_is_idempotent(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude"])
    core.update_item(item.id, content="# Foo v2\n")

    first = core.sync_all(PID, project)
    assert [(w.path, w.provider) for w in first.written] == [(".claude/skills/foo/SKILL.md", "claude")]
    assert first.conflicts == []

    second = core.sync_all(PID, project)
    assert second.written == [] and second.deleted == [] and second.conflicts == []
    assert not core.needs_sync(PID, project)


def test_external_edit_is_a_conflict_not_overwritten(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude"])
    target = project / ".claude/skills/foo/SKILL.md"
    target.write_text("hand edited\n", encoding="utf-8")
    core.update_item(item.id, content="# Foo v2\n")

    probe = core.check_sync_status(PID, project)
    res = core.sync_all(PID, project)
    assert res.written == []
    assert [(c.path, c.provider, c.item_id, c.reason) for c in res.conflicts] == [
        (".claude/skills/foo/SKILL.md", "claude", item.id, "external_edit")
    ]
    assert probe == res.conflicts
    assert target.read_text(encoding="utf-8") == "hand edited\n"

    # An explicit single-item sync resolves the conflict by overwriting.
    entry = core.sync_linked_file(PID, project, item.id)
    assert entry.relative_path == ".claude/skills/foo/SKILL.md"
    assert "# Foo v2" in target.read_text(encoding="utf-8")
    assert core.check_sync_status(PID, project) == []


def test_status_probe_does_not_write(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude"])
    target = project / ".claude/skills/foo/SKILL.md"
    target.unlink()

    assert core.check_sync_status(PID, project) == []
    assert core.needs_sync(PID, project)
    assert not target.exists()
    (status,) = core.item_states(PID, project)
    assert status.state_for("claude") == "not_synced"


def test_legacy_flat_skill_is_migrated(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    legacy = project / ".claude/skills/foo.md"
    legacy.parent.mkdir(parents=True)
    legacy.write_text(item.content, encoding="utf-8")
    # A row recorded by an older layout.
    core.selections.upsert_selection(PID, item.id, "claude", ".claude/skills/foo.md", content_hash(item.content))

    res = core.sync_all(PID, project)
    assert [w.path for w in res.written] == [".claude/skills/foo/SKILL.md"]
    assert not legacy.exists()
    nested = project / ".claude/skills/foo/SKILL.md"
    assert nested.read_text(encoding="utf-8").startswith("---\nname: foo\n")
    (sel,) = core.list_selections(PID)
    assert sel.selection.target_path == ".claude/skills/foo/SKILL.md"

    again = core.sync_all(PID, project)
    assert again.written == [] and again.deleted == []
    assert nested.exists()


def test_project_local_items_sync_to_enabled_providers(core: ContextCore, project: Path) -> None:
    core.set_project_providers(PID, ["claude", "codex"])
    item = core.create_item("skill", "project", "local", project_id=PID, content="# Local\nbody\n")

    res = core.sync_all(PID, project)
    assert sorted((w.provider, w.path) for w in res.written) == [
        ("claude", ".claude/skills/local/SKILL.md"),
        ("codex", ".agents/skills/local/SKILL.md"),
    ]
    assert (project / ".agents/skills/local/SKILL.md").read_text(encoding="utf-8") == "# Local\nbody\n"
    assert (project / ".claude/skills/local/SKILL.md").read_text(encoding="utf-8").startswith("---\n")

    assert core.sync_all(PID, project).written == []

    # Local items are recorded, so a later hand edit is detected.
    (project / ".agents/skills/local/SKILL.md").write_text("mine\n", encoding="utf-8")
    core.update_item(item.id, content="# Local v2\n")
    res = core.sync_all(PID, project)
    assert [(c.provider, c.path) for c in res.conflicts] == [("codex", ".agents/skills/local/SKILL.md")]
    assert [w.provider for w in res.written] == ["claude"]


def test_disabled_provider_selections_are_left_alone(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude", "cursor"])
    core.update_item(item.id, content="# Foo v2\n")

    res = core.sync_all(PID, project)
    assert [w.provider for w in res.written] == ["claude"]
    assert "v2" not in (project / ".cursor/skills/foo/SKILL.md").read_text(encoding="utf-8")


def test_prune_removes_unmanaged_files(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude"])
    stray = project / ".claude/skills/stray/SKILL.md"
    stray.parent.mkdir(parents=True)
    stray.write_text("stray", encoding="utf-8")
    (project / "CLAUDE.md").write_text("unmanaged", encoding="utf-8")
    (project / ".gemini/skills/x").mkdir(parents=True)
    (project / ".gemini/skills/x/SKILL.md").write_text("gem", encoding="utf-8")
    (project / ".cursor").mkdir()
    (project / ".cursor/mcp.json").write_text(json.dumps({"mcpServers": {"a": {"command": "x"}}}), encoding="utf-8")

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert sorted((d.path, d.provider, d.kind) for d in res.deleted) == [
        (".claude/skills/stray/SKILL.md", "claude", "skill"),
        (".cursor/mcp.json", "cursor", "mcp"),
        (".gemini/skills/x/SKILL.md", "gemini", "skill"),
        ("CLAUDE.md", "claude", "instruction"),
    ]
    assert (project / ".claude/skills/foo/SKILL.md").exists()
    assert not stray.parent.exists()


def test_prune_keeps_managed_instructions(core: ContextCore, project: Path) -> None:
    core.set_project_providers(PID, ["claude", "cursor"])
    core.save_project_instructions(PID, project, "# Rules\n")
    (project / "GEMINI.md").write_text("old", encoding="utf-8")

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert [(d.path, d.kind) for d in res.deleted] == [("GEMINI.md", "instruction")]
    assert (project / "CLAUDE.md").read_text(encoding="utf-8") == "# Rules\n"
    assert (project / "AGENTS.md").read_text(encoding="utf-8") == "# Rules\n"
    assert res.written == []


def test_conflicting_file_is_not_pruned(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude"])
    target = project / ".claude/skills/foo/SKILL.md"
    target.write_text("edited", encoding="utf-8")

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert len(res.conflicts) == 1
    assert target.read_text(encoding="utf-8") == "edited"


def test_sync_linked_file_without_selection(core: ContextCore, project: Path) -> None:
    global_item = _skill(core)
    with pytest.raises(SelectionNotFoundError):
        core.sync_linked_file(PID, project, global_item.id)
    with pytest.raises(SelectionNotFoundError):
        core.sync_linked_file(PID, project, "missing")

    other = core.create_item("skill", "project", "theirs", project_id="p2")
    with pytest.raises(SelectionNotFoundError):
        core.sync_linked_file(PID, project, other.id)

    cmd = core.create_item("command", "project", "go", project_id=PID, content="go")
    core.set_project_providers(PID, ["codex"])
    with pytest.raises(NoCompatibleProvidersError):
        core.sync_linked_file(PID, project, cmd.id)

    entry = core.sync_linked_file(PID, project, cmd.id, provider="claude")
    assert entry.relative_path == ".claude/commands/go.md"
    assert (project / ".claude/commands/go.md").read_text(encoding="utf-8") == "go"


def test_sync_linked_file_migrates_legacy_row(core: ContextCore, project: Path) -> None:
    item = _skill(core)
    legacy = project / ".claude/skills/foo.md"
    legacy.parent.mkdir(parents=True)
    legacy.write_text("old", encoding="utf-8")
    core.selections.upsert_selection(PID, item.id, "claude", ".claude/skills/foo.md", None)

    entry = core.sync_linked_file(PID, project, item.id, provider="claude")
    assert entry.relative_path == ".claude/skills/foo/SKILL.md"
    assert not legacy.exists()
    (sel,) = core.list_selections(PID)
    assert sel.selection.target_path == ".claude/skills/foo/SKILL.md"
    assert sel.selection.content_hash is not None


def test_item_states(core: ContextCore, project: Path) -> None:
    core.set_project_providers(PID, ["claude", "codex"])
    item = _skill(core)
    core.load_global_item(PID, project, item.id, ["claude"])

    (status,) = core.item_states(PID, project)
    assert status.item.id == item.id
    assert status.state_for("claude") == "synced"
    assert status.state_for("codex") == "local_only"

    (project / ".claude/skills/foo/SKILL.md").write_text("drift", encoding="utf-8")
    (status,) = core.item_states(PID, project)
    assert status.state_for("claude") == "out_of_sync"


def test_prune_keeps_linked_global_instructions(core: ContextCore, project: Path) -> None:
    rules = core.create_item("instructions", "global", "house-rules", content="# House\n")
    core.load_global_item(PID, project, rules.id, ["claude"])

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert res.written == [] and res.deleted == [] and res.conflicts == []
    assert (project / "CLAUDE.md").read_text(encoding="utf-8") == "# House\n"


def test_prune_skips_symlinks_leaving_the_project(core: ContextCore, project: Path, tmp_path: Path) -> None:
    shared = tmp_path / "shared" / "x.md"
    shared.parent.mkdir()
    shared.write_text("shared", encoding="utf-8")
    link = project / ".claude/skills/shared/SKILL.md"
    link.parent.mkdir(parents=True)
    link.symlink_to(shared)
    old = project / ".claude/commands/old.md"
    old.parent.mkdir(parents=True)
    old.write_text("old", encoding="utf-8")
    (project / ".mcp.json").write_text(json.dumps({"mcpServers": {}}), encoding="utf-8")

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert sorted((d.path, d.provider, d.kind) for d in res.deleted) == [
        (".claude/commands/old.md", "claude", "command"),
        (".mcp.json", "claude", "mcp"),
    ]
    assert link.is_symlink()
    assert shared.read_text(encoding="utf-8") == "shared"


def test_project_instructions_own_root_files(core: ContextCore, project: Path) -> None:
    core.save_project_instructions(PID, project, "# Project\n")
    rules = core.create_item("instructions", "global", "house-rules", content="# House\n")

    with pytest.raises(ValidationError):
        core.load_global_item(PID, project, rules.id, ["claude"])
    assert (project / "CLAUDE.md").read_text(encoding="utf-8") == "# Project\n"

    # A link made without writing still yields to the project's own file.
    core.set_selection(PID, rules.id, "claude", "CLAUDE.md")
    for _ in range(2):
        res = core.sync_all(PID, project, prune_unmanaged=True)
        assert res.written == [] and res.deleted == [] and res.conflicts == []
    assert core.check_sync_status(PID, project) == []
    assert (project / "CLAUDE.md").read_text(encoding="utf-8") == "# Project\n"


def test_linked_instructions_yield_to_later_project_instructions(core: ContextCore, project: Path) -> None:
    rules = core.create_item("instructions", "global", "house-rules", content="# House\n")
    core.load_global_item(PID, project, rules.id, ["claude"])
    core.save_project_instructions(PID, project, "# Project\n")

    first = core.sync_all(PID, project)
    second = core.sync_all(PID, project)
    assert first.conflicts == [] and second.conflicts == []
    assert first.written == [] and second.written == []
    assert (project / "CLAUDE.md").read_text(encoding="utf-8") == "# Project\n"


def test_prune_removes_files_of_disabled_providers(core: ContextCore, project: Path) -> None:
    skill = _skill(core)
    cmd = core.create_item("command", "global", "go", content="go!")
    core.load_global_item(PID, project, skill.id, ["claude", "cursor"])
    core.load_global_item(PID, project, cmd.id, ["claude"])
    core.set_project_providers(PID, ["cursor"])

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert res.written == [] and res.conflicts == []
    assert sorted((d.path, d.provider, d.kind) for d in res.deleted) == [
        (".claude/commands/go.md", "claude", "command"),
        (".claude/skills/foo/SKILL.md", "claude", "skill"),
    ]
    assert (project / ".cursor/skills/foo/SKILL.md").exists()
    assert not (project / ".claude/skills/foo").exists()


def test_removed_mcp_server_file_is_pruned(core: ContextCore, project: Path) -> None:
    core.write_mcp_server(project, "claude", "fs", {"command": "npx", "args": ["fs"]})
    assert core.remove_mcp_server(project, "claude", "fs") is True

    (claude,) = [f for f in core.discover_mcp_configs(project) if f.provider == "claude"]
    assert claude.exists and claude.servers == {}

    res = core.sync_all(PID, project, prune_unmanaged=True)
    assert [(d.path, d.provider, d.kind) for d in res.deleted] == [(".mcp.json", "claude", "mcp")]
    assert not (project / ".mcp.json").exists()
    (claude,) = [f for f in core.discover_mcp_configs(project) if f.provider == "claude"]
    assert not claude.exists
