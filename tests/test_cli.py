from __future__ import annotations

import json
from pathlib import Path

from ctxpack.cli import EXIT_CONFLICTS, main


def _run(project: Path, *argv: str) -> int:
    return main(["--project", str(project), "--project-id", "p1", *argv])


def _create_skill(project: Path, capsys, slug: str = "foo", content: str = "# Foo\n\nBody\n") -> str:
    assert _run(project, "items", "create", "skill", slug, "--content", content) == 0
    return capsys.readouterr().out.strip()


def test_load_and_sync_json(home: Path, project: Path, capsys) -> None:
    item_id = _create_skill(project, capsys)
    assert item_id

    assert _run(project, "load", item_id) == 0
    assert capsys.readouterr().out.strip() == "wrote .claude/skills/foo/SKILL.md"
    assert (project / ".claude/skills/foo/SKILL.md").read_text(encoding="utf-8").startswith("---\nname: foo\n")

    assert _run(project, "items", "update", item_id, "--content", "# Foo v2\n") == 0
    capsys.readouterr()

    assert _run(project, "sync", "--json") == 0
    out = json.loads(capsys.readouterr().out)
    assert out["written"] == [{"path": ".claude/skills/foo/SKILL.md", "provider": "claude"}]
    assert out["conflicts"] == [] and out["deleted"] == []


def test_sync_reports_conflicts(home: Path, project: Path, capsys) -> None:
    item_id = _create_skill(project, capsys)
    assert _run(project, "load", item_id) == 0
    (project / ".claude/skills/foo/SKILL.md").write_text("mine", encoding="utf-8")
    assert _run(project, "items", "update", item_id, "--content", "# Foo v2\n") == 0
    capsys.readouterr()

    assert _run(project, "status") == EXIT_CONFLICTS
    assert "conflict: .claude/skills/foo/SKILL.md (claude)" in capsys.readouterr().out

    assert _run(project, "sync") == EXIT_CONFLICTS
    assert "conflict: .claude/skills/foo/SKILL.md (claude)" in capsys.readouterr().out
    assert (project / ".claude/skills/foo/SKILL.md").read_text(encoding="utf-8") == "mine"

    assert _run(project, "sync", "--item", item_id) == 0
    assert "# Foo v2" in (project / ".claude/skills/foo/SKILL.md").read_text(encoding="utf-8")


def test_item_errors_map_to_exit_codes(home: Path, project: Path, capsys) -> None:
    _create_skill(project, capsys)
    assert _run(project, "items", "create", "skill", "Foo") == 3
    assert capsys.readouterr().out.startswith("error: ")

    assert _run(project, "items", "delete", "missing") == 4
    assert _run(project, "items", "update", "missing", "--content", "x") == 4


def test_load_rejects_escaping_path(home: Path, project: Path, capsys) -> None:
    item_id = _create_skill(project, capsys)
    assert _run(project, "load", item_id, "--path", "../x.md") == 6
    assert not (project.parent / "x.md").exists()


def test_mcp_commands(home: Path, project: Path, capsys) -> None:
    assert _run(project, "mcp", "add", "gemini", "fs", "--command", "npx") == 6

    assert (
        _run(
            project,
            "mcp",
            "add",
            "claude",
            "fs",
            "--command",
            "npx",
            "--arg=-y",
            "--arg",
            "fs",
            "--env",
            "ROOT=/tmp",
        )
        == 0
    )
    data = json.loads((project / ".mcp.json").read_text(encoding="utf-8"))
    assert data == {"mcpServers": {"fs": {"command": "npx", "args": ["-y", "fs"], "env": {"ROOT": "/tmp"}}}}

    assert _run(project, "mcp", "add", "claude", "bad", "--command", "x", "--env", "NOEQUALS") == 2

    capsys.readouterr()
    assert _run(project, "mcp", "list", "--json") == 0
    files = {f["provider"]: f for f in json.loads(capsys.readouterr().out)}
    assert files["claude"]["exists"] is True
    assert files["cursor"]["exists"] is False

    assert _run(project, "mcp", "remove", "claude", "fs") == 0
    assert json.loads((project / ".mcp.json").read_text(encoding="utf-8")) == {"mcpServers": {}}


def test_bad_config_exits_2(home: Path, project: Path, tmp_path: Path, capsys) -> None:
    data = tmp_path / "data"
    data.mkdir()
    (data / "config.toml").write_text("version = \n", encoding="utf-8")
    assert _run(project, "providers", "list") == 2
    assert "Invalid TOML" in capsys.readouterr().out


def test_providers_and_instructions(home: Path, project: Path, capsys) -> None:
    assert _run(project, "providers", "set", "claude", "codex", "bogus") == 2
    capsys.readouterr()

    assert _run(project, "providers", "set", "claude", "codex") == 0
    assert capsys.readouterr().out.strip() == "claude codex"

    assert _run(project, "providers", "list") == 0
    lines = {line.split()[0]: line for line in capsys.readouterr().out.splitlines()}
    assert lines["codex"].endswith("project")
    assert "project" not in lines["gemini"]

    assert _run(project, "instructions", "save", "--content", "# Rules\n") == 0
    assert capsys.readouterr().out.splitlines() == ["wrote CLAUDE.md (claude)", "wrote AGENTS.md (codex)"]
    assert (project / "AGENTS.md").read_text(encoding="utf-8") == "# Rules\n"

    assert _run(project, "instructions", "show") == 0
    assert capsys.readouterr().out.splitlines() == ["# Rules", "# claude: synced", "# codex: synced"]
