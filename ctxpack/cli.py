from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from .config import load_config
from .core import ContextCore, open_core
from .errors import (
    CtxpackConfigError,
    ItemNotFoundError,
    McpConfigError,
    NoCompatibleProvidersError,
    PathNotAllowedError,
    ProviderDisabledError,
    ProviderReadOnlyError,
    SelectionNotFoundError,
    SlugConflictError,
    ValidationError,
)
from .mcp import McpServer
from .models import ITEM_TYPES, SCOPES


EXIT_CONFLICTS = 5


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _read_content(args: argparse.Namespace) -> str | None:
    if getattr(args, "file", None) is not None:
        return Path(args.file).read_text(encoding="utf-8")
    return getattr(args, "content", None)


def _parse_env(pairs: list[str] | None) -> dict[str, str] | None:
    if not pairs:
        return None
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"--env expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def _add_content_args(p: argparse.ArgumentParser) -> None:
    g = p.add_mutually_exclusive_group()
    g.add_argument("--content", type=str, default=None, help="Inline content")
    g.add_argument("--file", type=Path, default=None, help="Read content from a file")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ctxpack",
        description="Keep instructions, skills, commands and MCP servers in sync across AI coding CLIs",
    )
    p.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    p.add_argument("--db", type=Path, default=None, help="Path to the SQLite database")
    p.add_argument("--project", type=Path, default=None, help="Project root (default: cwd)")
    p.add_argument("--project-id", type=str, default=None, help="Project id (default: resolved project root)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")

    sub = p.add_subparsers(dest="cmd", required=True)

    # ctxpack items ...
    items = sub.add_parser("items", help="Manage stored items")
    items_sub = items.add_subparsers(dest="items_cmd", required=True)

    il = items_sub.add_parser("list", help="List items")
    il.add_argument("--scope", choices=SCOPES, default="global")
    il.add_argument("--type", dest="item_type", choices=ITEM_TYPES, default=None)
    il.add_argument("--json", dest="json_output", action="store_true", help="Output as JSON")

    ic = items_sub.add_parser("create", help="Create an item")
    ic.add_argument("item_type", choices=ITEM_TYPES)
    ic.add_argument("slug", type=str)
    ic.add_argument("--scope", choices=SCOPES, default="global")
    _add_content_args(ic)

    iu = items_sub.add_parser("update", help="Update an item (omitted fields are kept)")
    iu.add_argument("item_id", type=str)
    iu.add_argument("--slug", type=str, default=None)
    iu.add_argument("--type", dest="item_type", choices=ITEM_TYPES, default=None)
    iu.add_argument("--scope", choices=SCOPES, default=None)
    _add_content_args(iu)

    idel = items_sub.add_parser("delete", help="Delete an item and its selections")
    idel.add_argument("item_id", type=str)

    # ctxpack load
    ld = sub.add_parser("load", help="Write an item into the project and link it")
    ld.add_argument("item_id", type=str)
    ld.add_argument("--provider", dest="providers", action="append", default=None, help="Provider (repeatable)")
    ld.add_argument("--path", dest="manual_path", type=str, default=None, help="Explicit project-relative path")

    # ctxpack sync
    sy = sub.add_parser("sync", help="Materialize linked items for enabled providers")
    sy.add_argument("--item", dest="item_id", type=str, default=None, help="Sync one item (overwrites)")
    sy.add_argument("--provider", type=str, default=None)
    sy.add_argument("--prune", action="store_true", help="Delete unmanaged provider files")
    sy.add_argument("--json", dest="json_output", action="store_true", help="Output as JSON")

    # ctxpack status
    st = sub.add_parser("status", help="Report conflicts and per-item sync state without writing")
    st.add_argument("--json", dest="json_output", action="store_true", help="Output as JSON")

    # ctxpack providers ...
    pr = sub.add_parser("providers", help="Enable/disable providers")
    pr_sub = pr.add_subparsers(dest="providers_cmd", required=True)
    pr_sub.add_parser("list", help="List providers and the project's enabled set")
    pe = pr_sub.add_parser("enable", help="Enable a provider globally")
    pe.add_argument("kind", type=str)
    pd = pr_sub.add_parser("disable", help="Disable a provider globally")
    pd.add_argument("kind", type=str)
    ps = pr_sub.add_parser("set", help="Set the providers enabled for this project")
    ps.add_argument("kinds", nargs="*", type=str)

    # ctxpack mcp ...
    mcp = sub.add_parser("mcp", help="Inspect and edit MCP server configs")
    mcp_sub = mcp.add_subparsers(dest="mcp_cmd", required=True)
    ml = mcp_sub.add_parser("list", help="Show MCP servers found in provider config files")
    ml.add_argument("--json", dest="json_output", action="store_true", help="Output as JSON")
    ma = mcp_sub.add_parser("add", help="Add or replace a server")
    ma.add_argument("provider", type=str)
    ma.add_argument("key", type=str)
    ma.add_argument("--command", dest="server_command", type=str, required=True)
    ma.add_argument("--arg", dest="server_args", action="append", default=None)
    ma.add_argument("--env", dest="server_env", action="append", default=None, help="KEY=VALUE (repeatable)")
    mr = mcp_sub.add_parser("remove", help="Remove a server")
    mr.add_argument("provider", type=str)
    mr.add_argument("key", type=str)

    # ctxpack instructions ...
    ins = sub.add_parser("instructions", help="Project root instructions")
    ins_sub = ins.add_subparsers(dest="instructions_cmd", required=True)
    ins_sub.add_parser("show", help="Print the stored instructions and per-provider state")
    isv = ins_sub.add_parser("save", help="Store instructions and write every enabled root file")
    _add_content_args(isv)

    return p


def _configure_logging(verbose: int, level_name: str) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
        _configure_logging(int(args.verbose), cfg.log.level)
        core = open_core(config=cfg, db_path=args.db)
        try:
            return _run(core, args)
        finally:
            core.close()
    except (CtxpackConfigError, ValidationError, McpConfigError) as e:
        print(f"error: {e}")
        return 2
    except SlugConflictError as e:
        print(f"error: {e}")
        return 3
    except (ItemNotFoundError, SelectionNotFoundError) as e:
        print(f"error: {e}")
        return 4
    except (PathNotAllowedError, ProviderDisabledError, ProviderReadOnlyError, PermissionError) as e:
        print(f"error: {e}")
        return 6
    except NoCompatibleProvidersError as e:
        print(f"error: {e}")
        return 1
    except Exception as e:  # pragma: no cover
        print(f"error: {e}")
        return 1


def _run(core: ContextCore, args: argparse.Namespace) -> int:
    root = (args.project or Path.cwd()).expanduser().resolve()
    project_id = args.project_id or str(root)

    if args.cmd == "items":
        return _run_items(core, args, project_id)

    if args.cmd == "load":
        providers = args.providers or core.get_project_providers(project_id)
        entry = core.load_global_item(project_id, root, args.item_id, providers, args.manual_path)
        if entry is None:
            print("nothing written (no enabled provider can hold this item)")
            return 1
        print(f"wrote {entry.relative_path}")
        return 0

    if args.cmd == "sync":
        if args.item_id:
            entry = core.sync_linked_file(project_id, root, args.item_id, args.provider)
            if args.json_output:
                _print_json(entry.to_dict())
            else:
                print(f"wrote {entry.relative_path}")
            return 0

        providers = [args.provider] if args.provider else None
        res = core.sync_all(project_id, root, providers=providers, prune_unmanaged=bool(args.prune))
        if args.json_output:
            _print_json(res.to_dict())
        else:
            for w in res.written:
                print(f"wrote {w.path} ({w.provider})")
            for d in res.deleted:
                print(f"deleted {d.path} ({d.provider}, {d.kind})")
            for c in res.conflicts:
                print(f"conflict: {c.path} ({c.provider}) was edited outside ctxpack")
        return EXIT_CONFLICTS if res.conflicts else 0

    if args.cmd == "status":
        conflicts = core.check_sync_status(project_id, root)
        states = core.item_states(project_id, root)
        if args.json_output:
            _print_json(
                {
                    "project_id": project_id,
                    "needs_sync": core.needs_sync(project_id, root),
                    "conflicts": [c.to_dict() for c in conflicts],
                    "items": [
                        {
                            "id": s.item.id,
                            "slug": s.item.slug,
                            "type": s.item.type,
                            "providers": {p.provider: {"path": p.path, "state": p.state} for p in s.providers},
                        }
                        for s in states
                    ],
                }
            )
        else:
            for s in states:
                cells = ", ".join(f"{p.provider}={p.state}" for p in s.providers) or "-"
                print(f"{s.item.type:<12} {s.item.slug:<32} {cells}")
            for c in conflicts:
                print(f"conflict: {c.path} ({c.provider})")
        return EXIT_CONFLICTS if conflicts else 0

    if args.cmd == "providers":
        return _run_providers(core, args, project_id)

    if args.cmd == "mcp":
        return _run_mcp(core, args, root)

    if args.cmd == "instructions":
        if args.instructions_cmd == "show":
            res = core.get_project_instructions(project_id, root)
            print(res.content, end="" if res.content.endswith("\n") or not res.content else "\n")
            for provider, state in res.providers.items():
                print(f"# {provider}: {state}")
            return 0
        content = _read_content(args)
        if content is None:
            raise ValidationError("instructions save needs --content or --file")
        res = core.save_project_instructions(project_id, root, content)
        for provider in res.providers:
            print(f"wrote {core.registry.paths(provider).root_instructions} ({provider})")
        return 0

    raise AssertionError(f"unhandled command: {args.cmd}")


def _run_items(core: ContextCore, args: argparse.Namespace, project_id: str) -> int:
    if args.items_cmd == "list":
        items = core.list_items(args.scope, project_id if args.scope == "project" else None, args.item_type)
        if args.json_output:
            _print_json([i.to_dict() for i in items])
        else:
            for i in items:
                print(f"{i.id}  {i.type:<12} {i.slug}")
        return 0

    if args.items_cmd == "create":
        item = core.create_item(
            args.item_type,
            args.scope,
            args.slug,
            project_id if args.scope == "project" else None,
            _read_content(args) or "",
        )
        print(item.id)
        return 0

    if args.items_cmd == "update":
        patch: dict[str, Any] = {}
        if args.slug is not None:
            patch["slug"] = args.slug
        if args.item_type is not None:
            patch["item_type"] = args.item_type
        if args.scope is not None:
            patch["scope"] = args.scope
            patch["project_id"] = project_id if args.scope == "project" else None
        content = _read_content(args)
        if content is not None:
            patch["content"] = content
        item = core.update_item(args.item_id, **patch)
        if item is None:
            raise ItemNotFoundError(args.item_id)
        print(item.id)
        return 0

    if args.items_cmd == "delete":
        if not core.delete_item(args.item_id):
            raise ItemNotFoundError(args.item_id)
        return 0

    raise AssertionError(f"unhandled items command: {args.items_cmd}")


def _run_providers(core: ContextCore, args: argparse.Namespace, project_id: str) -> int:
    if args.providers_cmd == "list":
        project = set(core.get_project_providers(project_id))
        for s in core.list_providers():
            flags = []
            if s.enabled:
                flags.append("enabled")
            if s.kind in project:
                flags.append("project")
            print(f"{s.kind:<10} {s.label:<14} {' '.join(flags)}".rstrip())
        return 0

    if args.providers_cmd in ("enable", "disable"):
        core.set_provider_enabled(args.kind, args.providers_cmd == "enable")
        return 0

    if args.providers_cmd == "set":
        kept = core.set_project_providers(project_id, args.kinds)
        print(" ".join(kept))
        return 0

    raise AssertionError(f"unhandled providers command: {args.providers_cmd}")


def _run_mcp(core: ContextCore, args: argparse.Namespace, root: Path) -> int:
    if args.mcp_cmd == "list":
        files = core.discover_mcp_configs(root)
        if args.json_output:
            _print_json([f.to_dict() for f in files])
            return 0
        for f in files:
            mode = "rw" if f.writable else "ro"
            status = "present" if f.exists else "missing"
            print(f"{f.provider:<10} {f.path} ({mode}, {status})")
            for key, server in sorted(f.servers.items()):
                print(f"  {key}: {' '.join([server.command, *server.args])}")
        return 0

    if args.mcp_cmd == "add":
        server = McpServer(
            command=args.server_command,
            args=tuple(args.server_args or ()),
            env=_parse_env(args.server_env),
        )
        core.write_mcp_server(root, args.provider, args.key, server)
        return 0

    if args.mcp_cmd == "remove":
        if not core.remove_mcp_server(root, args.provider, args.key):
            print(f"{args.key}: not present")
        return 0

    raise AssertionError(f"unhandled mcp command: {args.mcp_cmd}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
