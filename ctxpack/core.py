"""Operations facade used by the CLI (and any other front-end).

`open_core()` wires the database, stores, provider registry, filesystem
guard, MCP service and reconciler from config.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from . import paths
from .config import load_config
from .errors import ValidationError
from .fsguard import GuardedFS
from .hashing import content_hash
from .layout import to_project_relative
from .mcp import McpConfigFile, McpConfigService, McpServer
from .models import (
    ContextEntry,
    CtxpackConfig,
    GlobalFileEntry,
    Item,
    ItemStatus,
    ProviderSource,
    RootInstructions,
    Selection,
    SelectionWithItem,
    SyncConflict,
    SyncResult,
)
from .registry import ProviderRegistry, default_registry
from .store import Database, ItemStore, ProviderSettings, SelectionStore, normalize_slug
from .sync import Reconciler


logger = logging.getLogger(__name__)


@dataclass
class ContextCore:
    config: CtxpackConfig
    registry: ProviderRegistry
    db: Database
    items: ItemStore
    selections: SelectionStore
    settings: ProviderSettings
    fs: GuardedFS
    mcp: McpConfigService
    reconciler: Reconciler

    def close(self) -> None:
        self.db.close()

    # -- items

    def list_items(self, scope: str, project_id: str | None = None, item_type: str | None = None) -> list[Item]:
        return self.items.list_items(scope, project_id, item_type)

    def get_item(self, item_id: str) -> Item | None:
        return self.items.get_item(item_id)

    def create_item(
        self,
        item_type: str,
        scope: str,
        slug: str,
        project_id: str | None = None,
        content: str = "",
    ) -> Item:
        return self.items.create_item(item_type, scope, slug, project_id, content)

    def update_item(self, item_id: str, **patch: Any) -> Item | None:
        return self.items.update_item(item_id, **patch)

    def delete_item(self, item_id: str) -> bool:
        return self.items.delete_item(item_id)

    # -- selections

    def list_selections(self, project_id: str) -> list[SelectionWithItem]:
        return self.selections.list_selections(project_id)

    def set_selection(self, project_id: str, item_id: str, provider: str, target_path: str) -> Selection:
        return self.selections.set_selection(project_id, item_id, provider, target_path)

    def remove_selection(self, project_id: str, item_id: str, provider: str | None = None) -> bool:
        return self.selections.remove_selection(project_id, item_id, provider)

    # -- reconciliation

    def load_global_item(
        self,
        project_id: str,
        project_root: Path,
        item_id: str,
        providers: Iterable[str],
        manual_path: str | None = None,
    ) -> ContextEntry | None:
        return self.reconciler.load_global_item(project_id, project_root, item_id, providers, manual_path)

    def sync_linked_file(
        self, project_id: str, project_root: Path, item_id: str, provider: str | None = None
    ) -> ContextEntry:
        return self.reconciler.sync_linked_file(project_id, project_root, item_id, provider)

    def sync_all(
        self,
        project_id: str,
        project_root: Path,
        providers: Iterable[str] | None = None,
        prune_unmanaged: bool = False,
    ) -> SyncResult:
        return self.reconciler.sync_all(project_id, project_root, providers, prune_unmanaged)

    def check_sync_status(self, project_id: str, project_root: Path) -> list[SyncConflict]:
        return self.reconciler.check_sync_status(project_id, project_root)

    def item_states(self, project_id: str, project_root: Path) -> list[ItemStatus]:
        return self.reconciler.item_states(project_id, project_root)

    def needs_sync(self, project_id: str, project_root: Path) -> bool:
        return self.reconciler.needs_sync(project_id, project_root)

    # -- MCP

    def discover_mcp_configs(self, project_root: Path) -> list[McpConfigFile]:
        return self.mcp.discover(project_root)

    def write_mcp_server(
        self,
        project_root: Path,
        provider: str,
        key: str,
        server: McpServer | Mapping[str, Any],
    ) -> McpConfigFile:
        if not isinstance(server, McpServer):
            server = McpServer.from_dict(server)
        return self.mcp.write_server(project_root, provider, key, server)

    def remove_mcp_server(self, project_root: Path, provider: str, key: str) -> bool:
        return self.mcp.remove_server(project_root, provider, key)

    # -- providers

    def list_providers(self) -> list[ProviderSource]:
        return [s for s in self.settings.list_sources() if self.registry.is_configurable(s.kind)]

    def set_provider_enabled(self, kind: str, enabled: bool) -> ProviderSource:
        return self.settings.set_source_enabled(kind, enabled)

    def get_project_providers(self, project_id: str) -> list[str]:
        return self.settings.get_project_providers(project_id)

    def set_project_providers(self, project_id: str, providers: Iterable[str]) -> list[str]:
        return self.settings.set_project_providers(project_id, providers)

    # -- root instructions

    def _instruction_states(self, project_id: str, root: Path, item: Item | None) -> dict[str, str]:
        states: dict[str, str] = {}
        for provider in self.settings.get_project_providers(project_id):
            rel = self.registry.paths(provider).root_instructions
            if not rel:
                continue
            file_path = root / rel
            if not self.fs.exists(file_path, root):
                states[provider] = "not_synced"
            elif item is None:
                states[provider] = "out_of_sync"
            else:
                disk = content_hash(self.fs.read_bytes(file_path, root))
                states[provider] = "synced" if disk == content_hash(item.content) else "out_of_sync"
        return states

    def get_project_instructions(self, project_id: str, project_root: Path) -> RootInstructions:
        root = Path(project_root).resolve()
        item = self.items.get_project_instructions(project_id)
        return RootInstructions(
            content=item.content if item is not None else "",
            providers=self._instruction_states(project_id, root, item),
        )

    def save_project_instructions(self, project_id: str, project_root: Path, content: str) -> RootInstructions:
        """Store the instructions and write them to every enabled provider's root file."""

        root = Path(project_root).resolve()
        item = self.items.save_project_instructions(project_id, content)
        digest = content_hash(content)
        states: dict[str, str] = {}
        for provider in self.settings.get_project_providers(project_id):
            rel = self.registry.paths(provider).root_instructions
            if not rel:
                continue
            file_path = root / rel
            if not self.fs.is_path_allowed(file_path, root):
                continue
            self.fs.write(file_path, content, root)
            self.selections.upsert_selection(project_id, item.id, provider, rel, digest)
            states[provider] = "synced"
        return RootInstructions(content=content, providers=states)

    # -- raw context files

    def read_context_file(self, path: Path | str, project_root: Path | None) -> str:
        return self.fs.read(path, project_root)

    def write_context_file(self, path: Path | str, content: str, project_root: Path | None) -> None:
        self.fs.write(path, content, project_root)

    def delete_context_file(self, path: Path | str, project_root: Path, project_id: str) -> bool:
        """Delete a project file and forget any selection pointing at it."""

        root = Path(project_root).resolve()
        p = Path(path)
        if not p.is_absolute():
            p = root / p
        self.fs.check(p, root)
        deleted = self.fs.delete(p, root) if p.is_file() else False
        self.selections.remove_selections_for_path(project_id, to_project_relative(root, p))
        return deleted

    # -- global provider trees

    def list_global_files(self) -> list[GlobalFileEntry]:
        out: list[GlobalFileEntry] = []
        home = self.fs.home
        for provider in self.registry.configurable():
            g = self.registry.spec(provider).global_paths
            if g is None:
                continue
            base = home / g.base_dir
            if g.instructions:
                p = base / g.instructions
                out.append(
                    GlobalFileEntry(
                        path=str(p),
                        name=f"~/{g.base_dir}/{g.instructions}",
                        provider=provider,
                        category="instructions",
                        exists=p.is_file(),
                    )
                )
            for category, sub in (("skill", g.skills_dir), ("command", g.commands_dir)):
                if not sub:
                    continue
                for p in self.fs.list_files(base / sub, None, recursive=False):
                    out.append(
                        GlobalFileEntry(
                            path=str(p),
                            name=f"~/{g.base_dir}/{sub}/{p.name}",
                            provider=provider,
                            category=category,
                            exists=True,
                        )
                    )
        return out

    def create_global_file(self, provider: str, category: str, slug: str) -> GlobalFileEntry:
        if not self.registry.is_configurable(provider):
            raise ValidationError(f"provider {provider} is not configurable")
        g = self.registry.spec(provider).global_paths
        if g is None:
            raise ValidationError(f"provider {provider} does not support global file management")
        if category not in ("skill", "command"):
            raise ValidationError(f"invalid category: {category!r}")
        sub = g.skills_dir if category == "skill" else g.commands_dir
        if not sub:
            raise ValidationError(f"{self.registry.label(provider)} does not support {category}s")

        name = f"{normalize_slug(slug)}.md"
        p = self.fs.home / g.base_dir / sub / name
        self.fs.check(p, None)
        if p.exists():
            raise ValidationError(f"file already exists: {p}")
        self.fs.write(p, "", None)
        return GlobalFileEntry(
            path=str(p),
            name=f"~/{g.base_dir}/{sub}/{name}",
            provider=provider,
            category=category,
            exists=True,
        )

    def delete_global_file(self, path: Path | str) -> bool:
        p = self.fs.check(path, None)
        if not p.exists():
            return False
        if not p.is_file():
            raise ValidationError("only files can be deleted")
        return self.fs.delete(p, None)


def open_core(
    config: CtxpackConfig | None = None,
    db_path: Path | str | None = None,
    home: Path | None = None,
    registry: ProviderRegistry | None = None,
) -> ContextCore:
    cfg = config if config is not None else load_config()
    reg = registry if registry is not None else default_registry()
    db = Database(db_path if db_path is not None else paths.db_path(cfg.store.path))

    unknown = [p for p in cfg.providers.enabled if p not in reg.providers]
    if unknown:
        logger.warning("ignoring unknown providers in config: %s", ", ".join(unknown))

    settings = ProviderSettings(db, reg)
    settings.seed(reg.filter_configurable(cfg.providers.enabled))
    items = ItemStore(db)
    selections = SelectionStore(db, reg)
    fs = GuardedFS(reg, home if home is not None else paths.home_dir())
    mcp = McpConfigService(reg, fs)
    reconciler = Reconciler(
        reg,
        items,
        selections,
        settings,
        fs,
        mcp,
        description_max_length=cfg.render.description_max_length,
    )
    return ContextCore(
        config=cfg,
        registry=reg,
        db=db,
        items=items,
        selections=selections,
        settings=settings,
        fs=fs,
        mcp=mcp,
        reconciler=reconciler,
    )
