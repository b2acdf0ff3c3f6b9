"""Reconcile stored items with the files each provider reads.

Everything that decides what should be on disk goes through `plan()`, so the
status probe reports exactly what `sync_all` would do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import NoCompatibleProvidersError, SelectionNotFoundError, ValidationError
from .fsguard import GuardedFS
from .hashing import content_hash, file_hash
from .layout import canonical_target_path, legacy_skill_path, resolve_target, target_path, to_project_relative
from .mcp import McpConfigService
from .models import (
    FILE_ITEM_TYPES,
    ContextEntry,
    DeletedEntry,
    Item,
    ItemStatus,
    ProviderStatus,
    Selection,
    SyncConflict,
    SyncResult,
    WrittenEntry,
)
from .registry import ProviderRegistry
from .render import DEFAULT_DESCRIPTION_MAX_LENGTH, render
from .store import ItemStore, ProviderSettings, SelectionStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedFile:
    item: Item
    provider: str
    target_path: str  # canonical; what the selection row should record
    file_path: Path
    rendered: str
    rendered_hash: str
    disk_hash: str | None
    selection: Selection | None
    # Where the file used to live, removed once the canonical file is written.
    previous_path: Path | None = None

    @property
    def recorded_hash(self) -> str | None:
        return self.selection.content_hash if self.selection is not None else None

    @property
    def state(self) -> str:
        if self.disk_hash is None:
            return "not_synced"
        if self.disk_hash == self.rendered_hash:
            return "synced"
        return "out_of_sync"

    @property
    def conflict(self) -> bool:
        """The file was edited outside ctxpack since the last recorded write."""

        return (
            self.disk_hash is not None
            and self.recorded_hash is not None
            and self.disk_hash != self.recorded_hash
            and self.disk_hash != self.rendered_hash
        )

    @property
    def row_is_current(self) -> bool:
        return (
            self.selection is not None
            and self.selection.target_path == self.target_path
            and self.selection.content_hash == self.rendered_hash
        )

    def to_conflict(self) -> SyncConflict:
        return SyncConflict(path=self.target_path, provider=self.provider, item_id=self.item.id)


class Reconciler:
    def __init__(
        self,
        registry: ProviderRegistry,
        items: ItemStore,
        selections: SelectionStore,
        settings: ProviderSettings,
        fs: GuardedFS,
        mcp: McpConfigService,
        description_max_length: int = DEFAULT_DESCRIPTION_MAX_LENGTH,
    ) -> None:
        self.registry = registry
        self.items = items
        self.selections = selections
        self.settings = settings
        self.fs = fs
        self.mcp = mcp
        self.description_max_length = description_max_length

    # -- helpers

    def _render(self, provider: str, item: Item, target: str) -> str:
        return render(
            self.registry.spec(provider),
            item.type,
            item.slug,
            target,
            item.content,
            description_max_length=self.description_max_length,
        )

    def _disk_hash(self, file_path: Path, project_root: Path) -> str | None:
        if not self.fs.exists(file_path, project_root):
            return None
        return file_hash(self.fs.check(file_path, project_root))

    def _enabled(self, project_id: str, providers: Iterable[str] | None) -> list[str]:
        if providers is None:
            return self.settings.get_project_providers(project_id)
        return self.registry.filter_configurable(providers)

    def _local_items(self, project_id: str) -> list[Item]:
        """Project-scoped items synced without an explicit link."""

        out = [i for i in self.items.list_items("project", project_id) if i.type in FILE_ITEM_TYPES]
        instructions = self.items.get_project_instructions(project_id)
        if instructions is not None:
            out.append(instructions)
        return out

    def _root_owners(self, project_id: str, root: Path, providers: Iterable[str]) -> dict[Path, str]:
        """Root instruction files claimed by the project's own instructions item."""

        instructions = self.items.get_project_instructions(project_id)
        if instructions is None:
            return {}
        owners: dict[Path, str] = {}
        for p in providers:
            rel = self.registry.paths(p).root_instructions
            if rel:
                owners[(root / rel).resolve()] = instructions.id
        return owners

    def _remove_stale(self, planned: PlannedFile, project_root: Path) -> None:
        stale: list[Path] = []
        if planned.previous_path is not None:
            stale.append(planned.previous_path)
        legacy = legacy_skill_path(self.registry, planned.provider, planned.item.type, planned.item.slug)
        if legacy is not None and legacy != planned.target_path:
            stale.append(resolve_target(project_root, legacy))

        current = planned.file_path.resolve()
        for path in stale:
            if path.resolve() == current or not path.is_file():
                continue
            if not self.fs.is_path_allowed(path, project_root):
                continue
            self.fs.delete(path, project_root)
            logger.info("removed stale file %s", path)

    def _plan_one(
        self,
        item: Item,
        provider: str,
        target: str,
        project_root: Path,
        selection: Selection | None,
    ) -> PlannedFile | None:
        file_path = resolve_target(project_root, target)
        if not self.fs.is_path_allowed(file_path, project_root):
            logger.warning("skipping %s for %s: path not allowed", target, provider)
            return None

        previous: Path | None = None
        if selection is not None and selection.target_path != target:
            previous = resolve_target(project_root, selection.target_path)

        rendered = self._render(provider, item, target)
        return PlannedFile(
            item=item,
            provider=provider,
            target_path=target,
            file_path=file_path,
            rendered=rendered,
            rendered_hash=content_hash(rendered),
            disk_hash=self._disk_hash(file_path, project_root),
            selection=selection,
            previous_path=previous,
        )

    # -- planning

    def plan(self, project_id: str, project_root: Path, providers: Iterable[str] | None = None) -> list[PlannedFile]:
        root = Path(project_root).resolve()
        enabled = self._enabled(project_id, providers)
        planned: list[PlannedFile] = []
        covered: set[tuple[str, str]] = set()
        owners = self._root_owners(project_id, root, enabled)

        def claim(pf: PlannedFile | None) -> None:
            if pf is None:
                return
            key = pf.file_path.resolve()
            owner = owners.setdefault(key, pf.item.id)
            if owner != pf.item.id:
                logger.debug("skipping %s for item %s: owned by item %s", pf.target_path, pf.item.id, owner)
                return
            planned.append(pf)
            covered.add((pf.item.id, pf.provider))

        for linked in self.selections.list_selections(project_id):
            if linked.provider not in enabled:
                continue
            item = linked.item
            target = canonical_target_path(
                self.registry, linked.provider, item.type, item.slug, linked.selection.target_path
            )
            claim(self._plan_one(item, linked.provider, target, root, linked.selection))

        for item in self._local_items(project_id):
            for provider in enabled:
                if (item.id, provider) in covered:
                    continue
                target = target_path(self.registry, provider, item.type, item.slug)
                if target is None:
                    continue
                claim(self._plan_one(item, provider, target, root, None))

        return planned

    # -- operations

    def load_global_item(
        self,
        project_id: str,
        project_root: Path,
        item_id: str,
        providers: Iterable[str],
        manual_path: str | None = None,
    ) -> ContextEntry | None:
        root = Path(project_root).resolve()
        item = self.items.require_item(item_id)
        requested = self.registry.filter_configurable(providers)

        if manual_path:
            provider = requested[0] if requested else "claude"
            file_path = root / manual_path
            self.fs.check(file_path, root)
            text = self._render(provider, item, manual_path)
            self.fs.write(file_path, text, root)
            self.selections.upsert_selection(project_id, item.id, provider, manual_path, content_hash(text))
            return ContextEntry(
                path=str(file_path),
                relative_path=manual_path,
                item_id=item.id,
                category=item.type,
                provider=provider,
            )

        if item.type == "instructions":
            owners = self._root_owners(project_id, root, self.registry.configurable())
            for provider in requested:
                target = target_path(self.registry, provider, item.type, item.slug)
                owner = owners.get((root / target).resolve()) if target else None
                if owner is not None and owner != item.id:
                    raise ValidationError(f"{target} is owned by this project's instructions")

        first: ContextEntry | None = None
        for provider in requested:
            target = target_path(self.registry, provider, item.type, item.slug)
            if target is None:
                continue
            file_path = resolve_target(root, target)
            if not self.fs.is_path_allowed(file_path, root):
                logger.warning("skipping %s for %s: path not allowed", target, provider)
                continue
            text = self._render(provider, item, target)
            self.fs.write(file_path, text, root)
            self.selections.upsert_selection(project_id, item.id, provider, target, content_hash(text))
            if first is None:
                first = ContextEntry(
                    path=str(file_path),
                    relative_path=target,
                    item_id=item.id,
                    category=item.type,
                    provider=provider,
                )
        return first

    def _write_planned(self, pf: PlannedFile, project_id: str, project_root: Path) -> None:
        self.fs.write(pf.file_path, pf.rendered, project_root)
        if pf.selection is not None:
            self.selections.update_selection(pf.selection.id, pf.target_path, pf.rendered_hash)
        else:
            self.selections.upsert_selection(project_id, pf.item.id, pf.provider, pf.target_path, pf.rendered_hash)
        self._remove_stale(pf, project_root)

    def _entry(self, pf: PlannedFile) -> ContextEntry:
        return ContextEntry(
            path=str(pf.file_path),
            relative_path=pf.target_path,
            item_id=pf.item.id,
            category=pf.item.type,
            provider=pf.provider,
        )

    def sync_linked_file(
        self,
        project_id: str,
        project_root: Path,
        item_id: str,
        provider: str | None = None,
    ) -> ContextEntry:
        """Write one item for its linked providers, overwriting whatever is on disk."""

        root = Path(project_root).resolve()
        linked = [
            s
            for s in self.selections.selections_for_item(project_id, item_id, provider)
            if self.registry.is_configurable(s.provider)
        ]

        planned: list[PlannedFile] = []
        if linked:
            item = self.items.require_item(item_id)
            for sel in linked:
                target = canonical_target_path(self.registry, sel.provider, item.type, item.slug, sel.target_path)
                pf = self._plan_one(item, sel.provider, target, root, sel)
                if pf is not None:
                    planned.append(pf)
            if not planned:
                raise SelectionNotFoundError(item_id)
        else:
            item = self.items.get_item(item_id)
            if item is None or item.scope != "project" or item.project_id != project_id:
                raise SelectionNotFoundError(item_id)
            if provider is not None:
                targets = self.registry.filter_configurable([provider])
            else:
                targets = self.settings.get_project_providers(project_id)
            for p in targets:
                target = target_path(self.registry, p, item.type, item.slug)
                if target is None:
                    continue
                pf = self._plan_one(item, p, target, root, None)
                if pf is not None:
                    planned.append(pf)
            if not planned:
                raise NoCompatibleProvidersError(item_id)

        for pf in planned:
            self._write_planned(pf, project_id, root)
        return self._entry(planned[0])

    def sync_all(
        self,
        project_id: str,
        project_root: Path,
        providers: Iterable[str] | None = None,
        prune_unmanaged: bool = False,
    ) -> SyncResult:
        root = Path(project_root).resolve()
        enabled = self._enabled(project_id, providers)
        result = SyncResult()
        keep: dict[str, set[Path]] = {p: set() for p in self.registry.configurable()}
        managed: set[Path] = set()

        for pf in self.plan(project_id, root, enabled):
            if pf.item.type in FILE_ITEM_TYPES:
                keep.setdefault(pf.provider, set()).add(pf.file_path.resolve())
            elif pf.item.type == "instructions":
                managed.add(pf.file_path.resolve())

            if pf.conflict:
                logger.warning("conflict: %s was edited outside ctxpack", pf.target_path)
                result.conflicts.append(pf.to_conflict())
                continue

            if pf.state == "synced":
                if not pf.row_is_current:
                    if pf.selection is not None:
                        self.selections.update_selection(pf.selection.id, pf.target_path, pf.rendered_hash)
                    else:
                        self.selections.upsert_selection(
                            project_id, pf.item.id, pf.provider, pf.target_path, pf.rendered_hash
                        )
                continue

            self._write_planned(pf, project_id, root)
            result.written.append(WrittenEntry(path=pf.target_path, provider=pf.provider))

        if prune_unmanaged:
            result.deleted.extend(self._prune(root, enabled, keep, managed))
        return result

    def _prune(
        self,
        root: Path,
        enabled: list[str],
        keep: dict[str, set[Path]],
        managed: set[Path],
    ) -> list[DeletedEntry]:
        """Delete provider files no planned entry claims."""

        deleted: list[DeletedEntry] = []
        enabled_set = set(enabled)

        for p in self.registry.configurable():
            rel = self.registry.paths(p).root_instructions
            if not rel:
                continue
            file_path = (root / rel).resolve()
            if file_path in managed or not file_path.is_file():
                continue
            if not self.fs.is_path_allowed(file_path, root):
                continue
            self.fs.delete(file_path, root)
            deleted.append(DeletedEntry(path=to_project_relative(root, file_path), provider=p, kind="instruction"))

        for p in self.registry.configurable():
            wanted = keep.get(p, set()) if p in enabled_set else set()
            paths = self.registry.paths(p)
            for kind, rel in (("skill", paths.skills_dir), ("command", paths.commands_dir)):
                if not rel:
                    continue
                directory = root / rel
                if not self.fs.is_path_allowed(directory, root):
                    continue
                for md in self.fs.list_files(directory, root):
                    resolved = md.resolve()
                    if resolved in wanted or not self.fs.is_path_allowed(md, root):
                        continue
                    self.fs.delete(md, root, prune_empty_up_to=directory)
                    deleted.append(DeletedEntry(path=to_project_relative(root, resolved), provider=p, kind=kind))

        deleted.extend(self.mcp.prune(root, enabled_set))
        return deleted

    def check_sync_status(self, project_id: str, project_root: Path) -> list[SyncConflict]:
        return [pf.to_conflict() for pf in self.plan(project_id, project_root) if pf.conflict]

    def item_states(self, project_id: str, project_root: Path) -> list[ItemStatus]:
        enabled = self._enabled(project_id, None)
        planned = self.plan(project_id, project_root, enabled)
        by_key = {(pf.item.id, pf.provider): pf for pf in planned}

        items: dict[str, Item] = {}
        for linked in self.selections.list_selections(project_id):
            items.setdefault(linked.item.id, linked.item)
        for item in self._local_items(project_id):
            items.setdefault(item.id, item)

        out: list[ItemStatus] = []
        for item in items.values():
            statuses: list[ProviderStatus] = []
            for p in enabled:
                pf = by_key.get((item.id, p))
                if pf is not None:
                    statuses.append(ProviderStatus(provider=p, path=pf.target_path, state=pf.state))
                elif target_path(self.registry, p, item.type, item.slug) is not None:
                    statuses.append(ProviderStatus(provider=p, path="", state="local_only"))
            out.append(ItemStatus(item=item, providers=tuple(statuses)))
        return out

    def needs_sync(self, project_id: str, project_root: Path) -> bool:
        return any(pf.state != "synced" for pf in self.plan(project_id, project_root))

