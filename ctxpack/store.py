"""SQLite-backed item, selection and provider-settings stores."""

from __future__ import annotations

import contextlib
import json
import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from .errors import ItemNotFoundError, SelectionNotFoundError, SlugConflictError, ValidationError
from .layout import canonical_target_path
from .models import ITEM_TYPES, SCOPES, Item, ProviderSource, Selection, SelectionWithItem
from .registry import ProviderRegistry


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1
MAX_SLUG_LENGTH = 100
INSTRUCTIONS_SLUG = "instructions"

_MIGRATIONS: dict[int, str] = {
    1: """
    CREATE TABLE IF NOT EXISTS items (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        scope TEXT NOT NULL,
        project_id TEXT,
        slug TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE UNIQUE INDEX IF NOT EXISTS idx_items_scope_slug
        ON items (scope, COALESCE(project_id, ''), slug);
    CREATE INDEX IF NOT EXISTS idx_items_project ON items (project_id);

    CREATE TABLE IF NOT EXISTS selections (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        target_path TEXT NOT NULL,
        content_hash TEXT,
        selected_at TEXT NOT NULL,
        UNIQUE (project_id, item_id, provider)
    );
    CREATE INDEX IF NOT EXISTS idx_selections_project ON selections (project_id);

    CREATE TABLE IF NOT EXISTS provider_sources (
        kind TEXT PRIMARY KEY,
        enabled INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS project_providers (
        project_id TEXT PRIMARY KEY,
        providers_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def normalize_slug(value: str) -> str:
    slug = _SLUG_RE.sub("-", value.strip().lower()).strip("-")
    if not slug:
        return "untitled"
    if len(slug) > MAX_SLUG_LENGTH:
        raise ValidationError(f"slug is longer than {MAX_SLUG_LENGTH} characters")
    return slug


class Database:
    """Owns the sqlite file and its schema.

    `:memory:` databases keep a single shared connection for their lifetime;
    file databases open a fresh connection per `connect()` block.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        self._shared: sqlite3.Connection | None = None
        if self.path == ":memory:":
            self._shared = self._open()
        else:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        if self.path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on error, close when done."""

        conn = self._shared if self._shared is not None else self._open()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug("transaction failed, rolling back: %s", e)
            conn.rollback()
            raise
        finally:
            if conn is not self._shared:
                conn.close()

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    def _migrate(self) -> None:
        with self.connect() as conn:
            current = conn.execute("PRAGMA user_version").fetchone()[0]
            for version in sorted(_MIGRATIONS):
                if version <= current:
                    continue
                logger.debug("applying schema migration %d", version)
                conn.executescript(_MIGRATIONS[version])
                conn.execute(f"PRAGMA user_version={int(version)}")

    @property
    def schema_version(self) -> int:
        with self.connect() as conn:
            return int(conn.execute("PRAGMA user_version").fetchone()[0])


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        type=row["type"],
        scope=row["scope"],
        project_id=row["project_id"],
        slug=row["slug"],
        content=row["content"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_selection(row: sqlite3.Row) -> Selection:
    return Selection(
        id=row["id"],
        project_id=row["project_id"],
        item_id=row["item_id"],
        provider=row["provider"],
        target_path=row["target_path"],
        content_hash=row["content_hash"],
        selected_at=row["selected_at"],
    )


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def _validate_placement(item_type: str, scope: str, project_id: str | None) -> str | None:
    if item_type not in ITEM_TYPES:
        raise ValidationError(f"invalid item type: {item_type!r} (expected one of {', '.join(ITEM_TYPES)})")
    if scope not in SCOPES:
        raise ValidationError(f"invalid scope: {scope!r} (expected one of {', '.join(SCOPES)})")
    if scope == "global":
        return None
    if not project_id:
        raise ValidationError("project scope requires a project id")
    return project_id


class ItemStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def list_items(
        self,
        scope: str,
        project_id: str | None = None,
        item_type: str | None = None,
    ) -> list[Item]:
        if scope not in SCOPES:
            raise ValidationError(f"invalid scope: {scope!r}")
        sql = "SELECT * FROM items WHERE scope = ?"
        params: list[Any] = [scope]
        if scope == "project":
            if not project_id:
                return []
            sql += " AND project_id = ?"
            params.append(project_id)
        if item_type is not None:
            sql += " AND type = ?"
            params.append(item_type)
        sql += " ORDER BY updated_at DESC, rowid DESC"
        with self.db.connect() as conn:
            return [_row_to_item(r) for r in conn.execute(sql, params).fetchall()]

    def get_item(self, item_id: str) -> Item | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return _row_to_item(row) if row is not None else None

    def require_item(self, item_id: str) -> Item:
        item = self.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def create_item(
        self,
        item_type: str,
        scope: str,
        slug: str,
        project_id: str | None = None,
        content: str = "",
    ) -> Item:
        project_id = _validate_placement(item_type, scope, project_id)
        slug = normalize_slug(slug)
        now = _now()
        item = Item(
            id=_new_id(),
            type=item_type,
            scope=scope,
            project_id=project_id,
            slug=slug,
            content=content,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO items (id, type, scope, project_id, slug, content, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (item.id, item.type, item.scope, item.project_id, item.slug, item.content, now, now),
                )
        except sqlite3.IntegrityError as e:
            raise SlugConflictError(slug) from e
        logger.info("created %s item %s (%s)", item_type, slug, item.id)
        return item

    def update_item(
        self,
        item_id: str,
        *,
        item_type: str = UNSET,
        scope: str = UNSET,
        project_id: str | None = UNSET,
        slug: str = UNSET,
        content: str = UNSET,
    ) -> Item | None:
        """Patch an item; omitted fields keep their value. Returns None if missing."""

        current = self.get_item(item_id)
        if current is None:
            return None

        new_type = current.type if item_type is UNSET else item_type
        new_scope = current.scope if scope is UNSET else scope
        new_project = current.project_id if project_id is UNSET else project_id
        new_project = _validate_placement(new_type, new_scope, new_project)
        new_slug = current.slug if slug is UNSET else normalize_slug(slug)
        new_content = current.content if content is UNSET else content
        now = _now()

        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    UPDATE items
                    SET type = ?, scope = ?, project_id = ?, slug = ?, content = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (new_type, new_scope, new_project, new_slug, new_content, now, item_id),
                )
        except sqlite3.IntegrityError as e:
            raise SlugConflictError(new_slug) from e
        logger.info("updated item %s (%s)", new_slug, item_id)
        return Item(
            id=current.id,
            type=new_type,
            scope=new_scope,
            project_id=new_project,
            slug=new_slug,
            content=new_content,
            created_at=current.created_at,
            updated_at=now,
        )

    def delete_item(self, item_id: str) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info("deleted item %s", item_id)
        return deleted

    def get_project_instructions(self, project_id: str) -> Item | None:
        items = self.list_items("project", project_id, item_type="instructions")
        for item in items:
            if item.slug == INSTRUCTIONS_SLUG:
                return item
        return items[0] if items else None

    def save_project_instructions(self, project_id: str, content: str) -> Item:
        existing = self.get_project_instructions(project_id)
        if existing is None:
            return self.create_item("instructions", "project", INSTRUCTIONS_SLUG, project_id, content)
        updated = self.update_item(existing.id, content=content)
        if updated is None:
            raise ItemNotFoundError(existing.id)
        return updated


_SELECTION_JOIN = """
    SELECT s.*,
           i.id AS item_id_, i.type AS item_type, i.scope AS item_scope,
           i.project_id AS item_project_id, i.slug AS item_slug, i.content AS item_content,
           i.created_at AS item_created_at, i.updated_at AS item_updated_at
    FROM selections s
    JOIN items i ON i.id = s.item_id
"""


def _row_to_selection_with_item(row: sqlite3.Row) -> SelectionWithItem:
    item = Item(
        id=row["item_id_"],
        type=row["item_type"],
        scope=row["item_scope"],
        project_id=row["item_project_id"],
        slug=row["item_slug"],
        content=row["item_content"],
        created_at=row["item_created_at"],
        updated_at=row["item_updated_at"],
    )
    return SelectionWithItem(selection=_row_to_selection(row), item=item)


class SelectionStore:
    def __init__(self, db: Database, registry: ProviderRegistry) -> None:
        self.db = db
        self.registry = registry

    def list_selections(self, project_id: str) -> list[SelectionWithItem]:
        with self.db.connect() as conn:
            rows = conn.execute(
                _SELECTION_JOIN + " WHERE s.project_id = ? ORDER BY s.selected_at DESC, s.rowid DESC",
                (project_id,),
            ).fetchall()
        return [_row_to_selection_with_item(r) for r in rows]

    def selections_for_item(
        self, project_id: str, item_id: str, provider: str | None = None
    ) -> list[Selection]:
        sql = "SELECT * FROM selections WHERE project_id = ? AND item_id = ?"
        params: list[Any] = [project_id, item_id]
        if provider is not None:
            sql += " AND provider = ?"
            params.append(provider)
        sql += " ORDER BY selected_at DESC, rowid DESC"
        with self.db.connect() as conn:
            return [_row_to_selection(r) for r in conn.execute(sql, params).fetchall()]

    def get_selection(self, project_id: str, item_id: str, provider: str) -> Selection | None:
        rows = self.selections_for_item(project_id, item_id, provider)
        return rows[0] if rows else None

    def upsert_selection(
        self,
        project_id: str,
        item_id: str,
        provider: str,
        target_path: str,
        content_hash: str | None,
    ) -> Selection:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO selections (id, project_id, item_id, provider, target_path, content_hash, selected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (project_id, item_id, provider)
                DO UPDATE SET target_path = excluded.target_path, content_hash = excluded.content_hash
                """,
                (_new_id(), project_id, item_id, provider, target_path, content_hash, _now()),
            )
            row = conn.execute(
                "SELECT * FROM selections WHERE project_id = ? AND item_id = ? AND provider = ?",
                (project_id, item_id, provider),
            ).fetchone()
        return _row_to_selection(row)

    def update_selection(self, selection_id: str, target_path: str, content_hash: str | None) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE selections SET target_path = ?, content_hash = ? WHERE id = ?",
                (target_path, content_hash, selection_id),
            )

    def set_selection(self, project_id: str, item_id: str, provider: str, target_path: str) -> Selection:
        """Link an item to a provider path without writing anything.

        A recorded hash from an earlier sync is kept.
        """

        if provider not in self.registry.providers:
            raise ValidationError(f"unknown provider: {provider}")
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            raise ItemNotFoundError(item_id)
        item = _row_to_item(row)
        target = canonical_target_path(self.registry, provider, item.type, item.slug, target_path)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO selections (id, project_id, item_id, provider, target_path, content_hash, selected_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?)
                ON CONFLICT (project_id, item_id, provider)
                DO UPDATE SET target_path = excluded.target_path
                """,
                (_new_id(), project_id, item_id, provider, target, _now()),
            )
        selection = self.get_selection(project_id, item_id, provider)
        if selection is None:
            raise SelectionNotFoundError(item_id)
        return selection

    def remove_selection(self, project_id: str, item_id: str, provider: str | None = None) -> bool:
        sql = "DELETE FROM selections WHERE project_id = ? AND item_id = ?"
        params: list[Any] = [project_id, item_id]
        if provider is not None:
            sql += " AND provider = ?"
            params.append(provider)
        with self.db.connect() as conn:
            return conn.execute(sql, params).rowcount > 0

    def remove_selections_for_path(self, project_id: str, target_path: str) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM selections WHERE project_id = ? AND target_path = ?",
                (project_id, target_path),
            )
            return cur.rowcount

    def retarget_selections(self, project_id: str, old_path: str, new_path: str) -> int:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE selections SET target_path = ? WHERE project_id = ? AND target_path = ?",
                (new_path, project_id, old_path),
            )
            return cur.rowcount


class ProviderSettings:
    """Globally enabled providers plus per-project overrides."""

    def __init__(self, db: Database, registry: ProviderRegistry) -> None:
        self.db = db
        self.registry = registry

    def seed(self, enabled: Iterable[str]) -> None:
        """Insert a row for every provider not seen before; existing rows are untouched."""

        wanted = set(enabled)
        now = _now()
        with self.db.connect() as conn:
            for kind in self.registry.order:
                conn.execute(
                    "INSERT OR IGNORE INTO provider_sources (kind, enabled, updated_at) VALUES (?, ?, ?)",
                    (kind, 1 if kind in wanted else 0, now),
                )

    def list_sources(self) -> list[ProviderSource]:
        with self.db.connect() as conn:
            rows = {r["kind"]: bool(r["enabled"]) for r in conn.execute("SELECT * FROM provider_sources")}
        return [
            ProviderSource(kind=kind, label=self.registry.label(kind), enabled=rows.get(kind, False))
            for kind in self.registry.order
        ]

    def enabled_sources(self) -> list[str]:
        return self.registry.filter_configurable(s.kind for s in self.list_sources() if s.enabled)

    def set_source_enabled(self, kind: str, enabled: bool) -> ProviderSource:
        if kind not in self.registry.providers:
            raise ValidationError(f"unknown provider: {kind}")
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO provider_sources (kind, enabled, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (kind) DO UPDATE SET enabled = excluded.enabled, updated_at = excluded.updated_at
                """,
                (kind, 1 if enabled else 0, _now()),
            )
        logger.info("provider %s %s", kind, "enabled" if enabled else "disabled")
        return ProviderSource(kind=kind, label=self.registry.label(kind), enabled=enabled)

    def get_project_providers(self, project_id: str) -> list[str]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT providers_json FROM project_providers WHERE project_id = ?", (project_id,)
            ).fetchone()
        if row is None:
            return self.enabled_sources()
        try:
            raw = json.loads(row["providers_json"])
        except json.JSONDecodeError:
            logger.warning("malformed provider list for project %s; using global defaults", project_id)
            return self.enabled_sources()
        if not isinstance(raw, list):
            logger.warning("malformed provider list for project %s; using global defaults", project_id)
            return self.enabled_sources()
        return self.registry.filter_configurable(raw)

    def set_project_providers(self, project_id: str, providers: Iterable[str]) -> list[str]:
        requested = list(providers)
        unknown = [p for p in requested if p not in self.registry.providers]
        if unknown:
            raise ValidationError(f"unknown provider: {', '.join(unknown)}")
        cleaned = self.registry.filter_configurable(requested)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO project_providers (project_id, providers_json, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (project_id)
                DO UPDATE SET providers_json = excluded.providers_json, updated_at = excluded.updated_at
                """,
                (project_id, json.dumps(cleaned), _now()),
            )
        return cleaned
