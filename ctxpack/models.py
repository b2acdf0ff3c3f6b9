from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal


ItemType = Literal["skill", "instructions", "command"]
Scope = Literal["global", "project"]

ITEM_TYPES: tuple[str, ...] = ("skill", "instructions", "command")
SCOPES: tuple[str, ...] = ("global", "project")

# Item types materialized as files inside provider skill/command directories.
FILE_ITEM_TYPES: tuple[str, ...] = ("skill", "command")


@dataclass(frozen=True)
class StoreConfig:
    path: str | None = None  # relative to the data dir unless absolute


@dataclass(frozen=True)
class ProvidersConfig:
    # Providers enabled globally when the provider table is first seeded.
    enabled: tuple[str, ...] = ("claude",)


@dataclass(frozen=True)
class RenderConfig:
    description_max_length: int = 200


@dataclass(frozen=True)
class LogConfig:
    level: str = "WARNING"


@dataclass(frozen=True)
class CtxpackConfig:
    version: int = 1
    store: StoreConfig = field(default_factory=StoreConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    log: LogConfig = field(default_factory=LogConfig)


@dataclass(frozen=True)
class Item:
    id: str
    type: str
    scope: str
    project_id: str | None
    slug: str
    content: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Selection:
    id: str
    project_id: str
    item_id: str
    provider: str
    target_path: str
    content_hash: str | None
    selected_at: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SelectionWithItem:
    """A selection row joined with the item it materializes."""

    selection: Selection
    item: Item

    @property
    def provider(self) -> str:
        return self.selection.provider


@dataclass(frozen=True)
class ProviderSource:
    kind: str
    label: str
    enabled: bool


SyncState = Literal["local_only", "not_synced", "synced", "out_of_sync"]


@dataclass(frozen=True)
class WrittenEntry:
    path: str
    provider: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DeletedKind = Literal["skill", "command", "instruction", "mcp"]


@dataclass(frozen=True)
class DeletedEntry:
    path: str
    provider: str
    kind: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SyncConflict:
    path: str
    provider: str
    item_id: str
    reason: str = "external_edit"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SyncResult:
    written: list[WrittenEntry] = field(default_factory=list)
    deleted: list[DeletedEntry] = field(default_factory=list)
    conflicts: list[SyncConflict] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "written": [w.to_dict() for w in self.written],
            "deleted": [d.to_dict() for d in self.deleted],
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass(frozen=True)
class ContextEntry:
    """A file materialized for an item, as returned by single-item operations."""

    path: str
    relative_path: str
    item_id: str
    category: str
    provider: str | None = None
    exists: bool = True
    sync_state: str = "synced"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ProviderStatus:
    provider: str
    path: str
    state: str


@dataclass(frozen=True)
class ItemStatus:
    item: Item
    providers: tuple[ProviderStatus, ...]

    def state_for(self, provider: str) -> str | None:
        for p in self.providers:
            if p.provider == provider:
                return p.state
        return None


@dataclass(frozen=True)
class GlobalFileEntry:
    path: str
    name: str
    provider: str
    category: str  # instructions | skill | command
    exists: bool


@dataclass(frozen=True)
class RootInstructions:
    """A project's root instructions plus the sync state of each provider's root file."""

    content: str
    providers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "providers": dict(self.providers)}
