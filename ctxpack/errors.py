from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class CtxpackError(Exception):
    """Base exception for ctxpack domain errors."""


class CtxpackConfigError(CtxpackError):
    """Base exception for ctxpack config parsing/validation errors."""


@dataclass(frozen=True)
class ConfigParseError(CtxpackConfigError):
    """Raised when a TOML file cannot be parsed."""

    path: Path
    message: str
    lineno: int | None = None
    colno: int | None = None

    def __str__(self) -> str:
        loc = ""
        if self.lineno is not None and self.colno is not None:
            loc = f" (line {self.lineno}, column {self.colno})"
        return f"Invalid TOML in {self.path}: {self.message}{loc}"


@dataclass(frozen=True)
class ConfigValidationError(CtxpackConfigError):
    """Raised when a parsed TOML file does not match the expected schema."""

    path: Path
    message: str

    def __str__(self) -> str:
        return f"Invalid config in {self.path}: {self.message}"


class ValidationError(CtxpackError):
    """Raised for bad input that is rejected before anything is persisted."""


class SlugConflictError(CtxpackError):
    """Raised when an item slug already exists in the same scope/project."""

    def __init__(self, slug: str) -> None:
        super().__init__(f'An item with slug "{slug}" already exists in this scope')
        self.slug = slug


class ItemNotFoundError(CtxpackError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


class PathNotAllowedError(CtxpackError):
    """Raised when a path falls outside the allow-listed directories."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Path not allowed: {path}")
        self.path = path


class SelectionNotFoundError(CtxpackError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Selection not found for item {item_id}")
        self.item_id = item_id


class NoCompatibleProvidersError(CtxpackError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"No compatible providers enabled for item {item_id}")
        self.item_id = item_id


class ProviderDisabledError(CtxpackError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"MCP config for {provider} is disabled")
        self.provider = provider


class ProviderReadOnlyError(CtxpackError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"MCP config for {provider} is read-only")
        self.provider = provider


class McpConfigError(CtxpackError):
    """Raised when an MCP config file cannot be read or parsed during a write."""

    def __init__(self, path: Path, message: str) -> None:
        super().__init__(f"Invalid MCP config in {path}: {message}")
        self.path = path
        self.message = message
