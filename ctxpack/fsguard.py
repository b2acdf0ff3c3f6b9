"""Guarded filesystem access.

Every operation resolves the target path first and refuses to touch anything
outside the allow-list: the global provider trees under the home directory,
plus the project root passed by the caller.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import PathNotAllowedError
from .registry import ProviderRegistry


logger = logging.getLogger(__name__)


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class GuardedFS:
    def __init__(self, registry: ProviderRegistry, home: Path) -> None:
        self.registry = registry
        self.home = Path(home).resolve()

    def allowed_roots(self, project_root: Path | str | None) -> list[Path]:
        roots = [d.resolve() for d in self.registry.global_base_dirs(self.home).values()]
        if project_root:
            roots.append(Path(project_root).resolve())
        return roots

    def is_path_allowed(self, path: Path | str, project_root: Path | str | None) -> bool:
        resolved = Path(path).resolve()
        return any(_is_within(resolved, root) for root in self.allowed_roots(project_root))

    def check(self, path: Path | str, project_root: Path | str | None) -> Path:
        if not self.is_path_allowed(path, project_root):
            logger.warning("rejected path outside allowed roots: %s", path)
            raise PathNotAllowedError(path=str(path))
        return Path(path)

    def exists(self, path: Path | str, project_root: Path | str | None) -> bool:
        return self.check(path, project_root).is_file()

    def read_bytes(self, path: Path | str, project_root: Path | str | None) -> bytes:
        return self.check(path, project_root).read_bytes()

    def read(self, path: Path | str, project_root: Path | str | None) -> str:
        return self.check(path, project_root).read_bytes().decode("utf-8")

    def write(self, path: Path | str, text: str, project_root: Path | str | None) -> None:
        dst = self.check(path, project_root)
        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_name(dst.name + ".tmp")
        # newline="" keeps the rendered bytes exactly as given on every platform.
        try:
            with tmp.open("w", encoding="utf-8", newline="") as f:
                f.write(text)
            tmp.replace(dst)
        finally:
            tmp.unlink(missing_ok=True)
        logger.info("wrote %s", dst)

    def delete(
        self,
        path: Path | str,
        project_root: Path | str | None,
        *,
        prune_empty_up_to: Path | None = None,
    ) -> bool:
        """Delete a regular file. Returns False if it was already gone.

        With `prune_empty_up_to`, parent directories left empty are removed as
        well, stopping at (and never removing) that directory.
        """

        p = self.check(path, project_root)
        if p.is_dir():
            raise IsADirectoryError(str(p))
        try:
            p.unlink()
        except FileNotFoundError:
            return False
        logger.info("deleted %s", p)

        if prune_empty_up_to is not None:
            stop = Path(prune_empty_up_to).resolve()
            parent = p.parent.resolve()
            while parent != stop and stop in parent.parents:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent
        return True

    def list_files(
        self,
        directory: Path | str,
        project_root: Path | str | None,
        *,
        recursive: bool = True,
        ext: str | None = ".md",
    ) -> list[Path]:
        d = self.check(directory, project_root)
        if not d.is_dir():
            return []
        out: list[Path] = []
        if recursive:
            for dirpath, _dirnames, filenames in os.walk(d):
                for name in filenames:
                    out.append(Path(dirpath) / name)
        else:
            out = [p for p in d.iterdir() if p.is_file()]
        if ext is not None:
            out = [p for p in out if p.name.endswith(ext)]
        return sorted(out)
