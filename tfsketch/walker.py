"""Directory walking that builds PathNodes for a Terraform tree."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Pattern

from .extractor import TF_EXTENSION
from .logging import get_logger
from .models import PathNode
from .registry import Registry

DEFAULT_IGNORE_DIRS = r"^(example[s]*|test[s]*|\..*)$"
MODULES_DIR_NAME = "modules"
SUBMODULE_MARKER = "//modules/"


class WalkError(RuntimeError):
    """Raised when a tree cannot be walked."""


@dataclass(frozen=True)
class WalkerSettings:
    """Directory filters applied while walking."""

    ignore_dir_pattern: Pattern[str] = re.compile(DEFAULT_IGNORE_DIRS)
    modules_dir_name: str = MODULES_DIR_NAME
    include_path: Optional[Pattern[str]] = None
    exclude_path: Optional[Pattern[str]] = None

    @classmethod
    def build(
        cls,
        *,
        ignore_dirs: str | None = None,
        include_path: str | None = None,
        exclude_path: str | None = None,
    ) -> "WalkerSettings":
        return cls(
            ignore_dir_pattern=re.compile(ignore_dirs or DEFAULT_IGNORE_DIRS),
            include_path=re.compile(include_path) if include_path else None,
            exclude_path=re.compile(exclude_path) if exclude_path else None,
        )


def derive_module_key(parent_key: str, relative_path: str) -> str:
    """Traverse key for a directory inside another tree's `modules` directory."""
    source, separator, version = parent_key.rpartition("@")
    if not separator:
        return f"{parent_key}//{relative_path}"
    return f"{source}//{relative_path}@{version}"


def is_submodule_key(key: str) -> bool:
    return SUBMODULE_MARKER in key


class TreeWalker:
    """Registers child paths and module containers found under a root."""

    def __init__(self, registry: Registry, settings: WalkerSettings | None = None) -> None:
        self.registry = registry
        self.settings = settings or WalkerSettings()
        self.logger = get_logger("walker")

    def walk(self, node: PathNode, *, extract_module_dirs: bool) -> List[str]:
        """Walk `node`'s directory and return traverse keys of new module containers.

        Each container found is walked in turn without further extraction.
        """
        new_keys = self._walk(node, extract_module_dirs)
        for key in new_keys:
            container = self.registry.get(key)
            if container is not None and not container.walked:
                self._walk(container, False)
                container.walked = True
        node.walked = True
        return new_keys

    # ------------------------------------------------------------------
    # Internals

    def _walk(self, node: PathNode, extract_module_dirs: bool) -> List[str]:
        root = Path(node.full_path)
        if not root.is_dir():
            raise WalkError(f"Terraform path is not a directory: {root} ({node.traverse_key})")

        new_keys: List[str] = []
        try:
            for dirpath, dirnames, filenames in os.walk(root, onerror=_reraise):
                current = Path(dirpath)
                rel_dir = current.relative_to(root).as_posix()
                if rel_dir != "." and any(name.endswith(TF_EXTENSION) for name in filenames):
                    self._add_child(node, current, rel_dir)

                descend: List[str] = []
                for name in sorted(dirnames):
                    rel_path = name if rel_dir == "." else f"{rel_dir}/{name}"
                    if self._skipped(name, rel_path, current):
                        continue
                    if extract_module_dirs and current.name == self.settings.modules_dir_name:
                        key = self._add_container(node, current / name, rel_path)
                        if key is not None:
                            new_keys.append(key)
                        continue
                    descend.append(name)
                dirnames[:] = descend
        except OSError as exc:
            raise WalkError(
                f"Error walking directories in {root} ({node.traverse_key}): {exc}"
            ) from exc
        return new_keys

    def _skipped(self, name: str, rel_path: str, parent: Path) -> bool:
        settings = self.settings
        reason = None
        if settings.include_path is not None and not settings.include_path.search(rel_path):
            reason = "not included"
        elif settings.exclude_path is not None and settings.exclude_path.search(rel_path):
            reason = "excluded"
        elif settings.ignore_dir_pattern.search(name):
            reason = "ignored name"
        if reason is None:
            return False
        self.logger.debug("Skipped path: %s [%s] (%s)", parent / name, rel_path, reason)
        return True

    def _add_child(self, node: PathNode, directory: Path, rel_path: str) -> None:
        if rel_path in node.children:
            self.logger.debug(
                "Child path already exists: %s in %s (%s)", rel_path, node.full_path, node.traverse_key
            )
            return
        child = PathNode(
            full_path=str(directory),
            traverse_key=node.traverse_key,
            relative_path=rel_path,
        )
        in_modules_dir = self.settings.modules_dir_name in rel_path.split("/")
        node.add_child(child, module_dir=in_modules_dir)
        self.logger.debug("Child path added: %s to %s (%s)", rel_path, node.full_path, node.traverse_key)

    def _add_container(self, node: PathNode, directory: Path, rel_path: str) -> Optional[str]:
        key = derive_module_key(node.traverse_key, rel_path)
        if key in self.registry:
            self.logger.debug("Module container %s already registered", key)
            return None
        self.registry.add(PathNode(full_path=str(directory), traverse_key=key))
        self.logger.debug("Skipped walking paths in: %s [%s]", directory, rel_path)
        return key


def _reraise(exc: OSError) -> None:
    raise exc


__all__ = [
    "DEFAULT_IGNORE_DIRS",
    "MODULES_DIR_NAME",
    "TreeWalker",
    "WalkError",
    "WalkerSettings",
    "derive_module_key",
    "is_submodule_key",
]
