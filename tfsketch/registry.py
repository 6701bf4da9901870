"""Registry of traversal roots keyed by traverse key."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from .logging import get_logger
from .models import PathNode

PRIMARY_ROOT_KEY = "."


class Registry:
    """Holds the root PathNode for the primary tree and every external module.

    Built up by the walker and the override/cache layer, then read by the
    linker. One instance lives for one invocation.
    """

    def __init__(self) -> None:
        self._paths: Dict[str, PathNode] = {}
        self.logger = get_logger("registry")

    def add(self, node: PathNode) -> PathNode:
        self._paths[node.traverse_key] = node
        self.logger.info("Module added: %s in %s", node.traverse_key, node.full_path)
        return node

    def get(self, key: str) -> Optional[PathNode]:
        return self._paths.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def keys(self) -> List[str]:
        return sorted(self._paths)

    def nodes(self) -> Iterator[PathNode]:
        for key in self.keys():
            yield self._paths[key]

    def find_by_path(self, full_path: str) -> Optional[PathNode]:
        """Return the first root (in key order) whose directory is `full_path`."""
        for node in self.nodes():
            if node.full_path == full_path:
                return node
        return None

    @property
    def primary(self) -> Optional[PathNode]:
        return self._paths.get(PRIMARY_ROOT_KEY)


__all__ = ["PRIMARY_ROOT_KEY", "Registry"]
