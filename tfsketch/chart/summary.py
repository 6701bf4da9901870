"""Stats gathered while a chart is generated."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class Summary:
    """Counts of external modules plus the display-field edges and names drawn."""

    modules: Dict[str, int] = field(default_factory=dict)
    edges: List[str] = field(default_factory=list)
    names: List[str] = field(default_factory=list)

    def reset(self) -> None:
        self.modules = {}
        self.edges = []
        self.names = []

    def add_module(self, module: str) -> None:
        self.modules[module] = self.modules.get(module, 0) + 1

    def add_edge(self, edge: str) -> None:
        self.edges.append(edge)

    def add_name(self, name: str) -> None:
        self.names.append(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modules": dict(sorted(self.modules.items())),
            "edges": list(self.edges),
            "names": list(self.names),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


__all__ = ["Summary"]
