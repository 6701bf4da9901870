"""Core data models shared across tfsketch components."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Set, Tuple, TypeVar

NO_ATTRIBUTE_LABEL = "no-attr!"
EMPTY_ATTRIBUTE_LABEL = "empty!"

_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9 ]+")

_V = TypeVar("_V")


def sorted_items(mapping: Mapping[str, _V]) -> Iterator[Tuple[str, _V]]:
    """Yield mapping entries ordered by key."""
    for key in sorted(mapping):
        yield key, mapping[key]


def element_id(text: str) -> str:
    """Return an identifier-safe version of a path or name."""
    return _ID_UNSAFE.sub("", text.replace("/", "_"))


class FieldKind(Enum):
    """Outcome of reading a single attribute out of a block."""

    LITERAL = "literal"
    UNSUPPORTED = "unsupported"
    ABSENT = "absent"


@dataclass(frozen=True)
class FieldValue:
    """Raw source text for an attribute, or the reason there is none."""

    kind: FieldKind
    text: str = ""

    @classmethod
    def literal(cls, text: str) -> "FieldValue":
        return cls(FieldKind.LITERAL, text)

    @classmethod
    def unsupported(cls) -> "FieldValue":
        return cls(FieldKind.UNSUPPORTED)

    @classmethod
    def absent(cls) -> "FieldValue":
        return cls(FieldKind.ABSENT)

    def display_label(self) -> str:
        if self.kind is FieldKind.LITERAL:
            return self.text
        if self.kind is FieldKind.UNSUPPORTED:
            return EMPTY_ATTRIBUTE_LABEL
        return NO_ATTRIBUTE_LABEL


@dataclass
class Resource:
    """A declared infrastructure resource."""

    kind: str
    name: str
    display_field: FieldValue
    for_each: str = ""
    file_path: str = ""

    @property
    def key(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def is_multiple(self) -> bool:
        return bool(self.for_each)

    @property
    def display_label(self) -> str:
        return self.display_field.display_label()


@dataclass
class ModuleRef:
    """Reference from a path to another module's root."""

    name: str
    source: str
    version: str = ""
    for_each: str = ""
    file_path: str = ""
    target: Optional["PathNode"] = field(default=None, repr=False, compare=False)

    @property
    def is_external(self) -> bool:
        return not self.source.startswith(".")

    @property
    def is_multiple(self) -> bool:
        return bool(self.for_each)

    @property
    def is_resolved(self) -> bool:
        return self.target is not None

    @property
    def registry_key(self) -> str:
        return f"{self.source}@{self.version}"


@dataclass(eq=False)
class PathNode:
    """One directory of Terraform code plus its links to other directories."""

    full_path: str
    traverse_key: str
    relative_path: str = ""
    children: Dict[str, "PathNode"] = field(default_factory=dict)
    child_module_dirs: Set[str] = field(default_factory=set)
    resources: Dict[str, Resource] = field(default_factory=dict)
    module_refs: Dict[str, ModuleRef] = field(default_factory=dict)
    walked: bool = False
    parsed: bool = False

    @property
    def is_root(self) -> bool:
        return self.relative_path in ("", ".")

    @property
    def node_id(self) -> str:
        """Stable identifier derived from the relative path."""
        if self.is_root:
            return "root"
        return element_id(self.relative_path) or "root"

    @property
    def label(self) -> str:
        return "." if self.is_root else self.relative_path

    def add_child(self, node: "PathNode", *, module_dir: bool = False) -> None:
        self.children[node.relative_path] = node
        if module_dir:
            self.child_module_dirs.add(node.relative_path)

    def iter_children(self) -> Iterator["PathNode"]:
        for _, child in sorted_items(self.children):
            yield child

    def sorted_resources(self) -> List[Resource]:
        return [resource for _, resource in sorted_items(self.resources)]

    def sorted_module_refs(self) -> List[ModuleRef]:
        return [module for _, module in sorted_items(self.module_refs)]

    def resolved_module_refs(self) -> List[ModuleRef]:
        return [module for module in self.sorted_module_refs() if module.is_resolved]

    def self_and_children(self) -> Iterator["PathNode"]:
        yield self
        yield from self.iter_children()


__all__ = [
    "EMPTY_ATTRIBUTE_LABEL",
    "FieldKind",
    "FieldValue",
    "ModuleRef",
    "NO_ATTRIBUTE_LABEL",
    "PathNode",
    "Resource",
    "element_id",
    "sorted_items",
]
