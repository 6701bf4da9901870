"""Resolution of module references into links between PathNodes."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional

from .logging import get_logger
from .models import ModuleRef, PathNode
from .registry import PRIMARY_ROOT_KEY, Registry
from .walker import MODULES_DIR_NAME, SUBMODULE_MARKER, derive_module_key

_LOCAL_MODULES_PREFIX = f"./{MODULES_DIR_NAME}/"
ROOT_SELF_REFERENCE = "refers to the traversal root"


@dataclass(frozen=True)
class UnresolvedRef:
    """A module reference the linker could not point anywhere."""

    node_key: str
    path: str
    module: str
    reason: str

    @property
    def is_root_self_reference(self) -> bool:
        return self.reason == ROOT_SELF_REFERENCE


@dataclass
class LinkReport:
    """Outcome of one link pass over the registry."""

    linked: int = 0
    unresolved: List[UnresolvedRef] = field(default_factory=list)
    missing_external: List[str] = field(default_factory=list)

    @property
    def external_modules_missing(self) -> bool:
        return bool(self.missing_external)

    @property
    def blocking(self) -> List[UnresolvedRef]:
        """Unresolved references, leaving out sources that point at their own root."""
        return [item for item in self.unresolved if not item.is_root_self_reference]


class Linker:
    """Points every ModuleRef in the registry at the PathNode it refers to.

    Strategies are tried in a fixed order and the first hit wins:

    1. external source, looked up as `source@version` in the registry;
    2. a relative source resolving to the traversal root itself is skipped;
    3. a relative source escaping the root, matched by full path against
       registered roots;
    4. a relative source found among the traversal root's children;
    5. `./modules/...` inside an external module, looked up as that
       module's derived container key.
    """

    def __init__(self, registry: Registry) -> None:
        self.registry = registry
        self.logger = get_logger("linker")

    def link(self) -> LinkReport:
        report = LinkReport()
        missing: set[str] = set()
        for root in self.registry.nodes():
            for node in root.self_and_children():
                for module in node.sorted_module_refs():
                    reason = self._link_module(root, node, module)
                    if reason is None:
                        report.linked += 1
                        continue
                    report.unresolved.append(
                        UnresolvedRef(
                            node_key=root.traverse_key,
                            path=node.full_path,
                            module=module.name,
                            reason=reason,
                        )
                    )
                    if module.is_external and module.source:
                        missing.add(module.registry_key)
        report.missing_external = sorted(missing)
        return report

    # ------------------------------------------------------------------
    # Internals

    def _link_module(self, root: PathNode, node: PathNode, module: ModuleRef) -> Optional[str]:
        """Resolve one reference; return None when linked, else the reason it is not."""
        if not module.source:
            self.logger.info(
                "Skipped linking module %s in %s: source is not a literal string",
                module.name,
                node.full_path,
            )
            return "source is not a literal string"

        if module.is_external:
            key = module.registry_key
            target = self.registry.get(key)
            if target is None:
                self.logger.info(
                    "Skipped linking module %s in %s (%s): source %s not found in the registry",
                    module.name,
                    node.full_path,
                    node.traverse_key,
                    key,
                )
                return f"external module {key} not registered"
            return self._set_target(node, module, target)

        clean_path = os.path.normpath(os.path.join(node.full_path, module.source))
        try:
            rel_path = os.path.relpath(clean_path, root.full_path).replace(os.sep, "/")
        except ValueError as exc:
            self.logger.info(
                "Skipped linking module %s in %s: problem with relative path: %s",
                module.name,
                node.full_path,
                exc,
            )
            return f"relative path error: {exc}"
        if rel_path in ("", "."):
            self.logger.debug("Module %s in %s points at its own root", module.name, node.full_path)
            return ROOT_SELF_REFERENCE

        if rel_path.startswith("../"):
            target = self.registry.find_by_path(clean_path)
            if target is not None:
                return self._set_target(node, module, target)

        child = root.children.get(rel_path)
        if child is not None:
            if module.target is None or module.target is child:
                return self._set_target(node, module, child)
            return None

        if (
            root.traverse_key != PRIMARY_ROOT_KEY
            and SUBMODULE_MARKER not in root.traverse_key
            and module.source.startswith(_LOCAL_MODULES_PREFIX)
        ):
            key = derive_module_key(root.traverse_key, rel_path)
            target = self.registry.get(key)
            if target is not None:
                return self._set_target(node, module, target)

        self.logger.info(
            "Skipped linking module %s in %s (%s): relative path %s not found",
            module.name,
            node.full_path,
            node.traverse_key,
            rel_path,
        )
        return f"relative path {rel_path} not found"

    def _set_target(self, node: PathNode, module: ModuleRef, target: PathNode) -> None:
        if module.target is not target:
            module.target = target
            self.logger.debug(
                "Linked module %s in %s (%s) to %s (%s)",
                module.name,
                node.label,
                node.traverse_key,
                target.full_path,
                target.traverse_key,
            )
        return None


__all__ = ["LinkReport", "Linker", "ROOT_SELF_REFERENCE", "UnresolvedRef"]
