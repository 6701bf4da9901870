"""Mermaid flowchart generation for a linked PathNode tree."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError

from ..config import ChartOptions
from ..logging import get_logger
from ..models import ModuleRef, PathNode, Resource, element_id
from ..walker import MODULES_DIR_NAME
from .summary import Summary

ELEMENT_SEPARATOR = "__"
PART_SEPARATOR = "_"
MAX_MODULES_DEPTH = 5
TEMPLATE_NAME = "flowchart.j2"
DEFAULT_THEME = "redux"

_LABEL_ESCAPES = str.maketrans(
    {"&": "&amp;", "<": "&lt;", ">": "&gt;", "'": "&#39;", '"': "&#34;"}
)


class RenderError(RuntimeError):
    """Raised when the diagram or its summary cannot be written."""


@dataclass(frozen=True)
class Element:
    """One node on the diagram."""

    prefix: str
    id: str
    label: str
    css: str
    procs: bool = False

    @property
    def ref(self) -> str:
        return f"{self.prefix}{PART_SEPARATOR}{self.id}"


@dataclass(frozen=True)
class Statement:
    """A node declaration, optionally attached to a parent by an arrow."""

    element: Element
    parent: str = ""
    arrow: str = ""


def escape_label(label: str) -> str:
    """HTML-escape a label the way Mermaid expects entity codes (`#34;`)."""
    return label.translate(_LABEL_ESCAPES).replace("&#", "#")


class MermaidFlowChart:
    """Draws paths, their resources and their linked modules as a flowchart."""

    def __init__(
        self,
        options: ChartOptions | None = None,
        *,
        templates_dir: Path | None = None,
        theme: str = DEFAULT_THEME,
    ) -> None:
        self.options = options or ChartOptions()
        self.theme = theme
        self.summary = Summary()
        self.logger = get_logger("chart")
        self._statements: List[Statement] = []
        self._minified: Dict[str, str] = {}
        self._env = self._create_env(templates_dir)

    def reset(self) -> None:
        self._statements = []
        self._minified = {}
        self.summary.reset()

    def render(self, root: PathNode) -> str:
        """Return the Mermaid source for `root`."""
        self.reset()
        self._write_path(root)
        try:
            template = self._env.get_template(TEMPLATE_NAME)
            return template.render(statements=self._statements, theme=self.theme)
        except TemplateError as exc:
            raise RenderError(f"Error rendering chart template: {exc}") from exc

    def generate(self, root: PathNode, output: Path) -> Path:
        """Write the diagram to `output` and the summary to `output.json`."""
        text = self.render(root)
        output = Path(output)
        summary_file = output.with_name(output.name + ".json")
        try:
            output.write_text(text, encoding="utf-8")
        except OSError as exc:
            raise RenderError(f"Error writing output file {output}: {exc}") from exc
        try:
            summary_file.write_text(self.summary.to_json(), encoding="utf-8")
        except OSError as exc:
            raise RenderError(f"Error writing summary file {summary_file}: {exc}") from exc
        self.logger.info("Chart written to %s (summary %s)", output, summary_file.name)
        return output

    # ------------------------------------------------------------------
    # Drawing

    def _write_path(self, root: PathNode) -> None:
        self._write_subtree(root)

        if self.options.module_dirs:
            prefix = f"{MODULES_DIR_NAME}/"
            for child in root.iter_children():
                rel = child.relative_path
                if rel.startswith(prefix) and "/" not in rel[len(prefix) :]:
                    self._write_subtree(child)

        if self.options.only_root:
            return

        for child in root.iter_children():
            if child.relative_path in root.child_module_dirs:
                continue
            if "/" in child.relative_path:
                continue
            self._write_subtree(child)

    def _write_subtree(self, node: PathNode) -> None:
        element = self._path_element(node)
        self._statements.append(Statement(element))
        self._write_resources(node, element.id, from_module=False, force_multiple=False)
        self._write_modules(node, element.id, "", "", force_multiple=False, depth=1)

    def _write_resources(
        self, node: PathNode, owner_id: str, *, from_module: bool, force_multiple: bool
    ) -> None:
        owner = f"m{PART_SEPARATOR}{owner_id}" if from_module else f"p{PART_SEPARATOR}{owner_id}"
        arrow = "--->" if from_module else "---->"
        for resource in node.sorted_resources():
            resource_el = self._resource_element(resource, owner_id)
            self._statements.append(Statement(resource_el, parent=owner, arrow=arrow))

            name_el = self._name_element(
                resource, resource_el.id, resource.is_multiple or force_multiple
            )
            self._statements.append(Statement(name_el, parent=resource_el.ref, arrow="--->"))
            self.summary.add_edge(name_el.ref)
            self.summary.add_name(name_el.label)

    def _write_modules(
        self,
        node: Optional[PathNode],
        path_id: str,
        parent_id: str,
        parent_label: str,
        *,
        force_multiple: bool,
        depth: int,
    ) -> None:
        if depth > MAX_MODULES_DEPTH or node is None:
            return

        for module in node.sorted_module_refs():
            if module.is_external:
                self.summary.add_module(module.registry_key)

        for module in node.resolved_module_refs():
            target = module.target
            module_el = self._module_element(module, path_id, parent_id, parent_label)
            multiple = module.is_multiple or force_multiple
            if target.resources:
                self._statements.append(
                    Statement(module_el, parent=f"p{PART_SEPARATOR}{path_id}", arrow="-->")
                )
                self._write_resources(
                    target, module_el.id, from_module=True, force_multiple=multiple
                )

            self._write_modules(
                target,
                path_id,
                module_el.id,
                module_el.label,
                force_multiple=multiple,
                depth=depth + 1,
            )

    # ------------------------------------------------------------------
    # Elements

    def _path_element(self, node: PathNode) -> Element:
        return Element(prefix="p", id=self._minify(node.node_id), label=node.label, css="tf-path")

    def _resource_element(self, resource: Resource, path_id: str) -> Element:
        label = f"{resource.kind}.{resource.name}"
        if resource.for_each:
            label += f"<br>*for_each = {escape_label(resource.for_each)}*"
        if self.options.include_filenames:
            label += f"<br><i>({escape_label(resource.file_path)})</i>"
        return Element(
            prefix="r",
            id=f"{path_id}{ELEMENT_SEPARATOR}{self._element_id(resource.name)}",
            label=label,
            css="tf-resource",
        )

    def _name_element(self, resource: Resource, resource_id: str, multiple: bool) -> Element:
        return Element(
            prefix="n",
            id=f"{resource_id}{PART_SEPARATOR}n",
            label=escape_label(resource.display_label),
            css="tf-name",
            procs=multiple,
        )

    def _module_element(
        self, module: ModuleRef, path_id: str, parent_id: str, parent_label: str
    ) -> Element:
        module_id = path_id + ELEMENT_SEPARATOR
        if parent_id:
            module_id += parent_id + ELEMENT_SEPARATOR
        module_id += self._element_id(module.name)

        label = f"{parent_label}<br><b>/</b><br>" if parent_label else ""
        label += f"module.{module.name}<br>{escape_label(module.source)}"
        if module.is_external:
            label += f"(at){escape_label(module.version)}"
        if module.for_each:
            label += f"<br>*for_each = {escape_label(module.for_each)}*"
        if self.options.include_filenames:
            label += f"<br><i>({escape_label(module.file_path)})</i>"
        return Element(
            prefix="m",
            id=module_id,
            label=label,
            css="tf-ext-mod" if module.is_external else "tf-int-mod",
        )

    def _element_id(self, text: str) -> str:
        return self._minify(element_id(text))

    def _minify(self, cleaned: str) -> str:
        if not self.options.minify:
            return cleaned
        minified = self._minified.get(cleaned)
        if minified is None:
            minified = f"m{len(self._minified) + 1}"
            self._minified[cleaned] = minified
        return minified

    @staticmethod
    def _create_env(templates_dir: Path | None) -> Environment:
        directories = []
        if templates_dir:
            directories.append(str(templates_dir))
        directories.append(str(Path(__file__).with_name("templates")))
        loader = FileSystemLoader(directories)
        return Environment(loader=loader, autoescape=False, trim_blocks=True, lstrip_blocks=True)


__all__ = [
    "ELEMENT_SEPARATOR",
    "Element",
    "MAX_MODULES_DEPTH",
    "MermaidFlowChart",
    "RenderError",
    "Statement",
    "escape_label",
]
