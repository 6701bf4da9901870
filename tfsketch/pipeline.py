"""Pipeline orchestration: walk, parse, resolve, link and render."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

from .cache import ModuleCache
from .chart import MermaidFlowChart, RenderError
from .config import ChartOptions, DEFAULT_MAX_ITERATIONS, SketchConfig
from .extractor import Extractor, ExtractorSettings
from .linker import LinkReport, Linker
from .logging import get_logger, phase_logger
from .models import PathNode
from .overrides import OverrideResolver, OverridesError, load_overrides
from .registry import PRIMARY_ROOT_KEY, Registry
from .walker import TreeWalker, WalkError, WalkerSettings, is_submodule_key


class Phase(str, Enum):
    """Pipeline phases that can fail a run."""

    CONFIG = "config"
    OVERRIDES = "overrides"
    WALK = "walk"
    PARSE = "parse"
    LINK = "link"
    RENDER = "render"


EXIT_CODES = {
    Phase.OVERRIDES: 10,
    Phase.WALK: 11,
    Phase.CONFIG: 12,
    Phase.PARSE: 21,
    Phase.LINK: 22,
    Phase.RENDER: 41,
}
EXIT_UNRESOLVED_STRICT = 23


class PipelineError(RuntimeError):
    """Fatal error tagged with the phase it happened in."""

    def __init__(self, phase: Phase, message: str) -> None:
        super().__init__(f"{phase.value}: {message}")
        self.phase = phase

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.phase]


@dataclass
class SketchResult:
    """Linked registry plus what the fixpoint loop did."""

    root: PathNode
    registry: Registry
    report: LinkReport
    iterations: int
    converged: bool

    @property
    def unresolved_count(self) -> int:
        return len(self.report.blocking)


class Sketcher:
    """Coordinates the tree walker, extractor, resolver and linker."""

    def __init__(
        self,
        *,
        extractor: Extractor | None = None,
        walker_settings: WalkerSettings | None = None,
        resolver: OverrideResolver | None = None,
        cache: ModuleCache | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self.extractor = extractor or Extractor()
        self.walker_settings = walker_settings or WalkerSettings()
        self.resolver = resolver or OverrideResolver()
        self.cache = cache
        self.max_iterations = max(1, max_iterations)
        self.logger = get_logger("pipeline")
        self.registry = Registry()
        self._walker = TreeWalker(self.registry, self.walker_settings)
        self._attempted: Set[str] = set()

    @classmethod
    def from_config(cls, config: SketchConfig) -> "Sketcher":
        """Build a sketcher from effective settings; reads the overrides file."""
        try:
            extractor = Extractor(
                ExtractorSettings.build(
                    display_attributes=config.display_attributes,
                    type_regexp=config.type_regexp,
                    name_regexp=config.name_regexp,
                )
            )
            walker_settings = WalkerSettings.build(
                ignore_dirs=config.ignore_dirs,
                include_path=config.include_path,
                exclude_path=config.exclude_path,
            )
        except re.error as exc:
            raise PipelineError(Phase.CONFIG, f"invalid regular expression: {exc}") from exc

        resolver = OverrideResolver()
        if config.overrides is not None:
            try:
                overrides = load_overrides(config.overrides)
            except OverridesError as exc:
                raise PipelineError(Phase.OVERRIDES, str(exc)) from exc
            get_logger("pipeline").info(
                "External modules number in overrides file: %d", len(overrides)
            )
            for rule in overrides.rules:
                resolver.add_rule(rule)

        cache = None
        if config.cache_dir is not None:
            cache = ModuleCache(config.cache_dir, timeout=config.fetch_timeout)

        return cls(
            extractor=extractor,
            walker_settings=walker_settings,
            resolver=resolver,
            cache=cache,
            max_iterations=config.max_iterations,
        )

    def run(self, path: Path | str) -> SketchResult:
        """Walk `path`, resolve external modules to a fixpoint and link everything."""
        root_path = Path(path).expanduser().resolve()
        if not root_path.is_dir():
            raise PipelineError(Phase.WALK, f"Terraform path is not a directory: {root_path}")

        self._seed_overrides()

        root = PathNode(full_path=str(root_path), traverse_key=PRIMARY_ROOT_KEY)
        self.registry.add(root)
        try:
            self._walker.walk(root, extract_module_dirs=False)
        except WalkError as exc:
            raise PipelineError(Phase.WALK, str(exc)) from exc

        linker = Linker(self.registry)
        report = LinkReport()
        converged = False
        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            report = self._parse_and_link(linker, iteration)
            added = self._resolve_missing(report.missing_external, iteration)
            if not added:
                converged = True
                break

        if not converged:
            phase_logger("pipeline", Phase.LINK.value, iteration).info(
                "Iteration ceiling of %d reached; rendering what was resolved", self.max_iterations
            )
            report = self._parse_and_link(linker, iteration)

        for unresolved in report.unresolved:
            self.logger.debug(
                "Unresolved module %s in %s (%s): %s",
                unresolved.module,
                unresolved.path,
                unresolved.node_key,
                unresolved.reason,
            )
        self.logger.info(
            "Linked %d module references, %d unresolved, after %d iteration(s)",
            report.linked,
            len(report.unresolved),
            iteration,
        )
        return SketchResult(
            root=root,
            registry=self.registry,
            report=report,
            iterations=iteration,
            converged=converged,
        )

    def render(
        self, result: SketchResult, output: Path | str, options: ChartOptions | None = None
    ) -> Path:
        """Write the diagram and its summary for a finished run."""
        renderer = MermaidFlowChart(options or ChartOptions())
        try:
            return renderer.generate(result.root, Path(output))
        except RenderError as exc:
            raise PipelineError(Phase.RENDER, str(exc)) from exc

    # ------------------------------------------------------------------
    # Internals

    def _seed_overrides(self) -> None:
        for rule in self.resolver.literal_rules():
            if rule.cache or not rule.local:
                continue
            local = Path(rule.local).expanduser().resolve()
            if not local.is_dir():
                raise PipelineError(
                    Phase.OVERRIDES,
                    f"Override local path for {rule.remote} is not a directory: {local}",
                )
            node = self.registry.add(PathNode(full_path=str(local), traverse_key=rule.remote))
            try:
                self._walker.walk(node, extract_module_dirs=not is_submodule_key(rule.remote))
            except WalkError as exc:
                raise PipelineError(Phase.OVERRIDES, str(exc)) from exc

    def _parse_and_link(self, linker: Linker, iteration: int) -> LinkReport:
        log = phase_logger("pipeline", Phase.PARSE.value, iteration)
        for registered in list(self.registry.nodes()):
            for node in registered.self_and_children():
                if node.parsed:
                    continue
                try:
                    count = self.extractor.extract_directory(node)
                except OSError as exc:
                    raise PipelineError(
                        Phase.PARSE,
                        f"Error parsing path {node.full_path} ({node.traverse_key}): {exc}",
                    ) from exc
                log.debug("Parsed %d file(s) in %s (%s)", count, node.full_path, node.traverse_key)

        try:
            report = linker.link()
        except (OSError, ValueError) as exc:
            raise PipelineError(Phase.LINK, f"Error linking modules: {exc}") from exc
        if report.external_modules_missing:
            phase_logger("pipeline", Phase.LINK.value, iteration).info(
                "External modules missing: %s", ", ".join(report.missing_external)
            )
        return report

    def _resolve_missing(self, keys: List[str], iteration: int) -> List[str]:
        log = phase_logger("pipeline", "resolve", iteration)
        added: List[str] = []
        for key in keys:
            if key in self.registry or key in self._attempted:
                continue
            if self.cache is not None and self.cache.was_downloaded(key):
                continue
            self._attempted.add(key)

            local_path = self._locate(key)
            if not local_path:
                log.info("Could not resolve external module %s", key)
                continue
            directory = Path(local_path).expanduser().resolve()
            if not directory.is_dir():
                log.error("Resolved path for %s is not a directory: %s", key, directory)
                continue

            node = self.registry.add(PathNode(full_path=str(directory), traverse_key=key))
            try:
                self._walker.walk(node, extract_module_dirs=not is_submodule_key(key))
            except WalkError as exc:
                raise PipelineError(Phase.WALK, str(exc)) from exc
            added.append(key)
        return added

    def _locate(self, key: str) -> str:
        resolution = self.resolver.resolve(key)
        if resolution.fetch_source:
            if self.cache is None:
                self.logger.warning(
                    "Module %s maps to fetch source %s but no cache directory is set",
                    key,
                    resolution.fetch_source,
                )
                return ""
            return self.cache.fetch(key, resolution.fetch_source)
        if resolution.local_path:
            return resolution.local_path
        if self.cache is not None:
            return self.cache.download(key)
        return ""


def run_pipeline(
    config: SketchConfig, output: Path | str, *, sketcher: Optional[Sketcher] = None
) -> SketchResult:
    """Run a full sketch for `config` and write the chart to `output`."""
    sketcher = sketcher or Sketcher.from_config(config)
    result = sketcher.run(config.root)
    sketcher.render(result, output, config.chart)
    return result


__all__ = [
    "EXIT_CODES",
    "EXIT_UNRESOLVED_STRICT",
    "Phase",
    "PipelineError",
    "SketchResult",
    "Sketcher",
    "run_pipeline",
]
