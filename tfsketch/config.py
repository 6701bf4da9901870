"""Configuration loading for tfsketch (.tfsketch.yml)."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from .cache import DEFAULT_FETCH_TIMEOUT
from .extractor import DEFAULT_DISPLAY_ATTRIBUTES
from .walker import DEFAULT_IGNORE_DIRS

CONFIG_FILENAME = ".tfsketch.yml"
DEFAULT_MAX_ITERATIONS = 10


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


@dataclass
class ChartOptions:
    """Rendering toggles for the diagram."""

    only_root: bool = False
    include_filenames: bool = False
    minify: bool = False
    module_dirs: bool = False


@dataclass
class SketchConfig:
    """Effective settings for one run, from .tfsketch.yml and CLI flags."""

    root: Path
    display_attributes: List[str] = field(default_factory=lambda: list(DEFAULT_DISPLAY_ATTRIBUTES))
    type_regexp: Optional[str] = None
    name_regexp: Optional[str] = None
    include_path: Optional[str] = None
    exclude_path: Optional[str] = None
    ignore_dirs: str = DEFAULT_IGNORE_DIRS
    overrides: Optional[Path] = None
    cache_dir: Optional[Path] = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    strict: bool = False
    chart: ChartOptions = field(default_factory=ChartOptions)

    def with_overrides(self, values: Mapping[str, Any]) -> "SketchConfig":
        """Return a copy where every non-None value in `values` wins."""
        known = {item.name for item in fields(self)}
        chart_known = {item.name for item in fields(ChartOptions)}
        top: Dict[str, Any] = {}
        chart: Dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if key in chart_known:
                chart[key] = value
            elif key in known:
                top[key] = value
        updated = replace(self, **top)
        if chart:
            updated.chart = replace(self.chart, **chart)
        return updated


def load_config(root: Path) -> SketchConfig:
    """Load `.tfsketch.yml` from the scanned directory, if present."""
    root = root.expanduser().resolve()
    config_file = root / CONFIG_FILENAME
    if not config_file.exists():
        return SketchConfig(root=root)

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    config = SketchConfig(root=root)
    display = _as_str_list(data.get("display_attributes"))
    if display:
        config.display_attributes = display
    config.type_regexp = _as_str(data.get("type_regexp"))
    config.name_regexp = _as_str(data.get("name_regexp"))
    config.include_path = _as_str(data.get("include_path"))
    config.exclude_path = _as_str(data.get("exclude_path"))
    config.ignore_dirs = _as_str(data.get("ignore_dirs")) or DEFAULT_IGNORE_DIRS

    overrides = _as_str(data.get("overrides"))
    config.overrides = (root / overrides).resolve() if overrides else None
    cache_dir = _as_str(data.get("cache_dir"))
    config.cache_dir = (root / cache_dir).resolve() if cache_dir else None

    max_iterations = _as_int(data.get("max_iterations"))
    if max_iterations is not None:
        if max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        config.max_iterations = max_iterations
    fetch_timeout = _as_float(data.get("fetch_timeout"))
    if fetch_timeout is not None:
        config.fetch_timeout = fetch_timeout
    config.strict = _as_bool(data.get("strict")) or False

    chart_data = _as_dict(data.get("chart"))
    if chart_data:
        config.chart = ChartOptions(
            only_root=_as_bool(chart_data.get("only_root")) or False,
            include_filenames=_as_bool(chart_data.get("include_filenames")) or False,
            minify=_as_bool(chart_data.get("minify")) or False,
            module_dirs=_as_bool(chart_data.get("module_dirs")) or False,
        )
    return config


def _read_config(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read {path.name}: {exc}") from exc
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded if loaded is not None else {}


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float, bool)) else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float, bool))]
    return []


__all__ = [
    "CONFIG_FILENAME",
    "ChartOptions",
    "ConfigError",
    "DEFAULT_MAX_ITERATIONS",
    "SketchConfig",
    "load_config",
]
