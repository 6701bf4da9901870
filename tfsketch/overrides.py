"""Overrides file loading and remote-to-local resolution for external modules."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Sequence

import yaml

from .logging import get_logger

PATTERN_MARKER = "^"
_PLACEHOLDER = re.compile(r"\{(\d+)\}")
_LIST_KEYS = ("externalModules", "external_modules")


class OverridesError(RuntimeError):
    """Raised when the overrides file cannot be read or is malformed."""


@dataclass(frozen=True)
class OverrideRule:
    """Maps a remote module identifier (literal or `^` regex) to a location."""

    remote: str
    local: str = ""
    cache: str = ""

    @property
    def is_pattern(self) -> bool:
        return self.remote.startswith(PATTERN_MARKER)


@dataclass(frozen=True)
class Resolution:
    """Where a module can be found: a local path or a source to fetch."""

    local_path: str = ""
    fetch_source: str = ""

    def __bool__(self) -> bool:
        return bool(self.local_path or self.fetch_source)


@dataclass
class Overrides:
    """Rules loaded from an overrides file, in file order."""

    rules: List[OverrideRule] = field(default_factory=list)
    source: Optional[Path] = None

    def add(self, remote: str, local: str = "", cache: str = "") -> OverrideRule:
        rule = OverrideRule(remote=remote, local=local, cache=cache)
        self.rules.append(rule)
        return rule

    def __len__(self) -> int:
        return len(self.rules)


def load_overrides(path: Path | str) -> Overrides:
    """Read an overrides YAML file.

    Expected shape::

        externalModules:
          - remote: registry/example/aws@1.0.0
            local: ../vendor/aws
          - remote: ^github.com/acme/(.+)@(.+)$
            cache: git::https://github.com/acme/{1}.git?ref={2}
    """
    file_path = Path(path).expanduser()
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise OverridesError(f"Error reading overrides file {file_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise OverridesError(f"Error parsing overrides file {file_path}: {exc}") from exc

    if data is None:
        return Overrides(source=file_path)
    if not isinstance(data, dict):
        raise OverridesError(f"{file_path.name} must contain a mapping at the root")

    entries = _entries(data)
    base_dir = file_path.resolve().parent
    overrides = Overrides(source=file_path)
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise OverridesError(f"{file_path.name}: entry {index} is not a mapping")
        remote = _as_str(entry.get("remote"))
        if not remote:
            raise OverridesError(f"{file_path.name}: entry {index} has no 'remote'")
        local = _as_str(entry.get("local")) or ""
        cache = _as_str(entry.get("cache")) or ""
        if not local and not cache:
            raise OverridesError(f"{file_path.name}: entry '{remote}' needs 'local' or 'cache'")
        if remote.startswith(PATTERN_MARKER):
            try:
                re.compile(remote)
            except re.error as exc:
                raise OverridesError(f"{file_path.name}: invalid pattern '{remote}': {exc}") from exc
        elif local and not _PLACEHOLDER.search(local):
            local = str((base_dir / Path(local).expanduser()).resolve())
        overrides.add(remote, local, cache)
    return overrides


class OverrideResolver:
    """Finds the local path or fetch source for an external module key.

    Literal rules are matched first by exact key; pattern rules are tried
    afterwards in registration order and the first match wins.
    """

    def __init__(self, rules: Sequence[OverrideRule] = ()) -> None:
        self._literal: Dict[str, OverrideRule] = {}
        self._patterns: List[tuple[Pattern[str], OverrideRule]] = []
        self.logger = get_logger("overrides")
        for rule in rules:
            self.add_rule(rule)

    def add_rule(self, rule: OverrideRule) -> None:
        if rule.is_pattern:
            if any(existing.remote == rule.remote for _, existing in self._patterns):
                return
            self._patterns.append((re.compile(rule.remote), rule))
            return
        self._literal.setdefault(rule.remote, rule)

    def literal_rules(self) -> List[OverrideRule]:
        return list(self._literal.values())

    def resolve(self, key: str) -> Resolution:
        rule = self._literal.get(key)
        if rule is not None:
            return _resolution(rule.cache, rule.local)

        for pattern, rule in self._patterns:
            match = pattern.search(key)
            if match is None:
                continue
            groups = [match.group(0), *match.groups()]
            resolution = _resolution(
                interpolate(rule.cache, groups),
                interpolate(rule.local, groups),
            )
            self.logger.debug(
                "Module %s matches override pattern %s and resolves to %s",
                key,
                rule.remote,
                resolution.fetch_source or resolution.local_path,
            )
            return resolution
        return Resolution()


def interpolate(template: str, groups: Sequence[Optional[str]]) -> str:
    """Replace `{n}` with capture group n; out-of-range placeholders stay as written."""
    if not template:
        return ""

    def _replace(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if index >= len(groups):
            return match.group(0)
        return groups[index] or ""

    return _PLACEHOLDER.sub(_replace, template)


def _resolution(cache: str, local: str) -> Resolution:
    if cache:
        return Resolution(fetch_source=cache)
    return Resolution(local_path=local)


def _entries(data: Dict[str, Any]) -> List[Any]:
    for key in _LIST_KEYS:
        if key in data:
            value = data[key]
            if value is None:
                return []
            if not isinstance(value, list):
                raise OverridesError(f"'{key}' must be a list")
            return value
    return []


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        text = str(value).strip()
        return text or None
    return None


__all__ = [
    "OverrideResolver",
    "OverrideRule",
    "Overrides",
    "OverridesError",
    "Resolution",
    "interpolate",
    "load_overrides",
]
