"""On-demand download of external modules into a local cache directory."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Set, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qs, urlsplit, urlunsplit
from urllib.request import Request, urlopen

from .logging import get_logger

REGISTRY_URL = "https://registry.terraform.io/v1/modules"
SOURCE_HEADER = "X-Terraform-Get"
DEFAULT_FETCH_TIMEOUT = 120.0

_EXTERNAL_KEY = re.compile(r"^[a-z]+.*$")
_VERSION = re.compile(r"^[a-z0-9.\-_]*$")
_GIT_PREFIX = "git::"

Runner = Callable[..., str]
Opener = Callable[[str, float], Optional[str]]


class FetchError(RuntimeError):
    """Raised when a module cannot be materialized in the cache."""


@dataclass(frozen=True)
class GitSource:
    """Repository URL, ref to check out and optional sub directory."""

    url: str
    ref: str = ""
    subdir: str = ""


def parse_fetch_source(source: str) -> GitSource:
    """Parse `[git::]<url>[//sub/dir][?ref=<ref>]`."""
    text = source[len(_GIT_PREFIX) :] if source.startswith(_GIT_PREFIX) else source
    parts = urlsplit(text)
    ref = parse_qs(parts.query).get("ref", [""])[0]
    path, subdir = split_subdir(parts.path)
    if not parts.scheme and not parts.netloc:
        # scp-like address (git@host:org/repo.git) or a plain path
        base, _, query = text.partition("?")
        ref = parse_qs(query).get("ref", [""])[0]
        url, subdir = split_subdir(base)
        return GitSource(url=url, ref=ref, subdir=subdir)
    url = urlunsplit((parts.scheme, parts.netloc, path, "", ""))
    return GitSource(url=url, ref=ref, subdir=subdir)


def split_subdir(source: str) -> Tuple[str, str]:
    """Split `a/b//c/d` into (`a/b`, `c/d`), ignoring a leading `scheme://`."""
    start = source.find("://")
    offset = start + 3 if start != -1 else 0
    index = source.find("//", offset)
    if index == -1:
        return source, ""
    return source[:index], source[index + 2 :].strip("/")


def cache_dir_name(key: str) -> str:
    return key.replace("/", "__").replace(":", "_")


class ModuleCache:
    """Fetches external modules with git and remembers which keys were tried."""

    def __init__(
        self,
        path: Path | str,
        *,
        runner: Runner | None = None,
        opener: Opener | None = None,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        self.path = Path(path).expanduser().resolve()
        self.timeout = timeout
        self._runner = runner or self._default_runner
        self._opener = opener or self._default_opener
        self._attempted: Set[str] = set()
        self.logger = get_logger("cache")

    def was_downloaded(self, key: str) -> bool:
        return key in self._attempted

    def fetch(self, key: str, fetch_source: str) -> str:
        """Materialize `fetch_source` for `key`; return its local path or ""."""
        self._attempted.add(key)
        try:
            return self._materialize(key, fetch_source)
        except FetchError as exc:
            self.logger.error("Error downloading module %s: %s", key, exc)
            return ""

    def download(self, key: str) -> str:
        """Resolve a registry module key through the public registry and fetch it."""
        self._attempted.add(key)
        if not _EXTERNAL_KEY.match(key):
            self.logger.debug("Skipped downloading module %s as it is not external", key)
            return ""

        source, separator, version = key.rpartition("@")
        if not separator:
            source, version = key, ""
        base_source, subdir = split_subdir(source)
        if not _VERSION.match(version):
            self.logger.debug("Skipped downloading module %s as it has invalid version", key)
            return ""

        url = f"{REGISTRY_URL}/{base_source}/{version}/download" if version else (
            f"{REGISTRY_URL}/{base_source}/download"
        )
        self.logger.debug("Trying to download module %s@%s", base_source, version)
        try:
            header = self._opener(url, self.timeout)
            if not header:
                self.logger.debug("'%s' header not found in response from %s", SOURCE_HEADER, url)
                return ""
            if not header.startswith(_GIT_PREFIX):
                self.logger.error("%s not supported: %s", SOURCE_HEADER, header)
                return ""
            return self._materialize(f"{base_source}@{version}", header, subdir)
        except FetchError as exc:
            self.logger.error("Error downloading module %s: %s", key, exc)
            return ""

    # ------------------------------------------------------------------
    # Internals

    def _materialize(self, key: str, fetch_source: str, extra_subdir: str = "") -> str:
        git = parse_fetch_source(fetch_source)
        if not git.url:
            raise FetchError(f"Fetch source has no repository URL: {fetch_source}")

        target = self.path / cache_dir_name(key)
        if target.exists() and not target.is_dir():
            raise FetchError(f"Cache entry {target} exists and is not a directory")

        if target.exists():
            self.logger.debug("Found cached module directory for %s at %s", key, target)
        else:
            self.logger.debug("Cloning module %s repository %s ref %s", key, git.url, git.ref)
            try:
                self.path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise FetchError(f"Error creating cache directory {self.path}: {exc}") from exc
            self._git(["clone", git.url, str(target)], cwd=self.path)

        if git.ref:
            self._git(["fetch", "--all"], cwd=target)
            self._git(["checkout", git.ref], cwd=target)
            self.logger.info("Changed ref for cached module %s in %s to %s", key, target, git.ref)

        subdir = "/".join(part for part in (git.subdir, extra_subdir) if part)
        module_path = target / subdir if subdir else target
        if not module_path.is_dir():
            raise FetchError(f"Module directory {module_path} not found after fetch")
        return str(module_path)

    def _git(self, args: Iterable[str], *, cwd: Path) -> str:
        command = ["git", *args]
        try:
            return self._runner(command, cwd=cwd, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise FetchError(f"Command '{' '.join(command)}' timed out after {self.timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
            raise FetchError(
                f"Command '{' '.join(command)}' failed in {cwd} with exit code {exc.returncode}: {detail}"
            ) from exc
        except OSError as exc:
            raise FetchError(f"Command '{' '.join(command)}' could not run: {exc}") from exc

    @staticmethod
    def _default_runner(args: Iterable[str], *, cwd: Path, timeout: float) -> str:
        completed = subprocess.run(
            list(args),
            cwd=str(cwd),
            check=True,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
        return completed.stdout

    @staticmethod
    def _default_opener(url: str, timeout: float) -> Optional[str]:
        request = Request(url, method="GET")
        try:
            with urlopen(request, timeout=timeout) as response:  # type: ignore[arg-type]
                return response.headers.get(SOURCE_HEADER)
        except HTTPError as exc:
            raise FetchError(f"Registry request {url} failed with status {exc.code}") from exc
        except (URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise FetchError(f"Registry request {url} failed: {reason}") from exc


__all__ = [
    "DEFAULT_FETCH_TIMEOUT",
    "FetchError",
    "GitSource",
    "ModuleCache",
    "cache_dir_name",
    "parse_fetch_source",
    "split_subdir",
]
