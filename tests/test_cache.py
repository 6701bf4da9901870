"""Tests for the module cache and its git / registry plumbing."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

from tfsketch.cache import (
    REGISTRY_URL,
    GitSource,
    ModuleCache,
    cache_dir_name,
    parse_fetch_source,
    split_subdir,
)


class FakeGit:
    """Stands in for the git CLI; `clone` creates the target directory."""

    def __init__(self, subdirs: Sequence[str] = (), error: Exception | None = None) -> None:
        self.subdirs = subdirs
        self.error = error
        self.calls: List[Tuple[List[str], Path]] = []

    def __call__(self, command: Sequence[str], *, cwd: Path, timeout: float) -> str:
        self.calls.append((list(command), Path(cwd)))
        if self.error is not None:
            raise self.error
        if command[1] == "clone":
            target = Path(command[3])
            target.mkdir(parents=True)
            for subdir in self.subdirs:
                (target / subdir).mkdir(parents=True, exist_ok=True)
        return ""


class FakeRegistry:
    def __init__(self, header: Optional[str]) -> None:
        self.header = header
        self.urls: List[str] = []

    def __call__(self, url: str, timeout: float) -> Optional[str]:
        self.urls.append(url)
        return self.header


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        (
            "git::https://github.com/acme/mods.git//vpc?ref=v1.0",
            GitSource("https://github.com/acme/mods.git", "v1.0", "vpc"),
        ),
        (
            "https://github.com/acme/mods.git",
            GitSource("https://github.com/acme/mods.git", "", ""),
        ),
        (
            "git::git@github.com:acme/mods.git?ref=main",
            GitSource("git@github.com:acme/mods.git", "main", ""),
        ),
        (
            "git::ssh://git@github.com/acme/mods.git//a/b?ref=v2",
            GitSource("ssh://git@github.com/acme/mods.git", "v2", "a/b"),
        ),
    ],
)
def test_parse_fetch_source(source: str, expected: GitSource) -> None:
    assert parse_fetch_source(source) == expected


def test_split_subdir() -> None:
    assert split_subdir("acme/iam/aws//modules/role") == ("acme/iam/aws", "modules/role")
    assert split_subdir("https://host/repo.git") == ("https://host/repo.git", "")


def test_cache_dir_name() -> None:
    assert cache_dir_name("github.com/acme/mods@1.0") == "github.com__acme__mods@1.0"


def test_fetch_clones_and_checks_out_ref(tmp_path: Path) -> None:
    git = FakeGit()
    cache = ModuleCache(tmp_path / "cache", runner=git)

    path = cache.fetch("acme/net@v1", "git::https://github.com/acme/net.git?ref=v1")

    target = (tmp_path / "cache" / "acme__net@v1").resolve()
    assert path == str(target)
    assert [call[0] for call in git.calls] == [
        ["git", "clone", "https://github.com/acme/net.git", str(target)],
        ["git", "fetch", "--all"],
        ["git", "checkout", "v1"],
    ]
    assert git.calls[1][1] == target
    assert cache.was_downloaded("acme/net@v1") is True


def test_fetch_reuses_existing_clone(tmp_path: Path) -> None:
    (tmp_path / "cache" / "acme__net@v1").mkdir(parents=True)
    git = FakeGit()
    cache = ModuleCache(tmp_path / "cache", runner=git)

    path = cache.fetch("acme/net@v1", "https://github.com/acme/net.git")

    assert path.endswith("acme__net@v1")
    assert git.calls == []


@pytest.mark.parametrize(
    "error",
    [
        subprocess.CalledProcessError(128, ["git", "clone"], stderr="fatal: not found"),
        subprocess.TimeoutExpired(["git", "clone"], 120),
        FileNotFoundError("git"),
    ],
)
def test_fetch_failures_return_empty(tmp_path: Path, error: Exception) -> None:
    cache = ModuleCache(tmp_path / "cache", runner=FakeGit(error=error))

    assert cache.fetch("acme/net@v1", "git::https://github.com/acme/net.git") == ""
    assert cache.was_downloaded("acme/net@v1") is True


def test_fetch_fails_when_cache_entry_is_a_file(tmp_path: Path) -> None:
    cache_root = tmp_path / "cache"
    cache_root.mkdir()
    (cache_root / "acme__net@v1").write_text("oops", encoding="utf-8")

    cache = ModuleCache(cache_root, runner=FakeGit())

    assert cache.fetch("acme/net@v1", "https://github.com/acme/net.git") == ""


def test_download_resolves_through_registry(tmp_path: Path) -> None:
    registry = FakeRegistry("git::https://github.com/terraform-aws-modules/terraform-aws-vpc?ref=v5.0.0")
    git = FakeGit()
    cache = ModuleCache(tmp_path / "cache", runner=git, opener=registry)

    path = cache.download("terraform-aws-modules/vpc/aws@5.0.0")

    assert registry.urls == [f"{REGISTRY_URL}/terraform-aws-modules/vpc/aws/5.0.0/download"]
    assert path.endswith("terraform-aws-modules__vpc__aws@5.0.0")
    assert git.calls[0][0][2] == "https://github.com/terraform-aws-modules/terraform-aws-vpc"
    assert cache.was_downloaded("terraform-aws-modules/vpc/aws@5.0.0") is True


def test_download_keeps_registry_sub_path(tmp_path: Path) -> None:
    registry = FakeRegistry("git::https://github.com/terraform-aws-modules/terraform-aws-iam?ref=v5.0.0")
    cache = ModuleCache(
        tmp_path / "cache", runner=FakeGit(subdirs=["modules/iam-role"]), opener=registry
    )

    path = cache.download("terraform-aws-modules/iam/aws//modules/iam-role@5.0.0")

    assert registry.urls == [f"{REGISTRY_URL}/terraform-aws-modules/iam/aws/5.0.0/download"]
    assert Path(path) == (
        tmp_path / "cache" / "terraform-aws-modules__iam__aws@5.0.0" / "modules" / "iam-role"
    ).resolve()


def test_download_without_version_uses_latest(tmp_path: Path) -> None:
    registry = FakeRegistry(None)
    cache = ModuleCache(tmp_path / "cache", runner=FakeGit(), opener=registry)

    assert cache.download("acme/net/aws@") == ""
    assert registry.urls == [f"{REGISTRY_URL}/acme/net/aws/download"]


@pytest.mark.parametrize("key", ["./local@", "Acme/net/aws@1.0", "acme/net/aws@V1"])
def test_download_skips_keys_that_are_not_registry_modules(tmp_path: Path, key: str) -> None:
    registry = FakeRegistry("git::https://example.com/x.git")
    cache = ModuleCache(tmp_path / "cache", runner=FakeGit(), opener=registry)

    assert cache.download(key) == ""
    assert registry.urls == []
    assert cache.was_downloaded(key) is True


def test_download_rejects_non_git_sources(tmp_path: Path) -> None:
    git = FakeGit()
    cache = ModuleCache(
        tmp_path / "cache", runner=git, opener=FakeRegistry("https://example.com/archive.zip")
    )

    assert cache.download("acme/net/aws@1.0.0") == ""
    assert git.calls == []
