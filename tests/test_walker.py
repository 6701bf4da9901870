"""Tests for the directory walker."""

from __future__ import annotations

from pathlib import Path

import pytest

from tests._fixtures.tree_builder import TreeBuilder
from tfsketch.models import PathNode
from tfsketch.registry import Registry
from tfsketch.walker import (
    TreeWalker,
    WalkError,
    WalkerSettings,
    derive_module_key,
    is_submodule_key,
)

RESOURCE = 'resource "null_resource" "this" {}\n'


def _walk(root: Path, key: str = ".", *, extract: bool = False, settings: WalkerSettings | None = None):
    registry = Registry()
    node = registry.add(PathNode(full_path=str(root), traverse_key=key))
    new_keys = TreeWalker(registry, settings).walk(node, extract_module_dirs=extract)
    return registry, node, new_keys


def test_children_are_directories_with_tf_files(tree_builder: TreeBuilder) -> None:
    tree_builder.write(
        {
            "main.tf": RESOURCE,
            "env/dev/main.tf": RESOURCE,
            "docs/readme.md": "# docs",
            "modules/net/main.tf": RESOURCE,
            "app/main.tf": RESOURCE,
        }
    )

    _, node, new_keys = _walk(tree_builder.path())

    assert new_keys == []
    assert node.walked is True
    assert sorted(node.children) == ["app", "env/dev", "modules/net"]
    assert node.child_module_dirs == {"modules/net"}
    child = node.children["env/dev"]
    assert child.full_path == str(tree_builder.path("env/dev"))
    assert child.traverse_key == "."
    assert child.relative_path == "env/dev"


def test_ignored_directories_are_not_walked(tree_builder: TreeBuilder) -> None:
    tree_builder.write(
        {
            "main.tf": RESOURCE,
            "examples/basic/main.tf": RESOURCE,
            "tests/unit/main.tf": RESOURCE,
            ".terraform/modules/x/main.tf": RESOURCE,
            "kept/main.tf": RESOURCE,
        }
    )

    _, node, _ = _walk(tree_builder.path())

    assert list(node.children) == ["kept"]


def test_include_and_exclude_filters(tree_builder: TreeBuilder) -> None:
    tree_builder.write(
        {
            "prod/main.tf": RESOURCE,
            "prod/legacy/main.tf": RESOURCE,
            "stage/main.tf": RESOURCE,
        }
    )
    settings = WalkerSettings.build(include_path="^prod", exclude_path="legacy")

    _, node, _ = _walk(tree_builder.path(), settings=settings)

    assert list(node.children) == ["prod"]


def test_extract_mode_registers_module_containers(tree_builder: TreeBuilder) -> None:
    external = tree_builder.external("vendor/net")
    tree_builder.write(
        {
            "main.tf": RESOURCE,
            "modules/subnet/main.tf": RESOURCE,
            "modules/subnet/nested/main.tf": RESOURCE,
            "modules/route/main.tf": RESOURCE,
        },
        under=external,
    )

    registry, node, new_keys = _walk(external, "acme/net/aws@1.0.0", extract=True)

    assert new_keys == [
        "acme/net/aws//modules/route@1.0.0",
        "acme/net/aws//modules/subnet@1.0.0",
    ]
    assert node.children == {}
    container = registry.get("acme/net/aws//modules/subnet@1.0.0")
    assert container is not None
    assert container.full_path == str(external / "modules" / "subnet")
    assert container.walked is True
    assert list(container.children) == ["nested"]


def test_walk_root_named_modules_extracts_its_subdirectories(tree_builder: TreeBuilder) -> None:
    external = tree_builder.external("repo")
    tree_builder.write({"modules/vpc/main.tf": RESOURCE}, under=external)

    registry, node, new_keys = _walk(external / "modules", "acme/mods@1.0", extract=True)

    assert new_keys == ["acme/mods//vpc@1.0"]
    assert node.children == {}
    container = registry.get("acme/mods//vpc@1.0")
    assert container is not None
    assert container.full_path == str(external / "modules" / "vpc")


def test_existing_container_keys_are_kept(tree_builder: TreeBuilder) -> None:
    external = tree_builder.external("vendor/net")
    tree_builder.write({"modules/subnet/main.tf": RESOURCE}, under=external)
    registry = Registry()
    seeded = registry.add(
        PathNode(full_path="/elsewhere", traverse_key="acme/net/aws//modules/subnet@1.0.0")
    )
    node = registry.add(PathNode(full_path=str(external), traverse_key="acme/net/aws@1.0.0"))

    new_keys = TreeWalker(registry).walk(node, extract_module_dirs=True)

    assert new_keys == []
    assert registry.get("acme/net/aws//modules/subnet@1.0.0") is seeded


def test_missing_directory_raises(tmp_path: Path) -> None:
    with pytest.raises(WalkError):
        _walk(tmp_path / "missing")


@pytest.mark.parametrize(
    ("parent", "rel", "expected"),
    [
        ("acme/net/aws@1.0.0", "modules/subnet", "acme/net/aws//modules/subnet@1.0.0"),
        ("acme/net/aws@", "modules/subnet", "acme/net/aws//modules/subnet@"),
        ("git::https://host/x.git", "modules/a", "git::https://host/x.git//modules/a"),
    ],
)
def test_derive_module_key(parent: str, rel: str, expected: str) -> None:
    assert derive_module_key(parent, rel) == expected


def test_is_submodule_key() -> None:
    assert is_submodule_key("acme/net/aws//modules/subnet@1.0.0") is True
    assert is_submodule_key("acme/net/aws@1.0.0") is False
