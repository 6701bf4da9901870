from __future__ import annotations

from pathlib import Path

import pytest

from tests._fixtures.tree_builder import TreeBuilder


@pytest.fixture
def tree_builder(tmp_path: Path) -> TreeBuilder:
    """Provide a reusable Terraform tree builder rooted at the pytest tmp_path."""
    return TreeBuilder(tmp_path)
