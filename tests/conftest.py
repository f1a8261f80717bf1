"""Pytest configuration for test discovery and shared fixtures.

This file ensures that `src/` is importable without installing the package.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure src directory is in path for imports
repo_root = Path(__file__).parent.parent
src_path = repo_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


@pytest.fixture
def conf_dir() -> Path:
    """Repository config directory for the embedding index."""
    return repo_root / "conf" / "embedding_index"
