"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# The ``app`` package sits at the project root; make it importable without an
# editable install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """Return an aiosqlite URL pointing at a fresh match cache file."""

    return f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}"
