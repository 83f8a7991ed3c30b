"""Shared test fixtures."""

from pathlib import Path

import pytest

from threadline import db
from threadline.bot import security


@pytest.fixture(autouse=True)
def _fresh_module_state():
    """Forget schema and allowlist caches between tests."""
    db._reset()
    security._reset()
    yield
    db._reset()
    security._reset()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"
