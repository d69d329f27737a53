"""Shared test fixtures."""

from __future__ import annotations

import pytest

from factories import create_db
from ledgersync.adapters.db.facade import DB


@pytest.fixture
def db() -> DB:
    """Fresh in-memory database with all tables."""
    return create_db()
