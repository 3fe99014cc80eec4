from __future__ import annotations

import pytest

from spendwatch.storage import database


@pytest.fixture(autouse=True)
def in_memory_db():
    """Bind every storage helper to a fresh in-memory database."""

    engine = database.configure_database("sqlite://")
    database.init_db()

    yield engine

    engine.dispose()
