"""
Shared pytest fixtures for all tests.

Database access is replaced by the recording fakes in tests.helpers; no live
PostgreSQL is needed.
"""

import pytest

from plugin_sql.migrations.storage import create_storage
from tests.helpers.fake_database import FakeConnection, FakeEngine, FakeLock


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_lock():
    return FakeLock()


@pytest.fixture
def storage():
    """In-memory (tracker, journal, snapshots)."""
    return create_storage(use_postgres=False)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Tests start without migration or isolation overrides."""
    for var in (
        "ALLOW_DESTRUCTIVE_MIGRATIONS",
        "ENVIRONMENT",
        "ENABLE_DATA_ISOLATION",
        "RLS_SERVER_ID",
        "DATABASE_URL",
        "POSTGRES_URL",
    ):
        monkeypatch.delenv(var, raising=False)

