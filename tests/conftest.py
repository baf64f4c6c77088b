"""Pytest configuration and shared fixtures."""

import shutil
from datetime import datetime, timezone

import pytest

from spatial.grid import GridIndex
from territory.config import TerritoryConfig
from territory.ledger import OwnershipLedger
from territory.memory_store import MemorySpatialStore
from territory.seasons import SeasonStore
from territory.sqlite_store import SqliteSpatialStore

# Fixed reference time so expiry arithmetic is deterministic
T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def config():
    """Default configuration on the in-memory backend."""
    return TerritoryConfig(store_backend="memory", _env_file=None)


@pytest.fixture
def grid(config):
    return GridIndex(config.cell_size_degrees)


@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "test_territory.db")


@pytest.fixture
def temp_archive_dir(tmp_path):
    """Create a temporary season archive directory."""
    archive_dir = tmp_path / "archives"
    archive_dir.mkdir()
    yield str(archive_dir)
    shutil.rmtree(archive_dir, ignore_errors=True)


@pytest.fixture
async def memory_store(config):
    store = MemorySpatialStore(in_query_limit=config.in_query_limit)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_store(temp_db_path, config):
    """Create and initialize a SQLite store for testing."""
    store = SqliteSpatialStore(temp_db_path, in_query_limit=config.in_query_limit)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, temp_db_path, config):
    """Run the test against both store backends."""
    if request.param == "memory":
        backend = MemorySpatialStore(in_query_limit=config.in_query_limit)
    else:
        backend = SqliteSpatialStore(temp_db_path, in_query_limit=config.in_query_limit)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def ledger(store, config):
    return OwnershipLedger(store, config)


@pytest.fixture
def season_store(temp_archive_dir):
    return SeasonStore(temp_archive_dir)
