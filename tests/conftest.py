"""
Pytest configuration and shared fixtures for the AWPA metrics store tests
"""
import os
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

# Allow running the tests from a checkout without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from awpa_metrics.sqlite_storage import SQLiteSessionStore
from awpa_metrics.storage_interface import Session, SessionStatus


START_MS = 1_700_000_000_000

# Layout written by the desktop app: version 2 columns, no version stamp
DESKTOP_APP_SCHEMA = (
    """
    CREATE TABLE sessions (
        id TEXT PRIMARY KEY,
        device_id TEXT NOT NULL,
        device_name TEXT,
        webview_url TEXT,
        package_name TEXT,
        target_title TEXT,
        started_at INTEGER NOT NULL,
        ended_at INTEGER,
        status TEXT NOT NULL DEFAULT 'active',
        display_name TEXT,
        tags TEXT,
        metadata TEXT
    )
    """,
    """
    CREATE TABLE metrics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        timestamp INTEGER NOT NULL,
        metric_type TEXT NOT NULL,
        data TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE network_requests (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        url TEXT NOT NULL,
        method TEXT,
        status_code INTEGER,
        request_time INTEGER NOT NULL,
        response_time INTEGER,
        duration_ms REAL,
        size_bytes REAL,
        headers TEXT
    )
    """,
)


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers",
        "slow: marks tests that page through large sessions",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for database and registry files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db_path(temp_dir):
    return os.path.join(temp_dir, "metrics.db")


@pytest_asyncio.fixture
async def store(db_path):
    """An initialized on-disk store"""
    store = SQLiteSessionStore(db_path)
    await store.initialize()
    yield store
    await store.shutdown()


@pytest_asyncio.fixture
async def other_store(temp_dir):
    """A second, empty store for export/import round trips"""
    store = SQLiteSessionStore(os.path.join(temp_dir, "other.db"))
    await store.initialize()
    yield store
    await store.shutdown()


@pytest.fixture
def make_session(store):
    """Factory creating finished sessions directly in the store"""

    async def _make(**overrides) -> Session:
        values = dict(
            device_id="emulator-5554",
            device_name="Pixel 7",
            package_name="com.example.shop",
            target_title="Shop Home",
            started_at=START_MS,
            ended_at=START_MS + 60_000,
            status=SessionStatus.COMPLETED,
        )
        values.update(overrides)
        return await store.create_session(Session(**values))

    return _make
