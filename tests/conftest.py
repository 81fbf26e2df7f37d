"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like temp DBs and a controllable clock.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ADMIN_IDS", "111")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("SEND_DELAY_MS", "0")

import pytest


class FakeClock:
    """Epoch-ms clock that only moves when a test says so."""

    def __init__(self, start: int = 1_800_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_broadcasts.db")


@pytest.fixture
def broadcast_db(tmp_db_path):
    """Return a BroadcastDB instance backed by a temp file."""
    from src.data.db import BroadcastDB
    return BroadcastDB(db_path=tmp_db_path)


@pytest.fixture
def user_db(tmp_db_path):
    """Return a TrackedUserDB sharing the broadcast DB file."""
    from src.data.db import TrackedUserDB
    return TrackedUserDB(db_path=tmp_db_path)


@pytest.fixture
def clock():
    return FakeClock()
