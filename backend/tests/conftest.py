"""
Shared fixtures.

Every database test gets its own sqlite file under tmp_path. The engine
is created inside the test's event loop (asyncio.run) and uses NullPool,
so no connection outlives the loop that opened it.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fitsync.db.session import init_db
from fitsync.features.strava import TokenCipher


class FakeClock:
    """Manually advanced clock, usable wherever a time.time-like callable is expected."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fernet_keys():
    return {1: Fernet.generate_key(), 2: Fernet.generate_key()}


@pytest.fixture
def cipher(fernet_keys):
    return TokenCipher({1: fernet_keys[1]})


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'fitsync.db'}"


@pytest.fixture
def database(db_url):
    """
    Factory for a migrated database.

    Usage:
        async with database() as session_factory:
            async with session_factory() as db:
                ...
    """

    @asynccontextmanager
    async def _open():
        engine = create_async_engine(db_url, poolclass=NullPool)
        await init_db(engine)
        try:
            yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open


@pytest.fixture
def make_activity():
    """Build a Strava activity summary as returned by /athlete/activities."""
    base = datetime(2024, 1, 1, 6, 0, tzinfo=timezone.utc)

    def _make(activity_id: int, **overrides) -> dict:
        start = base + timedelta(hours=activity_id)
        record = {
            "id": activity_id,
            "name": f"Morning Run {activity_id}",
            "type": "Run",
            "sport_type": "Run",
            "start_date": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "start_date_local": (start + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "timezone": "(GMT+01:00) Europe/Berlin",
            "distance": 10000.0,
            "moving_time": 3000,
            "elapsed_time": 3100,
            "total_elevation_gain": 120.0,
        }
        record.update(overrides)
        return record

    return _make
