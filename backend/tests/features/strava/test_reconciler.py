"""
Tests for OrphanReconciler.
"""

import asyncio
from datetime import datetime, timedelta

from fitsync.features.sessions import SessionRepository
from fitsync.features.strava import ActivityCacheRepository, map_activity
from fitsync.features.strava.sync import OrphanReconciler

NOW = datetime(2024, 6, 1, 12, 0)


async def _seed(db, make_activity, activity_id, run_id, seen_at):
    mapped = map_activity(make_activity(activity_id))
    await SessionRepository(db).upsert("user-1", mapped.as_row())
    await ActivityCacheRepository(db).mark_seen(
        "user-1",
        mapped.source_id,
        run_id,
        version=mapped.version,
        start_at_utc=mapped.utc_date,
        seen_at=seen_at,
    )


class TestOrphanReconciler:
    """Only entries unseen by the completed run, outside the grace window, go."""

    def test_removes_unseen_activities(self, database, make_activity):
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    old = NOW - timedelta(hours=2)
                    await _seed(db, make_activity, 1, "run-2", NOW)
                    await _seed(db, make_activity, 2, "run-1", old)
                    await db.commit()

                    result = await OrphanReconciler(db, grace_seconds=3600, now=lambda: NOW).reconcile(
                        "user-1", "run-2"
                    )
                    remaining = [s.source_id for s in await SessionRepository(db).get_user_sessions("user-1")]
                    cache = await ActivityCacheRepository(db).count(user_id="user-1")
                    return result, remaining, cache

        result, remaining, cache = asyncio.run(scenario())
        assert result.removed == 1
        assert result.source_ids == ["2"]
        assert remaining == ["1"]
        assert cache == 1

    def test_grace_window_protects_recent(self, database, make_activity):
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    await _seed(db, make_activity, 1, "run-1", NOW - timedelta(minutes=10))
                    await db.commit()
                    return await OrphanReconciler(db, grace_seconds=3600, now=lambda: NOW).reconcile(
                        "user-1", "run-2"
                    )

        assert asyncio.run(scenario()).removed == 0

    def test_since_limits_scope(self, database, make_activity):
        """Activities older than an incremental run's lower bound are never orphans."""
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    old = NOW - timedelta(hours=2)
                    # make_activity(n) starts n hours after 2024-01-01T06:00Z
                    await _seed(db, make_activity, 1, "run-1", old)
                    await _seed(db, make_activity, 5, "run-1", old)
                    await db.commit()

                    since = datetime(2024, 1, 1, 8, 0)
                    return await OrphanReconciler(db, grace_seconds=0, now=lambda: NOW).reconcile(
                        "user-1", "run-2", since=since
                    )

        result = asyncio.run(scenario())
        assert result.source_ids == ["5"]

    def test_touched_entry_survives(self, database, make_activity):
        """An activity the run listed but could not import is still upstream."""
        async def scenario():
            async with database() as session_factory:
                async with session_factory() as db:
                    old = NOW - timedelta(hours=2)
                    await _seed(db, make_activity, 1, "run-1", old)
                    cache = ActivityCacheRepository(db)
                    await cache.touch_seen("user-1", "1", "run-2", seen_at=NOW)
                    await db.commit()

                    result = await OrphanReconciler(db, grace_seconds=0, now=lambda: NOW).reconcile(
                        "user-1", "run-2"
                    )
                    entry = await cache.get_by(user_id="user-1", source_id="1")
                    return result, entry

        result, entry = asyncio.run(scenario())
        assert result.removed == 0
        assert entry.last_seen_run_id == "run-2"
        assert entry.start_at_utc == datetime(2024, 1, 1, 7, 0)
