"""
Strava repositories.

Data access layer for Strava-related models.
"""

from datetime import datetime

from sqlalchemy import select, update, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.shared.repository import BaseRepository
from .models import StravaCredential, StravaImportRun, StravaActivityCacheEntry


class CredentialRepository(BaseRepository[StravaCredential]):
    """Repository for encrypted Strava OAuth credentials."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, StravaCredential)

    async def get_by_user_id(self, user_id: str, fresh: bool = False) -> StravaCredential | None:
        """
        Get credential for user.

        Args:
            user_id: User's ID
            fresh: Bypass the session identity map (re-read after another
                invocation may have refreshed the row)

        Returns:
            StravaCredential if found, None otherwise
        """
        return await self.get_by(fresh=fresh, user_id=user_id)

    async def get_by_athlete_id(self, athlete_id: str) -> StravaCredential | None:
        """Get credential by Strava athlete ID."""
        return await self.get_by(athlete_id=athlete_id)


class ImportRunRepository(BaseRepository[StravaImportRun]):
    """Repository for per-user import run state."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, StravaImportRun)

    async def get_by_user_id(self, user_id: str, fresh: bool = False) -> StravaImportRun | None:
        """
        Get import run state for user.

        Args:
            user_id: User's ID
            fresh: Bypass the session identity map

        Returns:
            StravaImportRun if found, None otherwise
        """
        return await self.get_by(fresh=fresh, user_id=user_id)

    async def ensure_row(self, user_id: str) -> None:
        """Create the user's run row if missing (safe under concurrency)."""
        stmt = self._dialect_insert().values(
            user_id=user_id,
            status="NOT_STARTED",
            total_imported=0,
            total_duplicates=0,
            total_updated=0,
            total_failed=0,
            total_removed=0,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        await self.db.execute(stmt.on_conflict_do_nothing(index_elements=["user_id"]))

    async def claim(
        self,
        user_id: str,
        run_id: str,
        stale_before: datetime,
        expected_run_id: str | None = None,
        started_at: datetime | None = None,
    ) -> bool:
        """
        Atomically mark the user's run IN_PROGRESS.

        Succeeds only if no live run holds the row: status is not
        IN_PROGRESS, or its heartbeat is older than stale_before.
        When resuming, expected_run_id must match the stored run.

        Returns:
            True if this caller now owns the run
        """
        now = datetime.utcnow()
        conditions = [
            StravaImportRun.user_id == user_id,
            or_(
                StravaImportRun.status != "IN_PROGRESS",
                StravaImportRun.heartbeat_at.is_(None),
                StravaImportRun.heartbeat_at < stale_before,
            ),
        ]
        if expected_run_id is not None:
            conditions.append(StravaImportRun.run_id == expected_run_id)

        values = {
            "run_id": run_id,
            "status": "IN_PROGRESS",
            "heartbeat_at": now,
            "updated_at": now,
        }
        if started_at is not None:
            values["started_at"] = started_at

        result = await self.db.execute(
            update(StravaImportRun)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_state(self, user_id: str, **values) -> None:
        """Write run columns directly (no ORM state involved)."""
        values.setdefault("updated_at", datetime.utcnow())
        await self.db.execute(
            update(StravaImportRun)
            .where(StravaImportRun.user_id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def add_totals(
        self,
        user_id: str,
        imported: int = 0,
        duplicates: int = 0,
        updated: int = 0,
        failed: int = 0,
        removed: int = 0,
    ) -> None:
        """Increment lifetime statistics atomically."""
        await self.update_state(
            user_id,
            total_imported=StravaImportRun.total_imported + imported,
            total_duplicates=StravaImportRun.total_duplicates + duplicates,
            total_updated=StravaImportRun.total_updated + updated,
            total_failed=StravaImportRun.total_failed + failed,
            total_removed=StravaImportRun.total_removed + removed,
        )


class ActivityCacheRepository(BaseRepository[StravaActivityCacheEntry]):
    """Repository for the activity cache used in orphan detection."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, StravaActivityCacheEntry)

    async def mark_seen(
        self,
        user_id: str,
        source_id: str,
        run_id: str,
        version: str | None = None,
        start_at_utc: datetime | None = None,
        seen_at: datetime | None = None,
        source: str = "strava",
    ) -> None:
        """Record that an activity was observed by run_id."""
        seen_at = seen_at or datetime.utcnow()
        stmt = self._dialect_insert().values(
            user_id=user_id,
            source=source,
            source_id=source_id,
            version=version,
            start_at_utc=start_at_utc,
            last_seen_run_id=run_id,
            last_seen_at=seen_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "source", "source_id"],
            set_={
                "version": stmt.excluded.version,
                "start_at_utc": stmt.excluded.start_at_utc,
                "last_seen_run_id": stmt.excluded.last_seen_run_id,
                "last_seen_at": stmt.excluded.last_seen_at,
            },
        )
        await self.db.execute(stmt)

    async def touch_seen(
        self,
        user_id: str,
        source_id: str,
        run_id: str,
        seen_at: datetime | None = None,
        source: str = "strava",
    ) -> None:
        """
        Record that run_id listed an activity it could not import.

        Stored version and start time are left as they are.
        """
        seen_at = seen_at or datetime.utcnow()
        stmt = self._dialect_insert().values(
            user_id=user_id,
            source=source,
            source_id=source_id,
            last_seen_run_id=run_id,
            last_seen_at=seen_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "source", "source_id"],
            set_={
                "last_seen_run_id": stmt.excluded.last_seen_run_id,
                "last_seen_at": stmt.excluded.last_seen_at,
            },
        )
        await self.db.execute(stmt)

    async def find_orphans(
        self,
        user_id: str,
        run_id: str,
        seen_before: datetime,
        since: datetime | None = None,
        source: str = "strava",
    ) -> list[str]:
        """
        Source ids not observed by run_id and not seen since seen_before.

        Args:
            since: Only consider activities starting after this
                time (incremental runs never see older activities)
        """
        query = select(StravaActivityCacheEntry.source_id).where(
            StravaActivityCacheEntry.user_id == user_id,
            StravaActivityCacheEntry.source == source,
            StravaActivityCacheEntry.last_seen_run_id != run_id,
            StravaActivityCacheEntry.last_seen_at < seen_before,
        )
        if since is not None:
            query = query.where(StravaActivityCacheEntry.start_at_utc > since)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def delete_entries(
        self,
        user_id: str,
        source_ids: list[str],
        source: str = "strava",
    ) -> int:
        """Remove cache entries for the given source ids."""
        if not source_ids:
            return 0
        return await self.delete_where(
            StravaActivityCacheEntry.user_id == user_id,
            StravaActivityCacheEntry.source == source,
            StravaActivityCacheEntry.source_id.in_(source_ids),
        )

    async def newest_start(self, user_id: str, run_id: str) -> datetime | None:
        """Latest activity start observed by run_id."""
        result = await self.db.execute(
            select(func.max(StravaActivityCacheEntry.start_at_utc)).where(
                StravaActivityCacheEntry.user_id == user_id,
                StravaActivityCacheEntry.last_seen_run_id == run_id,
            )
        )
        return result.scalar()
