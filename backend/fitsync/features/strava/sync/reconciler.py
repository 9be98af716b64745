"""
Orphan reconciliation.

After a COMPLETED run every activity still on Strava carries the run's
id in the activity cache. Entries with another run id (and not seen
within the grace window) were deleted upstream: their sessions and
cache entries are removed.

Only safe after a full completion. A paused run has not observed the
whole remote set, so "unseen" does not mean "deleted".
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.features.sessions import SessionRepository
from fitsync.shared.constants import ActivitySource
from ..repository import ActivityCacheRepository

logger = logging.getLogger(__name__)

# Keep IN (...) lists bounded
DELETE_CHUNK_SIZE = 500


@dataclass
class ReconcileResult:
    removed: int = 0
    source_ids: list[str] = field(default_factory=list)


class OrphanReconciler:
    """
    Removes sessions whose Strava activity disappeared.

    Usage:
        result = await OrphanReconciler(db).reconcile(user_id, run_id)
    """

    def __init__(
        self,
        db: AsyncSession,
        grace_seconds: int = 3600,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.grace_seconds = grace_seconds
        self.now = now
        self.cache = ActivityCacheRepository(db)
        self.sessions = SessionRepository(db)

    async def reconcile(
        self,
        user_id: str,
        run_id: str,
        *,
        since: Optional[datetime] = None,
    ) -> ReconcileResult:
        """
        Delete orphaned sessions for a completed run.

        Args:
            user_id: Owner
            run_id: The run that just completed
            since: For incremental runs, the run's lower time bound
                (older activities were never listed, so never orphans)

        Returns:
            ReconcileResult with the number of sessions removed
        """
        seen_before = self.now() - timedelta(seconds=self.grace_seconds)
        source = ActivitySource.STRAVA.value

        orphans = await self.cache.find_orphans(
            user_id, run_id, seen_before, since=since, source=source
        )
        if not orphans:
            return ReconcileResult()

        removed = 0
        for start in range(0, len(orphans), DELETE_CHUNK_SIZE):
            chunk = orphans[start:start + DELETE_CHUNK_SIZE]
            removed += await self.sessions.delete_by_source_ids(user_id, source, chunk)
            await self.cache.delete_entries(user_id, chunk, source=source)
        await self.db.commit()

        logger.info(
            f"Reconciled user {user_id} run {run_id}: "
            f"{len(orphans)} orphaned activities, {removed} sessions removed"
        )
        return ReconcileResult(removed=removed, source_ids=orphans)
