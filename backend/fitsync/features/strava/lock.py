"""
Distributed refresh lock.

Lease rows in strava_refresh_locks serialize token refreshes per user
across concurrent invocations (processes, workers, instances). Strava
refresh tokens are single-use after rotation, so two concurrent refreshes
would race and one of them would fail with a superseded token.

Every operation runs in its own short transaction on its own session and
commits immediately, so the lease is visible to other invocations while
the caller's main transaction is still open.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fitsync.config import settings
from .models import StravaRefreshLock

logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    """Outcome of a lock attempt."""
    acquired: bool
    lock_id: Optional[str] = None
    retry_after_seconds: Optional[float] = None
    reason: Optional[str] = None


class RefreshLock:
    """
    Lease-based mutual exclusion keyed by user id.

    Usage:
        lock = RefreshLock(AsyncSessionLocal)
        result = await lock.acquire(user_id)
        if result.acquired:
            try:
                ...
            finally:
                await lock.release(result.lock_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.lock_lease_seconds
        self.clock = clock

    async def acquire(self, user_id: str) -> LockResult:
        """
        Try to take the user's lease without waiting.

        Returns:
            LockResult(acquired=True, lock_id) or
            LockResult(acquired=False, retry_after_seconds, reason)
        """
        lock_id = str(uuid.uuid4())

        async with self.session_factory() as db:
            # Holder may release between our insert and our read; try twice
            for _ in range(2):
                now = self.clock()
                expires_at = now + self.lease_seconds

                db.add(StravaRefreshLock(
                    user_id=user_id,
                    lock_id=lock_id,
                    expires_at=expires_at,
                    acquired_at=datetime.utcnow(),
                ))
                try:
                    await db.commit()
                    logger.debug(f"Refresh lock acquired for user {user_id}")
                    return LockResult(True, lock_id=lock_id)
                except IntegrityError:
                    await db.rollback()

                # Take over an expired lease atomically
                result = await db.execute(
                    update(StravaRefreshLock)
                    .where(
                        StravaRefreshLock.user_id == user_id,
                        StravaRefreshLock.expires_at <= now,
                    )
                    .values(lock_id=lock_id, expires_at=expires_at, acquired_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if result.rowcount == 1:
                    logger.warning(f"Took over expired refresh lock for user {user_id}")
                    return LockResult(True, lock_id=lock_id, reason="expired_lease_taken_over")

                result = await db.execute(
                    select(StravaRefreshLock.expires_at).where(
                        StravaRefreshLock.user_id == user_id
                    )
                )
                holder_expires_at = result.scalar_one_or_none()
                await db.commit()
                if holder_expires_at is not None:
                    return LockResult(
                        False,
                        retry_after_seconds=round(max(holder_expires_at - now, 0.1), 3),
                        reason="held_by_another_invocation",
                    )

        return LockResult(False, retry_after_seconds=0.1, reason="contended")

    async def release(self, lock_id: Optional[str]) -> bool:
        """
        Release a lease. Idempotent.

        A no-op when the lease already expired and was taken over, or
        was already released.

        Returns:
            True if this call removed the lease
        """
        if not lock_id:
            return False
        async with self.session_factory() as db:
            result = await db.execute(
                delete(StravaRefreshLock)
                .where(StravaRefreshLock.lock_id == lock_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1
