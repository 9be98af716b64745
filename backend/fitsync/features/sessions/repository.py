"""
Session repository.

Data access layer for TrainingSession. The only write path for imported
sessions is upsert(), keyed on (user_id, source, source_id) so that
repeated or concurrent writes of the same activity converge on one row.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fitsync.shared.repository import BaseRepository
from .models import TrainingSession


class UpsertOutcome(str, Enum):
    """What an upsert did to the stored row."""
    IMPORTED = "imported"
    UPDATED = "updated"
    DUPLICATE = "duplicate"


# Columns never overwritten on conflict
_IMMUTABLE_COLUMNS = {"id", "user_id", "source", "source_id", "created_at"}


class SessionRepository(BaseRepository[TrainingSession]):
    """Repository for training sessions."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, TrainingSession)

    async def get_version(
        self,
        user_id: str,
        source: str,
        source_id: str
    ) -> tuple[bool, str | None]:
        """
        Look up the stored version of a session.

        Returns:
            (exists, version)
        """
        result = await self.db.execute(
            select(TrainingSession.version).where(
                TrainingSession.user_id == user_id,
                TrainingSession.source == source,
                TrainingSession.source_id == source_id,
            )
        )
        row = result.first()
        if row is None:
            return False, None
        return True, row[0]

    async def upsert(self, user_id: str, values: dict[str, Any]) -> UpsertOutcome:
        """
        Insert or update a session by its dedup key.

        An existing row with the same version is left untouched and
        reported as a duplicate.

        Args:
            user_id: Owner
            values: Column values; must include source and source_id

        Returns:
            UpsertOutcome
        """
        exists, stored_version = await self.get_version(
            user_id, values["source"], values["source_id"]
        )
        if exists and stored_version == values.get("version"):
            return UpsertOutcome.DUPLICATE

        now = datetime.utcnow()
        row = {**values, "user_id": user_id, "updated_at": now}
        row.setdefault("created_at", now)

        stmt = self._dialect_insert().values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "source", "source_id"],
            set_={
                key: getattr(stmt.excluded, key)
                for key in row
                if key not in _IMMUTABLE_COLUMNS
            },
        )
        await self.db.execute(stmt)
        return UpsertOutcome.UPDATED if exists else UpsertOutcome.IMPORTED

    async def delete_by_source_ids(
        self,
        user_id: str,
        source: str,
        source_ids: list[str]
    ) -> int:
        """
        Delete sessions by their provider ids.

        Returns:
            Number of sessions deleted
        """
        if not source_ids:
            return 0
        return await self.delete_where(
            TrainingSession.user_id == user_id,
            TrainingSession.source == source,
            TrainingSession.source_id.in_(source_ids),
        )

    async def get_user_sessions(self, user_id: str, source: str | None = None) -> list[TrainingSession]:
        """Get a user's sessions ordered by UTC start (oldest first)."""
        query = (
            select(TrainingSession)
            .where(TrainingSession.user_id == user_id)
            .order_by(TrainingSession.utc_date)
        )
        if source:
            query = query.where(TrainingSession.source == source)
        result = await self.db.execute(query)
        return list(result.scalars().all())
