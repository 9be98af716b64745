"""
Base repository with common CRUD operations.

Provides generic database operations for all feature repositories.
Uses SQLAlchemy async session for non-blocking database access.

Usage:
    class CredentialRepository(BaseRepository[StravaCredential]):
        def __init__(self, db: AsyncSession):
            super().__init__(db, StravaCredential)

        async def get_by_user_id(self, user_id: str) -> StravaCredential | None:
            return await self.get_by(user_id=user_id)
"""

from typing import TypeVar, Generic, Type
from sqlalchemy import select, delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")


class BaseRepository(Generic[T]):
    """
    Base repository for database operations.

    Provides common CRUD methods that can be inherited by feature repositories.
    All methods are async for use with AsyncSession.
    """

    def __init__(self, db: AsyncSession, model: Type[T]):
        """
        Initialize repository.

        Args:
            db: Async database session
            model: SQLAlchemy model class
        """
        self.db = db
        self.model = model

    def _dialect_insert(self):
        """INSERT construct supporting on_conflict_* for the bound dialect."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(self.model)
        if dialect == "sqlite":
            return sqlite_insert(self.model)
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")

    def _filtered(self, query, **kwargs):
        for key, value in kwargs.items():
            query = query.where(getattr(self.model, key) == value)
        return query

    async def get_by(self, fresh: bool = False, **kwargs) -> T | None:
        """
        Get single entity by arbitrary field values.

        Args:
            fresh: Overwrite identity-map state with the row as stored now.
                Needed when another transaction may have changed the row
                since this session last loaded it.
            **kwargs: Field name-value pairs to filter by

        Returns:
            First matching entity or None
        """
        query = self._filtered(select(self.model), **kwargs)
        if fresh:
            query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_all(self, **kwargs) -> list[T]:
        """
        Get all entities matching criteria.

        Args:
            **kwargs: Field name-value pairs to filter by

        Returns:
            List of matching entities
        """
        result = await self.db.execute(self._filtered(select(self.model), **kwargs))
        return list(result.scalars().all())

    async def create(self, **kwargs) -> T:
        """
        Create new entity.

        Args:
            **kwargs: Field values for new entity

        Returns:
            Created entity with generated ID
        """
        entity = self.model(**kwargs)
        self.db.add(entity)
        await self.db.flush()
        return entity

    async def update(self, entity: T, **kwargs) -> T:
        """
        Update entity fields.

        Args:
            entity: Entity to update
            **kwargs: Field values to update

        Returns:
            Updated entity
        """
        for key, value in kwargs.items():
            setattr(entity, key, value)
        await self.db.flush()
        return entity

    async def delete_where(self, *conditions) -> int:
        """
        Bulk delete rows matching SQL conditions.

        Returns:
            Number of rows deleted
        """
        result = await self.db.execute(delete(self.model).where(*conditions))
        await self.db.flush()
        return result.rowcount or 0

    async def count(self, **kwargs) -> int:
        """
        Count entities matching criteria.

        Args:
            **kwargs: Field name-value pairs to filter by

        Returns:
            Number of matching entities
        """
        query = self._filtered(select(func.count()).select_from(self.model), **kwargs)
        result = await self.db.execute(query)
        return result.scalar() or 0
