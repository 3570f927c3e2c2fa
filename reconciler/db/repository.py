"""Base repository class with common CRUD operations."""

from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository providing common CRUD operations for all models.

    Records are addressed by their single-column primary key, whatever the
    column is called (``id`` for transactions and wallets, ``name`` for
    job leases).
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    @property
    def _pk(self):
        return self.model.__mapper__.primary_key[0]

    async def create(self, **kwargs) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            Created model instance
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: Any) -> Optional[ModelType]:
        """
        Get a record by primary key, always reading current column values.

        Args:
            id: Primary key value

        Returns:
            Model instance or None if not found
        """
        result = await self.session.execute(
            select(self.model)
            .where(self._pk == id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Get a record by a specific field value.

        Args:
            field_name: Name of the field to search
            value: Value to search for

        Returns:
            Model instance or None if not found
        """
        field = getattr(self.model, field_name)
        result = await self.session.execute(select(self.model).where(field == value))
        return result.scalar_one_or_none()

    async def get_all(
        self, limit: Optional[int] = None, offset: Optional[int] = None
    ) -> List[ModelType]:
        """
        Get all records with optional pagination.

        Args:
            limit: Maximum number of records to return
            offset: Number of records to skip

        Returns:
            List of model instances
        """
        query = select(self.model)
        if offset is not None:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def filter(self, **filters) -> List[ModelType]:
        """
        Filter records by field values.

        Supports comparison operators using double underscore syntax:
        - field__lt / field__lte / field__gt / field__gte
        - field__ne: not equal
        - field__in: membership in an iterable
        - field (no suffix): equal

        Examples:
            await repo.filter(status="pending")
            await repo.filter(poll_failures__gte=5)
        """
        query = self._apply_filters(select(self.model), filters)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    def _apply_filters(self, query, filters: dict):
        """Apply ``field__op=value`` filters to a select, update or delete."""
        for filter_key, value in filters.items():
            if "__" in filter_key:
                field_name, operator = filter_key.rsplit("__", 1)
            else:
                field_name = filter_key
                operator = "eq"

            field = getattr(self.model, field_name)

            if operator == "ne":
                query = query.where(field != value)
            elif operator == "lt":
                query = query.where(field < value)
            elif operator == "lte":
                query = query.where(field <= value)
            elif operator == "gt":
                query = query.where(field > value)
            elif operator == "gte":
                query = query.where(field >= value)
            elif operator == "in":
                query = query.where(field.in_(list(value)))
            else:
                query = query.where(field == value)

        return query

    async def update(self, id: Any, **kwargs) -> Optional[ModelType]:
        """
        Update a record by primary key.

        Args:
            id: Primary key value
            **kwargs: Fields to update with their new values

        Returns:
            Updated model instance or None if not found
        """
        await self.session.execute(
            update(self.model).where(self._pk == id).values(**kwargs)
        )
        await self.session.flush()
        return await self.get_by_id(id)

    async def delete(self, id: Any) -> bool:
        """
        Delete a record by primary key.

        Returns:
            True if deleted, False if not found
        """
        result = await self.session.execute(delete(self.model).where(self._pk == id))
        await self.session.flush()
        return (result.rowcount or 0) > 0  # type: ignore

    async def count(self, **filters) -> int:
        """
        Count records matching the given filters.

        Accepts the same ``field__op`` syntax as :meth:`filter`.
        """
        query = select(func.count()).select_from(self.model)
        query = self._apply_filters(query, filters)

        result = await self.session.execute(query)
        return result.scalar() or 0

    async def exists(self, **filters) -> bool:
        """Check if any records exist matching the given filters."""
        count = await self.count(**filters)
        return count > 0
