from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import Filter, FilterSchema, UserFilter


class FilterRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, filter_id: int) -> Filter | None:
        return await self._session.get(Filter, filter_id)

    async def get_by_key(self, canonical_key: str) -> Filter | None:
        stmt = select(Filter).where(Filter.canonical_key == canonical_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, schema: FilterSchema) -> Filter:
        """Return the stored filter with the same canonical key, creating it if absent."""
        canonical_key = schema.canonical_key()
        existing = await self.get_by_key(canonical_key)
        if existing is not None:
            return existing

        row = Filter(
            canonical_key=canonical_key,
            gear_name=schema.name,
            min_rarity=schema.min_rarity,
            gear_types=sorted(t.value for t in schema.types),
            gear_brands=sorted(schema.brands),
            gear_abilities=sorted(schema.abilities),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def user_has_filter(self, user_id: int, filter_id: int) -> bool:
        stmt = select(UserFilter.id).where(
            UserFilter.user_id == user_id,
            UserFilter.filter_id == filter_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def add_to_user(self, user_id: int, filter_id: int) -> bool:
        if await self.user_has_filter(user_id, filter_id):
            return False
        self._session.add(UserFilter(user_id=user_id, filter_id=filter_id))
        await self._session.flush()
        return True

    async def remove_from_user(self, user_id: int, filter_id: int) -> bool:
        stmt = delete(UserFilter).where(
            UserFilter.user_id == user_id,
            UserFilter.filter_id == filter_id,
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def list_for_user(self, user_id: int) -> list[Filter]:
        stmt = (
            select(Filter)
            .join(UserFilter, UserFilter.filter_id == Filter.id)
            .where(UserFilter.user_id == user_id)
            .order_by(UserFilter.last_modified.desc(), Filter.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())
