from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from pydantic import ValidationError
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import (
    Filter,
    FilterOwner,
    FilterSchema,
    Item,
    User,
    UserFilter,
    as_utc,
)

logger = structlog.get_logger(__name__)


def generate_user_code() -> str:
    return str(uuid.uuid4())


def is_valid_user_code(user_code: str) -> bool:
    try:
        uuid.UUID(user_code)
    except (ValueError, TypeError):
        return False
    return True


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: int) -> User | None:
        stmt = select(User).where(User.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_code(self, user_code: str) -> User | None:
        stmt = select(User).where(User.user_code == user_code)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self) -> User:
        user_code = generate_user_code()
        while await self.get_by_code(user_code) is not None:
            user_code = generate_user_code()

        user = User(user_code=user_code)
        self._session.add(user)
        await self._session.flush()
        return user

    async def update_nickname(self, user_id: int, nickname: str) -> User:
        user = await self.get_by_id(user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        user.nickname = nickname
        await self._session.flush()
        return user

    async def get_watermark(self, user_id: int) -> datetime | None:
        stmt = select(User.last_notified_expiration).where(User.id == user_id)
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return as_utc(value) if value is not None else None

    async def advance_watermark(self, user_id: int, watermark: datetime) -> bool:
        """Move the user's watermark forward to ``watermark``.

        The update is conditional on the stored value being unset or strictly
        lower, so the watermark never regresses and re-applying the same
        value is a no-op. Returns whether a row was changed.
        """
        watermark = as_utc(watermark)
        stmt = (
            update(User)
            .where(
                User.id == user_id,
                or_(
                    User.last_notified_expiration.is_(None),
                    User.last_notified_expiration < watermark,
                ),
            )
            .values(last_notified_expiration=watermark)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def find_filter_candidates(
        self, item: Item
    ) -> list[tuple[FilterOwner, FilterSchema]]:
        """Return (owner, filter) pairs whose rarity and name clauses admit ``item``.

        The type, brand and ability dimensions are left to the matcher.
        """
        stmt = (
            select(User.id, User.user_code, Filter)
            .join(UserFilter, UserFilter.user_id == User.id)
            .join(Filter, Filter.id == UserFilter.filter_id)
            .where(
                Filter.min_rarity <= item.rarity,
                or_(Filter.gear_name == "", Filter.gear_name == item.name),
            )
        )
        result = await self._session.execute(stmt)

        candidates: list[tuple[FilterOwner, FilterSchema]] = []
        for user_id, user_code, row_filter in result.all():
            try:
                schema = row_filter.to_schema()
            except (ValueError, ValidationError) as exc:
                # A corrupt row excludes only that filter.
                logger.warning(
                    "filter_rejected",
                    user_id=user_id,
                    filter_id=row_filter.id,
                    error=str(exc),
                )
                continue
            candidates.append((FilterOwner(user_id=user_id, user_code=user_code), schema))
        return candidates
