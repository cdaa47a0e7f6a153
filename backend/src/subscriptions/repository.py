from __future__ import annotations

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import Subscription, SubscriptionSchema


class SubscriptionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_for_user(self, user_id: int) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_user(self, user_id: int) -> int:
        stmt = select(func.count(Subscription.id)).where(Subscription.user_id == user_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def get(self, user_id: int, endpoint: str) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.endpoint == endpoint,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, user_id: int, subscription: SubscriptionSchema) -> Subscription:
        """Create or refresh the subscription keyed by (user, endpoint)."""
        existing = await self.get(user_id, subscription.endpoint)
        if existing is not None:
            existing.expiration_time = subscription.expiration_time
            existing.auth_key = subscription.keys.auth
            existing.p256dh_key = subscription.keys.p256dh
            await self._session.flush()
            return existing

        row = Subscription(
            user_id=user_id,
            endpoint=subscription.endpoint,
            expiration_time=subscription.expiration_time,
            auth_key=subscription.keys.auth,
            p256dh_key=subscription.keys.p256dh,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def remove_for_user(self, user_id: int, endpoint: str) -> bool:
        stmt = delete(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.endpoint == endpoint,
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def delete_by_endpoint(self, endpoint: str) -> int:
        """Delete every subscription with this endpoint, whichever user owns it."""
        stmt = delete(Subscription).where(Subscription.endpoint == endpoint)
        result = await self._session.execute(stmt)
        return result.rowcount
