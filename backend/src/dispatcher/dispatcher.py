from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.interfaces import IPushTransport
from backend.src.contracts.models import (
    DeliveryOutcome,
    FilterOwner,
    NotificationPayload,
    SubscriptionSchema,
)
from backend.src.subscriptions.repository import SubscriptionRepository

logger = structlog.get_logger(__name__)

_SEVERITY = {
    DeliveryOutcome.DELIVERED: 0,
    DeliveryOutcome.TRANSIENT_FAILURE: 1,
    DeliveryOutcome.PERMANENT_FAILURE: 2,
}


@dataclass
class DispatchResult:
    """Per-subscription outcome of one user's notification burst."""

    user_id: int
    outcomes: dict[str, DeliveryOutcome] = field(default_factory=dict)
    skipped: bool = False

    def _count(self, outcome: DeliveryOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o is outcome)

    @property
    def delivered(self) -> int:
        return self._count(DeliveryOutcome.DELIVERED)

    @property
    def failed(self) -> int:
        return self._count(DeliveryOutcome.TRANSIENT_FAILURE)

    @property
    def pruned(self) -> int:
        return self._count(DeliveryOutcome.PERMANENT_FAILURE)


def worst_outcome(outcomes: list[DeliveryOutcome]) -> DeliveryOutcome:
    if not outcomes:
        return DeliveryOutcome.DELIVERED
    return max(outcomes, key=_SEVERITY.__getitem__)


class Dispatcher:
    """Fan a user's notifications out to every device they registered.

    Every (notification, subscription) pair gets exactly one send attempt,
    all running concurrently under a shared concurrency limit. A permanent
    failure removes the endpoint from storage before dispatch returns.
    """

    def __init__(
        self,
        transport: IPushTransport,
        session_factory: async_sessionmaker[AsyncSession],
        concurrency: int = 32,
    ) -> None:
        self._transport = transport
        self._session_factory = session_factory
        self._semaphore = asyncio.Semaphore(concurrency)

    async def dispatch(
        self,
        owner: FilterOwner,
        notifications: list[tuple[NotificationPayload, int]],
        subscriptions: list[SubscriptionSchema],
    ) -> DispatchResult:
        log = logger.bind(user_id=owner.user_id)
        result = DispatchResult(user_id=owner.user_id)

        if not subscriptions:
            result.skipped = True
            log.info("dispatch_skipped_no_subscriptions")
            return result

        messages = [(payload.to_json(), ttl) for payload, ttl in notifications]

        tasks: dict[str, asyncio.Task[DeliveryOutcome]] = {
            subscription.endpoint: asyncio.create_task(
                self._deliver(subscription, messages, log)
            )
            for subscription in subscriptions
        }

        for endpoint, task in tasks.items():
            try:
                result.outcomes[endpoint] = await task
            except Exception as exc:  # noqa: BLE001
                log.error("dispatch_subscription_error", endpoint=endpoint[:60], error=str(exc))
                result.outcomes[endpoint] = DeliveryOutcome.TRANSIENT_FAILURE

        log.info(
            "dispatch_complete",
            notifications=len(messages),
            delivered=result.delivered,
            failed=result.failed,
            pruned=result.pruned,
        )
        return result

    async def _send(self, subscription: SubscriptionSchema, payload: str, ttl: int) -> DeliveryOutcome:
        async with self._semaphore:
            return await self._transport.send(subscription, payload, ttl)

    async def _deliver(
        self,
        subscription: SubscriptionSchema,
        messages: list[tuple[str, int]],
        log: structlog.stdlib.BoundLogger,
    ) -> DeliveryOutcome:
        attempts = await asyncio.gather(
            *(self._send(subscription, payload, ttl) for payload, ttl in messages),
            return_exceptions=True,
        )

        outcomes: list[DeliveryOutcome] = []
        for attempt in attempts:
            if isinstance(attempt, DeliveryOutcome):
                outcomes.append(attempt)
            else:
                log.warning(
                    "push_transport_error",
                    endpoint=subscription.endpoint[:60],
                    error=str(attempt),
                )
                outcomes.append(DeliveryOutcome.TRANSIENT_FAILURE)

        outcome = worst_outcome(outcomes)
        if outcome is DeliveryOutcome.PERMANENT_FAILURE:
            await self._prune(subscription, log)
        return outcome

    async def _prune(
        self,
        subscription: SubscriptionSchema,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        try:
            async with self._session_factory() as session:
                removed = await SubscriptionRepository(session).delete_by_endpoint(
                    subscription.endpoint
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error(
                "subscription_prune_failed",
                endpoint=subscription.endpoint[:60],
                error=str(exc),
            )
            return

        log.info("subscription_pruned", endpoint=subscription.endpoint[:60], removed=removed)
