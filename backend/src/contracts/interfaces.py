from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from backend.src.contracts.models import (
    DeliveryOutcome,
    FilterOwner,
    FilterSchema,
    Item,
    Snapshot,
    SubscriptionSchema,
)


class IInventorySource(Protocol):
    async def fetch(self) -> Snapshot: ...


class ISnapshotDiffer(Protocol):
    def diff(self, previous: Snapshot, fetched: Snapshot) -> list[Item]: ...


class IMatcher(Protocol):
    def match(
        self, item: Item, filters: Iterable[tuple[FilterOwner, FilterSchema]]
    ) -> set[FilterOwner]: ...


class IPushTransport(Protocol):
    async def send(
        self, subscription: SubscriptionSchema, payload: str, ttl: int
    ) -> DeliveryOutcome: ...
