from __future__ import annotations

import structlog

from backend.src.contracts.models import Item, Snapshot

logger = structlog.get_logger(__name__)


class SnapshotDiffer:
    """Compare the committed snapshot with a freshly fetched one.

    Only newly listed items are reported, matched by item id. Items that
    left the shop are not a delivery event and are ignored. With no
    previous snapshot every fetched item is new. The result keeps the
    order of the fetched snapshot.
    """

    def diff(self, previous: Snapshot, fetched: Snapshot) -> list[Item]:
        known_ids = {item.id for item in previous.items}
        new_items: list[Item] = []
        seen: set[str] = set()

        for item in fetched.items:
            if item.id in known_ids or item.id in seen:
                continue
            seen.add(item.id)
            logger.info(
                "new_item_detected",
                item_id=item.id,
                name=item.name,
                expiration=item.expiration.isoformat(),
            )
            new_items.append(item)

        logger.info(
            "diff_complete",
            previous_count=len(previous.items),
            fetched_count=len(fetched.items),
            new_count=len(new_items),
        )

        return new_items
