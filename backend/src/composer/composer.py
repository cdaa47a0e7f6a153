from __future__ import annotations

import math
from datetime import datetime
from urllib.parse import urlencode

from backend.src.config import Settings
from backend.src.contracts.models import FilterOwner, Item, NotificationPayload, as_utc
from backend.src.matcher.matcher import validate_item_name

NOTIFICATION_TITLE = "Now on SplatNet!"
USER_CODE_PARAM = "usercode"


def notification_ttl(item: Item, now: datetime) -> int:
    """Whole seconds from ``now`` until the item expires, never negative."""
    remaining = (item.expiration - as_utc(now)).total_seconds()
    return max(math.floor(remaining), 0)


def compose(
    owner: FilterOwner,
    item: Item,
    now: datetime,
    settings: Settings,
) -> tuple[NotificationPayload, int]:
    """Build the push payload and its delivery TTL for one (user, item) pair."""
    validate_item_name(item.name)

    website_url = settings.website_url.rstrip("/")
    abilities = ", ".join(item.abilities) if item.abilities else "Unknown"
    login_query = urlencode({USER_CODE_PARAM: owner.user_code})

    payload = NotificationPayload(
        title=NOTIFICATION_TITLE,
        body=f"{item.name}: {abilities}",
        icon_url=item.image_url,
        login_url=f"{website_url}/login?{login_query}",
        site_url=website_url,
        shop_url=settings.shop_url,
        gear_id=item.id,
        user_code=owner.user_code,
        tag=item.id,
        expiration=item.expiration,
    )
    return payload, notification_ttl(item, now)
