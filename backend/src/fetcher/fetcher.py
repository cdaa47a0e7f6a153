from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from backend.src.config import VERSION, Settings
from backend.src.contracts.errors import SourceFetchError
from backend.src.contracts.models import GearType, Item, Snapshot

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_GEAR_TYPES: dict[str, GearType] = {
    "HeadGear": GearType.HAT,
    "ClothingGear": GearType.CLOTHING,
    "ShoesGear": GearType.SHOES,
}


def _parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp such as '2024-01-01T00:00:00Z'."""
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


def _parse_gear(entry: dict[str, Any]) -> Item:
    gear = entry["gear"]
    gear_type = _GEAR_TYPES[gear["__typename"]]

    primary = gear.get("primaryGearPower") or {}
    abilities = (primary["name"],) if primary.get("name") else ()

    # One to three unlockable slots; a single slot is the lowest tier.
    slots = len(gear.get("additionalGearPowers") or [])

    return Item(
        id=entry["id"],
        name=gear["name"],
        type=gear_type,
        brand=gear["brand"]["name"],
        abilities=abilities,
        rarity=max(slots - 1, 0),
        expiration=_parse_timestamp(entry["saleEndTime"]),
        image_url=(gear.get("image") or {}).get("url", ""),
        price=entry.get("price"),
    )


def parse_inventory(raw: dict[str, Any]) -> Snapshot:
    """Normalise a raw ``gear.json`` payload into a Snapshot.

    Both the daily pickup brand's gear and the limited-time gear are listed.
    Any structural problem raises SourceFetchError; no entry is skipped.
    """
    try:
        gesotown = raw["data"]["gesotown"]
        entries: list[dict[str, Any]] = list(
            (gesotown.get("pickupBrand") or {}).get("brandGears") or []
        )
        entries.extend(gesotown.get("limitedGears") or [])
        items = [_parse_gear(entry) for entry in entries]
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise SourceFetchError(f"Malformed inventory payload: {exc}") from exc

    return Snapshot(items=items, raw=raw)


class InventoryFetcher:
    """Reads the current shop inventory from the splatoon3.ink data feed."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def user_agent(self) -> str:
        return f"SplatNet Shop Alerts/{VERSION} {self._settings.contact_email}".strip()

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "User-Agent": self.user_agent,
                "Accept": "application/json",
            },
            follow_redirects=True,
            timeout=httpx.Timeout(self._settings.inventory_timeout_seconds),
        )

    async def fetch_raw(self) -> dict[str, Any]:
        url = self._settings.inventory_url
        log = logger.bind(url=url)
        try:
            async with self._build_client() as client:
                response = await client.get(url)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            log.error("inventory_fetch_failed", error=str(exc))
            raise SourceFetchError(f"Failed to fetch {url}: {exc}") from exc
        except ValueError as exc:
            log.error("inventory_not_json", error=str(exc))
            raise SourceFetchError(f"Inventory at {url} is not valid JSON") from exc

        if not isinstance(payload, dict):
            raise SourceFetchError(f"Inventory at {url} is not a JSON object")

        log.info("inventory_fetched", status_code=response.status_code)
        return payload

    async def fetch(self) -> Snapshot:
        snapshot = parse_inventory(await self.fetch_raw())
        logger.info(
            "inventory_parsed",
            count=len(snapshot.items),
            earliest_expiration=(
                snapshot.earliest_expiration.isoformat()
                if snapshot.earliest_expiration
                else None
            ),
        )
        return snapshot
