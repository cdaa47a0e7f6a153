from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any
from unittest.mock import patch

import httpx
import pytest

from backend.src.config import Settings
from backend.src.contracts.errors import SourceFetchError
from backend.src.contracts.models import GearType
from backend.src.fetcher.fetcher import InventoryFetcher, parse_inventory


def _gear_entry(
    gear_id: str,
    name: str,
    typename: str = "HeadGear",
    brand: str = "Forge",
    primary: str = "Ink Resistance Up",
    slots: int = 2,
    sale_end: str = "2024-03-01T16:00:00Z",
) -> dict[str, Any]:
    return {
        "id": gear_id,
        "saleEndTime": sale_end,
        "price": 3200,
        "gear": {
            "__typename": typename,
            "name": name,
            "primaryGearPower": {"name": primary},
            "additionalGearPowers": [{"name": "Unknown"}] * slots,
            "image": {"url": f"https://splatoon3.ink/assets/{gear_id}.png"},
            "brand": {"name": brand},
        },
    }


GEAR_JSON: dict[str, Any] = {
    "data": {
        "gesotown": {
            "pickupBrand": {
                "brandGears": [
                    _gear_entry("pickup-1", "Squidfin Hook Cans", sale_end="2024-03-02T00:00:00Z"),
                ],
            },
            "limitedGears": [
                _gear_entry("limited-1", "Annaki Polo", typename="ClothingGear", brand="Annaki", slots=3),
                _gear_entry("limited-2", "Red Hi-Horses", typename="ShoesGear", brand="Zink", slots=1),
            ],
        },
    },
}


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        inventory_url="https://splatoon3.ink/data/gear.json",
        contact_email="admin@example.com",
        database_url="sqlite+aiosqlite:///:memory:",
    )


def _fetcher_with(settings: Settings, handler: Any) -> tuple[InventoryFetcher, Any]:
    fetcher = InventoryFetcher(settings)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return fetcher, patch.object(fetcher, "_build_client", return_value=client)


class TestParseInventory:
    def test_reads_pickup_and_limited_gear(self) -> None:
        snapshot = parse_inventory(GEAR_JSON)

        assert {item.id for item in snapshot.items} == {"pickup-1", "limited-1", "limited-2"}
        assert snapshot.raw == GEAR_JSON

    def test_items_sorted_by_expiration(self) -> None:
        snapshot = parse_inventory(GEAR_JSON)

        assert snapshot.items[-1].id == "pickup-1"
        assert snapshot.earliest_expiration == datetime(2024, 3, 1, 16, 0, 0, tzinfo=timezone.utc)

    def test_gear_fields(self) -> None:
        items = {item.id: item for item in parse_inventory(GEAR_JSON).items}

        polo = items["limited-1"]
        assert polo.type == GearType.CLOTHING
        assert polo.brand == "Annaki"
        assert polo.abilities == ("Ink Resistance Up",)
        assert polo.image_url == "https://splatoon3.ink/assets/limited-1.png"
        assert polo.price == 3200
        assert items["limited-2"].type == GearType.SHOES

    def test_rarity_from_additional_slots(self) -> None:
        items = {item.id: item for item in parse_inventory(GEAR_JSON).items}

        assert items["limited-1"].rarity == 2
        assert items["pickup-1"].rarity == 1
        assert items["limited-2"].rarity == 0

    def test_missing_sections_yield_empty_snapshot(self) -> None:
        snapshot = parse_inventory({"data": {"gesotown": {}}})

        assert snapshot.items == []
        assert not snapshot.is_current(datetime.now(timezone.utc))

    def test_unknown_gear_type_is_rejected(self) -> None:
        payload = copy.deepcopy(GEAR_JSON)
        payload["data"]["gesotown"]["limitedGears"][0]["gear"]["__typename"] = "WeaponGear"

        with pytest.raises(SourceFetchError):
            parse_inventory(payload)

    def test_bad_timestamp_is_rejected(self) -> None:
        payload = copy.deepcopy(GEAR_JSON)
        payload["data"]["gesotown"]["limitedGears"][0]["saleEndTime"] = "tomorrow"

        with pytest.raises(SourceFetchError):
            parse_inventory(payload)

    def test_missing_data_key_is_rejected(self) -> None:
        with pytest.raises(SourceFetchError):
            parse_inventory({"errors": []})


class TestInventoryFetcher:
    def test_user_agent_names_contact(self, settings: Settings) -> None:
        agent = InventoryFetcher(settings).user_agent

        assert agent.startswith("SplatNet Shop Alerts/")
        assert agent.endswith("admin@example.com")

    @pytest.mark.asyncio
    async def test_fetch_parses_response(self, settings: Settings) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=GEAR_JSON)

        fetcher, patcher = _fetcher_with(settings, handler)
        with patcher:
            snapshot = await fetcher.fetch()

        assert len(snapshot.items) == 3
        assert str(requests[0].url) == "https://splatoon3.ink/data/gear.json"

    @pytest.mark.asyncio
    async def test_http_error_raises_source_fetch_error(self, settings: Settings) -> None:
        fetcher, patcher = _fetcher_with(settings, lambda request: httpx.Response(503))

        with patcher, pytest.raises(SourceFetchError):
            await fetcher.fetch()

    @pytest.mark.asyncio
    async def test_non_json_body_raises_source_fetch_error(self, settings: Settings) -> None:
        fetcher, patcher = _fetcher_with(
            settings, lambda request: httpx.Response(200, text="<html>maintenance</html>")
        )

        with patcher, pytest.raises(SourceFetchError):
            await fetcher.fetch()

    @pytest.mark.asyncio
    async def test_connection_error_raises_source_fetch_error(self, settings: Settings) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        fetcher, patcher = _fetcher_with(settings, handler)

        with patcher, pytest.raises(SourceFetchError):
            await fetcher.fetch()
