from __future__ import annotations

from datetime import datetime, timedelta, timezone

from backend.src.contracts.models import GearType, Item, Snapshot
from backend.src.differ.differ import SnapshotDiffer

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _make_item(
    item_id: str = "gear-1",
    name: str = "Squidfin Hook Cans",
    hours: int = 4,
) -> Item:
    return Item(
        id=item_id,
        name=name,
        type=GearType.HAT,
        brand="Forge",
        abilities=("Ink Resistance Up",),
        rarity=1,
        expiration=BASE_TIME + timedelta(hours=hours),
    )


def _snapshot(*items: Item) -> Snapshot:
    return Snapshot(items=list(items))


class TestNewItemDetection:
    def test_empty_previous_reports_every_item(self) -> None:
        differ = SnapshotDiffer()
        fetched = _snapshot(_make_item("a"), _make_item("b"), _make_item("c"))

        new_items = differ.diff(Snapshot.empty(), fetched)

        assert [item.id for item in new_items] == ["a", "b", "c"]

    def test_item_listed_in_both_is_not_new(self) -> None:
        differ = SnapshotDiffer()
        existing = _make_item("existing")
        fresh = _make_item("fresh", name="Annaki Beret")

        new_items = differ.diff(_snapshot(existing), _snapshot(existing, fresh))

        assert len(new_items) == 1
        assert new_items[0].name == "Annaki Beret"

    def test_identity_is_item_id(self) -> None:
        differ = SnapshotDiffer()
        previous = _snapshot(_make_item("gear-1", name="Old Name"))
        fetched = _snapshot(_make_item("gear-1", name="Renamed"))

        assert differ.diff(previous, fetched) == []


class TestNoChange:
    def test_snapshot_against_itself_is_empty(self) -> None:
        differ = SnapshotDiffer()
        snapshot = _snapshot(_make_item("a"), _make_item("b"))

        assert differ.diff(snapshot, snapshot) == []

    def test_both_empty(self) -> None:
        assert SnapshotDiffer().diff(Snapshot.empty(), Snapshot.empty()) == []


class TestRemovals:
    def test_items_that_left_the_shop_are_ignored(self) -> None:
        differ = SnapshotDiffer()
        previous = _snapshot(_make_item("gone"), _make_item("kept"))
        fetched = _snapshot(_make_item("kept"))

        assert differ.diff(previous, fetched) == []


class TestOrdering:
    def test_result_follows_fetched_order(self) -> None:
        differ = SnapshotDiffer()
        fetched = _snapshot(
            _make_item("late", hours=20),
            _make_item("early", hours=1),
            _make_item("middle", hours=8),
        )

        new_items = differ.diff(Snapshot.empty(), fetched)

        # Snapshots keep their items sorted by expiration.
        assert [item.id for item in new_items] == ["early", "middle", "late"]

    def test_repeated_diff_is_stable(self) -> None:
        differ = SnapshotDiffer()
        previous = _snapshot(_make_item("a"))
        fetched = _snapshot(_make_item("a"), _make_item("b"), _make_item("c", hours=2))

        assert differ.diff(previous, fetched) == differ.diff(previous, fetched)

    def test_duplicate_ids_reported_once(self) -> None:
        differ = SnapshotDiffer()
        fetched = _snapshot(_make_item("dup"), _make_item("dup"))

        assert len(differ.diff(Snapshot.empty(), fetched)) == 1
