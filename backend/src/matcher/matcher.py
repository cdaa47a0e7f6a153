from __future__ import annotations

import re
from collections.abc import Iterable

import structlog

from backend.src.contracts.errors import DataIntegrityError
from backend.src.contracts.models import FilterOwner, FilterSchema, Item

logger = structlog.get_logger(__name__)

# Item and filter names may only contain alphanumerics, spaces and -+()&'
ALLOWED_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\-+()&' ]*$")


def validate_item_name(name: str) -> str:
    """Return ``name`` unchanged, or raise DataIntegrityError if it has disallowed characters."""
    if not ALLOWED_NAME_PATTERN.fullmatch(name):
        raise DataIntegrityError(f"Gear name '{name}' contains special characters.")
    return name


def _dimension_admits(selected: Iterable[str], values: Iterable[str]) -> bool:
    """An empty selection is a wildcard; otherwise the item values must intersect it."""
    selected_set = set(selected)
    if not selected_set:
        return True
    return not selected_set.isdisjoint(values)


def filter_matches(gear_filter: FilterSchema, item: Item) -> bool:
    """Return True iff every clause of ``gear_filter`` admits ``item``."""
    if item.rarity < gear_filter.min_rarity:
        return False
    if gear_filter.name and gear_filter.name != item.name:
        return False
    if not _dimension_admits((t.value for t in gear_filter.types), [item.type.value]):
        return False
    if not _dimension_admits(gear_filter.brands, [item.brand]):
        return False
    return _dimension_admits(gear_filter.abilities, item.abilities)


class FilterMatcher:
    """Decide which filter owners should be told about an item.

    Matching rules (all must hold):
    - rarity: item rarity is at least the filter's minimum
    - name: the filter has no name, or it equals the item name
    - type / brand: wildcard, or the item's value is selected
    - ability: wildcard, or at least one of the item's abilities is selected
    """

    def match(
        self,
        item: Item,
        filters: Iterable[tuple[FilterOwner, FilterSchema]],
    ) -> set[FilterOwner]:
        validate_item_name(item.name)

        owners: set[FilterOwner] = set()
        for owner, gear_filter in filters:
            if owner in owners:
                continue
            try:
                validate_item_name(gear_filter.name)
            except DataIntegrityError:
                logger.warning(
                    "filter_rejected",
                    user_id=owner.user_id,
                    filter_name=gear_filter.name,
                )
                continue
            if filter_matches(gear_filter, item):
                owners.add(owner)

        logger.info(
            "matching_complete",
            item_id=item.id,
            name=item.name,
            owners_count=len(owners),
        )
        return owners
