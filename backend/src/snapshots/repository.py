from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.errors import SourceFetchError, StorageError
from backend.src.contracts.models import SNAPSHOT_VERSION, ServerCache, Snapshot
from backend.src.fetcher.fetcher import parse_inventory

logger = structlog.get_logger(__name__)

GEAR_CACHE_KEY = "gear"


class SnapshotRepository:
    """Persists the last committed inventory snapshot in the server cache table."""

    def __init__(self, session: AsyncSession, cache_key: str = GEAR_CACHE_KEY) -> None:
        self._session = session
        self._cache_key = cache_key

    async def load_snapshot(self) -> Snapshot | None:
        row = await self._session.get(ServerCache, self._cache_key)
        if row is None:
            return None

        data = row.cache_data or {}
        if data.get("version") != SNAPSHOT_VERSION:
            logger.warning(
                "snapshot_version_mismatch",
                cache_key=self._cache_key,
                stored_version=data.get("version"),
                expected_version=SNAPSHOT_VERSION,
            )
            return None

        try:
            return parse_inventory(data["payload"])
        except (KeyError, SourceFetchError) as exc:
            raise StorageError(f"Stored snapshot '{self._cache_key}' is corrupt") from exc

    async def save_snapshot(self, snapshot: Snapshot) -> None:
        if snapshot.raw is None:
            raise StorageError("Cannot persist a snapshot without its raw payload")

        data = {"version": snapshot.version, "payload": snapshot.raw}
        row = await self._session.get(ServerCache, self._cache_key)
        if row is None:
            self._session.add(ServerCache(cache_key=self._cache_key, cache_data=data))
        else:
            row.cache_data = data
        await self._session.flush()
