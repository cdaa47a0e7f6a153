from __future__ import annotations

import asyncio
import enum
import secrets
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.composer.composer import compose
from backend.src.config import Settings
from backend.src.contracts.errors import (
    AuthorizationError,
    DataIntegrityError,
    SourceFetchError,
    StorageError,
)
from backend.src.contracts.interfaces import IInventorySource, IMatcher, ISnapshotDiffer
from backend.src.contracts.models import (
    CycleStatus,
    FilterOwner,
    Item,
    NotificationPayload,
    Snapshot,
)
from backend.src.differ.differ import SnapshotDiffer
from backend.src.dispatcher.dispatcher import Dispatcher, DispatchResult
from backend.src.matcher.matcher import FilterMatcher, validate_item_name
from backend.src.snapshots.repository import SnapshotRepository
from backend.src.subscriptions.repository import SubscriptionRepository
from backend.src.users.repository import UserRepository

logger = structlog.get_logger(__name__)


class CycleState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    MATCHING = "matching"
    DISPATCHING = "dispatching"
    COMMITTING = "committing"
    ABORTED = "aborted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserBatch:
    """Every new item one user matched in this cycle, sent as one burst."""

    owner: FilterOwner
    items: list[Item] = field(default_factory=list)

    @property
    def watermark(self) -> datetime:
        return max(item.expiration for item in self.items)


@dataclass
class CycleReport:
    new_items: int = 0
    items_skipped: int = 0
    users_matched: int = 0
    users_notified: int = 0
    users_already_notified: int = 0
    users_without_devices: int = 0
    devices_delivered: int = 0
    devices_failed: int = 0
    devices_pruned: int = 0
    watermarks_advanced: int = 0


class CycleCoordinator:
    """Runs one detect-match-dispatch cycle.

    Idle -> Fetching -> Diffing -> Matching -> Dispatching -> Committing -> Idle,
    or Aborted on a fetch or storage failure. Nothing is written before
    Committing. Watermarks are advanced first and the fetched snapshot is
    saved last, so an interrupted cycle is recomputed on the next run and
    only users whose watermark did not move are notified again.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: IInventorySource,
        dispatcher: Dispatcher,
        differ: ISnapshotDiffer | None = None,
        matcher: IMatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._fetcher = fetcher
        self._dispatcher = dispatcher
        self._differ = differ or SnapshotDiffer()
        self._matcher = matcher or FilterMatcher()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._lookup_semaphore = asyncio.Semaphore(settings.lookup_concurrency)
        self.state = CycleState.IDLE
        self.last_report: CycleReport | None = None

    # ── Trigger ───────────────────────────────────────────────────────────────

    def authorize(self, credential: str | None) -> None:
        secret = self._settings.action_secret
        if not secret:
            if self._settings.is_production:
                logger.error("action_secret_missing_in_production")
                raise AuthorizationError("ACTION_SECRET is not configured")
            logger.warning(
                "action_secret_not_configured",
                detail="acceptable only in testing environments",
            )
            return

        if credential is None or not secrets.compare_digest(
            credential.encode("utf-8"), secret.encode("utf-8")
        ):
            logger.error("unauthorized_trigger")
            raise AuthorizationError("Trigger credential does not match")

        logger.info("trigger_authenticated")

    async def run(self, credential: str | None) -> CycleStatus:
        """Authorize the caller and run a cycle, reporting only a coarse status."""
        try:
            self.authorize(credential)
        except AuthorizationError:
            return CycleStatus.UNAUTHORIZED

        if self._lock.locked():
            logger.warning("cycle_already_running")
            return CycleStatus.TOO_EARLY

        async with self._lock:
            try:
                return await self.run_cycle()
            except (SourceFetchError, StorageError) as exc:
                self._transition(CycleState.ABORTED)
                logger.error("cycle_aborted", error=str(exc), exc_info=True)
                return CycleStatus.INTERNAL_ERROR
            except Exception:
                self._transition(CycleState.ABORTED)
                logger.error("cycle_failed", exc_info=True)
                return CycleStatus.INTERNAL_ERROR

    # ── Cycle ─────────────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleStatus:
        started = time.monotonic()
        report = CycleReport()
        now = self._clock()

        self._transition(CycleState.FETCHING)
        stored = await self._load_snapshot()
        if stored.is_current(now):
            logger.info(
                "cycle_too_early",
                earliest_expiration=stored.earliest_expiration.isoformat()
                if stored.earliest_expiration
                else None,
            )
            self._transition(CycleState.IDLE)
            return CycleStatus.TOO_EARLY

        fetched = await self._fetcher.fetch()

        self._transition(CycleState.DIFFING)
        new_items = self._differ.diff(stored, fetched)
        report.new_items = len(new_items)

        batches: dict[int, UserBatch] = {}
        results: dict[int, DispatchResult | None] = {}
        if new_items:
            self._transition(CycleState.MATCHING)
            batches = await self._match(new_items, report)
            logger.info("notifying_users", count=len(batches))

            self._transition(CycleState.DISPATCHING)
            results = await self._dispatch(batches, now, report)

        self._transition(CycleState.COMMITTING)
        await self._commit(batches, results, fetched, report)

        self._transition(CycleState.IDLE)
        self.last_report = report
        logger.info(
            "cycle_complete",
            elapsed_seconds=round(time.monotonic() - started, 2),
            new_items=report.new_items,
            items_skipped=report.items_skipped,
            users_notified=report.users_notified,
            users_already_notified=report.users_already_notified,
            users_without_devices=report.users_without_devices,
            devices_delivered=report.devices_delivered,
            devices_failed=report.devices_failed,
            devices_pruned=report.devices_pruned,
        )
        return CycleStatus.OK

    def _transition(self, state: CycleState) -> None:
        logger.debug("cycle_state", previous=self.state.value, state=state.value)
        self.state = state

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StorageError(str(exc)) from exc

    async def _load_snapshot(self) -> Snapshot:
        async with self._session() as session:
            snapshot = await SnapshotRepository(session).load_snapshot()
        return snapshot if snapshot is not None else Snapshot.empty()

    # ── Matching ──────────────────────────────────────────────────────────────

    async def _owners_for(self, item: Item) -> set[FilterOwner]:
        validate_item_name(item.name)
        async with self._lookup_semaphore:
            async with self._session() as session:
                candidates = await UserRepository(session).find_filter_candidates(item)
        return self._matcher.match(item, candidates)

    async def _match(self, new_items: list[Item], report: CycleReport) -> dict[int, UserBatch]:
        lookups = await asyncio.gather(
            *(self._owners_for(item) for item in new_items),
            return_exceptions=True,
        )

        batches: dict[int, UserBatch] = {}
        storage_error: StorageError | None = None
        for item, lookup in zip(new_items, lookups):
            if isinstance(lookup, DataIntegrityError):
                report.items_skipped += 1
                logger.warning("item_skipped", item_id=item.id, error=str(lookup))
                continue
            if isinstance(lookup, StorageError):
                logger.error("item_lookup_failed", item_id=item.id, error=str(lookup))
                storage_error = storage_error or lookup
                continue
            if isinstance(lookup, BaseException):
                raise lookup

            for owner in lookup:
                batches.setdefault(owner.user_id, UserBatch(owner=owner)).items.append(item)

        if storage_error is not None:
            raise storage_error

        report.users_matched = len(batches)
        return batches

    # ── Dispatching ───────────────────────────────────────────────────────────

    async def _dispatch_user(
        self,
        batch: UserBatch,
        now: datetime,
        report: CycleReport,
    ) -> DispatchResult | None:
        """Send the user's pending items, or return None when nothing is sent."""
        owner = batch.owner
        log = logger.bind(user_id=owner.user_id)

        async with self._session() as session:
            watermark = await UserRepository(session).get_watermark(owner.user_id)
            rows = await SubscriptionRepository(session).list_for_user(owner.user_id)
            subscriptions = [row.to_schema() for row in rows]

        pending = [
            item for item in batch.items if watermark is None or item.expiration > watermark
        ]
        if not pending:
            report.users_already_notified += 1
            log.info("user_already_notified", watermark=watermark.isoformat() if watermark else None)
            return None

        notifications: list[tuple[NotificationPayload, int]] = []
        for item in pending:
            try:
                notifications.append(compose(owner, item, now, self._settings))
            except DataIntegrityError as exc:
                report.items_skipped += 1
                log.warning("notification_compose_failed", item_id=item.id, error=str(exc))
        if not notifications:
            return None

        return await self._dispatcher.dispatch(owner, notifications, subscriptions)

    async def _dispatch(
        self,
        batches: dict[int, UserBatch],
        now: datetime,
        report: CycleReport,
    ) -> dict[int, DispatchResult | None]:
        user_ids = list(batches)
        outcomes = await asyncio.gather(
            *(self._dispatch_user(batches[user_id], now, report) for user_id in user_ids),
            return_exceptions=True,
        )

        results: dict[int, DispatchResult | None] = {}
        for user_id, outcome in zip(user_ids, outcomes):
            if isinstance(outcome, BaseException):
                raise outcome
            results[user_id] = outcome
            if outcome is None:
                continue
            if outcome.skipped:
                report.users_without_devices += 1
            else:
                report.users_notified += 1
                report.devices_delivered += outcome.delivered
                report.devices_failed += outcome.failed
                report.devices_pruned += outcome.pruned

        return results

    # ── Committing ────────────────────────────────────────────────────────────

    async def _commit_watermarks(
        self,
        batches: dict[int, UserBatch],
        results: dict[int, DispatchResult | None],
    ) -> int:
        advanced = 0
        for user_id, result in results.items():
            if result is None or result.skipped:
                continue
            async with self._session() as session:
                changed = await UserRepository(session).advance_watermark(
                    user_id, batches[user_id].watermark
                )
                await session.commit()
            advanced += int(changed)
        return advanced

    async def _commit(
        self,
        batches: dict[int, UserBatch],
        results: dict[int, DispatchResult | None],
        fetched: Snapshot,
        report: CycleReport,
    ) -> None:
        report.watermarks_advanced = await self._commit_watermarks(batches, results)

        # The snapshot goes last so an interrupted commit is redone next cycle.
        async with self._session() as session:
            await SnapshotRepository(session).save_snapshot(fetched)
            await session.commit()
        logger.info("snapshot_committed", items=len(fetched.items))
