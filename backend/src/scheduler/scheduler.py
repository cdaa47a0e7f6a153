from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.src.config import Settings
from backend.src.contracts.models import CycleStatus
from backend.src.scheduler.coordinator import CycleCoordinator

logger = structlog.get_logger(__name__)


class AlertScheduler:
    """Triggers the check-and-notify cycle on a fixed interval."""

    def __init__(self, coordinator: CycleCoordinator, settings: Settings) -> None:
        self._scheduler = AsyncIOScheduler()
        self._coordinator = coordinator
        self._settings = settings

    def start(self) -> None:
        self._scheduler.add_job(
            self.trigger_now,
            trigger=IntervalTrigger(minutes=self._settings.check_interval_minutes),
            id="check_and_notify",
            name="Check the shop and notify users",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "scheduler_configured",
            interval_minutes=self._settings.check_interval_minutes,
        )

    def stop(self) -> None:
        self._scheduler.shutdown(wait=False)
        logger.info("scheduler_shutdown")

    async def trigger_now(self) -> CycleStatus:
        """Run one cycle with the configured secret, as an external trigger would."""
        status = await self._coordinator.run(self._settings.action_secret)
        logger.info("scheduled_cycle_finished", status=status.value)
        return status
