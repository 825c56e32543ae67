"""Periodic and change-triggered sync passes using APScheduler."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from stickyvault.core.config import SyncConfig
from stickyvault.core.models import SyncResult, VaultEvent
from stickyvault.core.sync import RemoteSyncEngine

logger = logging.getLogger(__name__)

INTERVAL_JOB_ID = "sync-interval"
CHANGE_JOB_ID = "sync-on-change"


class SyncScheduler:
    """Runs the sync engine every ``interval_minutes`` and shortly after local changes.

    Vault events do not start a pass directly. Each one (re)schedules a single
    one-off job ``change_debounce_seconds`` ahead, so a burst of edits ends in
    one pass. APScheduler's ``max_instances=1`` plus the engine's own lock keep
    passes from overlapping.
    """

    def __init__(self, engine: RemoteSyncEngine, config: SyncConfig):
        self.engine = engine
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self.last_result: SyncResult | None = None
        self._running = False
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self._run_sync,
            trigger=IntervalTrigger(minutes=self.config.interval_minutes),
            id=INTERVAL_JOB_ID,
            name="Periodic sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        self._unsubscribe = self.engine.vault.subscribe(self._on_vault_event)

        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started: syncing every {self.config.interval_minutes} minute(s)")

    async def stop(self) -> None:
        if not self._running:
            return
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def _on_vault_event(self, event: VaultEvent) -> None:
        logger.debug("Vault event %s, scheduling sync", event.type)
        self.schedule_change_sync()

    def schedule_change_sync(self) -> None:
        run_at = datetime.now() + timedelta(seconds=self.config.change_debounce_seconds)
        self.scheduler.add_job(
            self._run_sync,
            trigger=DateTrigger(run_date=run_at),
            id=CHANGE_JOB_ID,
            name="Sync after local change",
            replace_existing=True,
            max_instances=1,
        )

    def next_run_time(self) -> datetime | None:
        job = self.scheduler.get_job(INTERVAL_JOB_ID)
        return job.next_run_time if job else None

    async def _run_sync(self) -> None:
        result = await self.engine.sync()
        if result.status == "busy":
            return
        self.last_result = result
        if result.errors:
            logger.warning(f"Scheduled sync finished with {len(result.errors)} error(s)")
