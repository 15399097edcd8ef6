import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from ingestion.checkpoint import CheckpointStore

logger = logging.getLogger(__name__)


class CheckpointRetentionScheduler:
    def __init__(self, store: CheckpointStore, interval_seconds: Optional[int] = None):
        self.store = store
        self.interval_seconds = interval_seconds or settings.CHECKPOINT_CLEANUP_INTERVAL
        self.scheduler = AsyncIOScheduler()

    async def run_cleanup_job(self) -> int:
        """Job to purge expired checkpoints"""
        logger.info("Scheduler: Starting checkpoint cleanup")
        try:
            purged = await self.store.purge_expired()
            logger.info(f"Scheduler: Checkpoint cleanup removed {purged} checkpoints")
            return purged
        except Exception as e:
            logger.error(f"Scheduler: Checkpoint cleanup failed - {e}")
            return 0

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_cleanup_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="checkpoint_cleanup",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Checkpoint retention scheduler started (every {self.interval_seconds}s)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Checkpoint retention scheduler stopped")
