import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import SyncService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.retention_days = settings.sync_log_retention_days
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _purge_sync_logs(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source} job=purge_sync_logs")
        with session_scope() as session:
            removed = SyncService(session).cleanup_logs(self.retention_days)
        logger.info(
            f"scheduler_run: source={source} retention_days={self.retention_days} "
            f"sync_logs_removed={removed}"
        )
        return removed

    def start(self) -> None:
        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._purge_sync_logs,
            trigger,
            args=["daily_03:15"],
            id="sync_log_purge",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 sync log purge")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
