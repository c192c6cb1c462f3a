"""Scheduled members sync runs."""

from typing import Dict, Any, List, Optional
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR, EVENT_JOB_MISSED

from ..core.sync_engine import MembersSyncEngine, SyncRunResult
from ..database.models import SyncMode
from ..utils.logging import get_logger, log_async_execution_time


INCREMENTAL_JOB_ID = "members_incremental_sync"
FULL_JOB_ID = "members_full_sync"


class SchedulerError(Exception):
    """Raised when scheduler operations fail."""
    pass


def parse_cron_expression(cron_expression: str) -> CronTrigger:
    """Build a trigger from a five-field cron expression.

    Raises:
        SchedulerError: If the expression does not have five fields
    """
    parts = cron_expression.split()
    if len(parts) != 5:
        raise SchedulerError(f"Invalid cron expression: {cron_expression}")

    return CronTrigger(
        minute=parts[0],
        hour=parts[1],
        day=parts[2],
        month=parts[3],
        day_of_week=parts[4],
        timezone=timezone.utc
    )


class SyncScheduler:
    """Runs incremental syncs on an interval and an optional periodic full sync."""

    def __init__(
        self,
        engine: MembersSyncEngine,
        interval_minutes: int = 15,
        full_sync_cron: Optional[str] = None
    ):
        """Initialize sync scheduler.

        Args:
            engine: Sync engine the jobs run
            interval_minutes: Minutes between incremental runs
            full_sync_cron: Cron expression for full runs; None disables them
        """
        self.engine = engine
        self.interval_minutes = interval_minutes
        self.full_sync_cron = full_sync_cron
        self.logger = get_logger(self.__class__.__name__)

        self.scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 300
            }
        )

        self.job_stats: Dict[str, Dict[str, Any]] = {}

        self.scheduler.add_listener(self._job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._job_missed, EVENT_JOB_MISSED)

        self.logger.info(
            "Sync scheduler initialized",
            interval_minutes=interval_minutes,
            full_sync_cron=full_sync_cron
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    @log_async_execution_time
    async def start(self):
        """Register the jobs and start the scheduler."""
        if self.scheduler.running:
            self.logger.warning("Scheduler is already running")
            return

        try:
            self._add_job(INCREMENTAL_JOB_ID, IntervalTrigger(minutes=self.interval_minutes), SyncMode.INCREMENTAL)
            if self.full_sync_cron:
                self._add_job(FULL_JOB_ID, parse_cron_expression(self.full_sync_cron), SyncMode.FULL)

            self.scheduler.start()
            self.logger.info("Sync scheduler started", jobs=list(self.job_stats))

        except Exception as e:
            self.logger.error("Failed to start scheduler", error=str(e))
            raise SchedulerError(f"Failed to start scheduler: {e}")

    async def stop(self, wait: bool = True):
        """Stop the scheduler."""
        if not self.scheduler.running:
            self.logger.warning("Scheduler is not running")
            return

        self.scheduler.shutdown(wait=wait)
        self.logger.info("Sync scheduler stopped")

    def _add_job(self, job_id: str, trigger, mode: SyncMode):
        job = self.scheduler.add_job(
            func=self._execute_sync_job,
            trigger=trigger,
            args=[mode],
            id=job_id,
            name=f"Members {mode.value} sync",
            replace_existing=True
        )
        self.job_stats[job_id] = {
            "mode": mode.value,
            "created_at": datetime.now(timezone.utc),
            "last_run": None,
            "next_run": getattr(job, "next_run_time", None),
            "run_count": 0,
            "success_count": 0,
            "error_count": 0,
            "last_result": None
        }
        self.logger.info("Sync job scheduled", job_id=job_id, mode=mode.value)

    async def trigger_sync(self, mode: SyncMode = SyncMode.INCREMENTAL, caller_id: Optional[str] = None) -> SyncRunResult:
        """Run a sync immediately, outside the schedule."""
        self.logger.info("Manual sync triggered", mode=mode.value, caller_id=caller_id)
        return await self.engine.run(mode, caller_id=caller_id)

    async def _execute_sync_job(self, mode: SyncMode) -> SyncRunResult:
        self.logger.info("Executing scheduled sync", mode=mode.value)
        return await self.engine.run(mode, caller_id="scheduler")

    def get_job_statuses(self) -> List[Dict[str, Any]]:
        """Status information for every scheduled job."""
        statuses = []
        for job_id, stats in self.job_stats.items():
            status = stats.copy()
            job = self.scheduler.get_job(job_id) if self.scheduler.running else None
            status.update({
                "job_id": job_id,
                "next_run": job.next_run_time if job else None,
                "is_scheduled": job is not None
            })
            statuses.append(status)
        return statuses

    def _job_executed(self, event):
        """Handle job execution event."""
        stats = self.job_stats.get(event.job_id)
        if stats is None:
            return

        stats["last_run"] = datetime.now(timezone.utc)
        stats["run_count"] += 1

        result = getattr(event, "retval", None)
        if isinstance(result, SyncRunResult):
            stats["last_result"] = {
                "success": result.success,
                "mode": result.mode.value if result.mode else None,
                "fetched": result.fetched,
                "upserted": result.upserted,
                "duration": result.sync_duration,
                "error_message": result.error_message
            }
            if result.success:
                stats["success_count"] += 1
            else:
                stats["error_count"] += 1
        else:
            stats["success_count"] += 1

    def _job_error(self, event):
        """Handle job error event."""
        stats = self.job_stats.get(event.job_id)
        if stats is not None:
            stats["last_run"] = datetime.now(timezone.utc)
            stats["run_count"] += 1
            stats["error_count"] += 1
            stats["last_result"] = {"success": False, "error_message": str(event.exception)}

        self.logger.error("Scheduled sync failed", job_id=event.job_id, error=str(event.exception))

    def _job_missed(self, event):
        """Handle job missed event."""
        self.logger.warning(
            "Scheduled sync missed",
            job_id=event.job_id,
            scheduled_run_time=event.scheduled_run_time
        )
