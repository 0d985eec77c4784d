"""
Job Scheduler

Process-wide registry of (cron trigger, batch job) pairs on top of
APScheduler's AsyncIOScheduler. Built once at startup, shut down with the
service; jobs keep no state between runs other than the last result kept here
for operators.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .models import JobRunResult
from .protocols import ErrorKind, GroupBuyServiceError, GroupBuyValidationError
from .scheduled_jobs import BatchJob

logger = logging.getLogger(__name__)


class JobNotFoundError(GroupBuyServiceError):
    kind = ErrorKind.NOT_FOUND


class JobScheduler:
    """Cron registry for the group-buy batch jobs"""

    def __init__(self, timezone: str = "UTC"):
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(timezone=timezone)
        self._jobs: Dict[str, BatchJob] = {}
        self._crons: Dict[str, str] = {}
        self.last_results: Dict[str, JobRunResult] = {}

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def register(self, job: BatchJob, cron: str) -> None:
        """Register a job under its name with a 5-field crontab expression"""
        if job.name in self._jobs:
            raise GroupBuyValidationError(f"Job '{job.name}' is already registered", field="name")
        try:
            trigger = CronTrigger.from_crontab(cron, timezone=self.timezone)
        except ValueError as e:
            raise GroupBuyValidationError(f"Invalid cron expression '{cron}' for job {job.name}: {e}", field="cron")

        self._jobs[job.name] = job
        self._crons[job.name] = cron
        self._scheduler.add_job(
            self._run_scheduled,
            trigger,
            args=[job.name],
            id=job.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Registered job {job.name} ({cron})")

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"✅ Job scheduler started with {len(self._jobs)} jobs")

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler finishes stopping on the next loop iteration
            await asyncio.sleep(0)
            logger.info("✅ Job scheduler stopped")

    @property
    def jobs(self) -> List[Dict[str, Any]]:
        described = []
        for name, cron in self._crons.items():
            scheduled = self._scheduler.get_job(name)
            next_run = getattr(scheduled, "next_run_time", None) if scheduled else None
            last = self.last_results.get(name)
            described.append({
                "name": name,
                "cron": cron,
                "next_run_time": next_run.isoformat() if next_run else None,
                "last_run": last.model_dump(mode="json") if last else None,
            })
        return described

    async def run_job(self, name: str) -> JobRunResult:
        """Run a registered job now, outside its schedule"""
        job = self._jobs.get(name)
        if not job:
            raise JobNotFoundError(
                f"Job '{name}' is not registered", details={"registered": sorted(self._jobs)}
            )
        result = await job.run()
        self.last_results[name] = result
        return result

    async def _run_scheduled(self, name: str) -> None:
        try:
            await self.run_job(name)
        except Exception as e:
            logger.error(f"Scheduled run of {name} failed: {e}", exc_info=True)


# Process-wide scheduler
_scheduler: Optional[JobScheduler] = None


def get_scheduler(timezone: str = "UTC") -> JobScheduler:
    """Get or create the process-wide scheduler"""
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler(timezone=timezone)
    return _scheduler


async def close_scheduler() -> None:
    """Shut down and forget the process-wide scheduler"""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.shutdown()
        _scheduler = None


__all__ = ["JobScheduler", "JobNotFoundError", "get_scheduler", "close_scheduler"]
