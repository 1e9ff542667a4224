"""Dynamic next-run scheduler for backup jobs.

Instead of polling on a fixed tick, the scheduler keeps the next run instant
of every enabled job and arms a single one-shot APScheduler wake-up for the
nearest one. Every wake-up fires what is due and re-arms itself.

Reloads bump a generation counter. A wake-up carries the generation it was
armed under and is discarded if the entries have been rebuilt since.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from backup_orchestrator.api.services.storage import JobStore
from backup_orchestrator.core.backup.executor import JobExecutor
from backup_orchestrator.core.config import Settings, get_settings
from backup_orchestrator.core.errors import BackupError, JobNotFoundError, JobRunningError
from backup_orchestrator.core.schedule import compute_next_run
from backup_orchestrator.schemas.job import Job, OnceSchedule
from backup_orchestrator.schemas.run import Run

logger = logging.getLogger(__name__)

WAKEUP_JOB_ID = "backup-scheduler-wakeup"


@dataclass
class ScheduledEntry:
    """Runtime-only schedule state for one job."""

    job: Job
    next_run: datetime | None


class BackupScheduler:
    """Owns the scheduled-entry set and the single wake-up timer."""

    def __init__(
        self,
        jobs: JobStore,
        executor: JobExecutor,
        settings: Settings | None = None,
        scheduler: AsyncIOScheduler | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or get_settings()
        self.jobs = jobs
        self.executor = executor
        self._scheduler = scheduler or AsyncIOScheduler(timezone=UTC)
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._entries: dict[str, ScheduledEntry] = {}
        self._generation = 0
        self._running = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def entries(self) -> dict[str, ScheduledEntry]:
        return dict(self._entries)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the timer and load all enabled jobs."""
        if self._running:
            return
        if not self._scheduler.running:
            self._scheduler.start()
        self._running = True
        count = self.reload()
        logger.info(f"Backup scheduler started with {count} scheduled jobs")

    def stop(self) -> None:
        """Stop the timer; runs already in flight continue to completion."""
        if not self._running:
            return
        self._running = False
        self._generation += 1
        self._entries.clear()
        if self._scheduler.get_job(WAKEUP_JOB_ID):
            self._scheduler.remove_job(WAKEUP_JOB_ID)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Backup scheduler stopped")

    def reload(self) -> int:
        """Replace every scheduled entry from the job store and re-arm the timer.

        Returns the number of jobs scheduled.
        """
        self._generation += 1
        self._entries.clear()

        now = self._now()
        for job in self.jobs.load_all_jobs():
            if not job.enabled:
                continue
            next_run = compute_next_run(job.schedule, now, self.settings.timezone)
            if next_run is None:
                logger.info(f"Job {job.job_id} has no upcoming run; not scheduled")
                continue
            self._entries[job.job_id] = ScheduledEntry(job=job, next_run=next_run)
            logger.debug(f"Job {job.job_id} scheduled for {next_run.isoformat()}")

        if self._running:
            self._arm()
        return len(self._entries)

    notify_jobs_changed = reload

    # =========================================================================
    # Timer
    # =========================================================================

    def next_wakeup_delay(self, now: datetime | None = None) -> timedelta:
        """Sleep until shortly before the nearest run, bounded below."""
        now = now or self._now()
        pending = [e.next_run for e in self._entries.values() if e.next_run is not None]
        if not pending:
            return timedelta(seconds=self.settings.scheduler_idle_interval_seconds)

        delay = min(pending) - now - timedelta(seconds=self.settings.scheduler_anticipation_seconds)
        return max(timedelta(seconds=self.settings.scheduler_min_check_interval_seconds), delay)

    def _arm(self) -> None:
        now = self._now()
        run_date = now + self.next_wakeup_delay(now)
        self._scheduler.add_job(
            self._wake,
            trigger=DateTrigger(run_date=run_date),
            id=WAKEUP_JOB_ID,
            name="Backup scheduler wake-up",
            args=[self._generation],
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug(f"Scheduler armed for {run_date.isoformat()} (generation {self._generation})")

    async def _wake(self, generation: int) -> None:
        if generation != self._generation or not self._running:
            logger.debug(f"Discarding stale wake-up (generation {generation}, current {self._generation})")
            return

        now = self._now()
        due = [
            entry for entry in list(self._entries.values())
            if entry.next_run is not None and entry.next_run <= now
        ]
        for entry in due:
            self._fire(entry, now)

        self._arm()

    def _fire(self, entry: ScheduledEntry, now: datetime) -> None:
        job_id = entry.job.job_id
        if isinstance(entry.job.schedule, OnceSchedule):
            self._entries.pop(job_id, None)
        else:
            after = max(now, entry.next_run)
            entry.next_run = compute_next_run(entry.job.schedule, after, self.settings.timezone)
            if entry.next_run is None:
                self._entries.pop(job_id, None)
                logger.info(f"Job {job_id} has no further runs; unscheduled")

        logger.info(f"Firing scheduled job {job_id}")
        self._spawn(self._run_scheduled(job_id, entry.job))

    async def _run_scheduled(self, job_id: str, fallback: Job) -> Run | None:
        job = self.jobs.load_job(job_id) or fallback
        if not job.enabled:
            logger.info(f"Skipping disabled job {job_id}")
            return None
        return await self._run_logged(job, "scheduled")

    async def _run_logged(self, job: Job, trigger: str) -> Run | None:
        """Execute a job in a background task, logging failures instead of raising."""
        try:
            return await self.executor.execute_job(job, trigger=trigger)
        except JobRunningError:
            logger.warning(f"{trigger.capitalize()} run of job {job.job_id} skipped: previous run still in progress")
        except BackupError as e:
            logger.error(f"{trigger.capitalize()} run of job {job.job_id} failed: {e.code.value} {e.message}")
        except Exception:
            logger.exception(f"{trigger.capitalize()} run of job {job.job_id} raised an unexpected error")
        return None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # Manual execution
    # =========================================================================

    def _load_for_manual_run(self, job_id: str) -> Job:
        job = self.jobs.load_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if self.executor.is_job_running(job_id):
            raise JobRunningError(job_id)
        return job

    async def execute_job_manually(self, job_id: str) -> Run:
        """Run a job now, outside the timer, and wait for the result."""
        job = self._load_for_manual_run(job_id)
        return await self.executor.execute_job(job, trigger="manual")

    def trigger_job(self, job_id: str) -> asyncio.Task:
        """Start a manual run in the background after checking it can start."""
        job = self._load_for_manual_run(job_id)
        return self._spawn(self._run_logged(job, "manual"))

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_scheduled_jobs(self) -> list[dict[str, Any]]:
        entries = sorted(
            self._entries.values(),
            key=lambda e: e.next_run or datetime.max.replace(tzinfo=UTC),
        )
        return [
            {
                "job_id": e.job.job_id,
                "client_hostname": e.job.client_hostname,
                "next_run": e.next_run.isoformat() if e.next_run else None,
                "schedule": e.job.schedule.model_dump(mode="json") if e.job.schedule else None,
            }
            for e in entries
        ]

    def get_status(self) -> dict[str, Any]:
        wakeup = self._scheduler.get_job(WAKEUP_JOB_ID) if self._running else None
        next_wakeup = getattr(wakeup, "next_run_time", None) if wakeup else None
        return {
            "running": self._running,
            "generation": self._generation,
            "scheduled_jobs": len(self._entries),
            "next_wakeup": next_wakeup.isoformat() if isinstance(next_wakeup, datetime) else None,
            "running_jobs": self.executor.running_jobs,
        }


# Global scheduler instance
_scheduler: BackupScheduler | None = None


def init_scheduler(
    jobs: JobStore,
    executor: JobExecutor,
    settings: Settings | None = None,
) -> BackupScheduler:
    """Create the application-wide backup scheduler."""
    global _scheduler
    _scheduler = BackupScheduler(jobs, executor, settings)
    logger.info("Backup scheduler initialized")
    return _scheduler


def get_scheduler() -> BackupScheduler | None:
    """Get the scheduler instance, if initialized."""
    return _scheduler
