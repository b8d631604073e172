"""Cron-driven scheduler for the background integration jobs."""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from croniter import croniter

from config import settings
from critical_monitor import backfill_critical_devices, monitor_critical_devices, poll_critical_device_configs
from token_manager import refresh_token_if_needed

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    cron: str
    func: Callable[[], None]
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_duration_seconds: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def schedule_next(self, now: datetime) -> None:
        self.next_run_at = croniter(self.cron, now).get_next(datetime)


class JobScheduler:
    """Runs registered jobs on their cron schedule in one background thread.

    A job whose previous run is still going (e.g. triggered by hand) is
    skipped for that tick rather than run twice.
    """

    def __init__(self, tick_seconds: int = 30):
        """Initialize job scheduler."""
        self._jobs: Dict[str, ScheduledJob] = {}
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._tick_seconds = tick_seconds

    def register(self, name: str, cron: str, func: Callable[[], None]) -> ScheduledJob:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression for job {name}: {cron}")
        job = ScheduledJob(name=name, cron=cron, func=func)
        self._jobs[name] = job
        return job

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    def start(self, run_immediately: bool = True):
        """Start the scheduler worker."""
        if self._running:
            logger.warning("Job scheduler is already running")
            return

        now = datetime.now(timezone.utc)
        for job in self._jobs.values():
            if run_immediately:
                job.next_run_at = now
            else:
                job.schedule_next(now)

        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._thread.start()
        logger.info(f"Job scheduler started with {len(self._jobs)} job(s)")

    def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return

        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Job scheduler stopped")

    def _worker_loop(self):
        while self._running:
            try:
                self.run_due_jobs()
            except Exception as e:
                logger.error(f"Error in job scheduler worker loop: {e}", exc_info=True)
            time.sleep(self._tick_seconds)

    def run_due_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """Run every job whose next run time has passed. Returns the names that ran."""
        now = now or datetime.now(timezone.utc)
        ran = []
        for job in self._jobs.values():
            if job.next_run_at is not None and job.next_run_at > now:
                continue
            job.schedule_next(now)
            if self._execute(job):
                ran.append(job.name)
        return ran

    def run_job(self, name: str) -> bool:
        """Run a job now. Returns False if it is unknown or already running."""
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}")
        return self._execute(job)

    def _execute(self, job: ScheduledJob) -> bool:
        if not job.lock.acquire(blocking=False):
            logger.warning(f"Job {job.name} is still running, skipping this run")
            return False
        started = time.monotonic()
        try:
            logger.info(f"Running job {job.name}")
            job.func()
        except Exception as e:
            logger.error(f"Job {job.name} failed: {e}", exc_info=True)
        finally:
            job.last_run_at = datetime.now(timezone.utc)
            job.last_duration_seconds = time.monotonic() - started
            job.lock.release()
        return True


def build_scheduler() -> JobScheduler:
    """Scheduler with the token refresh, monitor, backfill and config poll jobs."""
    scheduler = JobScheduler()
    scheduler.register("token_refresh", settings.token_refresh_cron, refresh_token_if_needed)
    scheduler.register("critical_device_monitor", settings.device_monitor_cron, monitor_critical_devices)
    scheduler.register("console_backfill", settings.console_backfill_cron, backfill_critical_devices)
    scheduler.register("config_poll", settings.config_poll_cron, poll_critical_device_configs)
    return scheduler


# Global scheduler instance
job_scheduler = build_scheduler()
