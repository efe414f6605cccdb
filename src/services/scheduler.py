"""Background job scheduler built on APScheduler.

Architecture:
- JobScheduler owns its job registry; nothing is module-global
- APScheduler's AsyncIOScheduler fires cron triggers on the event loop
- A fired trigger starts the job handler in a worker thread and returns
- At most one run per job at a time; overlapping triggers are dropped
- Handlers receive a cancellation event they check between units
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.services.errors import ValidationError

logger = logging.getLogger(__name__)

JobHandler = Callable[[threading.Event], Any]

JOB_DEFAULTS = {
    "coalesce": True,  # Collapse missed runs into one
    "max_instances": 3,  # _fire only starts a task; overlap is handled by JobScheduler
    "misfire_grace_time": 300,
}


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


@dataclass
class JobRecord:
    """Registered job and its run history."""

    name: str
    cron: str
    handler: JobHandler
    trigger: CronTrigger
    state: JobState = JobState.IDLE
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    last_result: Any = None
    run_count: int = 0
    dropped_triggers: int = 0
    running: bool = field(default=False, repr=False)


class JobScheduler:
    """Cron scheduler with per-job mutual exclusion and graceful shutdown."""

    def __init__(self, timezone_name: str = "UTC"):
        """Initialize scheduler.

        Args:
            timezone_name: Timezone the cron expressions are evaluated in
        """
        self.timezone_name = timezone_name
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._in_flight: set[asyncio.Task] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._scheduler = AsyncIOScheduler(job_defaults=JOB_DEFAULTS, timezone=timezone_name)

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def register(self, name: str, cron: str, handler: JobHandler) -> JobRecord:
        """Register a job under a five-field crontab expression.

        Raises:
            ValidationError: If the cron expression is invalid or the name is taken
        """
        if name in self._jobs:
            raise ValidationError(f"Job {name} already registered", code="duplicate_job")
        try:
            trigger = CronTrigger.from_crontab(cron, timezone=self.timezone_name)
        except ValueError as e:
            raise ValidationError(f"Invalid cron expression for {name}: {cron!r} ({e})", code="invalid_cron") from e

        record = JobRecord(name=name, cron=cron, handler=handler, trigger=trigger)
        self._jobs[name] = record
        if self._scheduler.running:
            self._add_to_scheduler(record)
        logger.debug("Registered job %s (%s)", name, cron)
        return record

    def job_names(self) -> list[str]:
        return list(self._jobs)

    def _add_to_scheduler(self, record: JobRecord) -> None:
        self._scheduler.add_job(
            self._fire,
            record.trigger,
            args=[record.name],
            id=record.name,
            name=record.name,
            replace_existing=True,
        )

    def start(self) -> None:
        """Start firing cron triggers. Must be called from the running event loop."""
        if self._scheduler.running:
            return
        self._loop = asyncio.get_running_loop()
        self._cancel_event.clear()
        for record in self._jobs.values():
            self._add_to_scheduler(record)
        self._scheduler.start()
        logger.info("Job scheduler started with %d jobs", len(self._jobs))
        for job in self._scheduler.get_jobs():
            logger.info("Scheduled job: %s - Next run: %s", job.name, job.next_run_time)

    async def _fire(self, name: str) -> None:
        self.trigger(name)

    def trigger(self, name: str) -> bool:
        """Start a run of a job now.

        Must be called from the event loop thread.

        Returns:
            True if a run started, False if one is already in progress or the
            scheduler is shutting down

        Raises:
            ValidationError: If no job has that name
        """
        record = self._jobs.get(name)
        if record is None:
            raise ValidationError(f"Unknown job: {name}", code="unknown_job")
        if self._cancel_event.is_set():
            logger.warning("Scheduler shutting down, not starting %s", name)
            return False

        with self._lock:
            if record.running:
                record.dropped_triggers += 1
                logger.warning(
                    "Job %s still running, dropping overlapping trigger (%d dropped so far)",
                    name,
                    record.dropped_triggers,
                )
                return False
            record.running = True
            record.state = JobState.RUNNING
            record.last_started_at = datetime.now(timezone.utc)

        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._run(record), name=f"job:{name}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return True

    async def _run(self, record: JobRecord) -> None:
        logger.info("Job %s started", record.name)
        try:
            result = await asyncio.to_thread(record.handler, self._cancel_event)
        except Exception as e:
            logger.error("Job %s failed: %s", record.name, e, exc_info=True)
            with self._lock:
                record.state = JobState.FAILED
                record.last_error = str(e)
        else:
            with self._lock:
                record.state = JobState.IDLE
                record.last_error = None
                record.last_result = result
            logger.info("Job %s finished", record.name)
        finally:
            with self._lock:
                record.running = False
                record.run_count += 1
                record.last_finished_at = datetime.now(timezone.utc)

    def is_running(self, name: str) -> bool:
        record = self._jobs.get(name)
        return bool(record and record.running)

    def status(self) -> list[dict[str, Any]]:
        """Snapshot of every job's state."""
        statuses = []
        with self._lock:
            for record in self._jobs.values():
                job = self._scheduler.get_job(record.name) if self._scheduler.running else None
                next_run = job.next_run_time if job is not None else None
                statuses.append(
                    {
                        "name": record.name,
                        "cron": record.cron,
                        "state": record.state.value,
                        "next_run_time": next_run.isoformat() if next_run else None,
                        "last_started_at": (
                            record.last_started_at.isoformat() if record.last_started_at else None
                        ),
                        "last_finished_at": (
                            record.last_finished_at.isoformat() if record.last_finished_at else None
                        ),
                        "last_error": record.last_error,
                        "run_count": record.run_count,
                        "dropped_triggers": record.dropped_triggers,
                    }
                )
        return statuses

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for in-flight runs. Returns True if none are left."""
        if not self._in_flight:
            return True
        _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        return not pending

    async def shutdown(self, grace_seconds: float = 30.0) -> None:
        """Stop triggers, signal cancellation and wait for running jobs.

        Runs still going after ``grace_seconds`` are left to finish their
        current unit in the background and are reported.
        """
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._cancel_event.set()

        if self._in_flight:
            logger.info("Waiting up to %ss for %d running jobs", grace_seconds, len(self._in_flight))
            if not await self.wait_idle(timeout=grace_seconds):
                still_running = [name for name, r in self._jobs.items() if r.running]
                logger.warning("Jobs still running after shutdown grace: %s", still_running)
        logger.info("Job scheduler stopped")


__all__ = ["JobScheduler", "JobState", "JobRecord", "JOB_DEFAULTS"]
