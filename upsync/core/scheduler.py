import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from upsync.budget.tracker import BudgetTracker
from upsync.config import settings
from upsync.core.clock import Clock, system_clock
from upsync.observability.logger import get_logger
from upsync.sync.full_sync import FullSync, TriggerResult
from upsync.sync.queue import OutboundQueueProcessor

log = get_logger("scheduler")


@dataclass
class Job:
    name: str
    func: object
    interval_seconds: float
    initial_delay_seconds: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    runs: int = 0
    last_started: datetime | None = None
    last_finished: datetime | None = None
    last_error: str | None = None
    last_result: dict | int | None = None

    def status(self) -> dict:
        return {
            "interval_seconds": self.interval_seconds,
            "running": self.lock.locked(),
            "runs": self.runs,
            "last_started": self.last_started.isoformat() if self.last_started else None,
            "last_finished": self.last_finished.isoformat() if self.last_finished else None,
            "last_error": self.last_error,
            "last_result": self.last_result,
        }


class Scheduler:
    """Runs the queue processor, the full sync and housekeeping on fixed intervals.

    A job never overlaps itself: a tick that arrives while the previous run is
    still going is skipped. A failing run is logged and the interval carries on.
    """

    def __init__(
        self,
        queue_processor: OutboundQueueProcessor,
        full_sync: FullSync,
        budget: BudgetTracker,
        clock: Clock = None,
    ):
        self.queue_processor = queue_processor
        self.full_sync = full_sync
        self.budget = budget
        self.clock = clock or system_clock
        self.jobs: dict[str, Job] = {
            "queue": Job(
                "queue", self.queue_processor.run,
                settings.queue_interval_seconds, settings.queue_initial_delay_seconds,
            ),
            "full_sync": Job("full_sync", self.full_sync.run, settings.full_sync_interval_seconds),
            "cleanup": Job("cleanup", self.budget.cleanup_old_windows, settings.cleanup_interval_seconds),
        }
        self._tasks: list[asyncio.Task] = []
        self._pending: set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._tasks:
            return
        self._running = True
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job_{job.name}"))
        log.info("scheduler_started", jobs={name: job.interval_seconds for name, job in self.jobs.items()})

    async def stop(self):
        self._running = False
        tasks = self._tasks + list(self._pending)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        log.info("scheduler_stopped")

    async def _loop(self, job: Job):
        if job.initial_delay_seconds:
            await asyncio.sleep(job.initial_delay_seconds)
        while self._running:
            await self.run_job(job.name)
            await asyncio.sleep(job.interval_seconds)

    async def run_job(self, name: str):
        """Run one job now. Returns its result, or None if skipped or failed."""
        job = self.jobs[name]
        if job.lock.locked():
            log.info("job_skipped", job=name, reason="already_running")
            return None

        async with job.lock:
            job.last_started = self.clock.now()
            job.runs += 1
            try:
                result = await job.func()
            except Exception as e:
                job.last_error = str(e) or type(e).__name__
                log.error("job_failed", job=name, error=job.last_error)
                return None
            finally:
                job.last_finished = self.clock.now()

        job.last_error = None
        job.last_result = result.to_dict() if hasattr(result, "to_dict") else result
        return result

    async def trigger_full_sync(self, time_range: str) -> TriggerResult:
        """Reset the full sync for `time_range` and run it shortly after."""
        result = await self.full_sync.trigger(time_range)
        if result.accepted:
            task = asyncio.create_task(
                self._run_later("full_sync", settings.manual_trigger_delay_seconds), name="job_full_sync_manual",
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
        return result

    async def _run_later(self, name: str, delay: float):
        await asyncio.sleep(delay)
        await self.run_job(name)

    def status(self) -> dict:
        return {
            "running": self._running,
            "jobs": {name: job.status() for name, job in self.jobs.items()},
        }
