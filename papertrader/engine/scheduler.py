"""APScheduler integration.

One AsyncIOScheduler drives every recurring task. APScheduler only decides
*when* a task fires; whether it runs is decided here, by the task's state:
a firing that arrives while the previous run is still RUNNING is skipped and
counted, never queued.
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from papertrader.utils.constants import INTERVAL_MINUTES

logger = logging.getLogger(__name__)


class TaskState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class ScheduledTask:
    id: str
    name: str
    cron_spec: str
    body: Callable[[], Awaitable[Any]] = field(repr=False)
    state: TaskState = TaskState.IDLE
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0
    skipped_count: int = 0
    last_error: str | None = None
    last_duration_seconds: float | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "cron_spec": self.cron_spec,
            "state": self.state.value,
            "last_run_at": self.last_run_at,
            "next_run_at": self.next_run_at,
            "run_count": self.run_count,
            "skipped_count": self.skipped_count,
            "last_error": self.last_error,
            "last_duration_seconds": self.last_duration_seconds,
        }


def get_trigger(spec: str, tz: str = "UTC"):
    """Map a schedule spec to an APScheduler trigger.

    Accepts "<N>m", the interval names in INTERVAL_MINUTES ("1h", "4h", ...)
    or a standard 5-field crontab expression.
    """
    spec = spec.strip()
    if spec.endswith("m") and spec[:-1].isdigit():
        minutes = int(spec[:-1])
        if minutes <= 0:
            raise ValueError(f"Invalid schedule {spec!r}: interval must be positive")
        return IntervalTrigger(minutes=minutes, timezone=tz)
    if spec in INTERVAL_MINUTES:
        return IntervalTrigger(minutes=INTERVAL_MINUTES[spec], timezone=tz)
    try:
        return CronTrigger.from_crontab(spec, timezone=tz)
    except ValueError as e:
        raise ValueError(f"Invalid schedule {spec!r}: {e}") from e


class TaskScheduler:
    """Registry of scheduled tasks plus the APScheduler instance that fires them.

    Hooks:
        on_skip(task): a firing was dropped because the task was RUNNING.
        on_error(task, exc): the task body raised.
    Hook failures are logged and ignored.
    """

    def __init__(
        self,
        tz: str = "UTC",
        on_skip: Callable[[ScheduledTask], None] | None = None,
        on_error: Callable[[ScheduledTask, Exception], None] | None = None,
    ):
        self.timezone = tz
        self.on_skip = on_skip
        self.on_error = on_error
        self.started_at: datetime | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._tasks: dict[str, ScheduledTask] = {}
        self._in_flight: set[asyncio.Task] = set()
        self._stopped = False

    # -- registry -----------------------------------------------------------

    def register(self, task_id: str, name: str, cron_spec: str, body: Callable[[], Awaitable[Any]]) -> ScheduledTask:
        """Add or replace a task. Raises ValueError for an invalid schedule."""
        get_trigger(cron_spec, self.timezone)
        task = ScheduledTask(id=task_id, name=name, cron_spec=cron_spec, body=body)
        previous = self._tasks.get(task_id)
        if previous is not None and previous.state is TaskState.RUNNING:
            # Keep the gate closed until the old body finishes
            task.state = TaskState.RUNNING
        self._tasks[task_id] = task
        if self.running:
            self._add_job(task)
            task.next_run_at = self._next_run_time(task_id)
        return task

    def get(self, task_id: str) -> ScheduledTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task {task_id}") from None

    @property
    def tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # -- lifecycle ----------------------------------------------------------

    def start(self):
        """Start firing every registered task. Restarts if already running."""
        if self.running:
            logger.info("Scheduler already running, restarting")
            self.stop()

        self._stopped = False
        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        for task in self._tasks.values():
            if task.state is TaskState.STOPPED:
                task.state = TaskState.IDLE
            self._add_job(task)

        self._scheduler.start()
        self.started_at = datetime.now(timezone.utc)
        for task in self._tasks.values():
            task.next_run_at = self._next_run_time(task.id)
        logger.info(f"Scheduler started with {len(self._tasks)} tasks")

    def stop(self):
        """Stop firing immediately. Bodies already running finish on their own."""
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._stopped = True
        self.started_at = None
        for task in self._tasks.values():
            task.next_run_at = None
            if task.state is TaskState.IDLE:
                task.state = TaskState.STOPPED
        logger.info("Scheduler stopped")

    async def shutdown(self, timeout: float | None = None):
        """Stop, then wait for in-flight bodies to finish."""
        self.stop()
        pending = list(self._in_flight)
        if pending:
            logger.info(f"Waiting for {len(pending)} running task(s) to finish")
            await asyncio.wait(pending, timeout=timeout)

    # -- firing -------------------------------------------------------------

    def _add_job(self, task: ScheduledTask):
        self._scheduler.add_job(
            self._on_fire,
            trigger=get_trigger(task.cron_spec, self.timezone),
            args=[task.id],
            id=task.id,
            name=task.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        logger.info(f"Scheduled {task.id} ({task.cron_spec})")

    async def _on_fire(self, task_id: str):
        self._dispatch(task_id)

    def _dispatch(self, task_id: str) -> asyncio.Task | None:
        """Open the gate and start the body, or skip. Runs on the event loop."""
        task = self.get(task_id)
        if task.state is TaskState.RUNNING:
            task.skipped_count += 1
            logger.warning(f"[{task_id}] Skipping overlapping run, previous run still in progress")
            self._call_hook(self.on_skip, task)
            return None

        task.state = TaskState.RUNNING
        run = asyncio.get_running_loop().create_task(self._run(task), name=f"task:{task_id}")
        self._in_flight.add(run)
        run.add_done_callback(self._in_flight.discard)
        return run

    async def _run(self, task: ScheduledTask):
        started = time.monotonic()
        task.last_run_at = datetime.now(timezone.utc)
        logger.info(f"[{task.id}] Starting run")
        try:
            await task.body()
            task.last_error = None
        except Exception as e:
            task.last_error = str(e) or type(e).__name__
            logger.error(
                f"[{task.id}] Run started at {task.last_run_at.isoformat()} failed: {e}",
                exc_info=True,
            )
            self._call_hook(self.on_error, task, e)
        finally:
            task.run_count += 1
            task.last_duration_seconds = time.monotonic() - started
            task.next_run_at = self._next_run_time(task.id)
            state = TaskState.STOPPED if self._stopped else TaskState.IDLE
            task.state = state
            # A task re-registered mid-run inherited the closed gate
            current = self._tasks.get(task.id)
            if current is not None and current is not task and current.state is TaskState.RUNNING:
                current.state = state
            logger.info(f"[{task.id}] Finished in {task.last_duration_seconds:.2f}s")

    async def trigger(self, task_id: str) -> bool:
        """Run a task now, through the same overlap gate. False if skipped."""
        run = self._dispatch(task_id)
        if run is None:
            return False
        await asyncio.shield(run)
        return True

    def _next_run_time(self, task_id: str) -> datetime | None:
        if not self.running:
            return None
        job = self._scheduler.get_job(task_id)
        return job.next_run_time if job else None

    @staticmethod
    def _call_hook(hook, *args):
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.warning(f"Scheduler hook {getattr(hook, '__name__', hook)} failed: {e}")

    # -- introspection ------------------------------------------------------

    def status(self) -> dict:
        return {
            "running": self.running,
            "started_at": self.started_at,
            "task_count": len(self._tasks),
            "tasks": [task.to_dict() for task in self._tasks.values()],
        }
