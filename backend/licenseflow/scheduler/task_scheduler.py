"""
Task scheduler for periodic triggers.

The scheduler only enqueues work; the jobs themselves run in the worker
pool, so several scheduler instances firing at once cost at most a
deduplicated submission.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Any, Callable, Optional

import structlog

from licenseflow.core.config import Settings
from licenseflow.utils.timeutils import utcnow
from .worker_pool import WorkerPool


logger = structlog.get_logger(__name__)


class ScheduledTask:
    """Represents a task run every ``interval_seconds``."""

    def __init__(
        self,
        name: str,
        func: Callable,
        interval_seconds: int,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.last_run: Optional[datetime] = None
        self.next_run = utcnow()
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None

        if not run_immediately:
            self.next_run = utcnow() + timedelta(seconds=interval_seconds)

    def should_run(self, now: Optional[datetime] = None) -> bool:
        """Check if task should run now."""
        return self.enabled and (now or utcnow()) >= self.next_run

    def schedule_next_run(self):
        """Schedule the next run."""
        self.next_run = utcnow() + timedelta(seconds=self.interval_seconds)

    async def run(self):
        """Execute the task."""
        try:
            logger.debug("Running scheduled task", task=self.name)

            start_time = utcnow()
            await self.func()
            duration = (utcnow() - start_time).total_seconds()

            self.last_run = start_time
            self.run_count += 1
            self.schedule_next_run()

            logger.debug("Task completed", task=self.name, duration=duration, run_count=self.run_count)

        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            self.schedule_next_run()  # Still schedule next run

            logger.error("Task failed", task=self.name, error=str(e), error_count=self.error_count)
            raise


class DailyScheduledTask(ScheduledTask):
    """Task run once a day at a fixed UTC hour."""

    def __init__(self, name: str, func: Callable, utc_hour: int, enabled: bool = True):
        self.utc_hour = utc_hour
        super().__init__(name, func, interval_seconds=24 * 60 * 60, enabled=enabled, run_immediately=True)
        self.next_run = self.calculate_next_run_time()

    def calculate_next_run_time(self, now: Optional[datetime] = None) -> datetime:
        """Next occurrence of the target hour, today if still ahead, otherwise tomorrow."""
        now = now or utcnow()
        next_run = now.replace(hour=self.utc_hour, minute=0, second=0, microsecond=0)
        if next_run <= now:
            next_run += timedelta(days=1)
        return next_run

    def schedule_next_run(self):
        self.next_run = self.calculate_next_run_time()


class TaskScheduler:
    """Manages the periodic triggers of the worker pool."""

    def __init__(self, worker_pool: WorkerPool, settings: Settings):
        self.worker_pool = worker_pool
        self.settings = settings
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self.loop_interval = 10  # Check every 10 seconds
        self._stop_event = asyncio.Event()

    async def initialize(self):
        """Initialize the task scheduler with default tasks."""
        logger.info("Initializing task scheduler")
        self._register_default_tasks()
        logger.info("Task scheduler initialized", tasks=len(self.tasks))

    def _register_default_tasks(self):
        """Register default periodic tasks."""
        enabled = self.settings.scheduler_enabled

        # Daily accrual cycle at the configured UTC hour
        self.register(DailyScheduledTask(
            "daily_earnings",
            self.worker_pool.schedule_daily_earnings,
            utc_hour=self.settings.earnings_schedule_utc_hour,
            enabled=enabled
        ))

        self.register_task(
            "pending_validation_sweep",
            self.worker_pool.queue_pending_validations,
            interval_seconds=self.settings.validation_sweep_interval,
            enabled=enabled,
            run_immediately=True
        )

        self.register_task(
            "order_expiry_sweep",
            self.worker_pool.queue_due_expirations,
            interval_seconds=self.settings.order_expiry_sweep_interval,
            enabled=enabled,
            run_immediately=True
        )

        self.register_task(
            "queue_cleanup",
            self.worker_pool.cleanup,
            interval_seconds=self.settings.queue_cleanup_interval,
            enabled=True
        )

    def register(self, task: ScheduledTask):
        self.tasks[task.name] = task
        logger.info("Registered task", task=task.name, next_run=task.next_run.isoformat())

    def register_task(
        self,
        name: str,
        func: Callable,
        interval_seconds: int,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        """Register a new interval task."""
        self.register(ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
            run_immediately=run_immediately
        ))

    def enable_task(self, name: str):
        """Enable a task."""
        if name in self.tasks:
            self.tasks[name].enabled = True
            logger.info("Enabled task", task=name)

    def disable_task(self, name: str):
        """Disable a task."""
        if name in self.tasks:
            self.tasks[name].enabled = False
            logger.info("Disabled task", task=name)

    async def start(self):
        """Start the task scheduler."""
        logger.info("Starting task scheduler")
        self.running = True
        self._stop_event.clear()

        while self.running:
            try:
                await self.run_pending_tasks()
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.loop_interval)

            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Task scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)

        logger.info("Task scheduler stopped")

    async def stop(self):
        """Stop the task scheduler."""
        logger.info("Stopping task scheduler")
        self.running = False
        self._stop_event.set()

    async def run_pending_tasks(self, now: Optional[datetime] = None) -> int:
        """Run all due tasks concurrently; returns how many ran."""
        pending_tasks = [task for task in self.tasks.values() if task.should_run(now)]

        if pending_tasks:
            logger.debug("Running pending tasks", count=len(pending_tasks))

            results = await asyncio.gather(*(task.run() for task in pending_tasks), return_exceptions=True)

            for task, result in zip(pending_tasks, results):
                if isinstance(result, Exception):
                    logger.error("Task failed", task=task.name, error=str(result))

        return len(pending_tasks)

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of task scheduler."""
        total_tasks = len(self.tasks)
        enabled_tasks = sum(1 for task in self.tasks.values() if task.enabled)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)

        task_statuses = {}
        for name, task in self.tasks.items():
            task_statuses[name] = {
                "enabled": task.enabled,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "next_run": task.next_run.isoformat(),
                "run_count": task.run_count,
                "error_count": task.error_count,
                "last_error": task.last_error
            }

        return {
            "healthy": self.running and tasks_with_errors < total_tasks * 0.5,
            "running": self.running,
            "total_tasks": total_tasks,
            "enabled_tasks": enabled_tasks,
            "tasks_with_errors": tasks_with_errors,
            "tasks": task_statuses
        }
