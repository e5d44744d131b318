"""
Main entry point for the worker/scheduler service.
Runs the queue workers and the periodic triggers in one process.
"""

import asyncio
import signal
from typing import List, Optional

import structlog

from licenseflow.container import Container
from licenseflow.core.config import Settings, load_settings
from licenseflow.core.logging import setup_logging
from .task_scheduler import TaskScheduler


logger = structlog.get_logger(__name__)


class SchedulerMain:
    """Main scheduler service coordinator."""

    def __init__(self, settings: Settings, run_workers: bool = True, run_scheduler: bool = True):
        self.settings = settings
        self.run_workers = run_workers
        self.run_scheduler = run_scheduler
        self.container = Container(settings)
        self.task_scheduler: Optional[TaskScheduler] = None
        self.running = False
        self._stopped = False
        self.health_check_interval = 300  # seconds
        self.tasks: List[asyncio.Task] = []

    async def initialize(self):
        """Initialize scheduler components."""
        try:
            logger.info("Initializing scheduler service")
            await self.container.startup()

            self.task_scheduler = TaskScheduler(self.container.worker_pool, self.settings)
            await self.task_scheduler.initialize()

            logger.info("Scheduler service initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize scheduler", error=str(e))
            raise

    async def start(self):
        """Start the workers, the scheduler loop and the health reporter."""
        logger.info("Starting scheduler service", workers=self.run_workers, scheduler=self.run_scheduler)
        self.running = True

        if self.run_workers:
            self.tasks.append(asyncio.create_task(self.container.worker_pool.start()))
        if self.run_scheduler:
            self.tasks.append(asyncio.create_task(self.task_scheduler.start()))
        self.tasks.append(asyncio.create_task(self._periodic_health_check()))

        logger.info("Scheduler service started")
        await asyncio.gather(*self.tasks, return_exceptions=True)

    async def stop(self):
        """Stop the scheduler service."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping scheduler service")
        self.running = False

        if self.task_scheduler:
            await self.task_scheduler.stop()
        if self.container.worker_pool:
            await self.container.worker_pool.stop()

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        await self.container.shutdown()
        logger.info("Scheduler service stopped")

    async def _periodic_health_check(self):
        """Periodic health report for scheduler components."""
        while self.running:
            try:
                await asyncio.sleep(self.health_check_interval)
                if not self.running:
                    break

                scheduler_health = await self.task_scheduler.health_check()
                pool_health = await self.container.worker_pool.health_check()
                database_ok = await self.container.database.health_check()
                redis_health = await self.container.redis.health_check()

                logger.info(
                    "Scheduler health check",
                    task_scheduler=scheduler_health,
                    worker_pool=pool_health,
                    database=database_ok,
                    redis=redis_health
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main(settings: Optional[Settings] = None, run_workers: bool = True, run_scheduler: bool = True):
    """Run the scheduler service until SIGINT/SIGTERM."""
    settings = settings or load_settings()
    setup_logging(settings)

    scheduler = SchedulerMain(settings, run_workers=run_workers, run_scheduler=run_scheduler)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(_shutdown(scheduler, s)))

    try:
        await scheduler.initialize()
        await scheduler.start()
    except Exception as e:
        logger.error("Scheduler service failed", error=str(e))
        raise
    finally:
        await scheduler.stop()


async def _shutdown(scheduler: SchedulerMain, sig: signal.Signals):
    logger.info("Received signal, shutting down", signal=sig.name)
    await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(main())
