"""
Queue worker: pulls jobs from one JobQueue and runs them with bounded concurrency.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set

import structlog

from licenseflow.core.config import Settings
from .job_queue import Job, JobQueue, JobState


logger = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class Worker:
    """
    Runs ``handler`` for jobs of one queue.

    A job that raises is handed back to the queue, which schedules the
    retry or moves it to the failed set. While the handler runs the job's
    visibility lock is renewed; the stall checker requeues jobs whose
    worker stopped renewing.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        settings: Settings,
        concurrency: int = 1
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = settings.queue_poll_interval
        self.lock_renew_interval = settings.queue_lock_duration / 2
        self.stall_interval = settings.queue_stall_interval
        self.logger = logger.bind(service="worker", queue=queue.name)

        self.is_running = False
        self.jobs_completed = 0
        self.jobs_failed = 0
        self._stop_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._stall_task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Process jobs until stop() is called."""
        self.is_running = True
        self._stop_event.clear()
        self._stall_task = asyncio.create_task(self._stall_loop())
        self.logger.info("Worker started", concurrency=self.concurrency)

        try:
            while not self._stop_event.is_set():
                await self._semaphore.acquire()
                if self._stop_event.is_set():
                    self._semaphore.release()
                    break

                try:
                    job = await self.queue.fetch_next()
                except Exception as e:
                    self._semaphore.release()
                    self.logger.error("Failed to fetch job", error=str(e))
                    await self._idle()
                    continue

                if job is None:
                    self._semaphore.release()
                    await self._idle()
                    continue

                task = asyncio.create_task(self._run_job(job, release=True))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

        finally:
            if self._stall_task:
                self._stall_task.cancel()
                await asyncio.gather(self._stall_task, return_exceptions=True)
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            self.is_running = False
            self.logger.info(
                "Worker stopped",
                jobs_completed=self.jobs_completed,
                jobs_failed=self.jobs_failed
            )

    async def stop(self) -> None:
        """Stop fetching; in-flight jobs finish before run() returns."""
        self._stop_event.set()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _stall_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.queue.check_stalled()
            except Exception as e:
                self.logger.error("Stalled job check failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.stall_interval)
            except asyncio.TimeoutError:
                pass

    async def _renew_lock(self, job: Job) -> None:
        while True:
            await asyncio.sleep(self.lock_renew_interval)
            if not await self.queue.extend_lock(job):
                self.logger.warning("Lost lock on active job", job_id=job.id)
                return

    async def _run_job(self, job: Job, release: bool = False) -> str:
        heartbeat = asyncio.create_task(self._renew_lock(job))
        try:
            self.logger.info("Processing job", job_id=job.id, job_key=job.job_key, attempt=job.attempt)
            result = await self.handler(job)
            await self.queue.complete(job, result)
            self.jobs_completed += 1
            self.logger.info("Job completed", job_id=job.id, job_key=job.job_key)
            return JobState.COMPLETED

        except Exception as e:
            self.jobs_failed += 1
            return await self.queue.fail(job, str(e) or e.__class__.__name__)

        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            if release:
                self._semaphore.release()

    async def process_next(self) -> Optional[str]:
        """
        Claim and run one ready job inline.

        Returns:
            The job's resulting state, or None if nothing was ready
        """
        job = await self.queue.fetch_next()
        if job is None:
            return None
        return await self._run_job(job)

    async def drain(self, max_jobs: int = 1000) -> int:
        """Run ready jobs inline until none is left; returns how many ran."""
        processed = 0
        while processed < max_jobs and await self.process_next() is not None:
            processed += 1
        return processed

    def get_status(self) -> dict:
        return {
            "queue": self.queue.name,
            "running": self.is_running,
            "concurrency": self.concurrency,
            "in_flight": len(self._tasks),
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
        }
