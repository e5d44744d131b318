"""
Worker pool: one queue and one worker per job type.

Job types and their worker concurrency:
- daily earnings (1): one accrual cycle per job
- transaction validation (3): one order per job, dedup key ``validation-{order_id}``
- order expiry (5): one order per job, dedup key ``expire-{order_id}``
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from redis.asyncio import Redis

from licenseflow.core.config import Settings
from licenseflow.core.exceptions import QueueError
from licenseflow.queue import Job, JobQueue, Worker
from licenseflow.services.earnings import EarningsAccrualProcessor
from licenseflow.services.order_expirer import OrderExpirer
from licenseflow.services.validation import TransactionValidationProcessor
from licenseflow.utils.timeutils import utcnow, ensure_utc


logger = structlog.get_logger(__name__)

EARNINGS_QUEUE = "daily-earnings"
VALIDATION_QUEUE = "transaction-validation"
ORDER_EXPIRY_QUEUE = "order-expiry"


def validation_job_key(order_id: str) -> str:
    return f"validation-{order_id}"


def expiry_job_key(order_id: str) -> str:
    return f"expire-{order_id}"


class WorkerPool:
    """Owns the queues, their workers and the submission helpers."""

    def __init__(
        self,
        redis: Redis,
        settings: Settings,
        earnings_processor: EarningsAccrualProcessor,
        validation_processor: TransactionValidationProcessor,
        order_expirer: OrderExpirer
    ):
        self.settings = settings
        self.earnings_processor = earnings_processor
        self.validation_processor = validation_processor
        self.order_expirer = order_expirer
        self.logger = logger.bind(service="worker_pool")

        self.queues: Dict[str, JobQueue] = {
            EARNINGS_QUEUE: JobQueue(redis, EARNINGS_QUEUE, settings),
            VALIDATION_QUEUE: JobQueue(
                redis,
                VALIDATION_QUEUE,
                settings,
                max_retries=settings.validation_max_retries
            ),
            ORDER_EXPIRY_QUEUE: JobQueue(redis, ORDER_EXPIRY_QUEUE, settings),
        }

        self.workers: Dict[str, Worker] = {
            EARNINGS_QUEUE: Worker(
                self.queues[EARNINGS_QUEUE],
                self._handle_daily_earnings,
                settings,
                concurrency=settings.earnings_concurrency
            ),
            VALIDATION_QUEUE: Worker(
                self.queues[VALIDATION_QUEUE],
                self._handle_validation,
                settings,
                concurrency=settings.validation_concurrency
            ),
            ORDER_EXPIRY_QUEUE: Worker(
                self.queues[ORDER_EXPIRY_QUEUE],
                self._handle_order_expiry,
                settings,
                concurrency=settings.order_expiry_concurrency
            ),
        }

        self._worker_tasks: List[asyncio.Task] = []

    def get_queue(self, name: str) -> JobQueue:
        if name not in self.queues:
            raise QueueError(f"Unknown queue: {name}", {"known": list(self.queues)})
        return self.queues[name]

    # Job handlers

    async def _handle_daily_earnings(self, job: Job) -> Dict[str, int]:
        result = await self.earnings_processor.run_daily_earnings_cycle()
        return result.to_dict()

    async def _handle_validation(self, job: Job) -> str:
        outcome = await self.validation_processor.validate_order(
            job.data["order_id"],
            retry_count=job.attempts_made
        )
        return outcome.value

    async def _handle_order_expiry(self, job: Job) -> bool:
        return await self.order_expirer.expire_order(job.data["order_id"])

    # Submission

    async def schedule_daily_earnings(self, run_date: Optional[datetime] = None) -> Job:
        """Enqueue the accrual cycle, at most once per UTC day."""
        run_date = ensure_utc(run_date) if run_date is not None else utcnow()
        day = run_date.date().isoformat()
        return await self.queues[EARNINGS_QUEUE].add(
            {"run_date": day, "triggered_at": utcnow().isoformat()},
            job_key=f"earnings-{day}"
        )

    async def schedule_validation(self, order_id: str, delay: float = 0) -> Job:
        """Enqueue validation for an order; a no-op while one is outstanding."""
        job = await self.queues[VALIDATION_QUEUE].add(
            {"order_id": order_id},
            job_key=validation_job_key(order_id),
            delay=delay
        )
        self.logger.info("Queued transaction validation", order_id=order_id, delay=delay, job_id=job.id)
        return job

    async def remove_validation(self, order_id: str) -> bool:
        return await self.queues[VALIDATION_QUEUE].remove(validation_job_key(order_id))

    async def schedule_order_expiry(self, order_id: str, expires_at: datetime) -> Job:
        delay = max(0.0, (ensure_utc(expires_at) - utcnow()).total_seconds())
        return await self.queues[ORDER_EXPIRY_QUEUE].add(
            {"order_id": order_id},
            job_key=expiry_job_key(order_id),
            delay=delay
        )

    async def queue_pending_validations(self) -> int:
        """Enqueue validation for the oldest paid orders awaiting it."""
        order_ids = await self.validation_processor.find_pending_validations(
            self.settings.pending_validation_batch_size
        )
        for order_id in order_ids:
            await self.schedule_validation(order_id, delay=self.settings.validation_initial_delay)

        self.logger.info("Queued pending validations", count=len(order_ids))
        return len(order_ids)

    async def queue_due_expirations(self) -> int:
        """Enqueue expiry for pending orders past their deadline."""
        order_ids = await self.order_expirer.find_due_orders()
        for order_id in order_ids:
            await self.queues[ORDER_EXPIRY_QUEUE].add({"order_id": order_id}, job_key=expiry_job_key(order_id))

        if order_ids:
            self.logger.info("Queued due order expirations", count=len(order_ids))
        return len(order_ids)

    # Admin operations

    def _select(self, name: Optional[str]) -> List[JobQueue]:
        return [self.get_queue(name)] if name else list(self.queues.values())

    async def pause(self, name: Optional[str] = None) -> None:
        for queue in self._select(name):
            await queue.pause()

    async def resume(self, name: Optional[str] = None) -> None:
        for queue in self._select(name):
            await queue.resume()

    async def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {queue.name: await queue.get_stats() for queue in self.queues.values()}

    async def cleanup(self) -> Dict[str, Dict[str, int]]:
        return {queue.name: await queue.clean() for queue in self.queues.values()}

    # Lifecycle

    async def start(self) -> None:
        """Run all workers until stop() is called."""
        self.logger.info(
            "Starting worker pool",
            queues={name: worker.concurrency for name, worker in self.workers.items()}
        )
        self._worker_tasks = [asyncio.create_task(worker.run()) for worker in self.workers.values()]
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)

    async def stop(self) -> None:
        self.logger.info("Stopping worker pool")
        for worker in self.workers.values():
            await worker.stop()
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
            self._worker_tasks = []

    async def health_check(self) -> Dict[str, Any]:
        workers = {name: worker.get_status() for name, worker in self.workers.items()}
        return {
            "healthy": all(status["running"] for status in workers.values()) if self._worker_tasks else True,
            "workers": workers,
            "earnings_processor": self.earnings_processor.get_status(),
            "queues": await self.get_stats(),
        }
