"""
Durable Redis-backed job queue.

Layout under ``{prefix}queue:{name}:``

- ``job:{id}``        hash with the job payload and bookkeeping
- ``waiting``         list of ready job ids (LPUSH in, LMOVE out -> FIFO)
- ``active``          list of job ids claimed by a worker
- ``lock:{id}``       visibility lock, TTL renewed while the handler runs
- ``delayed``         zset of job ids scored by run-at (ms)
- ``completed``       zset of finished job ids scored by finish time (ms)
- ``failed``          zset of exhausted job ids scored by finish time (ms)
- ``dedup:{key}``     caller key -> outstanding job id
- ``stalled``         set of active ids seen without a lock on the last check
- ``paused``          flag; a paused queue hands out no jobs
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from licenseflow.core.config import Settings


logger = structlog.get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class JobState:
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A unit of work as stored in the queue."""
    id: str
    queue: str
    data: Dict[str, Any] = field(default_factory=dict)
    job_key: Optional[str] = None
    attempts_made: int = 0
    max_retries: int = 3
    state: str = JobState.WAITING
    failed_reason: Optional[str] = None
    created_at: int = 0
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    lock_token: Optional[str] = None

    @property
    def attempt(self) -> int:
        """1-based number of the attempt currently running."""
        return self.attempts_made + 1

    def to_hash(self) -> Dict[str, str]:
        values = {
            "id": self.id,
            "queue": self.queue,
            "data": json.dumps(self.data),
            "job_key": self.job_key or "",
            "attempts_made": str(self.attempts_made),
            "max_retries": str(self.max_retries),
            "state": self.state,
            "failed_reason": self.failed_reason or "",
            "created_at": str(self.created_at),
        }
        if self.processed_at is not None:
            values["processed_at"] = str(self.processed_at)
        if self.finished_at is not None:
            values["finished_at"] = str(self.finished_at)
        return values

    @classmethod
    def from_hash(cls, values: Dict[str, str]) -> "Job":
        return cls(
            id=values["id"],
            queue=values.get("queue", ""),
            data=json.loads(values.get("data") or "{}"),
            job_key=values.get("job_key") or None,
            attempts_made=int(values.get("attempts_made") or 0),
            max_retries=int(values.get("max_retries") or 0),
            state=values.get("state") or JobState.WAITING,
            failed_reason=values.get("failed_reason") or None,
            created_at=int(values.get("created_at") or 0),
            processed_at=int(values["processed_at"]) if values.get("processed_at") else None,
            finished_at=int(values["finished_at"]) if values.get("finished_at") else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "data": self.data,
            "job_key": self.job_key,
            "attempts_made": self.attempts_made,
            "max_retries": self.max_retries,
            "state": self.state,
            "failed_reason": self.failed_reason,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
        }


class JobQueue:
    """
    One named queue.

    Delivery is at-least-once: a job whose worker dies is put back by the
    stall check once its lock expires.
    """

    def __init__(
        self,
        redis: Redis,
        name: str,
        settings: Settings,
        max_retries: Optional[int] = None,
        backoff_base: Optional[int] = None
    ):
        self.redis = redis
        self.name = name
        self.prefix = f"{settings.redis_prefix}queue:{name}:"
        self.max_retries = settings.queue_default_retries if max_retries is None else max_retries
        self.backoff_base_ms = (settings.queue_backoff_base if backoff_base is None else backoff_base) * 1000
        self.lock_duration_ms = settings.queue_lock_duration * 1000
        self.max_stalled_count = settings.queue_max_stalled_count
        self.keep_completed = settings.queue_keep_completed
        self.keep_failed = settings.queue_keep_failed
        self.completed_max_age_ms = settings.queue_completed_max_age * 1000
        self.failed_max_age_ms = settings.queue_failed_max_age * 1000
        self.logger = logger.bind(service="job_queue", queue=name)

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._key(f"lock:{job_id}")

    def _dedup_key(self, job_key: str) -> str:
        return self._key(f"dedup:{job_key}")

    async def add(
        self,
        data: Dict[str, Any],
        job_key: Optional[str] = None,
        delay: float = 0,
        max_retries: Optional[int] = None
    ) -> Job:
        """
        Submit a job.

        Args:
            data: JSON-serializable payload
            job_key: Dedup key; while a job with this key is outstanding,
                submitting again returns the existing job
            delay: Seconds before the job becomes ready
            max_retries: Retries after the first attempt

        Returns:
            Job: the new job, or the outstanding one for ``job_key``
        """
        job = Job(
            id=uuid.uuid4().hex,
            queue=self.name,
            data=data,
            job_key=job_key,
            max_retries=self.max_retries if max_retries is None else max_retries,
            created_at=now_ms(),
        )

        run_at = now_ms() + int(delay * 1000)
        job.state = JobState.DELAYED if delay > 0 else JobState.WAITING

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    if job_key:
                        # The claim commits together with the job, or not at all if the key moved
                        await pipe.watch(self._dedup_key(job_key))
                        existing = await self._outstanding_job(pipe, job_key)
                        if existing is not None:
                            self.logger.info("Job already queued, skipping", job_key=job_key, job_id=existing.id)
                            return existing

                    pipe.multi()
                    if job_key:
                        pipe.set(self._dedup_key(job_key), job.id)
                    pipe.hset(self._job_key(job.id), mapping=job.to_hash())
                    if delay > 0:
                        pipe.zadd(self._key("delayed"), {job.id: run_at})
                    else:
                        pipe.lpush(self._key("waiting"), job.id)
                    await pipe.execute()
                    break
                except WatchError:
                    self.logger.debug("Job key changed during add, retrying", job_key=job_key)

        self.logger.info("Job added", job_id=job.id, job_key=job_key, delay=delay)
        return job

    async def _outstanding_job(self, client, job_key: str) -> Optional[Job]:
        """The job holding ``job_key``, unless it is gone or finished."""
        existing_id = await client.get(self._dedup_key(job_key))
        if not existing_id:
            return None
        values = await client.hgetall(self._job_key(existing_id))
        if not values:
            return None
        existing = Job.from_hash(values)
        if existing.state in (JobState.COMPLETED, JobState.FAILED):
            return None
        return existing

    async def get_job(self, job_id: str) -> Optional[Job]:
        values = await self.redis.hgetall(self._job_key(job_id))
        if not values:
            return None
        return Job.from_hash(values)

    async def get_job_by_key(self, job_key: str) -> Optional[Job]:
        job_id = await self.redis.get(self._dedup_key(job_key))
        return await self.get_job(job_id) if job_id else None

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come to the waiting list."""
        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", now_ms())
        promoted = 0
        for job_id in due:
            # ZREM decides which caller promotes when several workers race
            if await self.redis.zrem(self._key("delayed"), job_id):
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
                    pipe.lpush(self._key("waiting"), job_id)
                    await pipe.execute()
                promoted += 1
        return promoted

    async def fetch_next(self) -> Optional[Job]:
        """Claim the next ready job and take its visibility lock."""
        if await self.is_paused():
            return None

        await self.promote_delayed()

        job_id = await self.redis.lmove(self._key("waiting"), self._key("active"), "RIGHT", "LEFT")
        if job_id is None:
            return None

        if not await self.redis.exists(self._job_key(job_id)):
            # Removed while waiting
            await self.redis.lrem(self._key("active"), 0, job_id)
            return None

        token = uuid.uuid4().hex
        processed_at = now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._lock_key(job_id), token, px=self.lock_duration_ms)
            pipe.hset(self._job_key(job_id), mapping={"state": JobState.ACTIVE, "processed_at": str(processed_at)})
            await pipe.execute()

        job = await self.get_job(job_id)
        job.lock_token = token
        return job

    async def extend_lock(self, job: Job) -> bool:
        """Renew the visibility lock; False if the lock was lost."""
        current = await self.redis.get(self._lock_key(job.id))
        if current != job.lock_token:
            return False
        return bool(await self.redis.pexpire(self._lock_key(job.id), self.lock_duration_ms))

    async def _release_dedup(self, job: Job) -> None:
        if job.job_key and await self.redis.get(self._dedup_key(job.job_key)) == job.id:
            await self.redis.delete(self._dedup_key(job.job_key))

    async def complete(self, job: Job, result: Any = None) -> None:
        finished_at = now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.hset(self._job_key(job.id), mapping={
                "state": JobState.COMPLETED,
                "finished_at": str(finished_at),
                "return_value": json.dumps(result, default=str),
            })
            pipe.zadd(self._key("completed"), {job.id: finished_at})
            await pipe.execute()

        await self._release_dedup(job)
        job.state = JobState.COMPLETED
        job.finished_at = finished_at

    def backoff_delay_ms(self, attempts_made: int) -> int:
        """Exponential backoff: base, 2x base, 4x base, ... after attempt 1, 2, 3, ..."""
        return self.backoff_base_ms * (2 ** max(attempts_made - 1, 0))

    async def fail(self, job: Job, error: str) -> str:
        """
        Record a failed attempt.

        Returns:
            str: ``delayed`` if a retry was scheduled, ``failed`` when exhausted
        """
        job.attempts_made += 1
        job.failed_reason = error
        finished_at = now_ms()

        if job.attempts_made <= job.max_retries:
            run_at = finished_at + self.backoff_delay_ms(job.attempts_made)
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key("active"), 0, job.id)
                pipe.delete(self._lock_key(job.id))
                pipe.hset(self._job_key(job.id), mapping={
                    "state": JobState.DELAYED,
                    "attempts_made": str(job.attempts_made),
                    "failed_reason": error,
                })
                pipe.zadd(self._key("delayed"), {job.id: run_at})
                await pipe.execute()

            job.state = JobState.DELAYED
            self.logger.warning(
                "Job attempt failed, retry scheduled",
                job_id=job.id,
                attempts_made=job.attempts_made,
                retry_in_ms=run_at - finished_at,
                error=error
            )
            return JobState.DELAYED

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 0, job.id)
            pipe.delete(self._lock_key(job.id))
            pipe.hset(self._job_key(job.id), mapping={
                "state": JobState.FAILED,
                "attempts_made": str(job.attempts_made),
                "failed_reason": error,
                "finished_at": str(finished_at),
            })
            pipe.zadd(self._key("failed"), {job.id: finished_at})
            await pipe.execute()

        await self._release_dedup(job)
        job.state = JobState.FAILED
        job.finished_at = finished_at
        self.logger.error("Job failed permanently", job_id=job.id, attempts_made=job.attempts_made, error=error)
        return JobState.FAILED

    async def check_stalled(self) -> int:
        """
        Requeue active jobs whose lock has expired.

        A job must be seen without a lock on two consecutive checks before
        it is requeued, which covers the instant between claim and lock.
        A job that stalls more than ``queue_max_stalled_count`` times is
        failed instead.

        Returns:
            int: Number of jobs moved back to waiting
        """
        stalled_key = self._key("stalled")
        candidates = await self.redis.smembers(stalled_key)
        await self.redis.delete(stalled_key)

        requeued = 0
        for job_id in candidates:
            if await self.redis.exists(self._lock_key(job_id)):
                continue
            # LREM succeeding means the job was still active and is now ours to requeue
            if not await self.redis.lrem(self._key("active"), 1, job_id):
                continue

            stalled_count = await self.redis.hincrby(self._job_key(job_id), "stalled_count", 1)
            if stalled_count > self.max_stalled_count:
                await self._fail_stalled(job_id, stalled_count)
                continue

            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
                pipe.rpush(self._key("waiting"), job_id)
                await pipe.execute()
            requeued += 1
            self.logger.warning("Stalled job moved back to waiting", job_id=job_id, stalled_count=stalled_count)

        for job_id in await self.redis.lrange(self._key("active"), 0, -1):
            if not await self.redis.exists(self._lock_key(job_id)):
                await self.redis.sadd(stalled_key, job_id)

        return requeued

    async def _fail_stalled(self, job_id: str, stalled_count: int) -> None:
        reason = f"job stalled more than {self.max_stalled_count} times"
        finished_at = now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._lock_key(job_id))
            pipe.hset(self._job_key(job_id), mapping={
                "state": JobState.FAILED,
                "failed_reason": reason,
                "finished_at": str(finished_at),
            })
            pipe.zadd(self._key("failed"), {job_id: finished_at})
            await pipe.execute()

        job = await self.get_job(job_id)
        if job is not None:
            await self._release_dedup(job)
        self.logger.error("Stalled job failed permanently", job_id=job_id, stalled_count=stalled_count)

    async def pause(self) -> None:
        await self.redis.set(self._key("paused"), "1")
        self.logger.info("Queue paused")

    async def resume(self) -> None:
        await self.redis.delete(self._key("paused"))
        self.logger.info("Queue resumed")

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._key("paused")))

    async def remove(self, job_key: str) -> bool:
        """
        Remove an outstanding (waiting or delayed) job by its dedup key.

        Active jobs are left to finish.
        """
        job_id = await self.redis.get(self._dedup_key(job_key))
        if not job_id:
            return False

        removed = await self.redis.lrem(self._key("waiting"), 0, job_id)
        removed += await self.redis.zrem(self._key("delayed"), job_id)
        if not removed:
            self.logger.info("Job is not outstanding, not removed", job_key=job_key, job_id=job_id)
            return False

        await self.redis.delete(self._job_key(job_id), self._dedup_key(job_key))
        self.logger.info("Job removed", job_key=job_key, job_id=job_id)
        return True

    async def get_stats(self) -> Dict[str, Any]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("waiting"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            pipe.exists(self._key("paused"))
            waiting, active, delayed, completed, failed, paused = await pipe.execute()

        return {
            "name": self.name,
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
            "total": waiting + active + delayed,
            "paused": bool(paused),
        }

    async def get_failed_jobs(self, limit: int = 50) -> List[Job]:
        job_ids = await self.redis.zrevrange(self._key("failed"), 0, limit - 1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def _clean_set(self, set_name: str, keep: int, max_age_ms: int) -> int:
        """Drop entries older than ``max_age_ms`` that are not among the newest ``keep``."""
        cutoff = now_ms() - max_age_ms
        # Oldest first, excluding the newest ``keep`` entries
        candidates = await self.redis.zrange(self._key(set_name), 0, -(keep + 1), withscores=True)
        stale = [job_id for job_id, score in candidates if score < cutoff]
        if not stale:
            return 0

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key(set_name), *stale)
            pipe.delete(*[self._job_key(job_id) for job_id in stale])
            await pipe.execute()
        return len(stale)

    async def clean(self) -> Dict[str, int]:
        """Trim completed and failed history."""
        removed = {
            "completed": await self._clean_set("completed", self.keep_completed, self.completed_max_age_ms),
            "failed": await self._clean_set("failed", self.keep_failed, self.failed_max_age_ms),
        }
        if removed["completed"] or removed["failed"]:
            self.logger.info("Queue history cleaned", **removed)
        return removed
