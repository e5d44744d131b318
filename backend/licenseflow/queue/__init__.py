"""
Redis-backed job queues and workers.
"""

from .job_queue import Job, JobQueue, JobState
from .worker import Worker

__all__ = ["Job", "JobQueue", "JobState", "Worker"]
