"""
Research job queue: Redis Streams (or in-process) queue, job status machine, background worker.
"""

from src.tasks.job_state import JobStatus, Priority, can_transition
from src.tasks.queue import MemoryQueue, RedisStreamQueue, WorkUnit, get_task_queue

__all__ = [
    "JobStatus",
    "Priority",
    "can_transition",
    "MemoryQueue",
    "RedisStreamQueue",
    "WorkUnit",
    "get_task_queue",
]
