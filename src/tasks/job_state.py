"""
Research job status machine and queue priorities.
States: queued -> processing -> completed | failed   (queued -> failed only when enqueue fails)
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class JobStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


class Priority(str, Enum):
    high = "high"
    normal = "normal"
    low = "low"


# claim order
PRIORITY_ORDER = (Priority.high, Priority.normal, Priority.low)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.queued: frozenset({JobStatus.processing, JobStatus.failed}),
    # processing -> processing is a redelivery
    JobStatus.processing: frozenset({JobStatus.processing, JobStatus.completed, JobStatus.failed}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return JobStatus(target) in ALLOWED_TRANSITIONS[JobStatus(current)]


def parse_priority(value) -> Priority:
    """Raises ValueError for anything outside low|normal|high."""
    if isinstance(value, Priority):
        return value
    return Priority(str(value).strip().lower())
