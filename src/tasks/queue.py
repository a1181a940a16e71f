"""
Durable work queue for research jobs.

Two backends with the same contract (selected by `tasks.backend`):
  - RedisStreamQueue: one stream per priority, a consumer group, XAUTOCLAIM
    hands units pending longer than `redelivery_idle_seconds` to the next claim.
  - MemoryQueue: in-process deques with the same redelivery rule.

A unit stays pending until ack(); a worker that dies mid-job gets it redelivered.
"""

from __future__ import annotations

import json
import os
import socket
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import redis

from config.settings import settings
from src.log import get_logger
from src.tasks.job_state import PRIORITY_ORDER, Priority, parse_priority

logger = get_logger(__name__)


@dataclass
class WorkUnit:
    queue_job_id: str
    type: str
    payload: Dict[str, Any]
    priority: Priority = Priority.normal
    deliveries: int = 1
    entry_id: str = ""
    stream: str = ""
    claimed_at: float = field(default_factory=time.time)


def _default_consumer() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class RedisStreamQueue:
    """Sync Redis Streams client: XADD / XREADGROUP / XAUTOCLAIM / XACK."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        stream_prefix: Optional[str] = None,
        group: Optional[str] = None,
        consumer: Optional[str] = None,
        redelivery_idle_seconds: Optional[float] = None,
        max_len: Optional[int] = None,
        client: Optional[redis.Redis] = None,
    ):
        self._url = redis_url or settings.tasks.redis_url
        self.stream_prefix = stream_prefix or settings.tasks.stream_prefix
        self.group = group or settings.tasks.consumer_group
        self.consumer = consumer or _default_consumer()
        idle = settings.tasks.redelivery_idle_seconds if redelivery_idle_seconds is None else redelivery_idle_seconds
        self.redelivery_idle_ms = int(float(idle) * 1000)
        self.max_len = int(max_len or settings.tasks.queue_max_len)
        self._client = client
        self._groups_ready = False

    def stream_name(self, priority: Priority) -> str:
        return f"{self.stream_prefix}:{priority.value}"

    def _ensure_client(self) -> redis.Redis:
        if self._client is None:
            try:
                self._client = redis.from_url(self._url, decode_responses=True)
                self._client.ping()
            except redis.RedisError as e:
                self._client = None
                logger.warning("[queue] Redis connect failed: %s", e)
                raise
        if not self._groups_ready:
            for priority in PRIORITY_ORDER:
                try:
                    self._client.xgroup_create(self.stream_name(priority), self.group, id="0", mkstream=True)
                except redis.ResponseError as e:
                    if "BUSYGROUP" not in str(e):
                        raise
            self._groups_ready = True
        return self._client

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except redis.RedisError as e:
                logger.debug("[queue] close failed: %s", e)
            self._client = None
            self._groups_ready = False

    def enqueue(self, type: str, payload: Dict[str, Any], priority: Any = Priority.normal) -> str:
        client = self._ensure_client()
        priority = parse_priority(priority)
        entry_id = client.xadd(
            self.stream_name(priority),
            {"type": type, "payload": json.dumps(payload, ensure_ascii=False, default=str)},
            maxlen=self.max_len,
            approximate=True,
        )
        queue_job_id = f"{priority.value}:{entry_id}"
        logger.info("[queue] enqueued %s type=%s", queue_job_id, type)
        return queue_job_id

    def _to_unit(self, priority: Priority, entry_id: str, fields: Dict[str, str], deliveries: int) -> WorkUnit:
        try:
            payload = json.loads(fields.get("payload") or "{}")
        except ValueError:
            payload = {}
        return WorkUnit(
            queue_job_id=f"{priority.value}:{entry_id}",
            type=fields.get("type", ""),
            payload=payload,
            priority=priority,
            deliveries=deliveries,
            entry_id=entry_id,
            stream=self.stream_name(priority),
        )

    def _delivery_count(self, stream: str, entry_id: str) -> int:
        info = self._client.xpending_range(stream, self.group, min=entry_id, max=entry_id, count=1)
        return int(info[0].get("times_delivered", 1)) if info else 1

    def claim(self, count: int = 1) -> List[WorkUnit]:
        """Stale pending units first, then new ones; high before normal before low."""
        client = self._ensure_client()
        units: List[WorkUnit] = []

        for priority in PRIORITY_ORDER:
            if len(units) >= count:
                return units
            stream = self.stream_name(priority)
            res = client.xautoclaim(
                stream, self.group, self.consumer,
                min_idle_time=self.redelivery_idle_ms, start_id="0-0", count=count - len(units),
            )
            for entry_id, fields in (res[1] if len(res) > 1 else []):
                if not fields:
                    continue
                unit = self._to_unit(priority, entry_id, fields, self._delivery_count(stream, entry_id))
                logger.info("[queue] redelivering %s (delivery %d)", unit.queue_job_id, unit.deliveries)
                units.append(unit)

        for priority in PRIORITY_ORDER:
            if len(units) >= count:
                break
            stream = self.stream_name(priority)
            res = client.xreadgroup(self.group, self.consumer, {stream: ">"}, count=count - len(units))
            for _stream, entries in res or []:
                for entry_id, fields in entries:
                    units.append(self._to_unit(priority, entry_id, fields or {}, 1))
        return units

    def ack(self, unit: WorkUnit) -> None:
        client = self._ensure_client()
        pipe = client.pipeline()
        pipe.xack(unit.stream, self.group, unit.entry_id)
        pipe.xdel(unit.stream, unit.entry_id)
        pipe.execute()

    def pending_count(self) -> int:
        """Enqueued and not yet acknowledged (acked entries are deleted)."""
        client = self._ensure_client()
        return sum(int(client.xlen(self.stream_name(p))) for p in PRIORITY_ORDER)


class MemoryQueue:
    """In-process queue with the RedisStreamQueue contract; for development and tests."""

    def __init__(
        self,
        redelivery_idle_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        idle = settings.tasks.redelivery_idle_seconds if redelivery_idle_seconds is None else redelivery_idle_seconds
        self.redelivery_idle_seconds = float(idle)
        self._clock = clock
        self._lock = threading.Lock()
        self._queues: Dict[Priority, Deque[Tuple[str, str, Dict[str, Any]]]] = {p: deque() for p in PRIORITY_ORDER}
        self._inflight: Dict[str, WorkUnit] = {}

    def enqueue(self, type: str, payload: Dict[str, Any], priority: Any = Priority.normal) -> str:
        priority = parse_priority(priority)
        queue_job_id = f"{priority.value}:{uuid.uuid4().hex}"
        with self._lock:
            self._queues[priority].append((queue_job_id, type, json.loads(json.dumps(payload, default=str))))
        logger.debug("[queue] enqueued %s type=%s (memory)", queue_job_id, type)
        return queue_job_id

    def claim(self, count: int = 1) -> List[WorkUnit]:
        now = self._clock()
        units: List[WorkUnit] = []
        with self._lock:
            stale = sorted(
                (u for u in self._inflight.values() if now - u.claimed_at >= self.redelivery_idle_seconds),
                key=lambda u: (PRIORITY_ORDER.index(u.priority), u.claimed_at),
            )
            for unit in stale[:count]:
                unit.deliveries += 1
                unit.claimed_at = now
                units.append(unit)
            for priority in PRIORITY_ORDER:
                q = self._queues[priority]
                while q and len(units) < count:
                    queue_job_id, type_, payload = q.popleft()
                    unit = WorkUnit(queue_job_id, type_, payload, priority, deliveries=1, entry_id=queue_job_id, claimed_at=now)
                    self._inflight[queue_job_id] = unit
                    units.append(unit)
        return units

    def ack(self, unit: WorkUnit) -> None:
        with self._lock:
            self._inflight.pop(unit.queue_job_id, None)

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values()) + len(self._inflight)

    def close(self) -> None:
        pass


_task_queue = None


def build_queue(backend: Optional[str] = None):
    backend = (backend or settings.tasks.backend).lower()
    if backend == "memory":
        return MemoryQueue()
    if backend == "redis":
        return RedisStreamQueue()
    raise ValueError(f"unknown tasks.backend: {backend!r}")


def get_task_queue():
    global _task_queue
    if _task_queue is None:
        _task_queue = build_queue()
        logger.info("[queue] backend=%s", settings.tasks.backend)
    return _task_queue


def set_task_queue(queue) -> None:
    global _task_queue
    _task_queue = queue
