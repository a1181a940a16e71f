"""
Background worker: claims units from the queue and runs the handler in a thread.

A unit is acked only after the handler returns; if the handler raises (or the
process dies) the unit stays pending and is redelivered after the idle timeout.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from config.settings import settings
from src.log import get_logger
from src.observability import metrics
from src.tasks.queue import WorkUnit

logger = get_logger(__name__)


class ResearchWorker:
    def __init__(
        self,
        queue,
        handler: Callable[[WorkUnit], Any],
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = max(1, int(concurrency or settings.tasks.worker_concurrency))
        self.poll_interval = float(poll_interval or settings.tasks.poll_interval_seconds)
        self._active: Dict[str, asyncio.Task] = {}
        self._stopping = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def _handle(self, unit: WorkUnit) -> None:
        try:
            await asyncio.to_thread(self.handler, unit)
        except Exception as e:
            logger.exception("[worker] unit %s failed, leaving it for redelivery: %s", unit.queue_job_id, e)
            return
        try:
            await asyncio.to_thread(self.queue.ack, unit)
        except Exception as e:
            logger.warning("[worker] ack failed for %s: %s", unit.queue_job_id, e)

    async def run_once(self) -> int:
        """Claim up to the free slot count and start them. Returns the number started."""
        for key in [k for k, t in self._active.items() if t.done()]:
            self._active.pop(key, None)

        free = self.concurrency - len(self._active)
        if free <= 0:
            return 0
        units = await asyncio.to_thread(self.queue.claim, free)
        started = 0
        for unit in units:
            if unit.queue_job_id in self._active:
                continue
            logger.info("[worker] running %s (delivery %d)", unit.queue_job_id, unit.deliveries)
            self._active[unit.queue_job_id] = asyncio.create_task(self._handle(unit))
            started += 1
        return started

    async def drain(self) -> None:
        """Wait for every running unit to finish."""
        while self._active:
            tasks = list(self._active.values())
            await asyncio.gather(*tasks, return_exceptions=True)
            for key in [k for k, t in self._active.items() if t.done()]:
                self._active.pop(key, None)

    async def run_forever(self) -> None:
        logger.info(
            "[worker] started (concurrency=%d, poll=%.1fs)", self.concurrency, self.poll_interval
        )
        while not self._stopping:
            try:
                await self.run_once()
                metrics.task_queue_pending_count.set(await asyncio.to_thread(self.queue.pending_count))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("[worker] poll cycle failed: %s", e)
            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self._stopping = True
