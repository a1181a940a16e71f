"""
Research job orchestrator.

submit() persists a queued job and enqueues one work unit; the background
worker hands claimed units to process(), which runs the pipeline and writes
the terminal state. Delivery is at-least-once; provider calls are at-most-once
per job because a redelivered job with a stage in flight is failed instead of
re-run.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from src.errors import JobNotFoundError, JobProcessingError, JobSubmissionError
from src.log import get_logger
from src.observability import metrics
from src.research import job_store
from src.research.pipeline import ResearchPipeline
from src.tasks.job_state import parse_priority
from src.tasks.queue import WorkUnit

logger = get_logger(__name__)

JOB_TYPE = "research"
TOPIC = "research"

INTERRUPTED_ERROR = "interrupted during provider call"

Publisher = Callable[[Dict[str, Any]], None]


class JobOrchestrator:
    def __init__(
        self,
        pipeline: ResearchPipeline,
        queue,
        publish: Optional[Publisher] = None,
        max_query_chars: int = 4000,
        default_priority: str = "normal",
        max_deliveries: int = 3,
    ):
        self.pipeline = pipeline
        self.queue = queue
        self.publish = publish
        self.max_query_chars = int(max_query_chars)
        self.default_priority = default_priority
        self.max_deliveries = int(max_deliveries)

    # ------------------------------------------------------------------
    # submission / polling
    # ------------------------------------------------------------------

    def submit(self, query: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if options is not None and not isinstance(options, dict):
            raise JobSubmissionError("options must be an object")
        options = dict(options or {})
        if not isinstance(query, str) or not query.strip():
            raise JobSubmissionError("query must be a non-empty string")
        query = query.strip()
        if len(query) > self.max_query_chars:
            raise JobSubmissionError(f"query exceeds {self.max_query_chars} characters")
        try:
            priority = parse_priority(options.get("priority") or self.default_priority)
        except ValueError as e:
            raise JobSubmissionError("priority must be one of low|normal|high") from e
        options["priority"] = priority.value

        job = job_store.create_job(query=query, options=options)
        try:
            queue_job_id = self.queue.enqueue(JOB_TYPE, {"job_id": job["id"], "query": query, "options": options}, priority)
        except Exception as e:
            logger.error("[orchestrator] enqueue failed for job %s: %s", job["id"], e)
            job_store.fail_job(job["id"], f"enqueue failed: {e}")
            metrics.research_jobs_total.labels(status="failed").inc()
            raise JobSubmissionError(f"Could not enqueue research job: {e}") from e

        job = job_store.update_job(job["id"], queue_job_id=queue_job_id) or job
        metrics.research_jobs_total.labels(status="queued").inc()
        logger.info("[orchestrator] job %s queued (%s, priority=%s)", job["id"], queue_job_id, priority.value)
        self._emit("research_progress", job)
        return job

    def poll(self, job_id: str) -> Dict[str, Any]:
        job = job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"research job not found: {job_id}")
        return job

    def list_jobs(self, limit: int = 20, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return job_store.list_jobs(limit=limit, status=status)

    # ------------------------------------------------------------------
    # processing
    # ------------------------------------------------------------------

    def process(self, unit: WorkUnit) -> Optional[Dict[str, Any]]:
        """Run one claimed unit to a terminal state. Safe to call again for the same job."""
        job_id = (unit.payload or {}).get("job_id")
        if unit.type != JOB_TYPE or not job_id:
            logger.warning("[orchestrator] dropping malformed unit %s type=%s", unit.queue_job_id, unit.type)
            return None

        job, redelivered = job_store.begin_processing(job_id)
        if job is None:
            logger.warning("[orchestrator] unit %s references unknown job %s", unit.queue_job_id, job_id)
            return None
        if job["status"] in job_store.TERMINAL_STATUSES:
            logger.info("[orchestrator] job %s already %s, skipping", job_id, job["status"])
            return job

        checkpoint = job.get("checkpoint") or {}
        if unit.deliveries > self.max_deliveries:
            return self._fail(job_id, f"exceeded {self.max_deliveries} deliveries")
        if redelivered and checkpoint.get("in_flight"):
            logger.warning(
                "[orchestrator] job %s redelivered with %s in flight, not re-invoking provider",
                job_id, checkpoint["in_flight"],
            )
            return self._fail(job_id, INTERRUPTED_ERROR)

        if redelivered:
            logger.info("[orchestrator] resuming job %s after stage %r", job_id, job.get("stage") or "-")
        self._emit("research_progress", job)

        started = time.time()

        def report(progress: int, stage: Optional[str] = None, **cp: Any) -> None:
            updated = job_store.save_checkpoint(job_id, stage=stage, progress=progress, **cp)
            if updated is not None:
                self._emit("research_progress", updated)

        try:
            result = self.pipeline.run(job_id, job["query"], job.get("options") or {}, checkpoint, report)
        except JobProcessingError as e:
            logger.error("[orchestrator] job %s failed: %s", job_id, e)
            return self._fail(job_id, str(e))
        except Exception as e:
            logger.exception("[orchestrator] job %s crashed: %s", job_id, e)
            return self._fail(job_id, f"internal error: {e}")

        done = job_store.complete_job(job_id, result)
        if done is None:
            return job_store.get_job(job_id)
        metrics.research_jobs_total.labels(status="completed").inc()
        metrics.research_job_duration_seconds.observe(time.time() - started)
        logger.info("[orchestrator] job %s completed via %s", job_id, result.get("provider_used"))
        self._emit("research_completed", done)
        return done

    def _fail(self, job_id: str, error: str) -> Optional[Dict[str, Any]]:
        failed = job_store.fail_job(job_id, error)
        if failed is None:
            return job_store.get_job(job_id)
        metrics.research_jobs_total.labels(status="failed").inc()
        self._emit("research_failed", failed)
        return failed

    def _emit(self, msg_type: str, job: Dict[str, Any]) -> None:
        if self.publish is None:
            return
        message = {
            "type": msg_type,
            "topic": TOPIC,
            "job_id": job.get("id"),
            "status": job.get("status"),
            "progress": job.get("progress"),
            "stage": job.get("stage"),
            "timestamp": time.time(),
        }
        if msg_type == "research_completed":
            message["result"] = job.get("result")
        elif msg_type == "research_failed":
            message["error"] = job.get("error")
        try:
            self.publish(message)
        except Exception as e:
            logger.warning("[orchestrator] publish %s failed for job %s: %s", msg_type, job.get("id"), e)
