"""
Research job persistence (data/app.db via SQLModel).

Status transitions are applied with conditional updates so a job that is
already terminal is never rewritten.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session, select

from src.db.engine import get_engine
from src.db.models import ResearchJob
from src.log import get_logger
from src.tasks.job_state import JobStatus, can_transition

logger = get_logger(__name__)

TERMINAL_STATUSES = (JobStatus.completed.value, JobStatus.failed.value)


def _allowed(row: ResearchJob, target: JobStatus) -> bool:
    if can_transition(row.status, target):
        return True
    logger.warning("[job_store] refused %s -> %s for job %s", row.status, target.value, row.id)
    return False


def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


def create_job(*, query: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    now = time.time()
    job_id = uuid.uuid4().hex
    with Session(get_engine()) as session:
        row = ResearchJob(
            id=job_id,
            query=query,
            options_json=_dumps(options or {}),
            status=JobStatus.queued.value,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.commit()
    return get_job(job_id) or {}


def get_job(job_id: str, include_checkpoint: bool = False) -> Optional[Dict[str, Any]]:
    with Session(get_engine()) as session:
        row = session.get(ResearchJob, job_id)
    if not row:
        return None
    return row.to_dict(include_checkpoint=include_checkpoint)


def list_jobs(limit: int = 20, status: Optional[str] = None) -> List[Dict[str, Any]]:
    limit = max(1, min(int(limit), 200))
    with Session(get_engine()) as session:
        stmt = select(ResearchJob)
        if status:
            stmt = stmt.where(ResearchJob.status == status)
        stmt = stmt.order_by(ResearchJob.created_at.desc()).limit(limit)
        rows = session.exec(stmt).all()
    return [r.to_dict() for r in rows]


def update_job(job_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    """Set plain columns on a non-terminal job. Returns the job, or None if unknown."""
    with Session(get_engine()) as session:
        row = session.get(ResearchJob, job_id)
        if not row:
            return None
        if not row.is_terminal and fields:
            for k, v in fields.items():
                if hasattr(row, k):
                    setattr(row, k, v)
            row.updated_at = time.time()
            session.add(row)
            session.commit()
            session.refresh(row)
        return row.to_dict()


def begin_processing(job_id: str) -> Tuple[Optional[Dict[str, Any]], bool]:
    """
    Claim a job for a worker run.

    Returns (job, redelivered). `redelivered` is True when the job was already
    `processing` (a previous delivery died). Terminal jobs are returned untouched.
    """
    now = time.time()
    with Session(get_engine()) as session:
        row = session.get(ResearchJob, job_id)
        if not row:
            return None, False
        if row.is_terminal or not _allowed(row, JobStatus.processing):
            return row.to_dict(include_checkpoint=True), False
        redelivered = row.status == JobStatus.processing.value
        row.status = JobStatus.processing.value
        row.attempts = (row.attempts or 0) + 1
        row.started_at = row.started_at or now
        row.updated_at = now
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.to_dict(include_checkpoint=True), redelivered


def save_checkpoint(
    job_id: str,
    *,
    stage: Optional[str] = None,
    progress: Optional[int] = None,
    **checkpoint: Any,
) -> Optional[Dict[str, Any]]:
    """Merge keys into the checkpoint; `stage` marks the last completed stage."""
    with Session(get_engine()) as session:
        row = session.get(ResearchJob, job_id)
        if not row or row.is_terminal:
            return None
        merged = row.checkpoint
        merged.update(checkpoint)
        row.checkpoint_json = _dumps(merged)
        if stage is not None:
            row.stage = stage
        if progress is not None:
            row.progress = max(0, min(100, int(progress)))
        row.updated_at = time.time()
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.to_dict(include_checkpoint=True)


def complete_job(job_id: str, result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    now = time.time()
    with Session(get_engine()) as session:
        row = session.get(ResearchJob, job_id)
        if not row or not _allowed(row, JobStatus.completed):
            return None
        row.status = JobStatus.completed.value
        row.progress = 100
        row.result_json = _dumps(result)
        row.error = None
        row.finished_at = now
        row.updated_at = now
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.to_dict()


def fail_job(job_id: str, error: str) -> Optional[Dict[str, Any]]:
    now = time.time()
    with Session(get_engine()) as session:
        row = session.get(ResearchJob, job_id)
        if not row or not _allowed(row, JobStatus.failed):
            return None
        row.status = JobStatus.failed.value
        row.error = error or "unknown error"
        row.result_json = None
        row.finished_at = now
        row.updated_at = now
        session.add(row)
        session.commit()
        session.refresh(row)
        return row.to_dict()


def count_by_status() -> Dict[str, int]:
    counts = {s.value: 0 for s in JobStatus}
    with Session(get_engine()) as session:
        for status in session.exec(select(ResearchJob.status)).all():
            counts[status] = counts.get(status, 0) + 1
    return counts
