"""
Deep research API: POST /research, GET /research, GET /research/{job_id}
"""

from typing import Optional

from fastapi import APIRouter, Query

from src.api.deps import get_services
from src.api.schemas import JobListResponse, JobResponse, ResearchRequest

router = APIRouter(prefix="/research", tags=["research"])


@router.post("", response_model=JobResponse, status_code=202)
def submit_research(body: ResearchRequest) -> JobResponse:
    job = get_services().orchestrator.submit(body.query, body.options.to_options())
    return JobResponse(job=job)


@router.get("", response_model=JobListResponse)
def list_research(
    limit: int = Query(20, ge=1, le=200),
    status: Optional[str] = Query(None, description="queued | processing | completed | failed"),
) -> JobListResponse:
    return JobListResponse(jobs=get_services().orchestrator.list_jobs(limit=limit, status=status))


@router.get("/{job_id}", response_model=JobResponse)
def poll_research(job_id: str) -> JobResponse:
    return JobResponse(job=get_services().orchestrator.poll(job_id))
