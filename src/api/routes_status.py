"""
Status API: GET /status, GET /health, GET /health/detailed
"""

from fastapi import APIRouter

from src.api.deps import get_services
from src.api.schemas import ProviderStatusItem, StatusResponse
from src.health.aggregator import snapshot_to_dict
from src.log import get_logger
from src.research import job_store

logger = get_logger(__name__)

router = APIRouter(tags=["status"])


@router.get("/status", response_model=StatusResponse)
def provider_status() -> StatusResponse:
    services = get_services()
    providers = [
        ProviderStatusItem(**status.to_dict())
        for _, status in sorted(services.registry.snapshot().items())
    ]
    return StatusResponse(providers=providers, health=snapshot_to_dict(services.health.collect()))


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/health/detailed")
def health_detailed() -> dict:
    """Health snapshot plus queue, job and realtime stats."""
    services = get_services()
    snapshot = services.health.collect()
    out: dict = {
        "success": True,
        "status": snapshot.overall_status,
        "health": snapshot_to_dict(snapshot),
        "queue": None,
        "jobs": job_store.count_by_status(),
        "realtime": {
            "live_sessions": services.channel.live_count(),
            "tracked_sessions": len(services.channel.sessions),
            "send_errors": services.channel.send_errors,
        },
    }
    try:
        out["queue"] = {
            "backend": type(services.queue).__name__,
            "pending_count": services.queue.pending_count(),
            "active_count": services.worker.active_count,
        }
    except Exception as e:
        logger.warning("[status] queue stats unavailable: %s", e)
        out["queue"] = {"error": str(e)}
    return out
