"""
One-call observability setup: middleware, /metrics endpoint, app info.
"""

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from src.observability.middleware import ObservabilityMiddleware
from src.observability.metrics import metrics
from src.observability.tracing import SERVICE_NAME, SERVICE_VERSION
from src.log import get_logger

logger = get_logger(__name__)


def setup_observability(app: FastAPI) -> None:
    """Attach observability to the app. Call after routers are included."""
    app.add_middleware(ObservabilityMiddleware)

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        return PlainTextResponse(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    metrics.app_info.info({"version": SERVICE_VERSION, "service": SERVICE_NAME})

    logger.info("[observability] middleware + /metrics registered")
