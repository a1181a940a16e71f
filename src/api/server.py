"""
FastAPI application entry point.
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import settings
from src.api.deps import get_services
from src.api.routes_chat import router as chat_router
from src.api.routes_research import router as research_router
from src.api.routes_status import router as status_router
from src.api.schemas import ErrorResponse
from src.errors import JobNotFoundError, JobSubmissionError, RoutingFailure
from src.log import get_logger
from src.observability import setup_observability
from src.realtime.ws import router as ws_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle: DB tables -> services -> background worker + realtime sweeper."""
    from src.db.engine import init_db
    try:
        init_db()
    except Exception as e:
        logger.warning("[startup] init_db failed (may be OK if alembic already ran): %s", e)

    settings.path.ensure_dirs()
    services = get_services()
    services.channel.bind_loop(asyncio.get_running_loop())

    worker_task = asyncio.create_task(services.worker.run_forever())
    sweeper_task = asyncio.create_task(
        services.channel.run_sweeper(settings.realtime.sweep_interval_seconds)
    )
    logger.info("[startup] worker + realtime sweeper started")

    yield

    services.worker.stop()
    for task in (worker_task, sweeper_task):
        task.cancel()
    for task in (worker_task, sweeper_task):
        try:
            await task
        except asyncio.CancelledError:
            pass
    try:
        services.queue.close()
    except Exception as e:
        logger.debug("[shutdown] queue close failed: %s", e)


app = FastAPI(
    title="Research Router API",
    description="Provider routing, deep research jobs and live status",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(message=message).model_dump())


@app.exception_handler(RoutingFailure)
async def _routing_failure(request: Request, exc: RoutingFailure):
    logger.warning("[api] routing failure on %s: %s (attempts=%s)", request.url.path, exc, exc.attempts)
    return _error(502, str(exc))


@app.exception_handler(JobSubmissionError)
async def _submission_error(request: Request, exc: JobSubmissionError):
    return _error(400, str(exc))


@app.exception_handler(JobNotFoundError)
async def _not_found(request: Request, exc: JobNotFoundError):
    return _error(404, str(exc))


@app.exception_handler(HTTPException)
async def _http_error(request: Request, exc: HTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return _error(422, f"{where}: {first.get('msg', 'invalid request')}" if where else "invalid request")


app.include_router(chat_router)
app.include_router(research_router)
app.include_router(status_router)
app.include_router(ws_router)

# Observability: middleware + /metrics
setup_observability(app)
