"""Main FastAPI application"""
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from moodscope import __version__
from moodscope.api.routers import calibration, mood, validation
from moodscope.config import settings
from moodscope.db.session import check_db_health, init_db
from moodscope.jobs.scheduler import start_scheduler, stop_scheduler
from moodscope.log_config import get_logger, logger
from moodscope.utils.errors import (
    AppendOnlyViolation,
    ConfigurationError,
    DuplicateRecordError,
    MoodScopeError,
    OrderingError,
    RecordNotFoundError,
    ValidationError,
)

api_logger = get_logger("moodscope.api")

# First match wins; subclasses before their bases.
ERROR_STATUS_CODES = (
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateRecordError, status.HTTP_409_CONFLICT),
    (AppendOnlyViolation, status.HTTP_409_CONFLICT),
    (OrderingError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConfigurationError, status.HTTP_409_CONFLICT),
)


def status_code_for(exc: MoodScopeError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting MoodScope API...")
    init_db()

    if settings.scheduler_enabled:
        start_scheduler()

    yield

    logger.info("Shutting down MoodScope API...")
    stop_scheduler()


app = FastAPI(
    title="MoodScope API",
    description="Mood scoring, delta detection and self-calibration for conversational memories.",
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "mood", "description": "Mood scores, conversation tracking and trajectories"},
        {"name": "validation", "description": "Human validation of mood scores"},
        {"name": "calibration", "description": "Scoring configuration, calibration cycles and audit log"},
    ],
)


@app.middleware("http")
async def access_log_middleware(request: Request, call_next):
    """Log every request with its timing"""
    t0 = time.time()
    response = await call_next(request)
    ms = int((time.time() - t0) * 1000)
    api_logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=ms,
    )
    return response


@app.exception_handler(MoodScopeError)
async def moodscope_exception_handler(request: Request, exc: MoodScopeError):
    """Handle domain exceptions with standard format"""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    content = exc.to_dict()
    content["status_code"] = status_code
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors"""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "RequestValidationError",
            "message": "Validation error",
            "details": {"errors": exc.errors()},
            "status_code": 422,
        },
    )


app.include_router(mood.router)
app.include_router(validation.router)
app.include_router(calibration.router)


@app.get("/health")
async def health():
    """Liveness and database connectivity"""
    healthy = check_db_health()
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if healthy else "degraded", "database": healthy, "version": __version__},
    )
