"""
FileVault Storage API - Main Application
FastAPI application for file storage, retention and secure downloads.
"""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from filevault.api.dependencies import get_facade, init_facade, shutdown_facade
from filevault.api.v1 import api_router
from filevault.core.config import settings
from filevault.core.errors import FileVaultError
from filevault.core.logging import setup_logging
from filevault.metrics import app_info, app_uptime_seconds
from filevault.middleware import MetricsMiddleware
from filevault.schemas.files import HealthReportResponse
from filevault.storage.lifecycle import LifecycleFacade

logger = logging.getLogger(__name__)

# Track application start time for uptime metric
_app_start_time = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    """
    setup_logging(settings.LOG_LEVEL, json_format=settings.LOG_FORMAT == "json")

    logger.info("Starting FileVault Storage API...")
    logger.info(f"Version: {settings.APP_VERSION}")
    logger.info(f"Storage root: {settings.STORAGE_ROOT}")

    app_info.labels(version=settings.APP_VERSION).set(1)

    init_facade()
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down FileVault Storage API...")
    shutdown_facade()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="File storage service with organised placement, retention-driven "
                "cleanup and time- and count-limited secure downloads.",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add Prometheus Metrics Middleware
app.add_middleware(MetricsMiddleware)


# Exception handlers
@app.exception_handler(FileVaultError)
async def filevault_exception_handler(request: Request, exc: FileVaultError):
    """Handle storage, retention and download errors."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_errors(exc),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": str(exc) if settings.LOG_LEVEL == "DEBUG" else "An unexpected error occurred",
        },
    )


def jsonable_errors(exc: RequestValidationError):
    """Validation errors without the raw exception objects pydantic attaches."""
    return [
        {key: value for key, value in error.items() if key in ("type", "loc", "msg")}
        for error in exc.errors()
    ]


# Health check endpoints
@app.get("/health", tags=["health"])
async def health_check():
    """
    Basic health check endpoint.
    Returns the API status and version.
    """
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


@app.get("/health/storage", tags=["health"], response_model=HealthReportResponse)
def storage_health_check(facade: LifecycleFacade = Depends(get_facade)):
    """
    Storage subsystem health check.

    Checks:
    - Storage: a small temporary file can be written and deleted
    - Cleanup: the scheduler state matches the auto-cleanup setting
    - Disk space: usage is below 80% of the storage ceiling

    Returns healthy, warning (some checks failed) or error, with HTTP 503
    on error.
    """
    report = facade.health_check()
    code = status.HTTP_503_SERVICE_UNAVAILABLE if report.status == "error" else status.HTTP_200_OK
    return JSONResponse(status_code=code, content=report.to_dict())


# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


# Prometheus metrics endpoint
@app.get("/metrics", tags=["monitoring"])
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    This endpoint is excluded from metrics collection to avoid feedback loops.
    """
    app_uptime_seconds.set(time.time() - _app_start_time)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Root endpoint
@app.get("/", tags=["root"])
async def root():
    """
    Root endpoint.
    Provides basic API information.
    """
    return {
        "message": "Welcome to FileVault Storage API",
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
    }
