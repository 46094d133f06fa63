"""FastAPI application entry point with global error handling."""
from __future__ import annotations

import os
import sys

# Add src/ to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    JobNotFoundError,
    JobStateError,
    PropertyNotFoundError,
    RateLimitError,
    ServiceUnavailableError,
    StorageError,
    ValidationError,
    ViolationLeadsError,
)
from core.logging_config import get_logger, setup_logging
from api.routes import geocoding, health, properties, tasks, uploads

LOGGER = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Sets up logging, validates the database and creates missing tables.
    Startup never blocks on the database so health checks can still answer.
    """
    settings = get_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_format == "json")

    LOGGER.info(
        "API application starting",
        extra={"extra_data": {
            "environment": settings.environment,
            "enabled_services": settings.get_enabled_services(),
            "task_dispatch_mode": settings.task_dispatch_mode,
        }}
    )

    try:
        from core.db import init_db, validate_database
        db_status = validate_database()

        if db_status["status"] == "error":
            LOGGER.error(
                "Database validation failed - app will start without database",
                extra={"extra_data": {"errors": db_status["errors"]}}
            )
        elif db_status["status"] == "missing_tables":
            LOGGER.warning(
                "Missing database tables detected - attempting to create",
                extra={"extra_data": {"missing": db_status["tables_missing"]}}
            )
            init_result = init_db()
            LOGGER.info(
                "Database tables created",
                extra={"extra_data": {"created": init_result["tables_created"]}}
            )
        else:
            LOGGER.info("Database validation passed")
    except Exception as e:
        LOGGER.error(f"Database validation error during startup: {e} - app will start anyway")

    yield

    from services.task_dispatch import set_dispatcher
    set_dispatcher(None)
    LOGGER.info("API application shutting down")


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance with:
        - CORS middleware
        - Global exception handlers
        - All API routes
    """
    application = FastAPI(
        title="Violation Leads Pipeline",
        description="Code-enforcement CSV ingestion, geocoding and job health API",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # -------------------------------------------------------------------------
    # CORS Middleware
    # -------------------------------------------------------------------------
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Global Exception Handlers
    # -------------------------------------------------------------------------

    @application.exception_handler(JobNotFoundError)
    @application.exception_handler(PropertyNotFoundError)
    async def not_found_handler(request: Request, exc: ViolationLeadsError) -> JSONResponse:
        return _error(404, "not_found", str(exc))

    @application.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors."""
        LOGGER.warning(f"Validation error: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(400, "validation_error", str(exc))

    @application.exception_handler(JobStateError)
    @application.exception_handler(StorageError)
    async def conflict_handler(request: Request, exc: ViolationLeadsError) -> JSONResponse:
        """Job exists but cannot do what was asked in its current state."""
        LOGGER.warning(f"Conflict: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(409, "conflict", str(exc))

    @application.exception_handler(RateLimitError)
    async def rate_limit_handler(request: Request, exc: RateLimitError) -> JSONResponse:
        """Handle rate limit errors from external services."""
        LOGGER.warning(f"Rate limit hit: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(429, "rate_limit_exceeded", str(exc))

    @application.exception_handler(ServiceUnavailableError)
    async def service_unavailable_handler(
        request: Request, exc: ServiceUnavailableError
    ) -> JSONResponse:
        """Handle external service unavailable errors."""
        LOGGER.error(f"Service unavailable: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(503, "service_unavailable", str(exc))

    @application.exception_handler(ExternalServiceError)
    async def external_service_handler(
        request: Request, exc: ExternalServiceError
    ) -> JSONResponse:
        """Handle general external service errors."""
        LOGGER.error(f"External service error: {exc}", extra={"extra_data": {"path": request.url.path}})
        return _error(502, "external_service_error", str(exc))

    @application.exception_handler(ConfigurationError)
    async def configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        """Handle configuration errors."""
        LOGGER.error(f"Configuration error: {exc}")
        return _error(500, "configuration_error", str(exc))

    @application.exception_handler(ViolationLeadsError)
    async def app_error_handler(request: Request, exc: ViolationLeadsError) -> JSONResponse:
        """Handle all other application errors."""
        LOGGER.error(f"Application error: {exc}", exc_info=True)
        return _error(500, "application_error", str(exc))

    # -------------------------------------------------------------------------
    # Include Routers
    # -------------------------------------------------------------------------
    application.include_router(health.router, prefix="/health", tags=["Health"])

    @application.get("/health")
    async def root_health_check():
        """Lightweight health check for the platform probe - no dependencies."""
        return {"status": "ok", "service": "violation-leads"}

    application.include_router(uploads.router, prefix="/uploads", tags=["Uploads"])
    application.include_router(geocoding.router, prefix="/geocoding", tags=["Geocoding"])
    application.include_router(properties.router, prefix="/properties", tags=["Properties"])
    application.include_router(tasks.router, prefix="/tasks", tags=["Tasks"])

    return application


# Create the application instance
app = create_app()
