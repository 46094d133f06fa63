"""Core module exports."""
from __future__ import annotations

from core.config import Settings, get_settings, reload_settings
from core.db import Base, SessionLocal, get_session, init_db
from core.exceptions import (
    # Base
    ViolationLeadsError,
    # Configuration
    ConfigurationError,
    MissingCredentialsError,
    # Database
    DatabaseError,
    PropertyNotFoundError,
    # Ingestion
    IngestionError,
    ValidationError,
    JobNotFoundError,
    StorageError,
    # Jobs & tasks
    JobStateError,
    TaskDispatchError,
    # External Services
    ExternalServiceError,
    GeocodeError,
    GeocodeTimeoutError,
    SkipTraceError,
    RateLimitError,
    ServiceUnavailableError,
)
from core.logging_config import (
    setup_logging,
    get_logger,
    get_context_logger,
    log_external_call,
    JSONFormatter,
    ContextLogger,
)
from core.models import (
    UploadJob,
    StagingRow,
    Property,
    Violation,
    GeocodingJob,
    SchedulerLock,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reload_settings",
    # Database
    "get_session",
    "init_db",
    "SessionLocal",
    "Base",
    # Models
    "UploadJob",
    "StagingRow",
    "Property",
    "Violation",
    "GeocodingJob",
    "SchedulerLock",
    # Exceptions - Base
    "ViolationLeadsError",
    # Exceptions - Config
    "ConfigurationError",
    "MissingCredentialsError",
    # Exceptions - Database
    "DatabaseError",
    "PropertyNotFoundError",
    # Exceptions - Ingestion
    "IngestionError",
    "ValidationError",
    "JobNotFoundError",
    "StorageError",
    # Exceptions - Jobs & tasks
    "JobStateError",
    "TaskDispatchError",
    # Exceptions - External Services
    "ExternalServiceError",
    "GeocodeError",
    "GeocodeTimeoutError",
    "SkipTraceError",
    "RateLimitError",
    "ServiceUnavailableError",
    # Logging
    "setup_logging",
    "get_logger",
    "get_context_logger",
    "log_external_call",
    "JSONFormatter",
    "ContextLogger",
]
