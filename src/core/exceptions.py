"""Custom exceptions for the violation lead pipeline."""
from __future__ import annotations


class ViolationLeadsError(Exception):
    """Base exception for all application errors."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ViolationLeadsError):
    """Raised when required configuration is missing or invalid."""

    pass


class MissingCredentialsError(ConfigurationError):
    """Raised when required API credentials are not configured."""

    pass


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(ViolationLeadsError):
    """Base exception for database-related errors."""

    pass


class PropertyNotFoundError(DatabaseError):
    """Raised when a property id does not exist."""

    pass


# =============================================================================
# Ingestion Errors
# =============================================================================


class IngestionError(ViolationLeadsError):
    """Base exception for ingestion-related errors."""

    pass


class ValidationError(IngestionError):
    """Raised when uploaded data or a request payload fails validation."""

    pass


class JobNotFoundError(IngestionError):
    """Raised when an upload or geocoding job id does not exist."""

    pass


class StorageError(IngestionError):
    """Raised when an uploaded file cannot be stored or read back."""

    pass


# =============================================================================
# Job Lifecycle Errors
# =============================================================================


class JobStateError(ViolationLeadsError):
    """Raised when a job is asked to make an illegal status transition."""

    pass


class TaskDispatchError(ViolationLeadsError):
    """Raised when a background task cannot be routed to a handler."""

    pass


# =============================================================================
# External Service Errors
# =============================================================================


class ExternalServiceError(ViolationLeadsError):
    """Base exception for all external service errors."""

    pass


class GeocodeError(ExternalServiceError):
    """Raised when a geocoding provider call fails."""

    pass


class GeocodeTimeoutError(GeocodeError):
    """Raised when a geocoding provider does not answer within the timeout."""

    pass


class SkipTraceError(ExternalServiceError):
    """Raised when an owner lookup fails."""

    pass


class RateLimitError(ExternalServiceError):
    """Raised when an external API rate limit is hit."""

    pass


class ServiceUnavailableError(ExternalServiceError):
    """Raised when an external service is temporarily unavailable."""

    pass


__all__ = [
    # Base
    "ViolationLeadsError",
    # Configuration
    "ConfigurationError",
    "MissingCredentialsError",
    # Database
    "DatabaseError",
    "PropertyNotFoundError",
    # Ingestion
    "IngestionError",
    "ValidationError",
    "JobNotFoundError",
    "StorageError",
    # Job lifecycle
    "JobStateError",
    "TaskDispatchError",
    # External Services
    "ExternalServiceError",
    "GeocodeError",
    "GeocodeTimeoutError",
    "SkipTraceError",
    "RateLimitError",
    "ServiceUnavailableError",
]
