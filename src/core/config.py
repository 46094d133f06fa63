"""Configuration management for the violation lead pipeline.

All configuration is loaded from environment variables and/or .env file.
Vendor integrations that need credentials default to disabled when not set.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root detection
PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = PROJECT_ROOT / ".env"

DATABASE_FILE = PROJECT_ROOT / "violation_leads.db"
ABSOLUTE_DATABASE_URL = f"sqlite:///{DATABASE_FILE.as_posix()}"

DEFAULT_UPLOAD_DIR = PROJECT_ROOT / "uploads"

KNOWN_GEOCODERS = ("census", "nominatim", "google")
TASK_DISPATCH_MODES = ("thread", "inline", "http")


def _resolve_database_url(url: str) -> str:
    """
    Convert relative SQLite paths to absolute paths based on PROJECT_ROOT.

    In-memory databases are returned untouched.
    """
    if not url.startswith("sqlite:///"):
        return url

    path_part = url.replace("sqlite:///", "")
    if path_part == ":memory:" or path_part == "":
        return url

    if path_part.startswith("./") or (not path_part.startswith("/") and ":" not in path_part):
        if path_part.startswith("./"):
            path_part = path_part[2:]
        absolute_path = PROJECT_ROOT / path_part
        return f"sqlite:///{absolute_path.as_posix()}"

    return url


class Settings(BaseSettings):
    """
    Runtime configuration powered by environment variables and .env overrides.

    All settings can be configured via:
    1. Environment variables (highest priority)
    2. .env file in project root (loaded automatically)
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default=ABSOLUTE_DATABASE_URL,
        alias="DATABASE_URL",
        description="SQLAlchemy connection string.",
    )
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE", ge=1)
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW", ge=0)
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT", ge=1)

    # -------------------------------------------------------------------------
    # Uploads & ingestion
    # -------------------------------------------------------------------------
    upload_dir: str = Field(default=str(DEFAULT_UPLOAD_DIR), alias="UPLOAD_DIR")
    upload_staging_batch_size: int = Field(default=250, alias="UPLOAD_STAGING_BATCH_SIZE", ge=1)
    property_lookup_batch_size: int = Field(default=1000, alias="PROPERTY_LOOKUP_BATCH_SIZE", ge=1)
    property_insert_batch_size: int = Field(default=500, alias="PROPERTY_INSERT_BATCH_SIZE", ge=1)
    violation_batch_size: int = Field(default=1000, alias="VIOLATION_BATCH_SIZE", ge=1)
    max_job_warnings: int = Field(default=100, alias="MAX_JOB_WARNINGS", ge=0)
    purge_staging_on_complete: bool = Field(default=False, alias="PURGE_STAGING_ON_COMPLETE")

    # -------------------------------------------------------------------------
    # Geocoding
    # -------------------------------------------------------------------------
    geocoder_providers: str = Field(
        default="census,nominatim",
        alias="GEOCODER_PROVIDERS",
        description="Comma-separated provider order, tried left to right.",
    )
    geocode_timeout_seconds: float = Field(default=5.0, alias="GEOCODE_TIMEOUT_SECONDS", gt=0)
    geocode_batch_size: int = Field(default=50, alias="GEOCODE_BATCH_SIZE", ge=1)
    geocode_chunk_size: int = Field(default=25, alias="GEOCODE_CHUNK_SIZE", ge=1)
    geocode_max_concurrency: int = Field(default=10, alias="GEOCODE_MAX_CONCURRENCY", ge=1)
    geocode_continuation_threshold: int = Field(
        default=0, alias="GEOCODE_CONTINUATION_THRESHOLD", ge=0
    )
    geocode_max_consecutive_timeouts: int = Field(
        default=5, alias="GEOCODE_MAX_CONSECUTIVE_TIMEOUTS", ge=1
    )
    census_benchmark: str = Field(default="Public_AR_Current", alias="CENSUS_BENCHMARK")
    nominatim_delay_seconds: float = Field(default=1.1, alias="NOMINATIM_DELAY_SECONDS", ge=0)
    nominatim_variation_delay_seconds: float = Field(
        default=0.5, alias="NOMINATIM_VARIATION_DELAY_SECONDS", ge=0
    )
    nominatim_user_agent: str = Field(
        default="violation-leads/1.0 (geocoding@violation-leads.local)",
        alias="NOMINATIM_USER_AGENT",
    )
    google_maps_api_key: Optional[str] = Field(default=None, alias="GOOGLE_MAPS_API_KEY")
    enable_google: bool = Field(
        default=False,
        alias="ENABLE_GOOGLE",
        description="Enable Google Maps geocoding provider",
    )

    # -------------------------------------------------------------------------
    # Job health monitor
    # -------------------------------------------------------------------------
    upload_stuck_threshold_seconds: int = Field(
        default=180, alias="UPLOAD_STUCK_THRESHOLD_SECONDS", ge=1
    )
    geocode_stuck_threshold_seconds: int = Field(
        default=300, alias="GEOCODE_STUCK_THRESHOLD_SECONDS", ge=1
    )
    orphan_job_threshold_seconds: int = Field(
        default=3600, alias="ORPHAN_JOB_THRESHOLD_SECONDS", ge=1
    )
    monitor_interval_seconds: int = Field(default=120, alias="MONITOR_INTERVAL_SECONDS", ge=10)

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------
    task_dispatch_mode: str = Field(default="thread", alias="TASK_DISPATCH_MODE")
    task_worker_threads: int = Field(default=4, alias="TASK_WORKER_THREADS", ge=1)
    task_base_url: str = Field(default="http://127.0.0.1:8000", alias="TASK_BASE_URL")
    task_http_timeout_seconds: float = Field(default=5.0, alias="TASK_HTTP_TIMEOUT_SECONDS", gt=0)

    # -------------------------------------------------------------------------
    # Skip trace
    # -------------------------------------------------------------------------
    skip_trace_api_key: Optional[str] = Field(default=None, alias="SKIP_TRACE_API_KEY")
    skip_trace_base_url: str = Field(
        default="https://api.batchdata.com/api/v1", alias="SKIP_TRACE_BASE_URL"
    )
    skip_trace_timeout: int = Field(default=30, alias="SKIP_TRACE_TIMEOUT", ge=1)
    skip_trace_rate_limit_seconds: float = Field(
        default=1.0, alias="SKIP_TRACE_RATE_LIMIT_SECONDS", ge=0
    )
    enable_skip_trace: bool = Field(default=False, alias="ENABLE_SKIP_TRACE")

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")  # "text" or "json"
    environment: str = Field(default="local", alias="ENVIRONMENT")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Ensure log format is valid."""
        lower = v.lower()
        if lower not in {"text", "json"}:
            raise ValueError("log_format must be 'text' or 'json'")
        return lower

    @field_validator("geocoder_providers")
    @classmethod
    def validate_geocoder_providers(cls, v: str) -> str:
        """Normalize the provider list and reject unknown names."""
        names = [part.strip().lower() for part in v.split(",") if part.strip()]
        if not names:
            raise ValueError("geocoder_providers must name at least one provider")
        unknown = [name for name in names if name not in KNOWN_GEOCODERS]
        if unknown:
            raise ValueError(f"Unknown geocoder provider(s): {', '.join(unknown)}")
        return ",".join(dict.fromkeys(names))

    @field_validator("task_dispatch_mode")
    @classmethod
    def validate_task_dispatch_mode(cls, v: str) -> str:
        """Ensure dispatch mode is valid."""
        lower = v.lower()
        if lower not in TASK_DISPATCH_MODES:
            raise ValueError(f"task_dispatch_mode must be one of {TASK_DISPATCH_MODES}")
        return lower

    @model_validator(mode="after")
    def resolve_database_url(self) -> "Settings":
        """Convert relative SQLite paths to absolute paths."""
        self.database_url = _resolve_database_url(self.database_url)
        return self

    # -------------------------------------------------------------------------
    # Helper Methods for Feature Detection
    # -------------------------------------------------------------------------

    def geocoder_order(self) -> List[str]:
        """Return the configured provider names in the order they are tried."""
        return self.geocoder_providers.split(",")

    def is_google_enabled(self) -> bool:
        """
        Check if Google Maps integration is enabled AND configured.

        Returns True only if:
        - ENABLE_GOOGLE=true in .env
        - GOOGLE_MAPS_API_KEY is set
        """
        return self.enable_google and bool(self.google_maps_api_key)

    def is_skip_trace_enabled(self) -> bool:
        """Check if skip tracing is enabled AND configured."""
        return self.enable_skip_trace and bool(self.skip_trace_api_key)

    def get_enabled_services(self) -> list[str]:
        """Get list of enabled external services."""
        services = [name for name in self.geocoder_order() if name != "google"]
        if self.is_google_enabled() and "google" in self.geocoder_order():
            services.append("google_maps")
        if self.is_skip_trace_enabled():
            services.append("skip_trace")
        return services


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once and cached. To reload settings,
    call `get_settings.cache_clear()` first.

    Returns:
        Settings object with all configuration.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Clear settings cache and reload from environment.

    Useful for testing or after modifying .env file.
    """
    get_settings.cache_clear()
    return get_settings()
