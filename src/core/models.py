"""SQLAlchemy ORM models for the violation lead pipeline."""
from __future__ import annotations

import enum
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from core.utils import utcnow


# =============================================================================
# Enums
# =============================================================================


class UploadJobStatus(str, enum.Enum):
    """Upload pipeline stages, in the order a job walks through them."""
    QUEUED = "QUEUED"
    PARSING = "PARSING"
    PROCESSING = "PROCESSING"
    DEDUPING = "DEDUPING"
    CREATING_VIOLATIONS = "CREATING_VIOLATIONS"
    FINALIZING = "FINALIZING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


UPLOAD_TERMINAL_STATUSES = (UploadJobStatus.COMPLETE.value, UploadJobStatus.FAILED.value)
UPLOAD_ACTIVE_STATUSES = (
    UploadJobStatus.PARSING.value,
    UploadJobStatus.PROCESSING.value,
    UploadJobStatus.DEDUPING.value,
    UploadJobStatus.CREATING_VIOLATIONS.value,
    UploadJobStatus.FINALIZING.value,
)


class GeocodingJobStatus(str, enum.Enum):
    """Geocoding job lifecycle."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


GEOCODE_OPEN_STATUSES = (GeocodingJobStatus.QUEUED.value, GeocodingJobStatus.RUNNING.value)


class GeocodeStatus(str, enum.Enum):
    """Per-property geocoding outcome."""
    PENDING = "pending"
    GEOCODED = "geocoded"
    SKIPPED = "skipped"
    FAILED = "failed"


# =============================================================================
# UploadJob Model
# =============================================================================


class UploadJob(Base):
    """
    One uploaded CSV file, or one jurisdiction group split out of a file.

    The row doubles as the progress record polled by the dashboard:
    ``updated_at`` is the heartbeat the job monitor watches.
    """
    __tablename__ = "upload_job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(
        String(32), default=UploadJobStatus.QUEUED.value, nullable=False, index=True
    )

    # Source file
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Jurisdiction (fallback location for rows without one)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)
    county: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    parent_job_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("upload_job.id"), nullable=True, index=True
    )

    # Progress counters
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rows_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    properties_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    violations_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicate_case_ids: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    warnings: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    insights_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Relationships
    staging_rows: Mapped[List["StagingRow"]] = relationship(
        "StagingRow", back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_upload_job_status_updated", "status", "updated_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in UPLOAD_TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Progress view of the job as the dashboard polls it."""
        return {
            "id": self.id,
            "status": self.status,
            "filename": self.filename,
            "city": self.city,
            "state": self.state,
            "county": self.county,
            "parent_job_id": self.parent_job_id,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "rows_skipped": self.rows_skipped,
            "properties_created": self.properties_created,
            "violations_created": self.violations_created,
            "duplicate_case_ids": self.duplicate_case_ids,
            "warnings": list(self.warnings or []),
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<UploadJob(id={self.id}, status={self.status}, filename={self.filename})>"


# =============================================================================
# StagingRow Model
# =============================================================================


class StagingRow(Base):
    """Raw parsed CSV row, kept verbatim for audit and retry."""
    __tablename__ = "upload_staging"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("upload_job.id", ondelete="CASCADE"), nullable=False, index=True
    )
    row_num: Mapped[int] = mapped_column(Integer, nullable=False)

    case_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    zip: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    violation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    opened_date: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_updated: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    job: Mapped["UploadJob"] = relationship("UploadJob", back_populates="staging_rows")

    __table_args__ = (
        Index("ix_upload_staging_job_row", "job_id", "row_num"),
    )


# =============================================================================
# Property Model
# =============================================================================


class Property(Base):
    """
    A canonical street address.

    latitude/longitude of NULL means geocoding has not been attempted;
    0/0 marks a property that was deliberately given up on.
    """
    __tablename__ = "property"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    address: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    state: Mapped[str] = mapped_column(String(2), nullable=False, index=True)
    zip: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    normalized_key: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)

    # Geocoding
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    geocode_status: Mapped[str] = mapped_column(
        String(20), default=GeocodeStatus.PENDING.value, nullable=False, index=True
    )
    geocode_provider: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    geocoded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Enforcement aggregates
    total_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    open_violations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    repeat_offender: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_enforcement_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Insights
    snap_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    snap_insight: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    violations: Mapped[List["Violation"]] = relationship("Violation", back_populates="property")

    __table_args__ = (
        Index("ix_property_city_state", "city", "state"),
        Index("ix_property_geocode_pending", "latitude", "longitude"),
    )

    @property
    def needs_geocoding(self) -> bool:
        return self.latitude is None or self.longitude is None

    def __repr__(self) -> str:
        return f"<Property(id={self.id}, address={self.address}, city={self.city})>"


# =============================================================================
# Violation Model
# =============================================================================


class Violation(Base):
    """One code-enforcement case recorded against a property."""
    __tablename__ = "violation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    property_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("property.id"), nullable=False, index=True
    )
    case_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    violation_type: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(100), default="Open", nullable=False)
    opened_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_updated: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    days_open: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    upload_job_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("upload_job.id"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    property: Mapped["Property"] = relationship("Property", back_populates="violations")

    __table_args__ = (
        Index("ix_violation_property_case", "property_id", "case_id"),
    )

    def __repr__(self) -> str:
        return f"<Violation(id={self.id}, property_id={self.property_id}, case_id={self.case_id})>"


# =============================================================================
# GeocodingJob Model
# =============================================================================


class GeocodingJob(Base):
    """
    One geocoding run over the pool of properties lacking coordinates.

    Counters are accumulated per batch and are telemetry only; the remaining
    pool is always recounted from the property table.
    """
    __tablename__ = "geocoding_job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(
        String(20), default=GeocodingJobStatus.QUEUED.value, nullable=False, index=True
    )

    total_properties: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    geocoded_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batches_run: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_geocoding_job_status_created", "status", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "status": self.status,
            "total_properties": self.total_properties,
            "geocoded_count": self.geocoded_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "batches_run": self.batches_run,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# =============================================================================
# SchedulerLock Model
# =============================================================================


class SchedulerLock(Base):
    """
    Lease row that keeps two scheduler processes from sweeping at once.
    """
    __tablename__ = "scheduler_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    locked_by: Mapped[str] = mapped_column(String(64), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


__all__ = [
    "UploadJobStatus",
    "GeocodingJobStatus",
    "GeocodeStatus",
    "UPLOAD_TERMINAL_STATUSES",
    "UPLOAD_ACTIVE_STATUSES",
    "GEOCODE_OPEN_STATUSES",
    "UploadJob",
    "StagingRow",
    "Property",
    "Violation",
    "GeocodingJob",
    "SchedulerLock",
]
