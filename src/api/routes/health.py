"""Health check routes."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from api.deps import get_readonly_db
from core.config import get_settings
from core.db import missing_tables
from core.logging_config import get_logger
from core.models import (
    GEOCODE_OPEN_STATUSES,
    UPLOAD_ACTIVE_STATUSES,
    GeocodingJob,
    Property,
    UploadJob,
    UploadJobStatus,
)
from core.utils import utcnow
from services.geocoding_job import pending_clause

router = APIRouter()
LOGGER = get_logger(__name__)


@router.get("/")
async def health_check() -> Dict[str, Any]:
    """Basic health check - always returns OK."""
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "environment": settings.environment,
    }


@router.get("/detailed")
def detailed_health_check(
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """Database connectivity, job backlog and configured providers."""
    settings = get_settings()
    status = "healthy"
    checks: Dict[str, Any] = {}

    try:
        db.execute(text("SELECT 1"))
        missing = missing_tables()
        checks["database"] = {
            "status": "healthy" if not missing else "degraded",
            "connected": True,
            "tables_missing": missing,
        }
        if missing:
            status = "degraded"
    except Exception as e:
        LOGGER.error(f"Database health check failed: {e}")
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        return {"status": "unhealthy", "timestamp": utcnow().isoformat(), "checks": checks}

    if not checks["database"]["tables_missing"]:
        checks["jobs"] = {
            "uploads_queued": db.scalar(
                select(func.count(UploadJob.id)).where(
                    UploadJob.status == UploadJobStatus.QUEUED.value
                )
            ),
            "uploads_active": db.scalar(
                select(func.count(UploadJob.id)).where(UploadJob.status.in_(UPLOAD_ACTIVE_STATUSES))
            ),
            "geocoding_open": db.scalar(
                select(func.count(GeocodingJob.id)).where(
                    GeocodingJob.status.in_(GEOCODE_OPEN_STATUSES)
                )
            ),
            "properties_awaiting_geocode": db.scalar(
                select(func.count(Property.id)).where(pending_clause())
            ),
        }

    checks["geocoders"] = {
        "order": settings.geocoder_order(),
        "google_configured": settings.is_google_enabled(),
    }
    checks["skip_trace"] = {"configured": settings.is_skip_trace_enabled()}
    checks["tasks"] = {"dispatch_mode": settings.task_dispatch_mode}

    return {
        "status": status,
        "timestamp": utcnow().isoformat(),
        "checks": checks,
    }
