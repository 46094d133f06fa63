"""Geocoding job routes."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.deps import get_db, get_task_dispatcher
from core.logging_config import get_logger
from services.geocoding_job import GeocodingJobService
from services.task_dispatch import TaskDispatcher

router = APIRouter()
LOGGER = get_logger(__name__)


@router.post("/jobs", status_code=202)
def start_geocoding_job(
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> Dict[str, Any]:
    """Start a geocoding run over every property without coordinates."""
    job = GeocodingJobService(db, dispatcher=dispatcher).start_job()
    return job.to_dict()


@router.get("/jobs/{job_id}")
def get_geocoding_job(
    job_id: int,
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Job counters plus the live size of the remaining pool."""
    service = GeocodingJobService(db)
    result = service.get_job(job_id).to_dict()
    result["remaining"] = service.count_remaining()
    return result


@router.post("/reset-failed")
def reset_failed_geocodes(db: Session = Depends(get_db)) -> Dict[str, int]:
    """Return properties whose geocoding failed to the pool."""
    return {"reset": GeocodingJobService(db).reset_failed()}
