"""Upload routes: accept CSV files, inspect and control upload jobs."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_db, get_storage, get_task_dispatcher
from core.logging_config import get_logger
from domain.uploads import UploadService
from ingestion.storage import UploadStorage
from services.task_dispatch import TaskDispatcher

router = APIRouter()
LOGGER = get_logger(__name__)


class UploadRequest(BaseModel):
    """A CSV document submitted as text."""
    filename: str = Field(..., min_length=1)
    csv_text: str
    city: Optional[str] = None
    state: Optional[str] = None
    county: Optional[str] = None


class DetectRequest(BaseModel):
    csv_text: str
    city: Optional[str] = None
    state: Optional[str] = None


def _service(
    db: Session = Depends(get_db),
    storage: UploadStorage = Depends(get_storage),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> UploadService:
    return UploadService(db, storage=storage, dispatcher=dispatcher)


@router.post("", status_code=202)
def create_upload(
    request: UploadRequest,
    service: UploadService = Depends(_service),
) -> Dict[str, Any]:
    """Store the file, create its job(s) and queue processing."""
    return service.create_upload(
        filename=request.filename,
        csv_text=request.csv_text,
        city=request.city,
        state=request.state,
        county=request.county,
    )


@router.post("/detect")
def detect_locations(
    request: DetectRequest,
    service: UploadService = Depends(_service),
) -> Dict[str, Any]:
    """Preview the cities and states in a CSV without storing it."""
    return service.detect(request.csv_text, request.city, request.state)


@router.get("/{job_id}")
def get_upload(
    job_id: int,
    service: UploadService = Depends(_service),
) -> Dict[str, Any]:
    """Progress of an upload job and any child jobs split from it."""
    return service.get_progress(job_id)


@router.post("/{job_id}/split")
def split_upload(
    job_id: int,
    service: UploadService = Depends(_service),
) -> Dict[str, Any]:
    """Split a multi-location upload into one job per location."""
    return service.split_job(job_id).to_dict()


@router.post("/{job_id}/reprocess", status_code=202)
def reprocess_upload(
    job_id: int,
    service: UploadService = Depends(_service),
) -> Dict[str, Any]:
    """Reset a finished or failed job and run it again from its stored file."""
    return service.reprocess_job(job_id)
