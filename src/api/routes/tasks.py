"""Background task entry points.

Each route runs one task to completion in the request and returns its
result. The HTTP dispatcher submits tasks here with ``Prefer: respond-async``;
those requests are answered 202 at once and the task runs after the response
in its own session, so a submitting invocation never waits on its successor.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_db, get_task_dispatcher
from core.db import get_session
from core.logging_config import get_logger
from services.task_dispatch import (
    GENERATE_INSIGHTS,
    GEOCODE_BATCH,
    JOB_MONITOR,
    PROCESS_UPLOAD,
    RESPOND_ASYNC,
    START_GEOCODING,
    TaskDispatcher,
    run_task,
)

router = APIRouter()
LOGGER = get_logger(__name__)


class JobPayload(BaseModel):
    jobId: int


class InsightsPayload(BaseModel):
    propertyIds: List[int] = Field(..., min_length=1)


def _run_detached(name: str, payload: Dict[str, Any], dispatcher: TaskDispatcher) -> None:
    try:
        with get_session() as session:
            run_task(session, name, payload, dispatcher)
    except Exception as e:
        LOGGER.exception(f"Background task {name} {payload} failed: {e}")


def _execute(
    name: str,
    payload: Dict[str, Any],
    db: Session,
    dispatcher: TaskDispatcher,
    prefer: Optional[str],
    response: Response,
    background_tasks: BackgroundTasks,
) -> Dict[str, Any]:
    if prefer and RESPOND_ASYNC in prefer.lower():
        background_tasks.add_task(_run_detached, name, payload, dispatcher)
        response.status_code = 202
        return {"accepted": True, "task": name}
    return run_task(db, name, payload, dispatcher)


@router.post("/process-upload")
def process_upload(
    payload: JobPayload,
    response: Response,
    background_tasks: BackgroundTasks,
    prefer: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> Dict[str, Any]:
    return _execute(
        PROCESS_UPLOAD, payload.model_dump(), db, dispatcher, prefer, response, background_tasks
    )


@router.post("/geocode-batch")
def geocode_batch(
    payload: JobPayload,
    response: Response,
    background_tasks: BackgroundTasks,
    prefer: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> Dict[str, Any]:
    return _execute(
        GEOCODE_BATCH, payload.model_dump(), db, dispatcher, prefer, response, background_tasks
    )


@router.post("/start-geocoding")
def start_geocoding(
    response: Response,
    background_tasks: BackgroundTasks,
    prefer: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> Dict[str, Any]:
    return _execute(START_GEOCODING, {}, db, dispatcher, prefer, response, background_tasks)


@router.post("/generate-insights")
def generate_insights(
    payload: InsightsPayload,
    response: Response,
    background_tasks: BackgroundTasks,
    prefer: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> Dict[str, Any]:
    return _execute(
        GENERATE_INSIGHTS, payload.model_dump(), db, dispatcher, prefer, response, background_tasks
    )


@router.post("/job-monitor")
def job_monitor(
    response: Response,
    background_tasks: BackgroundTasks,
    prefer: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    dispatcher: TaskDispatcher = Depends(get_task_dispatcher),
) -> Dict[str, Any]:
    return _execute(JOB_MONITOR, {}, db, dispatcher, prefer, response, background_tasks)
