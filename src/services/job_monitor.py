"""Job-health monitor.

Periodic sweep that recovers work whose background invocation died:

1. Upload jobs in an active stage whose heartbeat (``updated_at``) is stale
   are reset to QUEUED and re-submitted.
2. Geocoding jobs still queued/running long after creation are force-failed.
3. Upload jobs that were queued but never started are re-submitted.

Each check runs on its own; a failure in one is recorded and the others
still run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.logging_config import get_logger
from core.models import (
    GEOCODE_OPEN_STATUSES,
    UPLOAD_ACTIVE_STATUSES,
    GeocodingJob,
    GeocodingJobStatus,
    UploadJob,
    UploadJobStatus,
)
from core.utils import utcnow
from services.task_dispatch import PROCESS_UPLOAD, TaskDispatcher, get_dispatcher

LOGGER = get_logger(__name__)

STUCK_GEOCODE_MESSAGE = "Auto-cancelled: job appeared stuck"


@dataclass
class MonitorResult:
    upload_jobs_reset: int = 0
    geocoding_jobs_reset: int = 0
    orphaned_jobs_triggered: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "uploadJobsReset": self.upload_jobs_reset,
            "geocodingJobsReset": self.geocoding_jobs_reset,
            "orphanedJobsTriggered": self.orphaned_jobs_triggered,
            "errors": list(self.errors),
        }


class JobMonitor:
    """
    Finds stuck jobs and puts them back on track.

    Args:
        session: Database session.
        dispatcher: Receives re-submitted ``process_upload`` tasks.
        settings: Staleness thresholds.
    """

    def __init__(
        self,
        session: Session,
        dispatcher: Optional[TaskDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    def sweep(self, now: Optional[datetime] = None) -> MonitorResult:
        """Run all three checks. ``now`` is injectable for tests."""
        now = now or utcnow()
        result = MonitorResult()

        for name, check in (
            ("stuck upload jobs", self._reset_stuck_uploads),
            ("stuck geocoding jobs", self._fail_stuck_geocoding),
            ("orphaned upload jobs", self._trigger_orphaned_uploads),
        ):
            try:
                check(now, result)
            except Exception as e:
                self.session.rollback()
                LOGGER.exception(f"Job monitor check '{name}' failed: {e}")
                result.errors.append(f"{name}: {e}")

        if result.upload_jobs_reset or result.geocoding_jobs_reset or result.orphaned_jobs_triggered:
            LOGGER.warning(
                f"Job monitor: reset {result.upload_jobs_reset} upload job(s), "
                f"failed {result.geocoding_jobs_reset} geocoding job(s), "
                f"re-triggered {result.orphaned_jobs_triggered} orphaned job(s)"
            )
        else:
            LOGGER.debug("Job monitor: all jobs healthy")
        return result

    def _reset_stuck_uploads(self, now: datetime, result: MonitorResult) -> None:
        cutoff = now - timedelta(seconds=self.settings.upload_stuck_threshold_seconds)
        jobs = self.session.scalars(
            select(UploadJob).where(
                UploadJob.status.in_(UPLOAD_ACTIVE_STATUSES),
                UploadJob.updated_at < cutoff,
            )
        ).all()
        if not jobs:
            return

        for job in jobs:
            LOGGER.warning(
                f"Upload job {job.id} stuck in {job.status} since {job.updated_at}; requeueing"
            )
            job.status = UploadJobStatus.QUEUED.value
            job.started_at = None
            job.error_message = None
            job.updated_at = now
        self.session.commit()

        for job in jobs:
            self._submit_upload(job.id, result)
            result.upload_jobs_reset += 1

    def _fail_stuck_geocoding(self, now: datetime, result: MonitorResult) -> None:
        cutoff = now - timedelta(seconds=self.settings.geocode_stuck_threshold_seconds)
        jobs = self.session.scalars(
            select(GeocodingJob).where(
                GeocodingJob.status.in_(GEOCODE_OPEN_STATUSES),
                GeocodingJob.created_at < cutoff,
            )
        ).all()
        for job in jobs:
            LOGGER.warning(f"Geocoding job {job.id} stuck in {job.status}; failing it")
            job.status = GeocodingJobStatus.FAILED.value
            job.error_message = STUCK_GEOCODE_MESSAGE
            job.finished_at = now
            job.updated_at = now
        self.session.commit()
        result.geocoding_jobs_reset += len(jobs)

    def _trigger_orphaned_uploads(self, now: datetime, result: MonitorResult) -> None:
        cutoff = now - timedelta(seconds=self.settings.orphan_job_threshold_seconds)
        job_ids = self.session.scalars(
            select(UploadJob.id).where(
                UploadJob.status == UploadJobStatus.QUEUED.value,
                UploadJob.started_at.is_(None),
                UploadJob.created_at < cutoff,
                # A job requeued recently (reset above, or reprocessed) is not orphaned
                UploadJob.updated_at < cutoff,
            )
        ).all()
        for job_id in job_ids:
            LOGGER.warning(f"Upload job {job_id} queued but never started; re-triggering")
            self._submit_upload(job_id, result)
            result.orphaned_jobs_triggered += 1

    def _submit_upload(self, job_id: int, result: MonitorResult) -> None:
        try:
            (self.dispatcher or get_dispatcher()).submit(PROCESS_UPLOAD, {"jobId": job_id})
        except Exception as e:
            LOGGER.error(f"Could not re-submit upload job {job_id}: {e}")
            result.errors.append(f"upload job {job_id}: {e}")


def run_job_monitor(
    session: Session,
    dispatcher: Optional[TaskDispatcher] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run one sweep and return its summary dict."""
    return JobMonitor(session, dispatcher=dispatcher).sweep(now).as_dict()


def handle_job_monitor(
    session: Session,
    payload: Dict[str, Any],
    dispatcher: TaskDispatcher,
) -> Dict[str, Any]:
    """Task handler for ``job_monitor {}``."""
    return run_job_monitor(session, dispatcher=dispatcher)


__all__ = [
    "STUCK_GEOCODE_MESSAGE",
    "MonitorResult",
    "JobMonitor",
    "run_job_monitor",
    "handle_job_monitor",
]
