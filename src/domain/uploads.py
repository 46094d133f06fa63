"""Upload domain service - accepting, splitting and reprocessing CSV uploads."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from core.exceptions import JobNotFoundError, JobStateError, StorageError, ValidationError
from core.logging_config import get_logger
from core.models import (
    UPLOAD_ACTIVE_STATUSES,
    StagingRow,
    UploadJob,
    UploadJobStatus,
)
from core.utils import utcnow
from ingestion.location_splitter import (
    detect_locations,
    is_valid_state,
    location_key,
    split_csv_by_location,
)
from ingestion.normalizer import normalize_state
from ingestion.storage import UploadStorage, get_upload_storage, sanitize_filename
from services.task_dispatch import PROCESS_UPLOAD, TaskDispatcher, get_dispatcher

LOGGER = get_logger(__name__)

SPLITTABLE_STATUSES = (UploadJobStatus.QUEUED.value, UploadJobStatus.FAILED.value)


def _millis() -> int:
    return int(time.time() * 1000)


@dataclass
class SplitResult:
    """Outcome of splitting one upload into per-location child jobs."""

    parent_job_id: int
    cities_detected: int
    missing_location_rows: int = 0
    jobs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parentJobId": self.parent_job_id,
            "citiesDetected": self.cities_detected,
            "jobsCreated": len(self.jobs),
            "missingLocationRows": self.missing_location_rows,
            "jobs": list(self.jobs),
        }


class UploadService:
    """
    Entry point for everything that creates or resets upload jobs.

    Args:
        session: Database session.
        storage: Uploaded file storage (defaults to UPLOAD_DIR).
        dispatcher: Receives ``process_upload`` tasks.
    """

    def __init__(
        self,
        session: Session,
        storage: Optional[UploadStorage] = None,
        dispatcher: Optional[TaskDispatcher] = None,
    ) -> None:
        self.session = session
        self.storage = storage or get_upload_storage()
        self.dispatcher = dispatcher

    def _dispatcher(self) -> TaskDispatcher:
        return self.dispatcher or get_dispatcher()

    def get_job(self, job_id: int) -> UploadJob:
        job = self.session.get(UploadJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Upload job {job_id} not found")
        return job

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def detect(
        self,
        csv_text: str,
        city: Optional[str] = None,
        state: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Preview the locations in a CSV without storing anything."""
        detection = detect_locations(csv_text, city, normalize_state(state))
        result = detection.as_dict()
        result["is_multi_location"] = detection.is_multi_location
        return result

    # -------------------------------------------------------------------------
    # Acceptance
    # -------------------------------------------------------------------------

    def create_upload(
        self,
        filename: str,
        csv_text: str,
        city: Optional[str] = None,
        state: Optional[str] = None,
        county: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Store a CSV and create its job(s).

        A single-location file becomes one QUEUED job that is submitted for
        processing. A file spanning several locations becomes a parent job
        that is immediately split into one child job per location.

        Raises:
            ValidationError: Empty file or no data rows.
        """
        if not filename or not filename.strip():
            raise ValidationError("filename is required")
        if not csv_text or not csv_text.strip():
            raise ValidationError("CSV file is empty")

        state = normalize_state(state)
        if state and not is_valid_state(state):
            raise ValidationError(f"Unknown state code: {state}")
        detection = detect_locations(csv_text, city, state)
        if detection.total_rows == 0:
            raise ValidationError("CSV file has no data rows")

        safe_name = sanitize_filename(filename.strip()) or "upload.csv"
        storage_path = self.storage.save(f"uploads/{_millis()}_{safe_name}", csv_text)

        now = utcnow()
        job = UploadJob(
            status=UploadJobStatus.QUEUED.value,
            filename=filename.strip(),
            storage_path=storage_path,
            file_size=len(csv_text.encode("utf-8")),
            city=city,
            state=state,
            county=county,
            created_at=now,
            updated_at=now,
        )
        if len(detection.locations) == 1 and not (city and state):
            only = detection.locations[0]
            job.city, job.state = job.city or only.city, job.state or only.state
        self.session.add(job)
        self.session.commit()
        LOGGER.info(
            f"Accepted upload {filename!r} as job {job.id}: {detection.total_rows} rows, "
            f"{len(detection.locations)} location(s)"
        )

        result: Dict[str, Any] = {
            "jobId": job.id,
            "detection": detection.as_dict(),
            "split": None,
        }
        if detection.is_multi_location:
            result["split"] = self.split_job(job.id).to_dict()
        else:
            self._dispatcher().submit(PROCESS_UPLOAD, {"jobId": job.id})
        result["status"] = self.get_job(job.id).status
        return result

    # -------------------------------------------------------------------------
    # Split
    # -------------------------------------------------------------------------

    def split_job(self, job_id: int) -> SplitResult:
        """
        Split a job's file into one child job per location.

        Each child gets the parent as ``parent_job_id`` and its own stored
        sub-document. The parent is marked COMPLETE with zero counts; the
        children carry the work.

        Raises:
            JobNotFoundError: Unknown job.
            JobStateError: The job is already running or complete.
            StorageError: The job's file is gone.
            ValidationError: The file holds fewer than two locations.
        """
        parent = self.get_job(job_id)
        if parent.status not in SPLITTABLE_STATUSES:
            raise JobStateError(f"Upload job {job_id} is {parent.status} and cannot be split")
        if not parent.storage_path:
            raise StorageError(f"Upload job {job_id} has no stored file")

        text = self.storage.read(parent.storage_path)
        documents = split_csv_by_location(text, parent.city, parent.state)
        if len(documents) < 2:
            raise ValidationError(
                f"Upload job {job_id} has {len(documents)} location(s); nothing to split"
            )
        detection = detect_locations(text, parent.city, parent.state)

        result = SplitResult(
            parent_job_id=parent.id,
            cities_detected=len(documents),
            missing_location_rows=detection.missing_location_rows,
        )
        children: List[UploadJob] = []
        now = utcnow()
        for key, document in documents.items():
            city, state = key.split("|", 1)
            storage_path = self._split_path(city, state)
            self.storage.save(storage_path, document)
            child = UploadJob(
                status=UploadJobStatus.QUEUED.value,
                filename=storage_path.rsplit("/", 1)[-1],
                storage_path=storage_path,
                file_size=len(document.encode("utf-8")),
                city=city,
                state=state,
                county=parent.county,
                parent_job_id=parent.id,
                created_at=now,
                updated_at=now,
            )
            self.session.add(child)
            children.append(child)

        parent.status = UploadJobStatus.COMPLETE.value
        parent.total_rows = 0
        parent.processed_rows = 0
        parent.properties_created = 0
        parent.violations_created = 0
        parent.error_message = None
        parent.finished_at = now
        parent.updated_at = now
        warnings = list(parent.warnings or [])
        warnings.append(f"Split into {len(children)} jobs by location")
        if detection.missing_location_rows:
            warnings.append(f"{detection.missing_location_rows} rows had no usable location")
        parent.warnings = warnings
        self.session.commit()

        counts = {location_key(loc.city, loc.state): loc.count for loc in detection.locations}
        for child in children:
            result.jobs.append(
                {
                    "jobId": child.id,
                    "city": child.city,
                    "state": child.state,
                    "rows": counts.get(location_key(child.city, child.state), 0),
                }
            )
        LOGGER.info(f"Split upload job {parent.id} into {len(children)} child jobs")

        dispatcher = self._dispatcher()
        for child in children:
            dispatcher.submit(PROCESS_UPLOAD, {"jobId": child.id})
        return result

    def _split_path(self, city: str, state: str) -> str:
        base = f"splits/{sanitize_filename(city)}_{sanitize_filename(state)}_split_{_millis()}"
        path = f"{base}.csv"
        suffix = 1
        while self.storage.exists(path):
            suffix += 1
            path = f"{base}_{suffix}.csv"
        return path

    # -------------------------------------------------------------------------
    # Reprocess
    # -------------------------------------------------------------------------

    def reprocess_job(self, job_id: int) -> Dict[str, Any]:
        """
        Reset a job to QUEUED and run the pipeline again from its stored file.

        Properties and violations already written stay; the pipeline skips
        violations it has already recorded.

        Raises:
            JobNotFoundError: Unknown job.
            JobStateError: The job is currently being processed.
            StorageError: The stored file no longer exists.
        """
        job = self.get_job(job_id)
        if job.status in UPLOAD_ACTIVE_STATUSES:
            raise JobStateError(f"Upload job {job_id} is {job.status}; wait for it to finish")
        if not self.storage.exists(job.storage_path):
            raise StorageError(
                f"Original file for upload job {job_id} is missing; upload it again"
            )

        self.session.execute(delete(StagingRow).where(StagingRow.job_id == job.id))
        now = utcnow()
        job.status = UploadJobStatus.QUEUED.value
        job.started_at = None
        job.finished_at = None
        job.error_message = None
        job.total_rows = 0
        job.processed_rows = 0
        job.rows_skipped = 0
        job.properties_created = 0
        job.violations_created = 0
        job.duplicate_case_ids = 0
        job.warnings = []
        job.updated_at = now
        self.session.commit()
        LOGGER.info(f"Upload job {job_id} reset for reprocessing")

        self._dispatcher().submit(PROCESS_UPLOAD, {"jobId": job.id})
        return self.get_job(job_id).to_dict()

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def get_progress(self, job_id: int) -> Dict[str, Any]:
        """Job progress, including child jobs for a split upload."""
        job = self.get_job(job_id)
        result = job.to_dict()
        children = self.session.scalars(
            select(UploadJob).where(UploadJob.parent_job_id == job.id).order_by(UploadJob.id)
        ).all()
        result["children"] = [child.to_dict() for child in children]
        return result


__all__ = [
    "SplitResult",
    "UploadService",
]
