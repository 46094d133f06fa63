"""Upload ingestion pipeline.

Walks one UploadJob through

    QUEUED -> PARSING -> PROCESSING -> DEDUPING -> CREATING_VIOLATIONS
           -> FINALIZING -> COMPLETE

with FAILED reachable from any non-terminal stage. Every stage change and
every committed batch refreshes ``updated_at``, which is the heartbeat the
job monitor uses to spot a run that died mid-way.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.exceptions import IngestionError, JobNotFoundError, ValidationError
from core.logging_config import get_context_logger, get_logger
from core.models import StagingRow, UploadJob, UploadJobStatus
from core.utils import chunked, utcnow
from ingestion.location_splitter import read_csv_records, resolve_location
from ingestion.normalizer import (
    DEFAULT_VIOLATION_STATUS,
    clean_text,
    normalize_header,
    normalize_zip,
    parse_date,
    property_key,
)
from ingestion.persistence import (
    PropertyResolver,
    ViolationRow,
    refresh_property_aggregates,
    write_violations,
)
from ingestion.storage import UploadStorage, get_upload_storage
from services.task_dispatch import (
    GENERATE_INSIGHTS,
    START_GEOCODING,
    TaskDispatcher,
    get_dispatcher,
)

LOGGER = get_logger(__name__)

REQUIRED_COLUMNS = ("address", "violation")


@dataclass
class ParsedRow:
    """A CSV data row as staged, plus its validated form when it passed."""

    row_num: int
    values: Dict[str, Optional[str]]
    valid: Optional[ViolationRow] = None
    error: Optional[str] = None


@dataclass
class ParseResult:
    rows: List[ParsedRow] = field(default_factory=list)

    @property
    def valid_rows(self) -> List[ViolationRow]:
        return [row.valid for row in self.rows if row.valid is not None]

    @property
    def error_rows(self) -> List[ParsedRow]:
        return [row for row in self.rows if row.error]


def parse_upload(
    text: str,
    fallback_city: Optional[str] = None,
    fallback_state: Optional[str] = None,
) -> ParseResult:
    """
    Parse CSV text into staged rows, validating each one.

    A row needs an address, a violation and a usable city/state (after
    falling back to the job's own location). Rows that fail keep their
    values and carry an error message; they never fail the upload.

    Raises:
        IngestionError: If the file has no data rows or lacks required columns.
    """
    records = list(read_csv_records(text))
    if not records:
        raise IngestionError("CSV file is empty or has no data rows")

    header = [normalize_header(col) for col in records[0].fields]
    width = len(header)
    malformed: Dict[int, str] = {}
    cells: List[List[str]] = []
    for row_num, record in enumerate(records[1:], start=1):
        fields = record.fields
        if len(fields) > width:
            malformed[row_num] = f"malformed row: expected {width} fields, saw {len(fields)}"
        # Short rows are padded; long rows keep their leading cells for staging
        cells.append((fields + [""] * width)[:width])

    df = pd.DataFrame(cells, columns=header, dtype=str)
    df = df.loc[:, ~df.columns.duplicated()]

    if df.empty:
        raise IngestionError("CSV file is empty or has no data rows")
    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise IngestionError(f"CSV is missing required column(s): {', '.join(missing)}")

    result = ParseResult()
    for row_num, record in enumerate(df.to_dict(orient="records"), start=1):
        values = {
            "case_id": clean_text(record.get("case_id")),
            "address": clean_text(record.get("address")),
            "city": clean_text(record.get("city")),
            "state": clean_text(record.get("state")),
            "zip": clean_text(record.get("zip")),
            "violation": clean_text(record.get("violation")),
            "status": clean_text(record.get("status")),
            "opened_date": clean_text(record.get("opened_date")),
            "last_updated": clean_text(record.get("last_updated")),
        }
        parsed = ParsedRow(row_num=row_num, values=values)

        location = resolve_location(values["city"], values["state"], fallback_city, fallback_state)
        if row_num in malformed:
            parsed.error = malformed[row_num]
        elif not values["address"]:
            parsed.error = "missing address"
        elif not values["violation"]:
            parsed.error = "missing violation"
        elif location is None:
            parsed.error = "missing or invalid city/state"
        else:
            city, state = location
            zip_code = normalize_zip(values["zip"])
            parsed.valid = ViolationRow(
                row_num=row_num,
                address=values["address"],
                city=city,
                state=state,
                zip=zip_code,
                violation=values["violation"],
                key=property_key(values["address"], city, state, zip_code),
                case_id=values["case_id"],
                status=values["status"] or DEFAULT_VIOLATION_STATUS,
                opened_date=parse_date(values["opened_date"]),
                last_updated=parse_date(values["last_updated"]),
            )
        result.rows.append(parsed)

    return result


class UploadPipeline:
    """
    Runs the ingestion state machine for one upload job.

    Args:
        session: Database session; committed after every stage and batch.
        storage: Where the uploaded CSV text lives.
        dispatcher: Receives the enrichment tasks submitted at FINALIZING.
        settings: Batch sizes and limits (defaults to get_settings()).
    """

    def __init__(
        self,
        session: Session,
        storage: Optional[UploadStorage] = None,
        dispatcher: Optional[TaskDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.storage = storage or get_upload_storage()
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def run(self, job_id: int) -> Dict[str, Any]:
        """
        Process the job if it is QUEUED; otherwise report its progress.

        Re-invoking on a COMPLETE, FAILED or in-flight job performs no
        writes.

        Returns:
            The job's progress dict.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = self._get_job(job_id)
        if job.status != UploadJobStatus.QUEUED.value:
            LOGGER.info(f"Upload job {job_id} is {job.status}; nothing to do")
            return job.to_dict()

        if not self._claim(job_id):
            LOGGER.info(f"Upload job {job_id} was claimed by another run")
            return self._get_job(job_id).to_dict()

        log = get_context_logger(__name__, job_id=job_id)
        start = time.time()
        try:
            self._run_stages(self._get_job(job_id), log)
        except Exception as e:
            log.exception(f"Upload job {job_id} failed: {e}")
            self._mark_failed(job_id, str(e) or e.__class__.__name__)

        job = self._get_job(job_id)
        log.info(f"Upload job {job_id} finished as {job.status} in {time.time() - start:.2f}s")
        return job.to_dict()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _run_stages(self, job: UploadJob, log) -> None:
        # PARSING
        if not job.storage_path:
            raise IngestionError("Upload job has no stored file")
        text = self.storage.read(job.storage_path)
        parsed = parse_upload(text, job.city, job.state)
        self.session.execute(delete(StagingRow).where(StagingRow.job_id == job.id))
        for row in parsed.error_rows:
            self._warn(job, f"Row {row.row_num}: {row.error}")
        job.rows_skipped = len(parsed.error_rows)
        self._heartbeat(job, total_rows=len(parsed.rows))
        log.info(
            f"Parsed {len(parsed.rows)} rows ({len(parsed.error_rows)} rejected at row level)"
        )

        # PROCESSING
        self._heartbeat(job, status=UploadJobStatus.PROCESSING)
        for batch in chunked(parsed.rows, self.settings.upload_staging_batch_size):
            self.session.add_all(
                StagingRow(job_id=job.id, row_num=row.row_num, error=row.error, **row.values)
                for row in batch
            )
            self._heartbeat(job, processed_rows=batch[-1].row_num)
            log.debug(f"Staged {batch[-1].row_num} / {len(parsed.rows)} rows")

        valid_rows = parsed.valid_rows

        # DEDUPING
        self._heartbeat(job, status=UploadJobStatus.DEDUPING)
        dedup = PropertyResolver(
            self.session,
            lookup_batch_size=self.settings.property_lookup_batch_size,
            insert_batch_size=self.settings.property_insert_batch_size,
        ).resolve(valid_rows)
        job.properties_created += dedup.properties_created
        job.duplicate_case_ids = len(dedup.duplicate_case_ids)
        for case_id, count in sorted(dedup.duplicate_case_ids.items()):
            self._warn(job, f"Case {case_id} appears on {count} rows")
        for key in sorted(dedup.unresolved_keys):
            self._warn(job, f"Could not resolve property {key}")
        self._heartbeat(job)

        # CREATING_VIOLATIONS
        self._heartbeat(job, status=UploadJobStatus.CREATING_VIOLATIONS)
        base_created = job.violations_created

        def _on_batch(created: int) -> None:
            job.violations_created = base_created + created
            self._heartbeat(job)

        written = write_violations(
            self.session,
            valid_rows,
            dedup.property_ids,
            upload_job_id=job.id,
            batch_size=self.settings.violation_batch_size,
            on_batch=_on_batch,
        )
        job.rows_skipped += written.skipped_unresolved
        touched = sorted(set(dedup.property_ids.values()))
        refresh_property_aggregates(self.session, touched)
        self._heartbeat(job)

        # FINALIZING
        self._heartbeat(job, status=UploadJobStatus.FINALIZING)
        self._submit_enrichment(job, touched, log)

        # COMPLETE
        if self.settings.purge_staging_on_complete:
            self.session.execute(delete(StagingRow).where(StagingRow.job_id == job.id))
        job.finished_at = utcnow()
        self._heartbeat(job, status=UploadJobStatus.COMPLETE)
        log.info(
            f"Upload job {job.id} complete: {job.properties_created} properties, "
            f"{job.violations_created} violations, {job.rows_skipped} rows skipped"
        )

    def _submit_enrichment(self, job: UploadJob, property_ids: List[int], log) -> None:
        """Fire-and-forget follow-up work; a failure here never fails the upload."""
        dispatcher = self.dispatcher or get_dispatcher()
        tasks = []
        if property_ids:
            tasks.append((GENERATE_INSIGHTS, {"propertyIds": property_ids}))
        tasks.append((START_GEOCODING, {}))

        for name, payload in tasks:
            try:
                dispatcher.submit(name, payload)
                if name == GENERATE_INSIGHTS:
                    job.insights_requested = True
            except Exception as e:
                log.warning(f"Could not submit {name} for upload job {job.id}: {e}")
                self._warn(job, f"Enrichment task {name} was not submitted: {e}")
        self._heartbeat(job)

    # -------------------------------------------------------------------------
    # Job row helpers
    # -------------------------------------------------------------------------

    def _get_job(self, job_id: int) -> UploadJob:
        job = self.session.get(UploadJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Upload job {job_id} not found")
        return job

    def _claim(self, job_id: int) -> bool:
        """Atomically move QUEUED -> PARSING; False if another run got there first."""
        now = utcnow()
        result = self.session.execute(
            update(UploadJob)
            .where(UploadJob.id == job_id, UploadJob.status == UploadJobStatus.QUEUED.value)
            .values(
                status=UploadJobStatus.PARSING.value,
                started_at=now,
                updated_at=now,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def _heartbeat(
        self,
        job: UploadJob,
        status: Optional[UploadJobStatus] = None,
        processed_rows: Optional[int] = None,
        total_rows: Optional[int] = None,
    ) -> None:
        """Apply a stage change and/or counts, touch updated_at, commit."""
        if status is not None:
            job.status = status.value
        if total_rows is not None:
            job.total_rows = total_rows
        if processed_rows is not None:
            job.processed_rows = max(job.processed_rows or 0, processed_rows)
        job.updated_at = utcnow()
        self.session.commit()

    def _warn(self, job: UploadJob, message: str) -> None:
        warnings = list(job.warnings or [])
        if len(warnings) < self.settings.max_job_warnings:
            warnings.append(message)
            job.warnings = warnings

    def _mark_failed(self, job_id: int, message: str) -> None:
        self.session.rollback()
        job = self._get_job(job_id)
        now = utcnow()
        job.status = UploadJobStatus.FAILED.value
        job.error_message = message[:2000]
        job.finished_at = now
        job.updated_at = now
        self.session.commit()


def process_upload_job(
    session: Session,
    job_id: int,
    storage: Optional[UploadStorage] = None,
    dispatcher: Optional[TaskDispatcher] = None,
) -> Dict[str, Any]:
    """Run the ingestion pipeline for ``job_id``. See UploadPipeline.run."""
    return UploadPipeline(session, storage=storage, dispatcher=dispatcher).run(job_id)


def handle_process_upload(
    session: Session,
    payload: Dict[str, Any],
    dispatcher: TaskDispatcher,
) -> Dict[str, Any]:
    """Task handler for ``process_upload {jobId}``."""
    job_id = payload.get("jobId")
    if job_id is None:
        raise ValidationError("process_upload requires jobId")
    return process_upload_job(session, int(job_id), dispatcher=dispatcher)


__all__ = [
    "ParsedRow",
    "ParseResult",
    "parse_upload",
    "UploadPipeline",
    "process_upload_job",
    "handle_process_upload",
]
