"""Batch geocoding over the pool of properties without coordinates.

A GeocodingJob walks ``queued -> running -> completed | failed``. Each
``geocode_batch`` invocation takes one bounded batch from the pool, resolves
it through the provider chain on a thread pool, writes every outcome on the
invoking thread, then recounts the pool and either submits the next batch or
completes the job.

Properties that cannot be geocoded are written with latitude/longitude 0/0
so they drop out of the pool; ``reset_failed`` puts provider failures back.
"""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.exceptions import JobNotFoundError, ValidationError
from core.logging_config import get_context_logger, get_logger
from core.models import (
    GEOCODE_OPEN_STATUSES,
    GeocodeStatus,
    GeocodingJob,
    GeocodingJobStatus,
    Property,
)
from core.utils import chunked, utcnow
from services.geocoders import GeocodeOutcome, GeocoderChain, build_geocoder_chain
from services.task_dispatch import GEOCODE_BATCH, TaskDispatcher, get_dispatcher

LOGGER = get_logger(__name__)

SENTINEL_COORDINATE = 0.0
ABORTED_REASON = "not attempted: geocoder timeouts"


@dataclass
class GeocodeBatchResult:
    """What one batch did, plus the recounted pool size."""

    job_id: int
    remaining: int = 0
    processed: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    continued: bool = False

    def record(self, outcome: GeocodeOutcome) -> None:
        self.processed += 1
        if outcome.status == GeocodeStatus.GEOCODED.value:
            self.success += 1
        elif outcome.status == GeocodeStatus.SKIPPED.value:
            self.skipped += 1
        else:
            self.failed += 1

    def as_dict(self) -> Dict[str, int]:
        return {
            "remaining": self.remaining,
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def pending_clause():
    """Properties still needing coordinates."""
    return or_(Property.latitude.is_(None), Property.longitude.is_(None))


class GeocodingJobService:
    """
    Start geocoding jobs and run their batches.

    Args:
        session: Database session; all writes happen through it.
        dispatcher: Receives continuation tasks (defaults to get_dispatcher()).
        chain: Provider chain (defaults to one built from settings).
        settings: Batch sizes and thresholds.
    """

    def __init__(
        self,
        session: Session,
        dispatcher: Optional[TaskDispatcher] = None,
        chain: Optional[GeocoderChain] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self._chain = chain
        self._owns_chain = chain is None

    @property
    def chain(self) -> GeocoderChain:
        if self._chain is None:
            self._chain = build_geocoder_chain(self.settings)
        return self._chain

    def close(self) -> None:
        if self._owns_chain and self._chain is not None:
            self._chain.close()
            self._chain = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def count_remaining(self) -> int:
        """Recount the pool from the property table."""
        return self.session.scalar(
            select(func.count(Property.id)).where(pending_clause())
        ) or 0

    def get_job(self, job_id: int) -> GeocodingJob:
        job = self.session.get(GeocodingJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Geocoding job {job_id} not found")
        return job

    def active_job(self) -> Optional[GeocodingJob]:
        return self.session.scalars(
            select(GeocodingJob)
            .where(GeocodingJob.status.in_(GEOCODE_OPEN_STATUSES))
            .order_by(GeocodingJob.created_at.desc(), GeocodingJob.id.desc())
            .limit(1)
        ).first()

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    def start_job(self) -> GeocodingJob:
        """
        Create a job over the current pool and submit its first batch.

        An open job is reused instead of starting a second one. An empty pool
        yields a job that is already completed.
        """
        existing = self.active_job()
        if existing is not None:
            LOGGER.info(f"Geocoding job {existing.id} already {existing.status}; reusing it")
            return existing

        remaining = self.count_remaining()
        now = utcnow()
        job = GeocodingJob(
            status=GeocodingJobStatus.QUEUED.value,
            total_properties=remaining,
            created_at=now,
            updated_at=now,
        )
        if remaining == 0:
            job.status = GeocodingJobStatus.COMPLETED.value
            job.finished_at = now
        self.session.add(job)
        self.session.commit()

        if remaining == 0:
            LOGGER.info(f"Geocoding job {job.id}: nothing to geocode")
            return job

        LOGGER.info(f"Geocoding job {job.id} started for {remaining} properties")
        self._dispatcher().submit(GEOCODE_BATCH, {"jobId": job.id})
        return job

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def run_batch(self, job_id: int) -> GeocodeBatchResult:
        """
        Geocode one batch for ``job_id`` and decide whether to continue.

        Invoking a completed or failed job does nothing and reports the
        current pool size.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = self.get_job(job_id)
        result = GeocodeBatchResult(job_id=job_id)
        log = get_context_logger(__name__, geocoding_job_id=job_id)

        if job.status not in GEOCODE_OPEN_STATUSES:
            result.remaining = self.count_remaining()
            log.info(f"Geocoding job {job_id} is {job.status}; nothing to do")
            return result

        if job.status == GeocodingJobStatus.QUEUED.value:
            job.status = GeocodingJobStatus.RUNNING.value
            job.started_at = job.started_at or utcnow()
            job.updated_at = utcnow()
            self.session.commit()

        start = time.time()
        try:
            properties = self.session.scalars(
                select(Property)
                .where(pending_clause())
                .order_by(Property.id)
                .limit(self.settings.geocode_batch_size)
            ).all()

            outcomes = self._resolve(properties, result, log)
            self._write_outcomes(properties, outcomes)
            for outcome in outcomes:
                result.record(outcome)

            job = self.get_job(job_id)
            job.geocoded_count += result.success
            job.failed_count += result.failed
            job.skipped_count += result.skipped
            job.batches_run += 1
            job.updated_at = utcnow()
            self.session.commit()
        except Exception as e:
            log.exception(f"Geocoding batch for job {job_id} failed: {e}")
            self._mark_failed(job_id, str(e) or e.__class__.__name__)
            raise

        result.remaining = self.count_remaining()
        if result.remaining > self.settings.geocode_continuation_threshold:
            result.continued = True
            self._dispatcher().submit(GEOCODE_BATCH, {"jobId": job_id})
        else:
            job = self.get_job(job_id)
            now = utcnow()
            job.status = GeocodingJobStatus.COMPLETED.value
            job.finished_at = now
            job.updated_at = now
            self.session.commit()

        log.info(
            f"Geocoding batch for job {job_id}: {result.success} geocoded, "
            f"{result.failed} failed, {result.skipped} skipped, {result.remaining} remaining "
            f"({time.time() - start:.2f}s)"
        )
        return result

    def _resolve(
        self,
        properties: Sequence[Property],
        result: GeocodeBatchResult,
        log,
    ) -> List[GeocodeOutcome]:
        """
        Resolve properties chunk by chunk on a bounded thread pool.

        Stops after GEOCODE_MAX_CONSECUTIVE_TIMEOUTS consecutive timed-out
        failures; the rest of the batch is returned as failed.
        """
        # Workers only see plain values, never ORM objects
        inputs = [(p.id, p.address, p.city, p.state, p.zip) for p in properties]
        outcomes: List[GeocodeOutcome] = []
        consecutive_timeouts = 0
        limit = self.settings.geocode_max_consecutive_timeouts
        chain = self.chain

        with ThreadPoolExecutor(
            max_workers=self.settings.geocode_max_concurrency,
            thread_name_prefix="geocode",
        ) as executor:
            for chunk in chunked(inputs, self.settings.geocode_chunk_size):
                if consecutive_timeouts >= limit:
                    break
                chunk_outcomes = list(executor.map(lambda args: chain.resolve(*args), chunk))
                for outcome in chunk_outcomes:
                    if outcome.timed_out:
                        consecutive_timeouts += 1
                    else:
                        consecutive_timeouts = 0
                outcomes.extend(chunk_outcomes)

        if len(outcomes) < len(inputs):
            result.aborted = True
            log.warning(
                f"Aborting batch after {consecutive_timeouts} consecutive timeouts; "
                f"{len(inputs) - len(outcomes)} properties marked failed"
            )
            outcomes.extend(
                GeocodeOutcome(property_id, GeocodeStatus.FAILED.value, reason=ABORTED_REASON)
                for property_id, *_ in inputs[len(outcomes):]
            )
        return outcomes

    def _write_outcomes(
        self,
        properties: Sequence[Property],
        outcomes: Sequence[GeocodeOutcome],
    ) -> None:
        """Apply every outcome to its property in one commit."""
        by_id = {p.id: p for p in properties}
        now = utcnow()
        for outcome in outcomes:
            prop = by_id[outcome.property_id]
            if outcome.resolved:
                prop.latitude = outcome.latitude
                prop.longitude = outcome.longitude
                prop.geocode_provider = outcome.provider
            else:
                prop.latitude = SENTINEL_COORDINATE
                prop.longitude = SENTINEL_COORDINATE
                prop.geocode_provider = None
            prop.geocode_status = outcome.status
            prop.geocoded_at = now
        self.session.commit()

    def _mark_failed(self, job_id: int, message: str) -> None:
        self.session.rollback()
        job = self.get_job(job_id)
        now = utcnow()
        job.status = GeocodingJobStatus.FAILED.value
        job.error_message = message[:2000]
        job.finished_at = now
        job.updated_at = now
        self.session.commit()

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def reset_failed(self) -> int:
        """
        Clear the sentinel on properties whose geocoding failed.

        Skipped properties keep it; their input is not going to improve.

        Returns:
            Number of properties returned to the pool.
        """
        result = self.session.execute(
            update(Property)
            .where(Property.geocode_status == GeocodeStatus.FAILED.value)
            .values(
                latitude=None,
                longitude=None,
                geocode_status=GeocodeStatus.PENDING.value,
                geocoded_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        LOGGER.info(f"Reset {result.rowcount} failed geocodes")
        return result.rowcount

    def _dispatcher(self) -> TaskDispatcher:
        return self.dispatcher or get_dispatcher()


# =============================================================================
# Task handlers
# =============================================================================


def handle_geocode_batch(
    session: Session,
    payload: Dict[str, Any],
    dispatcher: TaskDispatcher,
) -> Dict[str, Any]:
    """Task handler for ``geocode_batch {jobId}``."""
    job_id = payload.get("jobId")
    if job_id is None:
        raise ValidationError("geocode_batch requires jobId")
    service = GeocodingJobService(session, dispatcher=dispatcher)
    try:
        return service.run_batch(int(job_id)).as_dict()
    finally:
        service.close()


def handle_start_geocoding(
    session: Session,
    payload: Dict[str, Any],
    dispatcher: TaskDispatcher,
) -> Dict[str, Any]:
    """Task handler for ``start_geocoding {}``."""
    job = GeocodingJobService(session, dispatcher=dispatcher).start_job()
    return job.to_dict()


__all__ = [
    "GeocodeBatchResult",
    "GeocodingJobService",
    "pending_clause",
    "handle_geocode_batch",
    "handle_start_geocoding",
]
