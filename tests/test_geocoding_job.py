"""Tests for batch geocoding jobs."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from conftest import FakeChain, add_property
from core.exceptions import JobNotFoundError, ValidationError
from core.models import GeocodingJob, GeocodingJobStatus, Property
from services.geocoders import Geocoder, GeocoderChain
from services.geocoding_job import (
    ABORTED_REASON,
    GeocodingJobService,
    handle_geocode_batch,
    handle_start_geocoding,
)
from services.task_dispatch import GEOCODE_BATCH


@pytest.fixture
def small_batches(make_settings):
    return make_settings(
        geocode_batch_size=2,
        geocode_chunk_size=2,
        geocode_max_concurrency=2,
        geocode_max_consecutive_timeouts=2,
    )


def new_job(session, status=GeocodingJobStatus.QUEUED.value):
    job = GeocodingJob(status=status)
    session.add(job)
    session.commit()
    return job


class TestStartJob:

    def test_empty_pool_completes_immediately(self, db_session, recorder):
        add_property(db_session, latitude=41.0, longitude=-87.0, geocode_status="geocoded")
        db_session.commit()

        job = GeocodingJobService(db_session, dispatcher=recorder, chain=FakeChain()).start_job()

        assert job.status == GeocodingJobStatus.COMPLETED.value
        assert job.total_properties == 0
        assert recorder.submitted == []

    def test_pending_pool_queues_first_batch(self, db_session, recorder):
        add_property(db_session)
        add_property(db_session, address="200 Oak Ave")
        db_session.commit()

        job = GeocodingJobService(db_session, dispatcher=recorder, chain=FakeChain()).start_job()

        assert job.status == GeocodingJobStatus.QUEUED.value
        assert job.total_properties == 2
        assert recorder.submitted == [(GEOCODE_BATCH, {"jobId": job.id})]

    def test_open_job_is_reused(self, db_session, recorder):
        add_property(db_session)
        db_session.commit()
        service = GeocodingJobService(db_session, dispatcher=recorder, chain=FakeChain())

        first = service.start_job()
        second = service.start_job()

        assert second.id == first.id
        assert len(recorder.submitted) == 1

    def test_start_handler(self, db_session, recorder, monkeypatch):
        monkeypatch.setattr("services.geocoding_job.build_geocoder_chain", lambda settings: FakeChain())
        add_property(db_session)
        db_session.commit()

        result = handle_start_geocoding(db_session, {}, recorder)

        assert result["status"] == GeocodingJobStatus.QUEUED.value
        assert recorder.names() == [GEOCODE_BATCH]


class TestRunBatch:

    def test_writes_coordinates_and_sentinel(self, db_session, recorder, small_batches):
        good = add_property(db_session, address="1 Good St")
        bad = add_property(db_session, address="2 Bad St")
        db_session.commit()
        job = new_job(db_session)
        chain = FakeChain({"2 Bad St": "failed"})

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=chain, settings=small_batches
        ).run_batch(job.id)

        assert result.as_dict() == {"remaining": 0, "processed": 2, "success": 1, "failed": 1, "skipped": 0}
        db_session.refresh(good)
        db_session.refresh(bad)
        assert (good.latitude, good.longitude, good.geocode_provider) == (41.88, -87.63, "fake")
        assert good.geocode_status == "geocoded"
        assert (bad.latitude, bad.longitude) == (0.0, 0.0)
        assert bad.geocode_status == "failed"
        assert bad.geocoded_at is not None

    def test_skipped_rows_get_sentinel(self, db_session, recorder, small_batches):
        prop = add_property(db_session, address="Debris pile")
        db_session.commit()
        job = new_job(db_session)

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=FakeChain({"Debris pile": "skipped"}),
            settings=small_batches,
        ).run_batch(job.id)

        assert result.skipped == 1
        db_session.refresh(prop)
        assert (prop.latitude, prop.longitude, prop.geocode_status) == (0.0, 0.0, "skipped")

    def test_unknown_city_ends_at_sentinel_and_leaves_the_pool(self, db_session, recorder, small_batches):
        provider = MagicMock(spec=Geocoder)
        provider.name = "stub"
        chain = GeocoderChain([provider])
        prop = add_property(db_session, address="5 Elm St", city="unknown")
        db_session.commit()
        job = new_job(db_session)
        service = GeocodingJobService(
            db_session, dispatcher=recorder, chain=chain, settings=small_batches
        )

        result = service.run_batch(job.id)

        assert result.as_dict() == {"remaining": 0, "processed": 1, "success": 0, "failed": 0, "skipped": 1}
        provider.geocode.assert_not_called()
        db_session.refresh(prop)
        assert (prop.latitude, prop.longitude, prop.geocode_status) == (0.0, 0.0, "skipped")

        rerun = service.start_job()

        assert rerun.status == GeocodingJobStatus.COMPLETED.value
        assert rerun.total_properties == 0
        assert recorder.submitted == []
        provider.geocode.assert_not_called()

    def test_continues_while_pool_remains(self, db_session, recorder, small_batches):
        for i in range(5):
            add_property(db_session, address=f"{i} Loop St")
        db_session.commit()
        job = new_job(db_session)

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=FakeChain(), settings=small_batches
        ).run_batch(job.id)

        assert result.processed == 2
        assert result.remaining == 3
        assert result.continued
        assert recorder.submitted == [(GEOCODE_BATCH, {"jobId": job.id})]
        db_session.refresh(job)
        assert job.status == GeocodingJobStatus.RUNNING.value
        assert job.started_at is not None

    def test_last_batch_completes_job(self, db_session, recorder, small_batches):
        add_property(db_session)
        db_session.commit()
        job = new_job(db_session)

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=FakeChain(), settings=small_batches
        ).run_batch(job.id)

        assert result.remaining == 0
        assert recorder.submitted == []
        db_session.refresh(job)
        assert job.status == GeocodingJobStatus.COMPLETED.value
        assert job.finished_at is not None
        assert job.geocoded_count == 1
        assert job.batches_run == 1

    def test_already_geocoded_properties_are_untouched(self, db_session, recorder, small_batches):
        done = add_property(db_session, latitude=10.0, longitude=20.0, geocode_status="geocoded")
        db_session.commit()
        job = new_job(db_session)
        chain = FakeChain()

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=chain, settings=small_batches
        ).run_batch(job.id)

        assert result.processed == 0
        assert chain.calls == []
        db_session.refresh(done)
        assert (done.latitude, done.longitude) == (10.0, 20.0)

    def test_consecutive_timeouts_abort_the_batch(self, db_session, recorder, make_settings):
        settings = make_settings(
            geocode_batch_size=6,
            geocode_chunk_size=2,
            geocode_max_concurrency=2,
            geocode_max_consecutive_timeouts=2,
        )
        addresses = [f"{i} Slow St" for i in range(6)]
        for address in addresses:
            add_property(db_session, address=address)
        db_session.commit()
        job = new_job(db_session)
        chain = FakeChain({address: "timeout" for address in addresses})

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=chain, settings=settings
        ).run_batch(job.id)

        assert result.aborted
        assert len(chain.calls) == 2
        assert result.processed == 6
        assert result.failed == 6
        assert result.remaining == 0
        aborted = db_session.scalars(
            select(Property).where(Property.address.in_(addresses[2:]))
        ).all()
        assert all((p.latitude, p.longitude) == (0.0, 0.0) for p in aborted)

    def test_success_resets_timeout_streak(self, db_session, recorder, make_settings):
        settings = make_settings(
            geocode_batch_size=6,
            geocode_chunk_size=2,
            geocode_max_concurrency=1,
            geocode_max_consecutive_timeouts=2,
        )
        results = {"0 S": "timeout", "1 S": "geocoded", "2 S": "timeout", "3 S": "geocoded"}
        for address in results:
            add_property(db_session, address=address)
        db_session.commit()
        job = new_job(db_session)
        chain = FakeChain(results)

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=chain, settings=settings
        ).run_batch(job.id)

        assert not result.aborted
        assert len(chain.calls) == 4
        assert result.success == 2

    @pytest.mark.parametrize("status", [GeocodingJobStatus.COMPLETED.value, GeocodingJobStatus.FAILED.value])
    def test_terminal_job_does_nothing(self, db_session, recorder, small_batches, status):
        prop = add_property(db_session)
        db_session.commit()
        job = new_job(db_session, status=status)
        chain = FakeChain()

        result = GeocodingJobService(
            db_session, dispatcher=recorder, chain=chain, settings=small_batches
        ).run_batch(job.id)

        assert result.as_dict() == {"remaining": 1, "processed": 0, "success": 0, "failed": 0, "skipped": 0}
        assert chain.calls == []
        assert recorder.submitted == []
        db_session.refresh(prop)
        assert prop.latitude is None

    def test_unexpected_error_fails_job(self, db_session, recorder, small_batches):
        add_property(db_session)
        db_session.commit()
        job = new_job(db_session)
        chain = FakeChain()

        def explode(*args):
            raise RuntimeError("provider exploded")

        chain.resolve = explode

        with pytest.raises(RuntimeError):
            GeocodingJobService(
                db_session, dispatcher=recorder, chain=chain, settings=small_batches
            ).run_batch(job.id)

        db_session.refresh(job)
        assert job.status == GeocodingJobStatus.FAILED.value
        assert "provider exploded" in job.error_message

    def test_unknown_job(self, db_session, recorder):
        with pytest.raises(JobNotFoundError):
            GeocodingJobService(db_session, dispatcher=recorder, chain=FakeChain()).run_batch(999)


class TestConvergence:

    @pytest.mark.parametrize("kind", ["geocoded", "failed", "skipped"])
    def test_self_continuation_drains_the_pool(self, db_session, inline_dispatcher,
                                               small_batches, monkeypatch, kind):
        chain = FakeChain()
        chain.results = {f"{i} Drain St": kind for i in range(5)}
        monkeypatch.setattr("services.geocoding_job.build_geocoder_chain", lambda settings: chain)
        monkeypatch.setattr("services.geocoding_job.get_settings", lambda: small_batches)
        for i in range(5):
            add_property(db_session, address=f"{i} Drain St")
        db_session.commit()

        job = GeocodingJobService(db_session, dispatcher=inline_dispatcher).start_job()

        batches = [r for name, r in inline_dispatcher.results if name == GEOCODE_BATCH]
        assert [b["remaining"] for b in batches] == [3, 1, 0]
        assert inline_dispatcher.failures == []
        db_session.refresh(job)
        assert job.status == GeocodingJobStatus.COMPLETED.value
        assert job.batches_run == 3
        assert sorted(chain.calls) == sorted(set(chain.calls))
        assert chain.closed


class TestResetFailed:

    def test_only_failed_return_to_pool(self, db_session, recorder):
        failed = add_property(db_session, address="1 F St", latitude=0.0, longitude=0.0,
                              geocode_status="failed")
        skipped = add_property(db_session, address="2 S St", latitude=0.0, longitude=0.0,
                               geocode_status="skipped")
        db_session.commit()
        service = GeocodingJobService(db_session, dispatcher=recorder, chain=FakeChain())

        assert service.reset_failed() == 1

        db_session.refresh(failed)
        db_session.refresh(skipped)
        assert (failed.latitude, failed.longitude, failed.geocode_status) == (None, None, "pending")
        assert skipped.latitude == 0.0
        assert service.count_remaining() == 1


class TestBatchHandler:

    def test_requires_job_id(self, db_session, recorder):
        with pytest.raises(ValidationError):
            handle_geocode_batch(db_session, {}, recorder)
