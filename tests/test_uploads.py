"""Tests for upload acceptance, splitting and reprocessing."""
from __future__ import annotations

import pytest
from sqlalchemy import func, select

from conftest import CHICAGO_DALLAS_CSV, SINGLE_CITY_CSV, FakeChain, add_upload_job
from core.exceptions import JobNotFoundError, JobStateError, StorageError, ValidationError
from core.models import Property, StagingRow, UploadJob, UploadJobStatus, Violation
from domain.uploads import UploadService
from ingestion.storage import sanitize_filename
from services.task_dispatch import PROCESS_UPLOAD


def children_of(session, parent_id):
    return session.scalars(
        select(UploadJob).where(UploadJob.parent_job_id == parent_id).order_by(UploadJob.id)
    ).all()


class TestSanitizeFilename:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ('St. Louis (north) "2024".csv', "St_Louis_north_2024.csv"),
            ("my   file.csv", "my_file.csv"),
            ("a/b\\c:d.csv", "a-b-c-d.csv"),
            ("[draft] violations.CSV", "draft_violations.CSV"),
            ("no_extension", "no_extension"),
            ("__leading.csv", "leading.csv"),
        ],
    )
    def test_sanitize(self, raw, expected):
        assert sanitize_filename(raw) == expected


class TestDetect:

    def test_preview_stores_nothing(self, db_session, storage, recorder):
        service = UploadService(db_session, storage=storage, dispatcher=recorder)

        result = service.detect(CHICAGO_DALLAS_CSV)

        assert result["is_multi_location"] is True
        assert result["total_rows"] == 6
        assert result["missing_location_rows"] == 1
        assert db_session.scalar(select(func.count(UploadJob.id))) == 0


class TestCreateUpload:

    def test_single_location_is_queued_and_submitted(self, db_session, storage, recorder):
        service = UploadService(db_session, storage=storage, dispatcher=recorder)

        result = service.create_upload("Austin Violations.csv", SINGLE_CITY_CSV)

        job = db_session.get(UploadJob, result["jobId"])
        assert result["split"] is None
        assert result["status"] == UploadJobStatus.QUEUED.value
        assert job.city == "Austin"
        assert job.state == "TX"
        assert job.filename == "Austin Violations.csv"
        assert job.storage_path.endswith("_Austin_Violations.csv")
        assert storage.read(job.storage_path) == SINGLE_CITY_CSV
        assert recorder.submitted == [(PROCESS_UPLOAD, {"jobId": job.id})]

    def test_multi_location_is_split(self, db_session, storage, recorder):
        service = UploadService(db_session, storage=storage, dispatcher=recorder)

        result = service.create_upload("mixed.csv", CHICAGO_DALLAS_CSV)

        assert result["status"] == UploadJobStatus.COMPLETE.value
        split = result["split"]
        assert split["citiesDetected"] == 2
        assert split["jobsCreated"] == 2
        assert split["missingLocationRows"] == 1
        assert {(j["city"], j["state"], j["rows"]) for j in split["jobs"]} == {
            ("Chicago", "IL", 3),
            ("Dallas", "TX", 2),
        }
        child_ids = [j["jobId"] for j in split["jobs"]]
        assert recorder.submitted == [(PROCESS_UPLOAD, {"jobId": i}) for i in child_ids]

    @pytest.mark.parametrize(
        "filename,text",
        [
            ("a.csv", ""),
            ("a.csv", "   \n"),
            ("a.csv", "Address,City,State,Violation\n"),
            ("", SINGLE_CITY_CSV),
        ],
    )
    def test_rejects_unusable_uploads(self, db_session, storage, recorder, filename, text):
        service = UploadService(db_session, storage=storage, dispatcher=recorder)
        with pytest.raises(ValidationError):
            service.create_upload(filename, text)
        assert recorder.submitted == []

    def test_rejects_unknown_state(self, db_session, storage, recorder):
        service = UploadService(db_session, storage=storage, dispatcher=recorder)
        with pytest.raises(ValidationError, match="state"):
            service.create_upload("a.csv", SINGLE_CITY_CSV, city="Austin", state="ZZ")

    def test_end_to_end_with_inline_dispatch(self, db_session, storage, inline_dispatcher, monkeypatch):
        monkeypatch.setattr("ingestion.pipeline.get_upload_storage", lambda: storage)
        monkeypatch.setattr("services.geocoding_job.build_geocoder_chain", lambda settings: FakeChain())
        service = UploadService(db_session, storage=storage, dispatcher=inline_dispatcher)

        result = service.create_upload("mixed.csv", CHICAGO_DALLAS_CSV)

        assert inline_dispatcher.failures == []
        children = children_of(db_session, result["jobId"])
        assert [c.status for c in children] == [UploadJobStatus.COMPLETE.value] * 2
        assert sum(c.violations_created for c in children) == 5
        assert db_session.scalar(select(func.count(Violation.id))) == 5
        assert db_session.scalar(
            select(func.count(Property.id)).where(Property.geocode_status == "pending")
        ) == 0


class TestSplitJob:

    def test_children_hold_verbatim_rows(self, db_session, storage, recorder):
        path = storage.save("uploads/mixed.csv", CHICAGO_DALLAS_CSV)
        parent = add_upload_job(db_session, storage_path=path)
        service = UploadService(db_session, storage=storage, dispatcher=recorder)

        result = service.split_job(parent.id)

        assert result.parent_job_id == parent.id
        children = children_of(db_session, parent.id)
        chicago = next(c for c in children if c.city == "Chicago")
        lines = storage.read(chicago.storage_path).split("\n")
        assert lines[0] == CHICAGO_DALLAS_CSV.split("\n")[0]
        assert lines[1:] == [
            "C-1,100 Main St,Chicago,IL,60601,Weeds and grass,Open,2024-01-05",
            "C-2,200 Oak Ave,Chicago,IL,60602,Roof leak,Open,2024-02-10",
            "C-4,500 Lake Dr,chicago,IL,60604,Vacant and boarded,Open,2024-04-01",
        ]
        assert chicago.storage_path.startswith("splits/Chicago_IL_split_")
        assert all(c.status == UploadJobStatus.QUEUED.value for c in children)

    def test_parent_is_closed_with_zero_counts(self, db_session, storage, recorder):
        path = storage.save("uploads/mixed.csv", CHICAGO_DALLAS_CSV)
        parent = add_upload_job(db_session, storage_path=path, total_rows=6)

        UploadService(db_session, storage=storage, dispatcher=recorder).split_job(parent.id)

        db_session.refresh(parent)
        assert parent.status == UploadJobStatus.COMPLETE.value
        assert parent.total_rows == 0
        assert parent.violations_created == 0
        assert "Split into 2 jobs by location" in parent.warnings
        assert "1 rows had no usable location" in parent.warnings

    def test_single_location_cannot_be_split(self, db_session, storage, recorder):
        path = storage.save("uploads/austin.csv", SINGLE_CITY_CSV)
        job = add_upload_job(db_session, storage_path=path)

        with pytest.raises(ValidationError):
            UploadService(db_session, storage=storage, dispatcher=recorder).split_job(job.id)
        assert children_of(db_session, job.id) == []

    def test_running_job_cannot_be_split(self, db_session, storage, recorder):
        path = storage.save("uploads/mixed.csv", CHICAGO_DALLAS_CSV)
        job = add_upload_job(db_session, status=UploadJobStatus.PROCESSING.value, storage_path=path)

        with pytest.raises(JobStateError):
            UploadService(db_session, storage=storage, dispatcher=recorder).split_job(job.id)

    def test_unknown_job(self, db_session, storage, recorder):
        with pytest.raises(JobNotFoundError):
            UploadService(db_session, storage=storage, dispatcher=recorder).split_job(31337)


class TestReprocess:

    def test_failed_job_is_reset_and_resubmitted(self, db_session, storage, recorder):
        path = storage.save("uploads/austin.csv", SINGLE_CITY_CSV)
        job = add_upload_job(
            db_session,
            status=UploadJobStatus.FAILED.value,
            storage_path=path,
            error_message="boom",
            total_rows=3,
            processed_rows=2,
        )
        db_session.add(StagingRow(job_id=job.id, row_num=1, address="10 First St"))
        db_session.commit()

        result = UploadService(db_session, storage=storage, dispatcher=recorder).reprocess_job(job.id)

        assert result["status"] == UploadJobStatus.QUEUED.value
        assert result["error_message"] is None
        assert result["processed_rows"] == 0
        assert db_session.scalar(select(func.count(StagingRow.id))) == 0
        assert recorder.submitted == [(PROCESS_UPLOAD, {"jobId": job.id})]

    def test_active_job_is_refused(self, db_session, storage, recorder):
        path = storage.save("uploads/austin.csv", SINGLE_CITY_CSV)
        job = add_upload_job(db_session, status=UploadJobStatus.DEDUPING.value, storage_path=path)

        with pytest.raises(JobStateError):
            UploadService(db_session, storage=storage, dispatcher=recorder).reprocess_job(job.id)
        assert recorder.submitted == []

    def test_missing_file_is_refused(self, db_session, storage, recorder):
        job = add_upload_job(
            db_session, status=UploadJobStatus.FAILED.value, storage_path="uploads/gone.csv"
        )

        with pytest.raises(StorageError, match="upload it again"):
            UploadService(db_session, storage=storage, dispatcher=recorder).reprocess_job(job.id)


class TestProgress:

    def test_includes_children(self, db_session, storage, recorder):
        path = storage.save("uploads/mixed.csv", CHICAGO_DALLAS_CSV)
        parent = add_upload_job(db_session, storage_path=path)
        service = UploadService(db_session, storage=storage, dispatcher=recorder)
        service.split_job(parent.id)

        progress = service.get_progress(parent.id)

        assert progress["id"] == parent.id
        assert len(progress["children"]) == 2
        assert all(child["parent_job_id"] == parent.id for child in progress["children"])
