"""
Tests for job lifecycle management, persistence and uploads.
"""

import time

import pytest

from book_press_backend import s3_service
from book_press_backend.errors import DispatchError, InputValidationError
from book_press_backend.job_manager import JobManager, JobRecord
from book_press_backend.models import ConversionRequest, JobKind, JobStatus, TemplateSelection


def convert_request(content, **selection):
    selection.setdefault("layout", "Garamond-a5")
    selection.setdefault("metadata", {"titre": "Le Voyage"})
    return ConversionRequest(content=content, template=TemplateSelection(**selection))


def wait_for_status(manager, job_id, statuses, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = manager.get_job(job_id)
        if job and job.status in statuses:
            return job
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not reach {statuses}")


class TestRunJob:
    """Tests for synchronous jobs and their recorded results."""

    def test_completed_job_records_result_and_events(self, manager, manuscript):
        response = manager.run_job(JobKind.CONVERT, convert_request(manuscript))

        [summary] = manager.list_jobs()
        job = manager.get_job(summary.id)

        assert job.status == JobStatus.COMPLETED
        assert job.build_state == "published"
        assert job.document_id == response.document_id
        assert job.pdf_url == response.pdf_url
        assert job.label.startswith("le-voyage-")
        assert job.result["pdf_url"] == response.pdf_url
        assert "totalPages" not in job.result
        assert job.request["template"]["layout"] == "Garamond-a5"

        messages = [event.message for event in job.events]
        assert messages[0] == "Job registered and awaiting execution."
        assert f"Build {response.document_id}: templates_staged" in messages
        assert messages[-1] == f"Published {response.document_id}.pdf."

    def test_failed_job_keeps_error_and_work_dir(self, manager, toolchain, manuscript):
        toolchain.failures["xelatex"] = 2

        with pytest.raises(DispatchError):
            manager.run_job(JobKind.CONVERT, convert_request(manuscript))

        [summary] = manager.list_jobs()
        job = manager.get_job(summary.id)
        assert job.status == JobStatus.FAILED
        assert job.build_state == "failed"
        assert job.error["code"] == "dispatch_error"
        assert job.work_dir.endswith(job.document_id)
        assert job.pdf_url is None

    def test_validation_failure_is_recorded(self, manager):
        with pytest.raises(InputValidationError):
            manager.run_job(JobKind.CONVERT, convert_request(""))

        [summary] = manager.list_jobs()
        job = manager.get_job(summary.id)
        assert job.status == JobStatus.FAILED
        assert job.error["code"] == "validation_error"
        assert job.document_id is None

    def test_impose_job_reports_pagination(self, manager, manuscript):
        response = manager.run_job(JobKind.IMPOSE, convert_request(manuscript, impose="A5-4spread"))

        assert (response.total_pages, response.target_pages, response.pages_per_unit) == (10, 12, 4)
        job = manager.get_job(manager.list_jobs()[0].id)
        assert job.result["totalPages"] == 10
        assert job.result["paperThickness"] == pytest.approx(0.1)

    def test_cover_job_from_conversion_request(self, manager):
        response = manager.run_job(JobKind.COVER, convert_request("", cover="Garamond-a5", layout=""))
        assert response.pdf_url.endswith("-cover")


class TestBackgroundJobs:
    """Tests for jobs run on the worker pool."""

    def test_submit_returns_immediately_and_completes(self, manager, manuscript):
        summary = manager.submit_job(JobKind.CONVERT, convert_request(manuscript))

        assert summary.status == JobStatus.PENDING
        job = wait_for_status(manager, summary.id, {JobStatus.COMPLETED, JobStatus.FAILED})
        assert job.status == JobStatus.COMPLETED
        assert job.pdf_url

    def test_summary_is_taken_before_the_worker_starts(self, manager, manuscript, monkeypatch):
        def run_immediately(fn, *args):
            fn(*args)

        monkeypatch.setattr(manager._executor, "submit", run_immediately)

        summary = manager.submit_job(JobKind.CONVERT, convert_request(manuscript))

        assert summary.status == JobStatus.PENDING
        assert summary.build_state == "created"
        assert manager.get_job(summary.id).status == JobStatus.COMPLETED

    def test_background_failure_is_recorded(self, manager, toolchain, manuscript):
        toolchain.failures["pandoc"] = 1

        summary = manager.submit_job(JobKind.CONVERT, convert_request(manuscript))

        job = wait_for_status(manager, summary.id, {JobStatus.COMPLETED, JobStatus.FAILED})
        assert job.status == JobStatus.FAILED
        assert job.error["message"].startswith("Markdown conversion failed")

    def test_cancel_unknown_job(self, manager):
        assert manager.cancel_job("missing") is False


class TestPersistence:
    """Tests for job history kept in the database."""

    def test_jobs_survive_a_restart(self, manager, press_config, toolchain, manuscript):
        response = manager.run_job(JobKind.CONVERT, convert_request(manuscript))
        job_id = manager.list_jobs()[0].id

        restarted = JobManager(press_config, queue=toolchain)
        try:
            job = restarted.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert job.result["document_id"] == response.document_id
            assert [event.message for event in job.events] == [
                event.message for event in manager.get_job(job_id).events
            ]
        finally:
            restarted.shutdown()

    def test_running_jobs_are_marked_interrupted(self, manager, press_config, toolchain):
        record = manager._create_record(JobKind.CONVERT, convert_request("# Texte"))
        manager._update_job(record.id, status=JobStatus.RUNNING)

        restarted = JobManager(press_config, queue=toolchain)
        try:
            job = restarted.get_job(record.id)
            assert job.status == JobStatus.FAILED
            assert job.error["code"] == "interrupted"
            assert job.events[-1].message == "Job interrupted by a server restart."
        finally:
            restarted.shutdown()

    def test_record_row_round_trip(self, manager):
        record = manager._create_record(JobKind.IMPOSE, convert_request("# Texte"))
        restored = JobRecord.from_row(manager.database.get_job(record.id))
        assert restored.to_detail() == record.to_detail()


class TestS3Export:
    """Tests for copying published PDFs to S3."""

    def test_published_pdf_is_exported(self, manager, manuscript, monkeypatch):
        uploaded = []
        monkeypatch.setattr(s3_service, "is_s3_configured", lambda: True)
        monkeypatch.setattr(s3_service, "upload_pdf", lambda path, key: uploaded.append((path.name, key)) or True)
        monkeypatch.setattr(s3_service, "generate_presigned_url", lambda key: f"https://s3.test/{key}")

        response = manager.run_job(JobKind.CONVERT, convert_request(manuscript))

        key = f"documents/{response.document_id}.pdf"
        assert uploaded == [(f"{response.document_id}.pdf", key)]
        job = manager.get_job(manager.list_jobs()[0].id)
        assert job.download_url == f"https://s3.test/{key}"
        assert job.status == JobStatus.COMPLETED

    def test_failed_export_keeps_local_pdf(self, manager, manuscript, monkeypatch):
        monkeypatch.setattr(s3_service, "is_s3_configured", lambda: True)
        monkeypatch.setattr(s3_service, "upload_pdf", lambda path, key: False)

        manager.run_job(JobKind.CONVERT, convert_request(manuscript))

        job = manager.get_job(manager.list_jobs()[0].id)
        assert job.status == JobStatus.COMPLETED
        assert job.download_url is None
        assert "S3 export failed; the PDF is only available locally." in [event.message for event in job.events]


class TestUploadsAndLookups:
    """Tests for image uploads and published PDF lookups."""

    def test_store_upload_records_session(self, manager, press_config):
        response = manager.store_upload("session-1", "C:\\images\\carte.png", "image/png", b"png")

        assert response.filename == "carte.png"
        assert response.session_id == "session-1"
        assert (press_config.uploads_root / response.stored_name).read_bytes() == b"png"
        assert manager.sessions.get("session-1").uploaded_files == {"carte.png": response.stored_name}

    def test_store_upload_creates_session(self, manager):
        response = manager.store_upload(None, "carte.png", "image/png", b"png")
        assert response.session_id
        assert manager.sessions.get(response.session_id) is not None

    @pytest.mark.parametrize(
        "filename, content_type, size",
        [("", "image/png", 3), ("notes.txt", "text/plain", 3), ("big.png", "image/png", 5 * 1024 * 1024 + 1)],
    )
    def test_store_upload_rejects(self, manager, filename, content_type, size):
        with pytest.raises(InputValidationError):
            manager.store_upload("s", filename, content_type, b"x" * size)

    def test_session_uploads_reach_the_build(self, manager, press_config):
        stored = manager.store_upload("session-1", "carte.png", "image/png", b"session png")
        (press_config.uploads_root / "carte.png").write_bytes(b"global png")

        response = manager.run_job(JobKind.CONVERT, convert_request("![[carte.png]]\n"), "session-1")

        work_dir = press_config.workspace_root / response.document_id
        assert (work_dir / "images" / "carte.png").read_bytes() == b"session png"
        assert stored.stored_name != "carte.png"

    def test_published_pdf_lookup(self, manager, manuscript):
        response = manager.run_job(JobKind.CONVERT, convert_request(manuscript))

        assert manager.published_pdf(response.document_id).is_file()
        assert manager.published_pdf("doc_missing") is None
        with pytest.raises(InputValidationError):
            manager.published_pdf("../etc/passwd")

    def test_list_templates_rejects_unsafe_user(self, manager):
        with pytest.raises(InputValidationError):
            manager.list_templates("../other")
