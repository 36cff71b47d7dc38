"""
End-to-end tests for uploaded file intake.
"""

import pytest

from lesson_intake_backend.errors import RecognitionFailure, UploadFailed
from lesson_intake_backend.intake import IngestionCoordinator
from lesson_intake_backend.models import JobStatus, JobType
from lesson_intake_backend.storage import ObjectStorage

pytestmark = pytest.mark.anyio


class TestIngest:
    """Classification, upload and extraction for one file."""

    async def test_image_is_recognized_end_to_end(self, coordinator, manager, s3_client, sample_png):
        result = await coordinator.ingest("lesson-1", "file-1", "Worksheet.PNG", "image/png", sample_png)

        assert result.job_type is JobType.OCR_IMAGE
        assert result.description == "Extracting text from image"
        assert result.storage_key == "lessons/lesson-1/file-1/worksheet.png"
        assert s3_client.objects[result.storage_key]["Body"] == sample_png
        assert s3_client.objects[result.storage_key]["ContentType"] == "image/png"

        job = await manager.get_job(result.job_id)
        assert job.status is JobStatus.COMPLETE
        assert job.result_ref.startswith("extraction_chunk:lesson-1:file-1:")
        assert await manager.list_active_jobs() == []

    async def test_document_needs_no_job(self, coordinator, store_service, s3_client):
        result = await coordinator.ingest("lesson-1", "file-2", "notes.docx", "", b"PK\x03\x04")

        assert result.job_id is None
        assert result.job_type is None
        assert result.description == "Processing file"
        assert store_service.jobs == {}
        assert result.storage_key in s3_client.objects

    async def test_pptx_is_left_pending(self, coordinator, manager, backend):
        result = await coordinator.ingest("lesson-1", "file-3", "deck.pptx", "", b"PK\x03\x04")

        job = await manager.get_job(result.job_id)
        assert job.type is JobType.EXTRACT_PPTX
        assert job.status is JobStatus.PENDING
        assert backend.create_calls == 0
        assert [active.job_id for active in await manager.list_active_jobs()] == [result.job_id]

    async def test_pdf_without_pages_is_left_pending(self, coordinator, manager):
        result = await coordinator.ingest("lesson-1", "file-4", "worksheet.pdf", "application/pdf", b"%PDF-1.7")

        job = await manager.get_job(result.job_id)
        assert job.status is JobStatus.PENDING

    async def test_pdf_with_pages_is_recognized(self, coordinator, manager, store_service):
        result = await coordinator.ingest(
            "lesson-1", "file-4", "worksheet.pdf", "application/pdf", b"%PDF-1.7", pages=[b"p1", b"p2"]
        )

        job = await manager.get_job(result.job_id)
        assert job.status is JobStatus.COMPLETE
        assert job.total_pages == 2
        assert len(store_service.chunks) == 2

    async def test_large_file_warnings_are_returned(self, coordinator):
        result = await coordinator.ingest("lesson-1", "file-5", "deck.pptx", "", b"\x00" * (26 * 1024 * 1024))
        assert len(result.warnings) == 2


class TestIngestFailures:
    """Failures surface on the job and to the caller."""

    async def test_upload_failure_marks_job_error(self, coordinator, manager, s3_client, backend, sample_png):
        s3_client.fail = True

        with pytest.raises(UploadFailed):
            await coordinator.ingest("lesson-1", "file-1", "scan.png", "image/png", sample_png)

        jobs = await manager.list_jobs_for_lesson("lesson-1")
        assert len(jobs) == 1
        assert jobs[0].status is JobStatus.ERROR
        assert jobs[0].error_message.startswith("Upload failed:")
        assert backend.create_calls == 0

    async def test_upload_failure_does_not_block_next_file(self, coordinator, manager, s3_client, sample_png):
        s3_client.fail = True
        with pytest.raises(UploadFailed):
            await coordinator.ingest("lesson-1", "file-1", "scan.png", "image/png", sample_png)

        s3_client.fail = False
        result = await coordinator.ingest("lesson-1", "file-2", "photo.jpg", "image/jpeg", sample_png)

        assert (await manager.get_job(result.job_id)).status is JobStatus.COMPLETE

    async def test_recognition_failure_marks_job_error(self, coordinator, manager, backend, sample_png):
        backend.fail_on.add(sample_png)

        with pytest.raises(RecognitionFailure):
            await coordinator.ingest("lesson-1", "file-1", "scan.png", "image/png", sample_png)

        jobs = await manager.list_jobs_for_lesson("lesson-1")
        assert jobs[0].status is JobStatus.ERROR

    async def test_without_bucket_upload_is_skipped(self, manager, scheduler, runner, sample_png):
        coordinator = IngestionCoordinator(manager, scheduler, ObjectStorage(""), runner)

        result = await coordinator.ingest("lesson-1", "file-1", "scan.png", "image/png", sample_png)

        assert result.storage_key is None
        assert (await manager.get_job(result.job_id)).status is JobStatus.COMPLETE
