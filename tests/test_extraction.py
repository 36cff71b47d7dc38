"""
Tests for OCR job execution.
"""

import pytest

from lesson_intake_backend.errors import EngineInitFailure, JobNotFound, RecognitionFailure
from lesson_intake_backend.extraction import chunk_id_for, chunk_ref_for, summary_key_for
from lesson_intake_backend.models import JobStatus, JobType

pytestmark = pytest.mark.anyio


class TestKeys:
    def test_key_formats(self):
        assert chunk_id_for("job-7", 2) == "chunk_job-7_2"
        assert chunk_ref_for("l1", "f1", "chunk_job-7_2") == "extraction_chunk:l1:f1:chunk_job-7_2"
        assert summary_key_for("f1") == "extraction:f1"


class TestRunOcr:
    """Recognition of pending OCR jobs."""

    async def test_single_image(self, manager, runner, store_service, backend):
        job_id = await manager.create_job("lesson-1", "file-1", "scan.png", JobType.OCR_IMAGE)

        job = await runner.run_ocr(job_id, [b"page-1"])

        assert job.status is JobStatus.COMPLETE
        assert job.progress == 1.0
        assert job.result_ref == f"extraction_chunk:lesson-1:file-1:chunk_{job_id}_1"
        assert job.total_pages is None
        assert job.current_page is None
        assert len(store_service.chunks) == 1
        assert store_service.chunks[0]["text"] == "The cat sat."
        assert store_service.chunks[0]["lowConfidence"] is False
        assert store_service.kv["extraction:file-1"]["chunkCount"] == 1
        assert backend.create_calls == 1

    async def test_multi_page_reports_progress(self, manager, runner, store_service):
        job_id = await manager.create_job("lesson-1", "file-1", "worksheet.pdf", JobType.OCR_PDF)

        job = await runner.run_ocr(job_id, [b"p1", b"p2", b"p3"])

        patches = [request for request in store_service.requests if request.method == "PATCH"]
        # start, two progress reports, complete
        assert len(patches) == 4
        assert job.status is JobStatus.COMPLETE
        assert job.total_pages == 3
        assert job.current_page == 3
        assert [chunk["pageOrSlide"] for chunk in store_service.chunks] == [1, 2, 3]
        assert job.result_ref.endswith(f"chunk_{job_id}_3")

    async def test_pages_share_one_engine(self, manager, runner, backend):
        job_id = await manager.create_job("lesson-1", "file-1", "worksheet.pdf", JobType.OCR_PDF)
        await runner.run_ocr(job_id, [b"p1", b"p2", b"p3"])
        assert backend.create_calls == 1
        assert backend.recognize_calls == 3

    async def test_low_confidence_is_flagged(self, manager, runner, store_service, backend):
        backend.confidence_by_image[b"blurry"] = 42.0
        job_id = await manager.create_job("lesson-1", "file-1", "worksheet.pdf", JobType.OCR_PDF)

        await runner.run_ocr(job_id, [b"sharp", b"blurry"])

        assert [chunk["lowConfidence"] for chunk in store_service.chunks] == [False, True]
        assert store_service.kv["extraction:file-1"]["avgConfidence"] == pytest.approx((91.0 + 42.0) / 2)


class TestRunOcrFailures:
    """Failures end the job in error."""

    async def test_recognition_failure_marks_job_error(self, manager, runner, backend):
        backend.fail_on.add(b"corrupt")
        job_id = await manager.create_job("lesson-1", "file-1", "worksheet.pdf", JobType.OCR_PDF)

        with pytest.raises(RecognitionFailure):
            await runner.run_ocr(job_id, [b"ok", b"corrupt"])

        job = await manager.get_job(job_id)
        assert job.status is JobStatus.ERROR
        assert "corrupt" in job.error_message
        assert job.finished_at is not None

    async def test_engine_failure_marks_job_error(self, manager, runner, backend):
        backend.fail_creates = 1
        job_id = await manager.create_job("lesson-1", "file-1", "scan.png", JobType.OCR_IMAGE)

        with pytest.raises(EngineInitFailure):
            await runner.run_ocr(job_id, [b"page"])

        job = await manager.get_job(job_id)
        assert job.status is JobStatus.ERROR
        assert job.error_message == "engine failed to start"

    async def test_failed_job_can_be_retried_and_rerun(self, manager, runner, backend):
        backend.fail_creates = 1
        job_id = await manager.create_job("lesson-1", "file-1", "scan.png", JobType.OCR_IMAGE)
        with pytest.raises(EngineInitFailure):
            await runner.run_ocr(job_id, [b"page"])

        await manager.retry_job(job_id)
        job = await runner.run_ocr(job_id, [b"page"])

        assert job.status is JobStatus.COMPLETE

    async def test_unknown_job(self, runner):
        with pytest.raises(JobNotFound):
            await runner.run_ocr("missing", [b"page"])

    async def test_non_ocr_job_is_rejected(self, manager, runner):
        job_id = await manager.create_job("lesson-1", "file-1", "deck.pptx", JobType.EXTRACT_PPTX)
        with pytest.raises(ValueError):
            await runner.run_ocr(job_id, [b"slide"])
        assert (await manager.get_job(job_id)).status is JobStatus.PENDING

    async def test_no_pages_is_rejected(self, manager, runner):
        job_id = await manager.create_job("lesson-1", "file-1", "worksheet.pdf", JobType.OCR_PDF)
        with pytest.raises(ValueError):
            await runner.run_ocr(job_id, [])
