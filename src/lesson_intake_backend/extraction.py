"""
Execution of OCR extraction jobs.

Runs each page image of a job through the shared recognition engine,
stores one text chunk per page and drives the job from pending to complete
(or error). Progress is reported after every page of a multi-page source.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Sequence

from .errors import IntakeError, JobNotFound
from .job_manager import JobLifecycleManager
from .job_store import JobStore
from .models import OCR_JOB_TYPES, ExtractionChunk, ExtractionSummary, Job
from .worker_pool import RecognitionWorkerPool

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 70.0


def chunk_id_for(job_id: str, page_number: int) -> str:
    return f"chunk_{job_id}_{page_number}"


def chunk_ref_for(lesson_id: str, file_id: str, chunk_id: str) -> str:
    return f"extraction_chunk:{lesson_id}:{file_id}:{chunk_id}"


def summary_key_for(file_id: str) -> str:
    return f"extraction:{file_id}"


class ExtractionRunner:
    """
    Runs OCR jobs against the shared recognition pool.

    Attributes:
        manager: Lifecycle manager used for every status change
        pool: Shared recognition engine
        store: Destination for extracted chunks and the per-file summary
        low_confidence_threshold: Pages below this confidence are flagged
    """

    def __init__(
        self,
        manager: JobLifecycleManager,
        pool: RecognitionWorkerPool,
        store: JobStore,
        low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
    ) -> None:
        self.manager = manager
        self.pool = pool
        self.store = store
        self.low_confidence_threshold = low_confidence_threshold

    async def run_ocr(self, job_id: str, pages: Sequence[bytes]) -> Job:
        """
        Recognize every page of a pending OCR job and complete it.

        Args:
            job_id: A pending ``ocr_image`` or ``ocr_pdf`` job
            pages: Encoded page images in page order

        Returns:
            The completed job

        Raises:
            JobNotFound: If the job does not exist
            ValueError: If the job is not an OCR job or no pages were given
            EngineInitFailure, RecognitionFailure: After the job was marked error
        """
        job = await self.manager.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.type not in OCR_JOB_TYPES:
            raise ValueError(f"Job {job_id} is {job.type.value}, not an OCR job")
        if not pages:
            raise ValueError(f"Job {job_id} has no pages to recognize")

        total = len(pages)
        await self.manager.start_job(job_id, total_pages=total)
        try:
            return await self._recognize_pages(job, pages)
        except Exception as exc:
            await self._record_failure(job_id, exc)
            raise

    async def _recognize_pages(self, job: Job, pages: Sequence[bytes]) -> Job:
        total = len(pages)
        confidences: List[float] = []
        result_ref = ""

        for page_number, image in enumerate(pages, start=1):
            async with self.pool.session() as handle:
                result = await self.pool.recognize(handle, image)

            chunk = ExtractionChunk(
                chunk_id=chunk_id_for(job.job_id, page_number),
                lesson_id=job.lesson_id,
                file_id=job.file_id,
                page_or_slide=page_number,
                text=result.text,
                confidence=result.confidence,
                low_confidence=result.confidence < self.low_confidence_threshold,
            )
            if chunk.low_confidence:
                logger.warning(f"Job {job.job_id} page {page_number}/{total}: low confidence {result.confidence:.1f}")
            await self.store.save_chunk(chunk)

            confidences.append(result.confidence)
            result_ref = chunk_ref_for(job.lesson_id, job.file_id, chunk.chunk_id)
            logger.info(f"Job {job.job_id} page {page_number}/{total}: {len(result.text)} chars, confidence {result.confidence:.1f}")

            if page_number < total:
                await self.manager.report_progress(job.job_id, page_number / total, current_page=page_number)

        summary = ExtractionSummary(
            file_id=job.file_id,
            lesson_id=job.lesson_id,
            file_name=job.file_name,
            chunk_count=total,
            avg_confidence=sum(confidences) / total,
            extracted_at=datetime.now(timezone.utc),
        )
        await self.store.put_value(summary_key_for(job.file_id), summary.to_wire())

        # single-page jobs carry neither totalPages nor currentPage
        completed = await self.manager.complete_job(job.job_id, result_ref, current_page=total if total > 1 else None)
        logger.info(f"Job {job.job_id} complete ({total} page(s))")
        return completed

    async def _record_failure(self, job_id: str, exc: Exception) -> None:
        try:
            await self.manager.fail_job(job_id, str(exc) or exc.__class__.__name__)
        except IntakeError:
            # The original failure is re-raised by the caller.
            logger.exception(f"Could not mark job {job_id} as failed")
