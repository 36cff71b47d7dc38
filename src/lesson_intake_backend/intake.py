"""
Intake of uploaded lesson files.

Ties the pieces together for one uploaded file:

1. Preflight warnings and classification
2. A pending job when the file needs extraction
3. Transfer of the bytes through the sequential upload scheduler
4. OCR through the shared engine when page images are at hand

``extract_pptx`` and ``extract_pdf`` jobs, and ``ocr_pdf`` jobs submitted
without rasterized pages, stay pending for the external extraction worker.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from .classifier import classify, describe_job_type, preflight
from .errors import IntakeError, UploadFailed
from .extraction import ExtractionRunner
from .job_manager import JobLifecycleManager
from .models import IntakeResult, JobType
from .storage import ObjectStorage
from .upload_queue import UploadScheduler
from .utils import build_storage_key

logger = logging.getLogger(__name__)


class IngestionCoordinator:
    def __init__(
        self,
        manager: JobLifecycleManager,
        scheduler: UploadScheduler,
        storage: ObjectStorage,
        runner: ExtractionRunner,
        key_prefix: str = "lessons",
        large_file_mb: float = 20.0,
    ) -> None:
        self.manager = manager
        self.scheduler = scheduler
        self.storage = storage
        self.runner = runner
        self.key_prefix = key_prefix
        self.large_file_mb = large_file_mb

    async def ingest(
        self,
        lesson_id: str,
        file_id: str,
        file_name: str,
        content_type: str,
        data: bytes,
        pages: Optional[Sequence[bytes]] = None,
    ) -> IntakeResult:
        """
        Run one uploaded file through classification, upload and extraction.

        Args:
            lesson_id: Lesson receiving the file
            file_id: Identifier of the file record
            file_name: Original file name
            content_type: Declared MIME type
            data: File bytes
            pages: Rasterized page images for ``ocr_pdf`` sources. Images are
                recognized from ``data`` directly.

        Returns:
            IntakeResult describing the job (if any) and the stored object

        Raises:
            StoreUnavailable: If the job could not be created or updated
            UploadFailed: If the transfer failed; the job is marked error
            EngineInitFailure, RecognitionFailure: If OCR failed; the job is marked error
        """
        result = await self.register(lesson_id, file_id, file_name, content_type, len(data))
        return await self.process(lesson_id, result, content_type, data, pages)

    async def register(self, lesson_id: str, file_id: str, file_name: str, content_type: str, size_bytes: int) -> IntakeResult:
        """
        Classify a file and create its pending job, without transferring anything.

        Raises:
            StoreUnavailable: If the job could not be created
        """
        check = preflight(file_name, content_type, size_bytes, self.large_file_mb)
        for warning in check.warnings:
            logger.warning(f"{file_name}: {warning}")

        job_type = classify(file_name, content_type)
        result = IntakeResult(
            file_id=file_id,
            file_name=file_name,
            job_type=job_type,
            description=describe_job_type(job_type),
            warnings=check.warnings,
        )
        if job_type is None:
            logger.info(f"{file_name} needs no extraction")
            return result

        result.job_id = await self.manager.create_job(lesson_id, file_id, file_name, job_type)
        return result

    async def process(
        self,
        lesson_id: str,
        result: IntakeResult,
        content_type: str,
        data: bytes,
        pages: Optional[Sequence[bytes]] = None,
    ) -> IntakeResult:
        """Upload a registered file and run OCR when its job needs it."""
        try:
            result.storage_key = await self._upload(lesson_id, result.file_id, result.file_name, content_type, data)
        except UploadFailed as exc:
            if result.job_id is not None:
                await self._fail_pending(result.job_id, f"Upload failed: {exc}")
            raise

        if result.job_id is None or result.job_type is None:
            return result

        images = self._page_images(result.job_type, data, pages)
        if images:
            await self.runner.run_ocr(result.job_id, images)
        else:
            logger.info(f"Job {result.job_id} ({result.job_type.value}) left pending for the extraction worker")
        return result

    async def _upload(self, lesson_id: str, file_id: str, file_name: str, content_type: str, data: bytes) -> Optional[str]:
        key = build_storage_key(self.key_prefix, lesson_id, file_id, file_name)

        async def transfer() -> Optional[str]:
            return await self.storage.upload_bytes(data, key, content_type)

        upload = self.scheduler.submit(transfer, label=file_name)
        await asyncio.wait({upload})
        if upload.cancelled():
            raise UploadFailed(f"Upload of {file_name} was removed from the queue")
        error = upload.exception()
        if error is not None:
            if isinstance(error, UploadFailed):
                raise error
            raise UploadFailed(str(error)) from error
        return upload.result()

    async def _fail_pending(self, job_id: str, message: str) -> None:
        # error is only reachable from processing
        try:
            await self.manager.start_job(job_id)
            await self.manager.fail_job(job_id, message)
        except IntakeError:
            logger.exception(f"Could not mark job {job_id} as failed")

    @staticmethod
    def _page_images(job_type: JobType, data: bytes, pages: Optional[Sequence[bytes]]) -> Sequence[bytes]:
        if job_type is JobType.OCR_IMAGE:
            return [data]
        if job_type is JobType.OCR_PDF and pages:
            return pages
        return []
