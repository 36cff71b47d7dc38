"""
Job lifecycle management for lesson file extraction.

This module owns the state machine of extraction jobs:
- Job creation against the durable job store
- Status transitions with validation
- Progress and paging updates while a job is processing
- Completion and failure bookkeeping
- Retry by full reset of a failed job

The store itself is remote. JobLifecycleManager keeps no local copy of any
job; every operation reads or writes through the store, so jobs survive the
requesting client going away.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import ImmutableFieldError, InvalidTransition, JobNotFound
from .job_store import JobStore
from .models import Job, JobCreate, JobStatus, JobType, JobUpdate

logger = logging.getLogger(__name__)

# Fields fixed at creation, in both python and wire spelling.
IDENTITY_FIELDS = frozenset({"job_id", "jobId", "lesson_id", "lessonId", "file_id", "fileId", "type"})

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETE, JobStatus.ERROR}),
    JobStatus.COMPLETE: frozenset(),
    # error -> pending only as a full reset, see _apply_reset
    JobStatus.ERROR: frozenset({JobStatus.PENDING}),
}

DEFAULT_ERROR_MESSAGE = "Extraction failed"

# Fields every stored job must carry; an update may change but not clear them.
REQUIRED_FIELDS = ("status", "progress")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobLifecycleManager:
    """
    Central coordinator for extraction job state.

    Invalid transitions are rejected with ``InvalidTransition``; nothing is
    silently ignored. Updates are read-validate-write against the store with
    no compare-and-swap: one background task owns a job's progress at a time.

    Attributes:
        store: Client for the durable job store
    """

    def __init__(self, store: JobStore) -> None:
        self.store = store

    async def create_job(self, lesson_id: str, file_id: str, file_name: str, job_type: JobType) -> str:
        """
        Create a pending job for one uploaded file.

        Args:
            lesson_id: Lesson the file belongs to
            file_id: Identifier of the uploaded file
            file_name: Original file name, for display
            job_type: Extraction kind chosen by the classifier

        Returns:
            The id assigned by the store

        Raises:
            StoreUnavailable: If the job could not be persisted. No local
                record is kept, so the job must be treated as nonexistent.
        """
        payload = JobCreate(lesson_id=lesson_id, file_id=file_id, file_name=file_name, type=job_type)
        job = await self.store.create(payload)
        logger.info(f"Job {job.job_id} created: {job_type.value} for {file_name} (lesson {lesson_id})")
        return job.job_id

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Current record, or None when the id is unknown or deleted."""
        return await self.store.get(job_id)

    async def list_jobs_for_lesson(self, lesson_id: str) -> List[Job]:
        return await self.store.list_for_lesson(lesson_id)

    async def list_active_jobs(self) -> List[Job]:
        jobs = await self.store.list_active()
        # Guard against stores that interpret the filter loosely.
        return [job for job in jobs if job.is_active]

    async def update_job(self, job_id: str, changes: Union[JobUpdate, Mapping[str, Any]]) -> Job:
        """
        Merge a partial update into a job after validating it.

        Args:
            job_id: The job to update
            changes: ``JobUpdate`` or a mapping of its fields (python or wire
                names). Identity fields are refused.

        Returns:
            The updated job as stored

        Raises:
            ImmutableFieldError: If the update touches lessonId, fileId, type or jobId
            InvalidTransition: If the status change is not allowed, progress
                would go backwards, or completion lacks a resultRef
            JobNotFound: If the job does not exist
            StoreUnavailable: If the store could not be reached
            ValueError: If the mapping holds unknown fields or bad values, or
                clears status or progress
        """
        update = self._coerce_update(job_id, changes)
        current = await self.store.get(job_id)
        if current is None:
            raise JobNotFound(job_id)

        patch = self._validated_patch(current, update)
        job = await self.store.update(job_id, patch)
        if job.status is not current.status:
            logger.info(f"Job {job_id}: {current.status.value} -> {job.status.value}")
        return job

    async def retry_job(self, job_id: str) -> Job:
        """
        Reset a failed job to pending so it can run again.

        Only jobs in ``error`` can be retried; any other status raises
        ``InvalidTransition``.
        """
        current = await self.store.get(job_id)
        if current is None:
            raise JobNotFound(job_id)
        if current.status is not JobStatus.ERROR:
            raise InvalidTransition(job_id, current.status.value, "retry")

        logger.info(f"Retrying job {job_id} (last error: {current.error_message})")
        patch = self._validated_patch(current, JobUpdate(status=JobStatus.PENDING))
        return await self.store.update(job_id, patch)

    async def start_job(self, job_id: str, total_pages: Optional[int] = None) -> Job:
        update = JobUpdate(status=JobStatus.PROCESSING, progress=0.0)
        if total_pages is not None and total_pages > 1:
            update.total_pages = total_pages
        return await self.update_job(job_id, update)

    async def report_progress(self, job_id: str, progress: float, current_page: Optional[int] = None) -> Job:
        update = JobUpdate(status=JobStatus.PROCESSING, progress=progress)
        if current_page is not None:
            update.current_page = current_page
        return await self.update_job(job_id, update)

    async def complete_job(self, job_id: str, result_ref: str, current_page: Optional[int] = None) -> Job:
        update = JobUpdate(status=JobStatus.COMPLETE, result_ref=result_ref)
        if current_page is not None:
            update.current_page = current_page
        return await self.update_job(job_id, update)

    async def fail_job(self, job_id: str, error_message: str) -> Job:
        return await self.update_job(job_id, JobUpdate(status=JobStatus.ERROR, error_message=error_message or DEFAULT_ERROR_MESSAGE))

    @staticmethod
    def _coerce_update(job_id: str, changes: Union[JobUpdate, Mapping[str, Any]]) -> JobUpdate:
        if isinstance(changes, JobUpdate):
            return changes

        frozen = IDENTITY_FIELDS.intersection(changes)
        if frozen:
            raise ImmutableFieldError(job_id, frozen)
        try:
            return JobUpdate.model_validate(dict(changes))
        except ValidationError as exc:
            raise ValueError(f"Invalid update for job {job_id}: {exc}") from exc

    def _validated_patch(self, current: Job, update: JobUpdate) -> Dict[str, Any]:
        """
        Check an update against the state machine and fill in derived fields.

        Returns:
            The wire-format patch to send to the store

        Raises:
            ValueError: If status or progress is explicitly set to None
        """
        update = update.model_copy()
        explicit = update.model_fields_set
        for name in REQUIRED_FIELDS:
            if name in explicit and getattr(update, name) is None:
                raise ValueError(f"Invalid update for job {current.job_id}: {name} cannot be cleared")

        requested = update.status if "status" in explicit else current.status
        if requested not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransition(current.job_id, current.status.value, requested.value)

        if requested is JobStatus.PENDING:
            return self._apply_reset(update)

        if requested is JobStatus.PROCESSING:
            if current.status is JobStatus.PENDING:
                update.started_at = update.started_at or _utcnow()
                update.error_message = None
            elif update.progress is not None and update.progress < current.progress:
                raise InvalidTransition(current.job_id, f"progress {current.progress:g}", f"progress {update.progress:g}")

        elif requested is JobStatus.COMPLETE:
            if not self._resulting(current, update, "result_ref"):
                raise InvalidTransition(current.job_id, current.status.value, "complete without resultRef")
            update.progress = 1.0
            update.finished_at = update.finished_at or _utcnow()
            update.error_message = None

        elif requested is JobStatus.ERROR:
            if not self._resulting(current, update, "error_message"):
                update.error_message = DEFAULT_ERROR_MESSAGE
            update.finished_at = update.finished_at or _utcnow()

        return update.to_patch()

    @staticmethod
    def _resulting(current: Job, update: JobUpdate, name: str) -> Any:
        """Value a field will hold once the update is merged."""
        if name in update.model_fields_set:
            return getattr(update, name)
        return getattr(current, name)

    @staticmethod
    def _apply_reset(update: JobUpdate) -> Dict[str, Any]:
        update.status = JobStatus.PENDING
        update.progress = 0.0
        update.current_page = None
        update.started_at = None
        update.finished_at = None
        update.error_message = None
        update.result_ref = None
        return update.to_patch()
