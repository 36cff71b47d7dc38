"""
Exception taxonomy for the ingestion core.

Every failure is reported to the immediate caller. The classifier has no
error path at all: it always resolves to a job type or None.
"""

from __future__ import annotations

from typing import Iterable, Optional


class IntakeError(Exception):
    """Base class for ingestion pipeline failures."""


class EngineInitFailure(IntakeError):
    """The recognition engine could not be created."""


class RecognitionFailure(IntakeError):
    """A single recognition call failed; the shared engine stays alive."""


class StoreUnavailable(IntakeError):
    """The durable job store was unreachable or answered with a failure."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class JobNotFound(IntakeError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(IntakeError):
    """A status change that the job state machine does not allow."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class ImmutableFieldError(IntakeError):
    def __init__(self, job_id: str, fields: Iterable[str]) -> None:
        self.fields = sorted(fields)
        super().__init__(f"Job {job_id}: fields {', '.join(self.fields)} are immutable after creation")
        self.job_id = job_id


class UploadFailed(IntakeError):
    """Transfer of file bytes to object storage failed."""
