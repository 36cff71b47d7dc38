from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobType(str, Enum):
    EXTRACT_PPTX = "extract_pptx"
    EXTRACT_PDF = "extract_pdf"
    OCR_IMAGE = "ocr_image"
    OCR_PDF = "ocr_pdf"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


OCR_JOB_TYPES = frozenset({JobType.OCR_IMAGE, JobType.OCR_PDF})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class _CamelModel(BaseModel):
    # The job store speaks camelCase on the wire.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs: Any) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, **kwargs)


class JobCreate(_CamelModel):
    lesson_id: str
    file_id: str
    file_name: str
    type: JobType


class Job(JobCreate):
    job_id: str
    status: JobStatus = JobStatus.PENDING
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result_ref: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class JobUpdate(_CamelModel):
    """
    Partial update for a job record.

    Only fields explicitly set by the caller are sent to the store, so a
    field set to None is cleared while an omitted field is left untouched.
    """

    model_config = ConfigDict(extra="forbid")

    status: Optional[JobStatus] = None
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    current_page: Optional[int] = None
    total_pages: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result_ref: Optional[str] = None

    def to_patch(self) -> Dict[str, Any]:
        return self.to_wire(exclude_unset=True)


class UploadQueueStatus(BaseModel):
    active: int
    queued: int
    max_concurrent: int


class RecognitionResult(BaseModel):
    text: str
    confidence: float


class ExtractionChunk(_CamelModel):
    chunk_id: str
    lesson_id: str
    file_id: str
    page_or_slide: int
    source: str = "ocr"
    text: str
    confidence: float
    low_confidence: bool = False


class ExtractionSummary(_CamelModel):
    file_id: str
    lesson_id: str
    file_name: str
    ocr_status: str = "complete"
    chunk_count: int
    avg_confidence: float
    extracted_at: datetime


class UploadPreflight(BaseModel):
    kind: str
    size_mb: float
    warnings: List[str] = Field(default_factory=list)


class IntakeResult(BaseModel):
    file_id: str
    file_name: str
    job_id: Optional[str] = None
    job_type: Optional[JobType] = None
    description: str
    storage_key: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class ConfigMetadata(BaseModel):
    defaults: Dict[str, Any]
    max_concurrent_uploads: int
    engine_idle_timeout: float
    supported_job_types: List[JobType]
