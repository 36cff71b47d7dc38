from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .configuration import build_config_metadata, make_runtime_config
from .engine import TesseractBackend
from .errors import ImmutableFieldError, IntakeError, InvalidTransition, JobNotFound, StoreUnavailable
from .extraction import ExtractionRunner
from .intake import IngestionCoordinator
from .job_manager import JobLifecycleManager
from .job_store import HttpJobStore, JobStore
from .models import ConfigMetadata, IntakeResult, Job, UploadQueueStatus
from .storage import ObjectStorage
from .upload_queue import UploadScheduler
from .worker_pool import RecognitionWorkerPool

logger = logging.getLogger(__name__)

config = make_runtime_config()

job_store = HttpJobStore.from_url(
    config.job_store.base_url,
    token=config.job_store.token,
    timeout=float(config.job_store.timeout_seconds),
)
upload_scheduler = UploadScheduler()
recognition_pool = RecognitionWorkerPool(TesseractBackend(), language=config.recognition.language)
object_storage = ObjectStorage(config.storage.bucket, presign_expiration=int(config.storage.presign_expiration_seconds))


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    dropped = upload_scheduler.clear()
    if dropped:
        logger.warning(f"Shutdown dropped {dropped} queued upload(s)")
    await recognition_pool.force_terminate()
    await job_store.aclose()


app = FastAPI(title="Lesson Intake API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(_: Request, exc: StoreUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(JobNotFound)
async def job_not_found_handler(_: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(_: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ImmutableFieldError)
async def immutable_field_handler(_: Request, exc: ImmutableFieldError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def get_job_store(authorization: Optional[str] = Header(None)) -> JobStore:
    # Credentials belong to the caller; they are forwarded, never checked here.
    if authorization and authorization.lower().startswith("bearer "):
        return job_store.with_token(authorization[7:].strip())
    return job_store


def get_job_manager(store: JobStore = Depends(get_job_store)) -> JobLifecycleManager:
    return JobLifecycleManager(store)


def get_upload_scheduler() -> UploadScheduler:
    return upload_scheduler


def get_coordinator(
    store: JobStore = Depends(get_job_store),
    manager: JobLifecycleManager = Depends(get_job_manager),
    scheduler: UploadScheduler = Depends(get_upload_scheduler),
) -> IngestionCoordinator:
    runner = ExtractionRunner(
        manager,
        recognition_pool,
        store,
        low_confidence_threshold=float(config.recognition.low_confidence_threshold),
    )
    return IngestionCoordinator(
        manager,
        scheduler,
        object_storage,
        runner,
        key_prefix=config.storage.key_prefix,
        large_file_mb=float(config.intake.large_file_mb),
    )


@app.get("/healthz")
def healthcheck() -> Dict[str, Any]:
    return {"status": "ok", "recognition_engine": recognition_pool.state.value, "engine_users": recognition_pool.active_count()}


@app.get("/config/defaults", response_model=ConfigMetadata)
def get_config_defaults() -> ConfigMetadata:
    return build_config_metadata()


async def _process_upload(coordinator: IngestionCoordinator, lesson_id: str, result: IntakeResult, content_type: str, data: bytes) -> None:
    try:
        await coordinator.process(lesson_id, result, content_type, data)
    except IntakeError:
        # Already recorded on the job; the client polls the job for it.
        logger.exception(f"Background processing failed for {result.file_name} (job {result.job_id})")


@app.post("/lessons/{lesson_id}/files", response_model=IntakeResult, status_code=202)
async def upload_lesson_file(
    lesson_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    file_id: str = Form(""),
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> IntakeResult:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file must have a filename")

    data = await file.read()
    await file.close()
    content_type = file.content_type or ""

    result = await coordinator.register(lesson_id, file_id or uuid4().hex, file.filename, content_type, len(data))
    background_tasks.add_task(_process_upload, coordinator, lesson_id, result, content_type, data)
    return result


@app.get("/jobs", response_model=List[Job])
async def list_jobs(status: Optional[str] = Query(None), manager: JobLifecycleManager = Depends(get_job_manager)) -> List[Job]:
    if status != "active":
        raise HTTPException(status_code=400, detail="Only status=active listing is supported")
    return await manager.list_active_jobs()


@app.get("/jobs/lesson/{lesson_id}", response_model=List[Job])
async def list_lesson_jobs(lesson_id: str, manager: JobLifecycleManager = Depends(get_job_manager)) -> List[Job]:
    return await manager.list_jobs_for_lesson(lesson_id)


@app.get("/jobs/{job_id}", response_model=Job)
async def get_job(job_id: str, manager: JobLifecycleManager = Depends(get_job_manager)) -> Job:
    job = await manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@app.post("/jobs/{job_id}/retry", response_model=Job)
async def retry_job(job_id: str, manager: JobLifecycleManager = Depends(get_job_manager)) -> Job:
    return await manager.retry_job(job_id)


@app.get("/uploads/status", response_model=UploadQueueStatus)
def upload_status(scheduler: UploadScheduler = Depends(get_upload_scheduler)) -> UploadQueueStatus:
    return scheduler.status()


@app.delete("/uploads/queue")
def clear_upload_queue(scheduler: UploadScheduler = Depends(get_upload_scheduler)) -> Dict[str, int]:
    return {"cleared": scheduler.clear()}
