"""
Pytest configuration and fixtures for Lesson Intake Backend tests.
"""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import httpx
import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["JOB_STORE_URL"] = "http://jobstore.test"
os.environ["JOB_STORE_TOKEN"] = "service-token"
os.environ["S3_BUCKET_NAME"] = ""

from lesson_intake_backend import main  # noqa: E402
from lesson_intake_backend.errors import EngineInitFailure, RecognitionFailure  # noqa: E402
from lesson_intake_backend.extraction import ExtractionRunner  # noqa: E402
from lesson_intake_backend.intake import IngestionCoordinator  # noqa: E402
from lesson_intake_backend.job_manager import JobLifecycleManager  # noqa: E402
from lesson_intake_backend.job_store import HttpJobStore  # noqa: E402
from lesson_intake_backend.models import RecognitionResult  # noqa: E402
from lesson_intake_backend.storage import ObjectStorage  # noqa: E402
from lesson_intake_backend.upload_queue import UploadScheduler  # noqa: E402
from lesson_intake_backend.worker_pool import RecognitionWorkerPool  # noqa: E402

STORE_URL = "http://jobstore.test"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeJobStoreService:
    """In-memory stand-in for the remote job record service."""

    def __init__(self) -> None:
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.chunks: List[Dict[str, Any]] = []
        self.kv: Dict[str, Any] = {}
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[int] = None
        self.unreachable = False
        self._next_id = 0

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="store failure")

        method = request.method
        parts = [part for part in request.url.path.split("/") if part]

        if method == "POST" and parts == ["jobs"]:
            self._next_id += 1
            job_id = f"job-{self._next_id}"
            record = {**_json(request), "jobId": job_id, "status": "pending", "progress": 0.0}
            self.jobs[job_id] = record
            return httpx.Response(201, json=record)

        if method == "GET" and parts == ["jobs"]:
            if request.url.params.get("status") != "active":
                return httpx.Response(400, text="unsupported filter")
            active = [job for job in self.jobs.values() if job["status"] in ("pending", "processing")]
            return httpx.Response(200, json=active)

        if method == "GET" and len(parts) == 3 and parts[:2] == ["jobs", "lesson"]:
            return httpx.Response(200, json=[job for job in self.jobs.values() if job["lessonId"] == parts[2]])

        if len(parts) == 2 and parts[0] == "jobs":
            record = self.jobs.get(parts[1])
            if record is None:
                return httpx.Response(404, json={"error": "not found"})
            if method == "GET":
                return httpx.Response(200, json=record)
            if method == "PATCH":
                record.update(_json(request))
                return httpx.Response(200, json=record)

        if method == "POST" and parts == ["extraction", "chunk"]:
            self.chunks.append(_json(request))
            return httpx.Response(200, json={"ok": True})

        if method == "POST" and parts == ["kv", "set"]:
            body = _json(request)
            self.kv[body["key"]] = body["value"]
            return httpx.Response(200, json={"ok": True})

        return httpx.Response(405, text="unsupported route")


def _json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content or b"{}")


class FakeRecognitionBackend:
    """Recognition backend that counts lifecycle calls."""

    def __init__(self, create_delay: float = 0.0, text: str = "The cat sat.", confidence: float = 91.0) -> None:
        self.create_delay = create_delay
        self.text = text
        self.confidence = confidence
        self.create_calls = 0
        self.destroy_calls = 0
        self.recognize_calls = 0
        self.fail_creates = 0
        self.fail_on: set = set()
        self.confidence_by_image: Dict[bytes, float] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def create(self, language: str) -> Dict[str, Any]:
        self.create_calls += 1
        await asyncio.sleep(self.create_delay)
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise EngineInitFailure("engine failed to start")
        return {"engine": self.create_calls, "language": language}

    async def recognize(self, handle: Any, image: bytes) -> RecognitionResult:
        self.recognize_calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            if image in self.fail_on:
                raise RecognitionFailure(f"cannot read {image!r}")
            return RecognitionResult(text=self.text, confidence=self.confidence_by_image.get(image, self.confidence))
        finally:
            self.in_flight -= 1

    async def destroy(self, handle: Any) -> None:
        self.destroy_calls += 1


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.fail = False

    def put_object(self, **kwargs: Any) -> Dict[str, Any]:
        if self.fail:
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        self.objects[kwargs["Key"]] = kwargs
        return {"ETag": '"abc"'}

    def generate_presigned_url(self, operation: str, Params: Dict[str, str], ExpiresIn: int) -> str:
        return f"https://{Params['Bucket']}.s3.test/{Params['Key']}?expires={ExpiresIn}"


@pytest.fixture
def store_service():
    return FakeJobStoreService()


@pytest.fixture
async def job_store(store_service):
    client = httpx.AsyncClient(transport=httpx.MockTransport(store_service.handle), base_url=STORE_URL)
    store = HttpJobStore(client, token="test-token")
    yield store
    await store.aclose()


@pytest.fixture
def manager(job_store):
    return JobLifecycleManager(job_store)


@pytest.fixture
def backend():
    return FakeRecognitionBackend()


@pytest.fixture
async def pool(backend):
    pool = RecognitionWorkerPool(backend, idle_timeout=0.05)
    yield pool
    await pool.force_terminate()


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def object_storage(s3_client):
    return ObjectStorage("lesson-files", client=s3_client)


@pytest.fixture
async def scheduler():
    scheduler = UploadScheduler()
    yield scheduler
    scheduler.clear()
    await scheduler.join()


@pytest.fixture
def runner(manager, pool, job_store):
    return ExtractionRunner(manager, pool, job_store)


@pytest.fixture
def coordinator(manager, scheduler, object_storage, runner):
    return IngestionCoordinator(manager, scheduler, object_storage, runner)


@pytest.fixture
def client(monkeypatch, store_service, backend, s3_client):
    """Test client for the FastAPI app, wired to the in-memory fakes."""
    transport = httpx.MockTransport(store_service.handle)
    store = HttpJobStore(httpx.AsyncClient(transport=transport, base_url=STORE_URL), token="service-token")
    monkeypatch.setattr(main, "job_store", store)
    monkeypatch.setattr(main, "upload_scheduler", UploadScheduler())
    monkeypatch.setattr(main, "recognition_pool", RecognitionWorkerPool(backend, idle_timeout=0.05))
    monkeypatch.setattr(main, "object_storage", ObjectStorage("lesson-files", client=s3_client))

    with TestClient(main.app) as test_client:
        yield test_client


@pytest.fixture
def sample_png():
    """Minimal PNG signature followed by filler bytes."""
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
