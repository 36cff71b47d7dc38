"""
Client for the remote job record service.

The durable store is an HTTP service owned elsewhere; this module only
speaks its contract:

- ``POST /jobs`` create (body without id/status), returns the full job
- ``GET /jobs/{id}`` fetch, 404 when unknown
- ``PATCH /jobs/{id}`` partial update, returns the updated job
- ``GET /jobs/lesson/{lessonId}`` jobs of one lesson
- ``GET /jobs?status=active`` pending and processing jobs
- ``POST /extraction/chunk`` and ``POST /kv/set`` for extraction output

Every request carries the caller's bearer credential. Nothing is cached or
replayed locally: a request that fails surfaces as ``StoreUnavailable``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from .errors import JobNotFound, StoreUnavailable
from .models import ExtractionChunk, Job, JobCreate

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


class JobStore(Protocol):
    async def create(self, job: JobCreate) -> Job:
        """Persist a new job and return it with its assigned id."""

    async def get(self, job_id: str) -> Optional[Job]:
        """Return the job, or None when it does not exist."""

    async def update(self, job_id: str, patch: Dict[str, Any]) -> Job:
        """Merge wire-format fields into the job and return the result."""

    async def list_for_lesson(self, lesson_id: str) -> List[Job]:
        """Jobs belonging to one lesson."""

    async def list_active(self) -> List[Job]:
        """Jobs whose status is pending or processing."""

    async def save_chunk(self, chunk: ExtractionChunk) -> None:
        """Store one extracted text chunk."""

    async def put_value(self, key: str, value: Dict[str, Any]) -> None:
        """Store an arbitrary JSON value under a key."""


class HttpJobStore:
    """
    ``JobStore`` implementation over httpx.

    Args:
        client: AsyncClient whose ``base_url`` points at the record service
        token: Bearer credential, or a callable returning one per request
    """

    def __init__(self, client: httpx.AsyncClient, token: str | TokenProvider | None = None) -> None:
        self._client = client
        self._token = token

    @classmethod
    def from_url(cls, base_url: str, token: str | TokenProvider | None = None, timeout: float = 15.0) -> "HttpJobStore":
        client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
        return cls(client, token)

    def with_token(self, token: str | TokenProvider | None) -> "HttpJobStore":
        """Same connection pool, different credential."""
        return HttpJobStore(self._client, token)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        token = self._token() if callable(self._token) else self._token
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(self, method: str, path: str, *, allow_not_found: bool = False, **kwargs: Any) -> Optional[httpx.Response]:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.RequestError as exc:
            logger.error(f"Job store unreachable on {method} {path}: {exc}")
            raise StoreUnavailable(f"Job store unreachable: {exc}") from exc

        if response.status_code == 404 and allow_not_found:
            return None
        if response.is_error:
            logger.error(f"Job store returned {response.status_code} on {method} {path}: {response.text}")
            raise StoreUnavailable(
                f"Job store returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _parse_job(response: httpx.Response) -> Job:
        try:
            return Job.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise StoreUnavailable(f"Job store sent a malformed job record: {exc}") from exc

    @staticmethod
    def _parse_jobs(response: httpx.Response) -> List[Job]:
        try:
            return [Job.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, ValidationError) as exc:
            raise StoreUnavailable(f"Job store sent a malformed job list: {exc}") from exc

    async def create(self, job: JobCreate) -> Job:
        response = await self._request("POST", "/jobs", json=job.to_wire())
        return self._parse_job(response)

    async def get(self, job_id: str) -> Optional[Job]:
        response = await self._request("GET", f"/jobs/{job_id}", allow_not_found=True)
        if response is None:
            return None
        return self._parse_job(response)

    async def update(self, job_id: str, patch: Dict[str, Any]) -> Job:
        response = await self._request("PATCH", f"/jobs/{job_id}", json=patch, allow_not_found=True)
        if response is None:
            raise JobNotFound(job_id)
        return self._parse_job(response)

    async def list_for_lesson(self, lesson_id: str) -> List[Job]:
        response = await self._request("GET", f"/jobs/lesson/{lesson_id}")
        return self._parse_jobs(response)

    async def list_active(self) -> List[Job]:
        response = await self._request("GET", "/jobs", params={"status": "active"})
        return self._parse_jobs(response)

    async def save_chunk(self, chunk: ExtractionChunk) -> None:
        await self._request("POST", "/extraction/chunk", json=chunk.to_wire())

    async def put_value(self, key: str, value: Dict[str, Any]) -> None:
        await self._request("POST", "/kv/set", json={"key": key, "value": value})
