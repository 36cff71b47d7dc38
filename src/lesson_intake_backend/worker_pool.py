"""
Shared recognition engine with lazy creation and idle reclamation.

Creating a recognition engine takes seconds and holds a lot of memory, so a
single instance is shared by every recognition call in the process:

- The first ``acquire()`` creates the engine; callers arriving while it is
  being created wait on the same creation instead of starting another.
- Each ``acquire()`` holds a reference until the matching ``release()``.
- When the last reference is released an idle timer starts. If nobody
  acquires the engine before it fires, the engine is destroyed. A new
  ``acquire()`` during the window cancels the timer and reuses the handle.

Recognition calls against the handle are serialized by the pool; backends
are not assumed to be safe for concurrent calls.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Optional

from .engine import RecognitionBackend
from .errors import EngineInitFailure, RecognitionFailure
from .models import RecognitionResult

logger = logging.getLogger(__name__)

ENGINE_IDLE_TIMEOUT = 30.0


class PoolState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"


class RecognitionWorkerPool:
    """
    Owner of the process-wide recognition engine.

    Construct one per process (or one per test). All state is only touched
    from the event loop, so no thread locks are needed.

    Attributes:
        language: Language hint passed to the backend when creating the engine
        idle_timeout: Seconds the engine may sit unused before it is destroyed
    """

    def __init__(
        self,
        backend: RecognitionBackend,
        language: str = "eng",
        idle_timeout: float = ENGINE_IDLE_TIMEOUT,
    ) -> None:
        self.language = language
        self.idle_timeout = idle_timeout
        self._backend = backend
        self._state = PoolState.UNINITIALIZED
        self._handle: Any = None
        self._ref_count = 0
        self._creations = 0
        self._init_task: Optional[asyncio.Future] = None
        self._shutdown_task: Optional[asyncio.Future] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._call_lock = asyncio.Lock()

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def creation_count(self) -> int:
        """Number of engines created over the pool's lifetime."""
        return self._creations

    def active_count(self) -> int:
        return self._ref_count

    async def acquire(self) -> Any:
        """
        Take a reference to the shared engine, creating it if needed.

        Returns:
            The engine handle to pass to ``recognize``

        Raises:
            EngineInitFailure: If the engine could not be created. The pool
                stays uninitialized and the next acquire retries from scratch.
        """
        self._ref_count += 1
        self._cancel_idle_timer()
        try:
            return await self._ensure_engine()
        except BaseException:
            self._ref_count -= 1
            raise

    def release(self) -> None:
        """
        Drop one reference. The last release arms the idle timer.
        """
        if self._ref_count <= 0:
            # Expected after force_terminate() reset the count under active users.
            logger.warning("release() called on recognition pool with no active references")
            return

        self._ref_count -= 1
        if self._ref_count == 0:
            self._start_idle_timer()

    async def force_terminate(self) -> None:
        """
        Destroy the engine regardless of active references, for process shutdown.
        """
        self._cancel_idle_timer()
        if self._init_task is not None:
            await asyncio.wait({self._init_task})
        if self._shutdown_task is not None:
            await asyncio.wait({self._shutdown_task})

        self._ref_count = 0
        if self._state is PoolState.READY:
            logger.info("Force terminating recognition engine")
            await self._begin_shutdown()

    async def recognize(self, handle: Any, image: bytes) -> RecognitionResult:
        """
        Run one recognition call against an acquired handle.

        Raises:
            RecognitionFailure: If the backend failed on this image. The
                engine itself is left alive for other callers.
        """
        async with self._call_lock:
            try:
                return await self._backend.recognize(handle, image)
            except RecognitionFailure:
                raise
            except Exception as exc:
                raise RecognitionFailure(str(exc)) from exc

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Any]:
        """Acquire the engine for the duration of a ``async with`` block."""
        handle = await self.acquire()
        try:
            yield handle
        finally:
            self.release()

    async def _ensure_engine(self) -> Any:
        while True:
            if self._state is PoolState.READY:
                return self._handle
            if self._shutdown_task is not None:
                # Let the teardown finish, then build a fresh engine.
                await asyncio.wait({self._shutdown_task})
                continue
            if self._init_task is None:
                self._init_task = asyncio.ensure_future(self._create())
            return await asyncio.shield(self._init_task)

    async def _create(self) -> Any:
        logger.info(f"Creating recognition engine (language={self.language})")
        try:
            handle = await self._backend.create(self.language)
        except EngineInitFailure:
            logger.error("Recognition engine creation failed", exc_info=True)
            raise
        except Exception as exc:
            logger.error("Recognition engine creation failed", exc_info=True)
            raise EngineInitFailure(str(exc)) from exc
        finally:
            self._init_task = None

        self._handle = handle
        self._state = PoolState.READY
        self._creations += 1
        logger.info("Recognition engine ready")
        return handle

    def _start_idle_timer(self) -> None:
        self._cancel_idle_timer()
        self._idle_task = asyncio.get_running_loop().create_task(self._reclaim_when_idle())

    def _cancel_idle_timer(self) -> None:
        if self._idle_task is not None:
            self._idle_task.cancel()
            self._idle_task = None

    async def _reclaim_when_idle(self) -> None:
        await asyncio.sleep(self.idle_timeout)
        # Past this point an acquire() must not cancel the teardown midway.
        self._idle_task = None
        if self._ref_count != 0 or self._state is not PoolState.READY:
            return

        logger.info(f"Recognition engine idle for {self.idle_timeout:g}s, reclaiming")
        try:
            await self._begin_shutdown()
        except Exception:
            logger.exception("Recognition engine teardown failed")

    def _begin_shutdown(self) -> asyncio.Future:
        handle = self._handle
        self._handle = None
        self._state = PoolState.SHUTTING_DOWN
        self._shutdown_task = asyncio.ensure_future(self._destroy(handle))
        return self._shutdown_task

    async def _destroy(self, handle: Any) -> None:
        try:
            await self._backend.destroy(handle)
            logger.info("Recognition engine destroyed")
        finally:
            self._state = PoolState.UNINITIALIZED
            self._shutdown_task = None
