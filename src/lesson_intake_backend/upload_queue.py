"""
Sequential upload scheduler.

Uploads running in parallel split the available bandwidth and all finish
later than if they had run one after another, so exactly one upload is in
flight at a time, process-wide, in submission order.

``submit()`` never blocks the caller. It returns a future that settles with
the upload's result or its exception, so callers that care about the outcome
can await it while everyone else can ignore it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from .models import UploadQueueStatus

logger = logging.getLogger(__name__)

MAX_CONCURRENT_UPLOADS = 1

UploadTask = Callable[[], Awaitable[Any]]


@dataclass
class _QueuedUpload:
    task: UploadTask
    future: asyncio.Future
    label: str


class UploadScheduler:
    """
    FIFO runner with a single active slot.

    A failing upload does not stop the queue: its exception is delivered to
    the upload's own future and the next queued upload starts.
    """

    def __init__(self) -> None:
        self._queue: Deque[_QueuedUpload] = deque()
        self._active = 0
        self._current: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    def submit(self, task: UploadTask, label: Optional[str] = None) -> asyncio.Future:
        """
        Queue an upload and return immediately.

        Args:
            task: No-argument coroutine function performing the transfer
            label: Name used in log lines (defaults to the callable's name)

        Returns:
            Future resolved with the task's return value, or failed with its
            exception. Cancelling the future before the upload starts skips it.
        """
        future = asyncio.get_running_loop().create_future()
        # Nobody is required to await the future; keep asyncio from warning.
        future.add_done_callback(_consume_exception)
        item = _QueuedUpload(task=task, future=future, label=label or getattr(task, "__name__", "upload"))
        self._queue.append(item)
        self._idle.clear()
        logger.debug(f"Upload queued: {item.label} ({len(self._queue)} waiting)")
        self._pump()
        return future

    def status(self) -> UploadQueueStatus:
        return UploadQueueStatus(active=self._active, queued=len(self._queue), max_concurrent=MAX_CONCURRENT_UPLOADS)

    def clear(self) -> int:
        """
        Drop every upload that has not started yet.

        The upload currently running is left alone. Futures of dropped
        uploads are cancelled.

        Returns:
            Number of uploads dropped
        """
        dropped = 0
        while self._queue:
            item = self._queue.popleft()
            item.future.cancel()
            dropped += 1
        if dropped:
            logger.info(f"Cleared {dropped} queued upload(s)")
        self._mark_idle_if_drained()
        return dropped

    async def join(self) -> None:
        """Wait until the queue is empty and nothing is running."""
        await self._idle.wait()

    def _pump(self) -> None:
        if self._active >= MAX_CONCURRENT_UPLOADS:
            return

        while self._queue:
            item = self._queue.popleft()
            if item.future.cancelled():
                continue
            self._active += 1
            self._current = asyncio.get_running_loop().create_task(self._run(item))
            return

        self._mark_idle_if_drained()

    async def _run(self, item: _QueuedUpload) -> None:
        logger.info(f"Upload started: {item.label}")
        try:
            result = await item.task()
        except asyncio.CancelledError:
            item.future.cancel()
            raise
        except Exception as exc:
            logger.exception(f"Upload failed: {item.label}")
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            logger.info(f"Upload finished: {item.label}")
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
            self._current = None
            self._pump()

    def _mark_idle_if_drained(self) -> None:
        if self._active == 0 and not self._queue:
            self._idle.set()


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()
