"""Fixed-size asyncio worker pool for dispatch jobs."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Awaitable, Callable, Dict, List, Optional

from .models import DispatchJob

LOGGER = logging.getLogger(__name__)

JobHandler = Callable[[DispatchJob], Awaitable[None]]
AbandonHandler = Callable[[DispatchJob], None]


class PoolClosedError(RuntimeError):
    """Raised when work is submitted to a pool that is not running."""


class PoolSaturatedError(RuntimeError):
    """Raised when a bounded pool queue is full."""


class WorkerPool:
    """Runs dispatch jobs on a fixed number of worker tasks.

    Jobs wait in a FIFO queue; at most ``size`` handlers run at once. The
    queue is unbounded unless ``max_queue_size`` is positive, in which case
    ``submit`` fails fast with ``PoolSaturatedError`` rather than blocking.
    Jobs re-enqueued by a handler (retries) bypass that bound.

    ``submit`` is safe to call from threads other than the pool's event loop.

    On ``shutdown`` the pool stops accepting new jobs, lets outstanding work
    (including delayed retries) finish within the grace period, then cancels
    whatever is left. Each job that never finished is passed to
    ``on_abandoned``.
    """

    def __init__(
        self,
        handler: JobHandler,
        *,
        size: int = 10,
        max_queue_size: int = 0,
        on_abandoned: Optional[AbandonHandler] = None,
        name: str = "dispatch",
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be at least 1")
        self._handler = handler
        self._size = size
        self._max_queue_size = max(0, max_queue_size)
        self._on_abandoned = on_abandoned
        self._name = name

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[DispatchJob]] = None
        self._workers: List[asyncio.Task[None]] = []
        self._active: Dict[int, DispatchJob] = {}
        self._delayed: Dict[int, tuple[asyncio.TimerHandle, DispatchJob]] = {}
        self._idle: Optional[asyncio.Event] = None
        self._accepting = False
        self._closed = False
        # Jobs handed over via call_soon_threadsafe but not yet queued.
        self._in_transit = 0
        self._transit_lock = threading.Lock()

    @property
    def size(self) -> int:
        return self._size

    @property
    def running(self) -> bool:
        return self._accepting

    @property
    def closed(self) -> bool:
        """True once shutdown has started cancelling workers."""
        return self._closed

    @property
    def pending_count(self) -> int:
        """Jobs queued, running, or waiting out a retry delay."""
        queued = self._queue.qsize() if self._queue is not None else 0
        return queued + len(self._active) + len(self._delayed) + self._in_transit

    async def start(self) -> None:
        if self._workers:
            raise RuntimeError("WorkerPool already started")

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"{self._name}-worker-{index}")
            for index in range(self._size)
        ]
        LOGGER.info("Worker pool %s started with %d workers", self._name, self._size)

    def submit(self, job: DispatchJob) -> None:
        """Queue a new job without waiting for it to run."""
        if not self._accepting or self._loop is None:
            raise PoolClosedError(f"Worker pool {self._name} is not accepting jobs")

        with self._transit_lock:
            if self._max_queue_size and self.pending_count >= self._max_queue_size:
                raise PoolSaturatedError(
                    f"Worker pool {self._name} queue is full ({self._max_queue_size} jobs)"
                )
            if self._on_loop_thread():
                self._enqueue(job)
                return
            self._in_transit += 1
        self._loop.call_soon_threadsafe(self._enqueue_from_thread, job)

    def submit_later(self, job: DispatchJob, delay: float) -> None:
        """Re-enqueue a job after ``delay`` seconds without holding a worker."""
        if self._closed or self._loop is None:
            self._abandon([job])
            return

        if delay <= 0:
            self._enqueue(job)
            return

        key = id(job)
        handle = self._loop.call_later(delay, self._release_delayed, key)
        self._delayed[key] = (handle, job)
        self._update_idle()

    async def shutdown(self, grace_seconds: float = 10.0) -> int:
        """Stop the pool and return the number of abandoned jobs."""
        if self._loop is None or self._closed:
            return 0

        self._accepting = False
        pending = self.pending_count
        if pending and self._idle is not None:
            LOGGER.info(
                "Waiting up to %.1fs for %d pending %s jobs",
                grace_seconds,
                pending,
                self._name,
            )
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                LOGGER.warning(
                    "Worker pool %s did not drain within %.1fs; cancelling %d jobs",
                    self._name,
                    grace_seconds,
                    self.pending_count,
                )

        self._closed = True
        abandoned: List[DispatchJob] = []

        for handle, job in self._delayed.values():
            handle.cancel()
            abandoned.append(job)
        self._delayed.clear()

        abandoned.extend(self._active.values())

        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._workers = []
        self._active.clear()

        if self._queue is not None:
            while not self._queue.empty():
                abandoned.append(self._queue.get_nowait())
                self._queue.task_done()

        self._abandon(abandoned)
        LOGGER.info(
            "Worker pool %s stopped (%d jobs abandoned)", self._name, len(abandoned)
        )
        return len(abandoned)

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            self._active[index] = job
            try:
                await self._handler(job)
            except asyncio.CancelledError:
                if self._closed or cancel_requested():
                    raise
                LOGGER.warning(
                    "Handler in %s worker %d was cancelled for command %s",
                    self._name,
                    index,
                    job.command_uuid,
                )
                self._abandon([job])
            except Exception:
                LOGGER.exception(
                    "Unhandled error in %s worker %d for command %s",
                    self._name,
                    index,
                    job.command_uuid,
                )
            finally:
                if not self._closed:
                    self._active.pop(index, None)
                self._queue.task_done()
                self._update_idle()

    def _enqueue(self, job: DispatchJob) -> None:
        assert self._queue is not None
        self._queue.put_nowait(job)
        self._update_idle()

    def _enqueue_from_thread(self, job: DispatchJob) -> None:
        # The count moves from in-transit to queued under one lock hold so
        # concurrent bound checks never see the job missing.
        with self._transit_lock:
            self._in_transit -= 1
            if not self._closed:
                self._enqueue(job)
                return
        self._abandon([job])

    def _release_delayed(self, key: int) -> None:
        entry = self._delayed.pop(key, None)
        if entry is None:
            return
        _, job = entry
        self._enqueue(job)

    def _abandon(self, jobs: List[DispatchJob]) -> None:
        if self._on_abandoned is None:
            return
        for job in jobs:
            try:
                self._on_abandoned(job)
            except Exception:
                LOGGER.exception(
                    "Failed to handle abandoned job for command %s", job.command_uuid
                )

    def _update_idle(self) -> None:
        if self._idle is None:
            return
        if self.pending_count == 0:
            self._idle.set()
        else:
            self._idle.clear()

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False


def cancel_requested() -> bool:
    """Whether the running task itself has a pending cancellation request."""
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0
