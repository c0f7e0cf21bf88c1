"""
Dispatch queue and worker pool for generation jobs.

A single bounded FIFO queue of DispatchEnvelopes feeds N worker tasks. Each
worker owns one job at a time until its handler returns, so the worker
count is the only global concurrency bound.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..utils.logging import get_logger
from .types import DispatchEnvelope

logger = get_logger(__name__)

JobHandler = Callable[[str], Awaitable[Any]]


class WorkerPool:
    """
    Bounded queue with a fixed number of worker tasks.

    - enqueue() never blocks; a full queue drops the envelope
    - A job ID is held by at most one envelope or worker at a time
    - enqueue_wait() blocks up to a timeout instead
    - Handler exceptions are logged and contained per job
    - close() cancels workers; in-flight jobs are left as they are in the store
    """

    def __init__(self, handler: JobHandler, workers: int = 5, queue_size: int = 100):
        if workers < 1:
            raise ValueError("workers must be >= 1")

        self.handler = handler
        self.num_workers = workers
        self.max_queue_size = queue_size

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []
        self._worker_lock = asyncio.Lock()
        # job IDs queued or being handled; released when the handler returns
        self._tracked: Set[str] = set()
        self._active = 0
        self._peak_active = 0

        self._stats = {
            "jobs_enqueued": 0,
            "jobs_dropped": 0,
            "jobs_duplicate": 0,
            "jobs_processed": 0,
            "handler_errors": 0,
            "total_processing_time": 0.0,
        }

        logger.info(
            f"Worker pool initialized: workers={workers}, queue_size={queue_size}",
            extra={"subsys": "dispatch", "event": "init"},
        )

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def peak_active(self) -> int:
        return self._peak_active

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._tracked

    def _is_duplicate(self, job_id: str) -> bool:
        if job_id not in self._tracked:
            return False
        self._stats["jobs_duplicate"] += 1
        logger.debug(f"Job {job_id[:8]} already queued or in flight, not enqueued again")
        return True

    async def start(self) -> None:
        """Start the background worker tasks."""
        async with self._worker_lock:
            if self._workers:
                logger.warning("Workers already started")
                return

            for i in range(self.num_workers):
                self._workers.append(
                    asyncio.create_task(self._worker_loop(worker_id=i), name=f"forge3d-worker-{i}")
                )

            logger.info(f"✔ {len(self._workers)} workers started")

    def enqueue(self, job_id: str) -> bool:
        """
        Enqueue a job without blocking.

        Returns:
            True if enqueued, False if dropped because the queue is full or
            the job is already queued or in flight
        """
        if self._is_duplicate(job_id):
            return False
        try:
            self._queue.put_nowait(DispatchEnvelope(job_id=job_id))
        except asyncio.QueueFull:
            self._stats["jobs_dropped"] += 1
            logger.warning(
                f"⚠ Dispatch queue full, job {job_id[:8]} stays pending "
                f"(queue_size={self._queue.qsize()}/{self.max_queue_size})",
                extra={"subsys": "dispatch", "event": "queue_full", "job_id": job_id},
            )
            return False

        self._tracked.add(job_id)
        self._stats["jobs_enqueued"] += 1
        logger.debug(f"✔ Enqueued job {job_id[:8]} (queue_depth={self._queue.qsize()})")
        return True

    async def enqueue_wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Enqueue, waiting up to ``timeout`` seconds for room. False on timeout."""
        if self._is_duplicate(job_id):
            return False
        self._tracked.add(job_id)
        try:
            await asyncio.wait_for(self._queue.put(DispatchEnvelope(job_id=job_id)), timeout=timeout)
        except asyncio.CancelledError:
            self._tracked.discard(job_id)
            raise
        except asyncio.TimeoutError:
            self._tracked.discard(job_id)
            self._stats["jobs_dropped"] += 1
            logger.warning(
                f"⚠ Timed out waiting for queue space, job {job_id[:8]} stays pending",
                extra={"subsys": "dispatch", "event": "queue_full", "job_id": job_id},
            )
            return False

        self._stats["jobs_enqueued"] += 1
        return True

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every enqueued job has been handled. False on timeout."""
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"⚠ Queue drain timeout, {self._queue.qsize()} jobs remaining")
            return False

    async def close(self, timeout: float = 10.0) -> None:
        """Cancel workers. Queued envelopes are discarded; the store keeps the jobs."""
        async with self._worker_lock:
            if not self._workers:
                return

            logger.info(f"Cancelling {len(self._workers)} workers")
            for worker in self._workers:
                worker.cancel()

            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._workers, return_exceptions=True), timeout=timeout
                )
            except asyncio.TimeoutError:
                logger.warning("⚠ Worker shutdown timeout")

            self._workers.clear()

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        try:
            while True:
                envelope: DispatchEnvelope = await self._queue.get()
                try:
                    await self._run_one(envelope, worker_id)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.debug(f"Worker {worker_id} cancelled")
            raise

    async def _run_one(self, envelope: DispatchEnvelope, worker_id: int) -> None:
        self._active += 1
        self._peak_active = max(self._peak_active, self._active)
        start_time = time.monotonic()
        waited = (datetime.now(timezone.utc) - envelope.enqueued_at).total_seconds()

        logger.debug(f"Worker {worker_id} picked up job {envelope.job_id[:8]} after {waited:.2f}s in queue")
        try:
            await self.handler(envelope.job_id)
            self._stats["jobs_processed"] += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["handler_errors"] += 1
            logger.error(
                f"✖ Worker {worker_id} handler error for job {envelope.job_id[:8]}: {e}",
                exc_info=True,
                extra={"subsys": "dispatch", "event": "handler_error", "job_id": envelope.job_id},
            )
        finally:
            self._active -= 1
            self._tracked.discard(envelope.job_id)
            self._stats["total_processing_time"] += time.monotonic() - start_time

    def get_stats(self) -> Dict[str, Any]:
        return {
            "workers": len(self._workers),
            "active": self._active,
            "peak_active": self._peak_active,
            "queue_depth": self._queue.qsize(),
            "tracked": len(self._tracked),
            "max_queue_size": self.max_queue_size,
            **self._stats,
        }
