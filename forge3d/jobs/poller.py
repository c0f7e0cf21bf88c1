"""
Status Poller - per-job polling loop with deterministic terminal exit

Drives a submitted job (status ``processing`` with a provider job ID) until
the provider reports a terminal state or the poll budget runs out:
- State changes are logged once; a heartbeat line every 10 polls
- Transient poll errors are logged and polling continues; a successful
  poll resets the consecutive error count
- On success the result is written to the job store first and only then
  to the result cache
"""

from __future__ import annotations
import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import load_config
from ..exceptions import GatewayPollError
from ..utils.logging import get_logger
from .gateway import ProviderGateway
from .job_store import JobStore
from .result_cache import ResultCache
from .types import CachedResult, Job, JobStatus, ProviderJobStatus, ProviderStatus, utcnow

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "generation provider reported failure"
HEARTBEAT_EVERY = 10


def estimate_progress(status: JobStatus, created_at: datetime, now: Optional[datetime] = None) -> int:
    """Derived progress percentage; never persisted."""
    if status is JobStatus.COMPLETED:
        return 100
    if status is JobStatus.FAILED:
        return 0
    if status is JobStatus.PENDING:
        return 10

    elapsed_minutes = ((now or utcnow()) - created_at).total_seconds() / 60
    for bound, progress in ((1, 20), (2, 40), (3, 60), (4, 80), (5, 90), (10, 95)):
        if elapsed_minutes < bound:
            return progress
    return 98


class StatusPoller:
    """Advances one processing job to a terminal state."""

    def __init__(
        self,
        store: JobStore,
        cache: ResultCache,
        gateway: ProviderGateway,
        config: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or load_config()
        self.store = store
        self.cache = cache
        self.gateway = gateway
        self._sleep = sleep

        self.poll_interval = float(self.config.get("FORGE_POLL_INTERVAL_S", 10))
        self.query_timeout = float(self.config.get("FORGE_QUERY_TIMEOUT_S", 60))
        self.max_consecutive_errors = int(self.config.get("FORGE_POLL_MAX_CONSECUTIVE_ERRORS", 30))
        self.max_seconds = float(self.config.get("FORGE_POLL_MAX_SECONDS", 0))

    async def poll_until_terminal(self, job: Job) -> JobStatus:
        """
        Poll the provider for ``job`` until it is terminal

        Returns:
            The terminal JobStatus written to the store
        """
        job_id = job.job_id
        provider_job_id = job.provider_job_id
        if not provider_job_id:
            await self.fail(job_id, "no provider job id recorded for processing job")
            return JobStatus.FAILED

        start = time.monotonic()
        last_status: Optional[ProviderStatus] = None
        consecutive_errors = 0
        poll_count = 0

        logger.debug(f"Starting status poller for {job_id[:8]} (provider job {provider_job_id})")

        while True:
            if self.max_seconds > 0 and time.monotonic() - start > self.max_seconds:
                logger.warning(f"Poll time budget exhausted - job_id: {job_id[:8]}")
                await self.fail(job_id, f"provider did not finish within {self.max_seconds:.0f}s")
                return JobStatus.FAILED

            poll_count += 1
            try:
                result = await asyncio.wait_for(
                    self.gateway.query_status(provider_job_id), timeout=self.query_timeout
                )
            except (GatewayPollError, asyncio.TimeoutError) as e:
                consecutive_errors += 1
                logger.warning(
                    f"Status query failed - job_id: {job_id[:8]}, errors: {consecutive_errors}/{self.max_consecutive_errors}: {str(e) or 'timed out'}",
                    extra={"subsys": "poller", "event": "poll_error", "job_id": job_id},
                )
                if self.max_consecutive_errors > 0 and consecutive_errors >= self.max_consecutive_errors:
                    await self.fail(job_id, f"status polling failed {consecutive_errors} times in a row: {str(e) or 'timed out'}")
                    return JobStatus.FAILED
                await self._sleep(self.poll_interval)
                continue

            consecutive_errors = 0

            if result.status is not last_status:
                logger.info(
                    f"Provider status change - job_id: {job_id[:8]}, {last_status.value if last_status else 'init'} -> {result.status.value}",
                    extra={"subsys": "poller", "event": "provider_status", "job_id": job_id,
                           "detail": {"raw_status": result.raw_status}},
                )
                last_status = result.status
            elif poll_count % HEARTBEAT_EVERY == 0:
                logger.debug(f"Job heartbeat - job_id: {job_id[:8]}, status: {result.status.value}, poll: {poll_count}")

            if result.status is ProviderStatus.COMPLETED:
                return await self.complete(job, result)
            if result.status is ProviderStatus.FAILED:
                await self.fail(job_id, result.error_message or DEFAULT_FAILURE_MESSAGE)
                return JobStatus.FAILED

            # waiting / processing / unknown: keep polling
            await self._sleep(self.poll_interval)

    async def complete(self, job: Job, result: ProviderJobStatus) -> JobStatus:
        files = [f.normalized() for f in result.files]
        await self.store.update_result(job.job_id, files, result.thumbnail_url)
        if not await self.store.update_status(job.job_id, JobStatus.COMPLETED):
            stored = await self.store.get_by_id(job.job_id)
            return stored.status if stored else JobStatus.FAILED

        logger.info(
            f"✅ Job completed - job_id: {job.job_id[:8]}, files: {len(files)}",
            extra={"subsys": "poller", "event": "job_completed", "job_id": job.job_id, "owner_id": job.owner_id},
        )

        if files:
            await self.cache.store(
                job.fingerprint,
                CachedResult(
                    fingerprint=job.fingerprint,
                    result_files=files,
                    thumbnail_url=result.thumbnail_url,
                    source_job_id=job.job_id,
                    provider_status=result.raw_status or ProviderStatus.COMPLETED.value,
                ),
            )
        return JobStatus.COMPLETED

    async def fail(self, job_id: str, message: str) -> None:
        """Record the error message, then move the job to failed."""
        current = await self.store.get_by_id(job_id)
        if current is None or current.is_terminal_state():
            return
        await self.store.update_error(job_id, message)
        if await self.store.update_status(job_id, JobStatus.FAILED):
            logger.warning(
                f"❌ Job failed - job_id: {job_id[:8]}: {message}",
                extra={"subsys": "poller", "event": "job_failed", "job_id": job_id},
            )
