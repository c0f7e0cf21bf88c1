"""
Generation Orchestrator - async job management with JSON persistence

Handles the complete lifecycle of 3D generation jobs:
- Input validation and fingerprinting
- Result cache lookups (a hit completes the job immediately)
- Durable job creation and non-blocking dispatch to the worker pool
- Provider submission and status polling inside the worker
- Caller-facing status views and listings

One instance is constructed at startup and owns the store, cache, gateway
and worker pool it wires together.
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional

from ..config import load_config
from ..exceptions import GatewayError, JobNotFound, ValidationError
from ..retry_utils import gateway_retry_config
from ..utils.logging import get_logger
from .dispatcher import WorkerPool
from .fingerprint import fingerprint
from .gateway import ProviderGateway, RetryingGateway, describe_gateway
from .job_store import JobStore, JsonJobStore
from .poller import StatusPoller, estimate_progress
from .providers import HttpProviderGateway
from .result_cache import ResultCache
from .types import GenerationOptions, InputKind, Job, JobStatus, JobStatusView, SubmissionResult

logger = get_logger(__name__)

ESTIMATED_SECONDS = {
    InputKind.TEXT: 300,
    InputKind.IMAGE: 240,
}
CACHE_HIT_MESSAGE = "Generated from cache"


def build_default_gateway(config: Dict[str, Any]) -> ProviderGateway:
    """HTTP transport wrapped in the capped retry decorator."""
    retry = gateway_retry_config(
        max_attempts=int(config.get("FORGE_PROVIDER_MAX_RETRIES", 3)),
        base_delay=float(config.get("FORGE_PROVIDER_RETRY_DELAY_S", 2)),
    )
    return RetryingGateway(HttpProviderGateway(config), retry)


class GenerationOrchestrator:
    """
    Async orchestrator for 3D generation jobs

    The submission path (fingerprint -> cache lookup -> store create ->
    enqueue) runs on the caller's task and never awaits the gateway. Each
    worker drives one job through submission and polling until terminal.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        store: Optional[JobStore] = None,
        cache: Optional[ResultCache] = None,
        gateway: Optional[ProviderGateway] = None,
    ):
        self.config = config or load_config()

        self.store = store or JsonJobStore(self.config)
        self.cache = cache or ResultCache(self.config)
        self.gateway = gateway or build_default_gateway(self.config)
        self.poller = StatusPoller(self.store, self.cache, self.gateway, self.config)
        self.pool = WorkerPool(
            self._process_job,
            workers=int(self.config.get("FORGE_WORKERS", 5)),
            queue_size=int(self.config.get("FORGE_QUEUE_SIZE", 100)),
        )

        self.submit_timeout = float(self.config.get("FORGE_SUBMIT_TIMEOUT_S", 300))
        self._started = False

        logger.info(
            f"Generation orchestrator initialized - workers: {self.pool.num_workers}, "
            f"queue_size: {self.pool.max_queue_size}",
            extra={"subsys": "orchestrator", "event": "init"},
        )

    # ---- lifecycle ----

    async def start(self) -> None:
        """Start the gateway session and the worker tasks"""
        if self._started:
            return
        await self.gateway.startup()
        await self.pool.start()
        self._started = True

    async def close(self) -> None:
        """Stop workers; in-flight jobs stay as they are in the store"""
        await self.pool.close()
        await self.gateway.shutdown()
        self._started = False

    # ---- submission ----

    async def submit_text(
        self, owner_id: str, prompt: str, options: Optional[GenerationOptions] = None
    ) -> SubmissionResult:
        return await self._submit(owner_id, InputKind.TEXT, prompt, options)

    async def submit_image(
        self, owner_id: str, image_ref: str, options: Optional[GenerationOptions] = None
    ) -> SubmissionResult:
        return await self._submit(owner_id, InputKind.IMAGE, image_ref, options)

    def _resolve_options(self, options: Optional[GenerationOptions]) -> GenerationOptions:
        """Fill unset output options from config so equivalent requests share a cache key."""
        options = (options or GenerationOptions()).normalized()
        if options.face_count is not None and options.face_count <= 0:
            raise ValidationError("face_count must be a positive integer")
        if options.result_format is None:
            options.result_format = str(self.config.get("FORGE_PROVIDER_RESULT_FORMAT") or "OBJ").upper()
        if options.enable_pbr is None:
            options.enable_pbr = bool(self.config.get("FORGE_PROVIDER_ENABLE_PBR", False))
        return options

    async def _submit(
        self,
        owner_id: str,
        kind: InputKind,
        content: str,
        options: Optional[GenerationOptions] = None,
    ) -> SubmissionResult:
        """
        Accept a generation request and return immediately

        Raises:
            ValidationError: Empty prompt or image reference, or invalid options
            PersistenceError: The job could not be stored; nothing was enqueued
        """
        if not content or not content.strip():
            raise ValidationError(f"{kind.value} input must not be empty")

        options = self._resolve_options(options)
        fp = fingerprint(kind, content, options)

        cached = await self.cache.lookup(fp)
        if cached is not None:
            job = Job(
                owner_id=owner_id,
                kind=kind,
                content=content,
                fingerprint=fp,
                status=JobStatus.COMPLETED,
                options=options,
                result_files=list(cached.result_files),
                thumbnail_url=cached.thumbnail_url,
            )
            job_id = await self.store.create(job)
            logger.info(
                f"Cache hit - job_id: {job_id[:8]}, source: {(cached.source_job_id or '-')[:8]}",
                extra={"subsys": "orchestrator", "event": "cache_hit", "job_id": job_id, "owner_id": owner_id},
            )
            return SubmissionResult(
                job_id=job_id,
                status=JobStatus.COMPLETED,
                message=CACHE_HIT_MESSAGE,
                estimated_seconds=0,
                cached=True,
            )

        job = Job(owner_id=owner_id, kind=kind, content=content, fingerprint=fp, options=options)
        job_id = await self.store.create(job)

        if self.pool.enqueue(job_id):
            message = "Job queued for generation"
        else:
            message = "Job accepted; dispatch queue is full, it will be picked up by the next sweep"

        logger.info(
            f"Job submitted - job_id: {job_id[:8]}, kind: {kind.value}, owner_id: {owner_id}",
            extra={"subsys": "orchestrator", "event": "job_submitted", "job_id": job_id, "owner_id": owner_id},
        )
        return SubmissionResult(
            job_id=job_id,
            status=JobStatus.PENDING,
            message=message,
            estimated_seconds=ESTIMATED_SECONDS[kind],
        )

    # ---- queries ----

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get_by_id(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        return await self.store.list_by_owner(owner_id, limit=limit, offset=offset)

    async def get_job_status(self, job_id: str) -> JobStatusView:
        job = await self.get_job(job_id)
        return JobStatusView(
            job_id=job.job_id,
            status=job.status,
            progress=estimate_progress(job.status, job.created_at),
            result_files=list(job.result_files),
            thumbnail_url=job.thumbnail_url,
            error_message=job.error_message,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    # ---- reconciliation hooks ----

    async def resubmit_pending(self, limit: int = 100) -> int:
        """Re-enqueue the oldest pending jobs not already queued or in flight; returns how many were admitted."""
        admitted = 0
        for job in await self.store.list_pending(limit):
            if job.job_id in self.pool:
                continue
            if not self.pool.enqueue(job.job_id):
                break
            admitted += 1

        if admitted:
            logger.info(f"Sweep re-enqueued {admitted} pending jobs", extra={"subsys": "orchestrator", "event": "sweep"})
        return admitted

    async def resume_processing(self, limit: int = 100) -> int:
        """Re-enqueue processing jobs left behind by a stopped process so polling resumes."""
        admitted = 0
        for job in await self.store.list_by_status(JobStatus.PROCESSING, limit):
            if job.job_id in self.pool:
                continue
            if not self.pool.enqueue(job.job_id):
                break
            admitted += 1
        return admitted

    async def stats(self) -> Dict[str, Any]:
        return {
            "jobs": await self.store.stats(),
            "cache": self.cache.stats(),
            "pool": self.pool.get_stats(),
            **describe_gateway(self.gateway),
        }

    # ---- worker pipeline ----

    async def _process_job(self, job_id: str) -> None:
        """Worker handler: drive one job from pending to a terminal state."""
        job = await self.store.get_by_id(job_id)
        if job is None:
            logger.warning(f"Dequeued unknown job {job_id[:8]}")
            return
        if job.is_terminal_state():
            logger.debug(f"Dequeued job {job_id[:8]} already {job.status.value}")
            return

        try:
            if job.status is JobStatus.PENDING:
                if not await self._submit_to_provider(job):
                    return
            await self.poller.poll_until_terminal(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error processing job {job_id[:8]}: {e}", exc_info=True)
            await self.poller.fail(job_id, f"internal error: {e}")

    async def _submit_to_provider(self, job: Job) -> bool:
        """Submit and move to processing. A failed submission goes straight to failed."""
        try:
            provider_job_id = await asyncio.wait_for(
                self.gateway.submit(job.kind, job.content, job.options), timeout=self.submit_timeout
            )
        except asyncio.TimeoutError:
            await self.poller.fail(job.job_id, f"submission failed: provider did not respond within {self.submit_timeout:.0f}s")
            return False
        except GatewayError as e:
            await self.poller.fail(job.job_id, f"submission failed: {e}")
            return False

        await self.store.update_provider_id(job.job_id, provider_job_id)
        if not await self.store.update_status(job.job_id, JobStatus.PROCESSING):
            return False

        job.provider_job_id = provider_job_id
        job.status = JobStatus.PROCESSING
        logger.info(
            f"Job processing - job_id: {job.job_id[:8]}, provider_job_id: {provider_job_id}",
            extra={"subsys": "orchestrator", "event": "job_processing", "job_id": job.job_id, "owner_id": job.owner_id},
        )
        return True
