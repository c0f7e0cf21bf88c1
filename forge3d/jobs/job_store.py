"""
Job Store - JSON-based job persistence

Durable record of every generation job:
- One JSON file per job, written atomically (temp file + rename)
- Field-level updates under a per-job lock so concurrent writers of
  different fields never clobber each other
- JSONL append-only ledger of every mutation for auditability
- Status only moves forward; terminal states are absorbing
"""

from __future__ import annotations
import asyncio
import fcntl
import json
import re
import uuid
import weakref
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles

from ..config import load_config
from ..exceptions import PersistenceError, ValidationError
from ..utils.logging import get_logger
from .types import Job, JobStatus, ResultFile, utcnow

logger = get_logger(__name__)

_JOB_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def is_valid_job_id(job_id: str) -> bool:
    """Job IDs are uuid4 hex; anything else never names a file in the store."""
    return isinstance(job_id, str) and bool(_JOB_ID_RE.match(job_id))


class JobStore(ABC):
    """CRUD repository contract consumed by the orchestrator, workers and poller."""

    @abstractmethod
    async def create(self, job: Job) -> str:
        """Persist a new job and return its ID. Raises PersistenceError."""

    @abstractmethod
    async def get_by_id(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def update_status(self, job_id: str, status: JobStatus) -> bool:
        """Returns False when the job is missing, terminal, or the move would go backwards."""

    @abstractmethod
    async def update_provider_id(self, job_id: str, provider_job_id: str) -> bool:
        ...

    @abstractmethod
    async def update_result(
        self, job_id: str, files: List[ResultFile], thumbnail_url: Optional[str] = None
    ) -> bool:
        ...

    @abstractmethod
    async def update_error(self, job_id: str, message: str) -> bool:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        ...

    @abstractmethod
    async def list_pending(self, limit: int = 100) -> List[Job]:
        ...

    @abstractmethod
    async def list_by_status(self, status: JobStatus, limit: int = 100) -> List[Job]:
        ...

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        ...


class JsonJobStore(JobStore):
    """
    JSON-file job persistence with atomic writes and audit logging

    Every read-modify-write of a job happens under that job's asyncio.Lock;
    the file on disk is only ever replaced by rename, so readers outside the
    lock always see a complete document.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or load_config()

        self.jobs_dir = Path(self.config["FORGE_JOBS_DIR"])
        self.ledger_path = Path(self.config["FORGE_LEDGER_PATH"])

        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self.ledger_path.parent.mkdir(parents=True, exist_ok=True)

        # entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._ledger_lock = asyncio.Lock()

        logger.info(
            f"Job store initialized - jobs_dir: {self.jobs_dir}, ledger_path: {self.ledger_path}",
            extra={"subsys": "store", "event": "init"},
        )

    # ---- create / read ----

    async def create(self, job: Job) -> str:
        if not job.job_id:
            job.job_id = uuid.uuid4().hex
        elif not is_valid_job_id(job.job_id):
            raise ValidationError(f"Invalid job id: {job.job_id!r}")
        now = utcnow()
        job.created_at = now
        job.updated_at = now
        if job.status.is_terminal and job.completed_at is None:
            job.completed_at = now

        try:
            async with self._get_job_lock(job.job_id):
                await self._write_job(job)
        except Exception as e:
            logger.error(
                f"Failed to create job {job.job_id[:8]}: {e}",
                extra={"subsys": "store", "event": "create_failed", "job_id": job.job_id},
            )
            raise PersistenceError(f"Failed to create job: {e}") from e

        await self._append_ledger(job, "job_created")
        logger.debug(f"Job created - job_id: {job.job_id[:8]}, status: {job.status.value}")
        return job.job_id

    async def get_by_id(self, job_id: str) -> Optional[Job]:
        """
        Load a job from its JSON file

        Returns None when the file does not exist or the ID is malformed.

        Raises:
            PersistenceError: On a corrupted job file
        """
        try:
            return await self._read_job(job_id)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.error(f"Job file corrupted - job_id: {job_id[:8]}, error: {e}")
            raise PersistenceError(f"Job file corrupted: {e}") from e

    # ---- field-level updates ----

    async def update_status(self, job_id: str, status: JobStatus) -> bool:
        def apply(job: Job) -> bool:
            if job.status.is_terminal or status.rank < job.status.rank:
                if job.status is not status:
                    logger.warning(
                        f"Refusing transition {job.status.value} -> {status.value} for job {job_id[:8]}",
                        extra={"subsys": "store", "event": "illegal_transition", "job_id": job_id},
                    )
                return False
            job.status = status
            if status.is_terminal:
                job.completed_at = utcnow()
            return True

        return await self._mutate(job_id, apply, "status_changed")

    async def update_provider_id(self, job_id: str, provider_job_id: str) -> bool:
        def apply(job: Job) -> bool:
            job.provider_job_id = provider_job_id
            return True

        return await self._mutate(job_id, apply, "provider_id_set")

    async def update_result(
        self, job_id: str, files: List[ResultFile], thumbnail_url: Optional[str] = None
    ) -> bool:
        def apply(job: Job) -> bool:
            job.result_files = list(files)
            job.thumbnail_url = thumbnail_url
            return True

        return await self._mutate(job_id, apply, "result_set")

    async def update_error(self, job_id: str, message: str) -> bool:
        def apply(job: Job) -> bool:
            job.error_message = message
            return True

        return await self._mutate(job_id, apply, "error_set")

    # ---- queries ----

    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        jobs = [j for j in await self._load_all() if j.owner_id == owner_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[max(0, offset):max(0, offset) + max(0, limit)]

    async def list_pending(self, limit: int = 100) -> List[Job]:
        """Oldest pending jobs first, for resubmission sweeps."""
        jobs = [j for j in await self._load_all() if j.status is JobStatus.PENDING]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:max(0, limit)]

    async def list_by_status(self, status: JobStatus, limit: int = 100) -> List[Job]:
        jobs = [j for j in await self._load_all() if j.status is status]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:max(0, limit)]

    async def stats(self) -> Dict[str, Any]:
        """Get statistics about jobs in store"""
        jobs = await self._load_all()
        status_counts = {s.value: 0 for s in JobStatus}
        for job in jobs:
            status_counts[job.status.value] += 1

        return {
            "total_jobs": len(jobs),
            "status_counts": status_counts,
            "storage_path": str(self.jobs_dir),
            "ledger_size": self.ledger_path.stat().st_size if self.ledger_path.exists() else 0,
        }

    # ---- internals ----

    async def _mutate(self, job_id: str, apply: Callable[[Job], bool], event: str) -> bool:
        """Read-modify-write one job under its lock; apply returns False to skip the write."""
        try:
            async with self._get_job_lock(job_id):
                job = await self._read_job(job_id)
                if job is None:
                    logger.warning(f"Update on unknown job {job_id[:8]} ignored ({event})")
                    return False
                if not apply(job):
                    return False
                job.updated_at = utcnow()
                await self._write_job(job)
        except Exception as e:
            logger.error(
                f"Failed to update job {job_id[:8]} ({event}): {e}",
                extra={"subsys": "store", "event": "update_failed", "job_id": job_id},
            )
            raise PersistenceError(f"Failed to update job: {e}") from e

        await self._append_ledger(job, event)
        return True

    async def _read_job(self, job_id: str) -> Optional[Job]:
        if not is_valid_job_id(job_id):
            return None
        job_file = self.jobs_dir / f"{job_id}.json"
        if not job_file.exists():
            return None
        async with aiofiles.open(job_file, "r") as f:
            content = await f.read()
        return Job.from_dict(json.loads(content))

    async def _write_job(self, job: Job) -> None:
        job_file = self.jobs_dir / f"{job.job_id}.json"
        temp_file = self.jobs_dir / f"{job.job_id}.json.tmp"

        async with aiofiles.open(temp_file, "w") as f:
            await f.write(json.dumps(job.to_dict(), indent=2, ensure_ascii=False))

        temp_file.replace(job_file)

    async def _load_all(self) -> List[Job]:
        jobs = []
        for job_file in self.jobs_dir.glob("*.json"):
            try:
                job = await self._read_job(job_file.stem)
            except Exception as e:
                logger.warning(f"Failed to load job {job_file.stem}: {e}")
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    async def _append_ledger(self, job: Job, event: str) -> None:
        """Append one mutation record to the JSONL ledger"""
        entry = {
            "timestamp": utcnow().isoformat(),
            "event": event,
            "job_id": job.job_id,
            "status": job.status.value,
            "owner_id": job.owner_id,
        }
        if job.error_message:
            entry["error_message"] = job.error_message

        try:
            async with self._ledger_lock:
                async with aiofiles.open(self.ledger_path, "a") as f:
                    # Other processes (CLI sweeps) may share the ledger
                    fd = f.fileno()
                    fcntl.flock(fd, fcntl.LOCK_EX)
                    try:
                        await f.write(json.dumps(entry, ensure_ascii=False) + "\n")
                        await f.flush()
                    finally:
                        fcntl.flock(fd, fcntl.LOCK_UN)
        except Exception as e:
            logger.debug(f"Ledger append failed: {e}")

    def _get_job_lock(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock
