"""
3D generation job orchestration

Fingerprinting, durable job storage, result caching, bounded dispatch,
provider gateway and status polling.
"""

from .types import (
    CachedResult,
    DispatchEnvelope,
    GenerationOptions,
    InputKind,
    Job,
    JobStatus,
    JobStatusView,
    ProviderJobStatus,
    ProviderStatus,
    ResultFile,
    SubmissionResult,
)
from .fingerprint import fingerprint
from .job_store import JobStore, JsonJobStore
from .result_cache import ResultCache
from .dispatcher import WorkerPool
from .gateway import ProviderGateway, RetryingGateway, map_provider_status
from .poller import StatusPoller, estimate_progress
from .orchestrator import GenerationOrchestrator

__all__ = [
    "CachedResult",
    "DispatchEnvelope",
    "GenerationOptions",
    "InputKind",
    "Job",
    "JobStatus",
    "JobStatusView",
    "ProviderJobStatus",
    "ProviderStatus",
    "ResultFile",
    "SubmissionResult",
    "fingerprint",
    "JobStore",
    "JsonJobStore",
    "ResultCache",
    "WorkerPool",
    "ProviderGateway",
    "RetryingGateway",
    "map_provider_status",
    "StatusPoller",
    "estimate_progress",
    "GenerationOrchestrator",
]
