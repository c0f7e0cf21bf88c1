"""
Provider Gateway - boundary to the external 3D generation provider

The provider is slow and asynchronous: a submission returns a provider job
ID immediately and the result is discovered later by querying status.
Concrete transports live in ``forge3d.jobs.providers``.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..retry_utils import GATEWAY_RETRY_CONFIG, RetryConfig, retry_async
from ..utils.logging import get_logger
from .types import GenerationOptions, InputKind, ProviderJobStatus, ProviderStatus

logger = get_logger(__name__)

_STATUS_MAP = {
    "WAIT": ProviderStatus.WAITING,
    "RUN": ProviderStatus.PROCESSING,
    "SUCCESS": ProviderStatus.COMPLETED,
    "DONE": ProviderStatus.COMPLETED,
    "FAILED": ProviderStatus.FAILED,
}


def map_provider_status(raw: Optional[str]) -> ProviderStatus:
    """Map a raw provider status string; anything unrecognized is UNKNOWN."""
    if not raw:
        return ProviderStatus.UNKNOWN
    return _STATUS_MAP.get(raw.strip().upper(), ProviderStatus.UNKNOWN)


class ProviderGateway(ABC):
    """
    Abstract contract for provider transports

    Implementations raise GatewaySubmitError from submit() and
    GatewayPollError from query_status().
    """

    @abstractmethod
    async def submit(
        self, kind: InputKind, content: str, options: Optional[GenerationOptions] = None
    ) -> str:
        """Start a generation job and return the provider's job ID"""

    @abstractmethod
    async def query_status(self, provider_job_id: str) -> ProviderJobStatus:
        """Fetch the current provider-side status of a job"""

    async def startup(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass


class RetryingGateway(ProviderGateway):
    """Capped retry decorator over a raw transport gateway."""

    def __init__(self, inner: ProviderGateway, retry_config: Optional[RetryConfig] = None):
        self.inner = inner
        self.retry_config = retry_config or GATEWAY_RETRY_CONFIG

    async def submit(
        self, kind: InputKind, content: str, options: Optional[GenerationOptions] = None
    ) -> str:
        return await retry_async(self.inner.submit, self.retry_config, kind, content, options)

    async def query_status(self, provider_job_id: str) -> ProviderJobStatus:
        return await retry_async(self.inner.query_status, self.retry_config, provider_job_id)

    async def startup(self) -> None:
        await self.inner.startup()

    async def shutdown(self) -> None:
        await self.inner.shutdown()


def describe_gateway(gateway: ProviderGateway) -> Dict[str, Any]:
    """Small summary used by stats() and the config check."""
    inner = getattr(gateway, "inner", None)
    info: Dict[str, Any] = {"gateway": type(gateway).__name__}
    if inner is not None:
        info["transport"] = type(inner).__name__
        info["max_attempts"] = gateway.retry_config.max_attempts
    return info
