"""
Custom exceptions for the generation service, providing a structured error hierarchy.
"""
from typing import Optional


class ForgeError(Exception):
    """Base exception for all custom exceptions in this service."""

    pass


class ConfigurationError(ForgeError):
    """Raised for errors in service configuration, like missing keys or invalid values."""

    pass


class ValidationError(ForgeError):
    """Raised when a submission is rejected before anything is persisted."""

    pass


class JobNotFound(ForgeError):
    """Raised when a job ID does not resolve to a stored job."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class PersistenceError(ForgeError):
    """Raised when the job store cannot read or write a record."""

    pass


class CacheUnavailable(ForgeError):
    """Raised by a result cache tier that cannot be reached. Never leaves the cache."""

    pass


class GatewayError(ForgeError):
    """Raised for errors related to the external generation provider."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message)
        self.status = status
        self.retry_after_seconds = retry_after_seconds


class GatewaySubmitError(GatewayError):
    """Provider rejected or timed out on job submission."""

    pass


class GatewayPollError(GatewayError):
    """Transient failure while querying the provider for job status."""

    pass
