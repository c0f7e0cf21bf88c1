"""
Retry utilities for handling transient errors with exponential backoff.
Wraps calls to the generation provider's raw transport.
"""
import asyncio
import logging
import random
from typing import Any, Callable, List, Optional, Type

import aiohttp

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None,
        retryable_status_codes: Optional[List[int]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [
            ConnectionError, TimeoutError, asyncio.TimeoutError
        ]
        self.retryable_status_codes = retryable_status_codes or [
            500, 502, 503, 504, 429  # Server errors and rate limiting
        ]


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """
    Determine if an error is retryable based on configuration.

    Args:
        error: The exception that occurred
        config: Retry configuration

    Returns:
        True if the error should be retried, False otherwise
    """
    # 1) Direct type match
    if any(isinstance(error, exc_type) for exc_type in config.retryable_exceptions):
        return True

    # 2) HTTP status on response errors decides on its own
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status in config.retryable_status_codes

    error_str = str(error).lower()

    # 3) HTTP status codes present in message (e.g., '429 Too Many Requests')
    if any(str(code) in error_str for code in config.retryable_status_codes):
        return True

    # 4) Common transient error patterns
    transient_patterns = [
        'internal server error',
        'bad gateway',
        'service unavailable',
        'gateway timeout',
        'too many requests',
        'connection reset',
        'connection error',
        'timeout',
        'timed out',
    ]
    return any(pattern in error_str for pattern in transient_patterns)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for exponential backoff with jitter.

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_range = delay * 0.1
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0, delay)


async def retry_async(
    func: Callable,
    config: RetryConfig,
    *args,
    **kwargs
) -> Any:
    """
    Execute an async function with retry logic.

    Raises:
        The last exception encountered if all retries fail
    """
    last_exception = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            result = await func(*args, **kwargs)

            if attempt > 0:
                logger.info(f"✅ {name} succeeded on attempt {attempt + 1}")

            return result

        except Exception as e:
            last_exception = e

            if not is_retryable_error(e, config):
                logger.debug(f"Non-retryable error in {name}: {e}")
                raise

            if attempt == config.max_attempts - 1:
                logger.error(f"❌ All {config.max_attempts} attempts failed for {name}")
                break

            delay = calculate_delay(attempt, config)
            # Respect a Retry-After hint within the configured cap
            retry_after_hint = getattr(e, "retry_after_seconds", None)
            extra_note = ""
            if isinstance(retry_after_hint, (int, float)) and retry_after_hint > 0:
                bounded_ra = min(float(retry_after_hint), config.max_delay)
                delay = max(delay, bounded_ra)
                extra_note = f" (respecting Retry-After={bounded_ra:.2f}s)"
            logger.warning(
                f"⚠️ Attempt {attempt + 1} failed for {name}: {e}. "
                f"Retrying in {delay:.2f}s...{extra_note}"
            )

            await asyncio.sleep(delay)

    raise last_exception


def gateway_retry_config(max_attempts: int = 3, base_delay: float = 2.0) -> RetryConfig:
    """Retry policy for provider transport calls, tunable from config."""
    return RetryConfig(
        max_attempts=max(1, max_attempts),
        base_delay=base_delay,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
        retryable_exceptions=[
            ConnectionError, TimeoutError, asyncio.TimeoutError, aiohttp.ClientConnectionError
        ],
        retryable_status_codes=[500, 502, 503, 504, 429]
    )


GATEWAY_RETRY_CONFIG = gateway_retry_config()
