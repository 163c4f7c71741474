"""
Retry policy for outbound provider calls.

Only connection-level failures are retried: the request never reached the
provider, so repeating a non-idempotent POST (create customer, create
checkout) cannot duplicate anything. HTTP error responses are never retried.
"""

import logging

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_ERRORS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
)


def transient_retrying(
    max_retries: int,
    backoff_seconds: float,
    max_wait: float = 10.0,
    exceptions: tuple[type[Exception], ...] = TRANSIENT_HTTP_ERRORS,
) -> AsyncRetrying:
    """
    Build an async retry controller with exponential backoff.

    Args:
        max_retries: Retries after the first attempt (0 = single attempt)
        backoff_seconds: Initial backoff, doubled per attempt
        max_wait: Upper bound for a single wait
        exceptions: Exception types to retry on

    Usage:
        async for attempt in transient_retrying(2, 0.5):
            with attempt:
                response = await client.post(...)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=backoff_seconds, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
