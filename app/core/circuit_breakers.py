"""
Circuit Breakers and Retry Logic
Prevents a single flaky PracticePanther or database call from failing a whole sync
"""
import logging
from functools import wraps
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    retry_if_not_exception_type,
    before_sleep_log,
)

from app.core.errors import RateLimitError, TransientNetworkError

logger = logging.getLogger(__name__)


# ============================================================================
# PROVIDER CALLS (timeouts, connection errors, 5xx)
# ============================================================================

def transient_retrying(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None
) -> AsyncRetrying:
    """
    Build a tenacity controller for provider calls.

    Retries on:
    - TransientNetworkError (timeouts, connection resets, 5xx)

    Does NOT retry:
    - RateLimitError (the RateLimiter owns cooldowns)
    - AuthorizationError / DataShapeError (retrying cannot help)

    Usage:
        async for attempt in transient_retrying(3):
            with attempt:
                page = await client.list_page(...)
    """
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    return AsyncRetrying(
        retry=(
            retry_if_exception_type(TransientNetworkError)
            & retry_if_not_exception_type(RateLimitError)
        ),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        **kwargs
    )



# ============================================================================
# STORE READS
# ============================================================================

def with_retry(max_attempts=3, min_wait=1, max_wait=10):
    """
    Retry decorator for idempotent async reads (existing-id scans, versions).

    Any exception is retried; the last one is re-raised unchanged.

    Usage:
        @with_retry(max_attempts=3, min_wait=1, max_wait=5)
        async def fetch_existing_ids(self, table, key):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper

    return decorator
