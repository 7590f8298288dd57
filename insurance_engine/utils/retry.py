"""
Retry for transient I/O failures.

Only OperationalError (and whatever the caller lists) is retried. DataError
and InvariantError always surface on the first attempt: retrying bad input or
a broken invariant never helps.
"""
import asyncio
import functools
import random
from typing import Callable, Optional, Tuple, Type

from insurance_engine.exceptions import DataError, InvariantError, OperationalError
from insurance_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

_NEVER_RETRY = (DataError, InvariantError, ValueError, TypeError, KeyError)


def retry_on_transient_errors(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_backoff: float = 10.0,
    transient_errors: Optional[Tuple[Type[Exception], ...]] = None,
):
    """
    Retry an async callable with exponential backoff plus jitter.

    Args:
        max_retries: Attempts after the first one
        base_delay: First wait in seconds
        max_backoff: Upper bound on a single wait
        transient_errors: Exception types worth retrying (default OperationalError)
    """
    retryable = transient_errors or (OperationalError,)

    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            delay = base_delay
            while True:
                try:
                    return await func(*args, **kwargs)
                except _NEVER_RETRY:
                    raise
                except retryable as e:
                    if attempt >= max_retries:
                        logger.warning(
                            "RETRIES_EXHAUSTED",
                            func=func.__qualname__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise
                    attempt += 1
                    logger.info(
                        "TRANSIENT_ERROR_RETRY",
                        func=func.__qualname__,
                        attempt=attempt,
                        max_retries=max_retries,
                        wait_s=round(delay, 2),
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, max_backoff) + random.uniform(0, 0.5)

        return wrapper
    return decorator
