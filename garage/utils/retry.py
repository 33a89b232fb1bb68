"""
Retry utilities with exponential backoff.

Used around store transactions so that transient lock contention is retried a
bounded number of times before being surfaced to the caller.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def with_retry(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    backoff_factor: float = 1.5,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    operation_name: Optional[str] = None
) -> T:
    """
    Retry an async operation with exponential backoff.

    Only exceptions matching ``retry_on`` are retried; anything else propagates
    immediately. When every attempt fails the last exception is re-raised
    unchanged so callers can still tell error kinds apart.

    Args:
        func: Zero-argument callable returning an awaitable
        max_retries: Maximum number of attempts (default: 3)
        backoff_factor: Multiplier for delay between retries (default: 1.5)
        initial_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 30.0)
        retry_on: Exception types that trigger another attempt
        operation_name: Name for logging purposes

    Returns:
        Result from successful function call

    Example:
        >>> booking = await with_retry(
        ...     lambda: claim_slot(when),
        ...     retry_on=(StoreContentionError,),
        ...     operation_name="Book slot"
        ... )
    """
    name = operation_name or getattr(func, "__name__", "operation")
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            logger.debug(f"Attempt {attempt + 1}/{attempts}: {name}")
            result = await func()

            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}/{attempts}")

            return result

        except retry_on as e:
            if attempt < attempts - 1:
                delay = min(initial_delay * (backoff_factor ** attempt), max_delay)

                logger.warning(
                    f"{name} failed (attempt {attempt + 1}/{attempts}): {str(e)}"
                )
                logger.info(f"Retrying in {delay:.2f}s...")

                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"{name} failed after {attempts} attempts: {str(e)}"
                )
                raise

    raise RuntimeError(f"{name}: retry loop exited without result")  # pragma: no cover
