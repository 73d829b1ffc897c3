import asyncio
import logging
import random
from functools import wraps
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delays(delay: float, backoff: float, max_delay: float):
    """Yield an endless exponential backoff schedule capped at ``max_delay``."""
    current = delay
    while True:
        yield current
        current = min(current * backoff, max_delay)


def async_retry(
    retries: int = 3,
    delay: float = 0.5,
    backoff: float = 2.0,
    max_delay: float = 10.0,
    jitter: float = 0.1,
    catch_exceptions: type[Exception] | tuple[type[Exception], ...] = Exception,
) -> Callable[[Callable[..., Coroutine[Any, Any, T]]], Callable[..., Coroutine[Any, Any, T]]]:
    """
    A decorator for retrying an async function with exponential backoff.

    Args:
        retries: The maximum number of retries. A ``retries`` attribute on the
            bound instance (``self.retries``) overrides it at call time.
        delay: The initial delay between retries in seconds.
        backoff: The multiplier for the delay for each subsequent retry.
        max_delay: The maximum delay between retries.
        jitter: A factor to add random jitter to the delay.
        catch_exceptions: The exception or tuple of exceptions to catch and retry on.
    """

    def decorator(func: Callable[..., Coroutine[Any, Any, T]]) -> Callable[..., Coroutine[Any, Any, T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempts = retries
            if args and isinstance(getattr(args[0], "retries", None), int):
                attempts = args[0].retries
            delays = backoff_delays(delay, backoff, max_delay)
            for attempt in range(attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except catch_exceptions as e:
                    if attempt == attempts:
                        logger.error(
                            "Function '%s' failed after %d attempts. Last error: %s",
                            func.__name__, attempts + 1, e,
                        )
                        raise

                    current_delay = next(delays)
                    logger.warning(
                        "Attempt %d/%d for '%s' failed. Retrying in %.2fs. Error: %s",
                        attempt + 1, attempts + 1, func.__name__, current_delay, e,
                    )
                    jitter_amount = current_delay * jitter * random.uniform(-1, 1)
                    await asyncio.sleep(max(0.0, current_delay + jitter_amount))

            raise RuntimeError("Retry loop exited unexpectedly")

        return wrapper

    return decorator
