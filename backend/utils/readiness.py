import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

# Set up logging
logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadinessTimeout(Exception):
    """A resource did not become ready before the deadline."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    is_ready: Callable[[T], bool] = lambda result: result is not None,
    *,
    timeout: float,
    interval: float,
    backoff: float = 1.5,
    max_interval: float = 15.0,
    retry_on: Tuple[Type[BaseException], ...] = (),
    description: str = "resource",
) -> T:
    """Await ``fetch()`` until ``is_ready`` accepts its result.

    Exceptions in ``retry_on`` count as "not ready yet". Anything else
    propagates. Raises ReadinessTimeout once ``timeout`` seconds have passed.
    """
    deadline = time.monotonic() + timeout
    delay = interval
    attempt = 0
    last_error: Optional[BaseException] = None

    while True:
        attempt += 1
        try:
            result = await fetch()
            if is_ready(result):
                if attempt > 1:
                    logger.info(f"{description} ready after {attempt} attempts")
                return result
            last_error = None
        except retry_on as e:
            last_error = e
            logger.info(f"{description} not ready (attempt {attempt}): {str(e)}")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReadinessTimeout(f"Timed out waiting for {description}", last_error)

        await asyncio.sleep(min(delay, remaining))
        delay = min(delay * backoff, max_interval)
