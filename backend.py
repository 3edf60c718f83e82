import asyncio
from contextlib import contextmanager
from typing import Awaitable, Callable, Type, TypeVar

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from errors import RelayError
from logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Failures that mean the shared store could not be reached
UNREACHABLE_ERRORS = (RedisConnectionError, RedisTimeoutError, OSError)


async def create_redis_client(store_endpoint: str) -> redis.Redis:
    """Connect to the shared store and make sure it answers."""
    client = redis.Redis.from_url(store_endpoint, decode_responses=True)
    try:
        await client.ping()
        logger.info(f"Redis client connected successfully to {_redact(store_endpoint)}")
    except Exception as e:
        logger.error(f"Failed to connect to Redis at {_redact(store_endpoint)}: {e}", exc_info=True)
        await client.aclose()
        raise
    return client


def _redact(url: str) -> str:
    # keep credentials out of the logs
    if "@" in url:
        scheme, _, rest = url.partition("://")
        return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return url


@contextmanager
def store_errors(error_cls: Type[RelayError], action: str):
    """Translate store connectivity failures into the relay error taxonomy."""
    try:
        yield
    except UNREACHABLE_ERRORS as e:
        raise error_cls(f"{action} failed: {e}") from e


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_ms: int,
    retry_on: Type[RelayError],
    description: str = "store call",
) -> T:
    """Run ``operation`` up to ``attempts`` times with exponential backoff.

    Only ``retry_on`` errors are retried; the last one is re-raised once the
    bound is exhausted.
    """
    delay = backoff_ms / 1000
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            wait = delay * (2 ** (attempt - 1))
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}), retrying in {wait:.3f}s: {e}")
            await asyncio.sleep(wait)
    raise RuntimeError("unreachable")
