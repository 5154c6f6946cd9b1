from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import psycopg
from redis.exceptions import RedisError

from tokenward.logging import get_logger
from tokenward.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

# Driver failures that mean "the store is down", as opposed to a rejected write
_OUTAGE_ERRORS = (asyncio.TimeoutError, OSError, psycopg.Error, RedisError)


async def bounded_call(
    awaitable: Awaitable[T], *, timeout: float, backend: str, operation: str
) -> T:
    """Await a store call with a hard deadline.

    A timeout or driver failure is surfaced as ``StoreUnavailable`` and never
    retried here.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except _OUTAGE_ERRORS as exc:
        logger.error(
            "store_call_failed",
            backend=backend,
            operation=operation,
            timeout=timeout,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StoreUnavailable(backend, operation, exc) from exc


async def bounded_thread(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    backend: str,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call on a worker thread with a hard deadline."""
    return await bounded_call(
        asyncio.to_thread(func, *args, **kwargs),
        timeout=timeout,
        backend=backend,
        operation=operation,
    )


__all__ = ["bounded_call", "bounded_thread"]
