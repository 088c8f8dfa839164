"""Bounded storage calls.

Storage backends are synchronous. Service code awaits them through
``call_store`` so the event loop stays free and every call honours a
deadline. Redis cache coroutines go through ``call_cache`` for the same
deadline and error mapping. The deadline comes from the innermost
``storage_deadline`` block, falling back to the configured default.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
from contextvars import ContextVar
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from redis.exceptions import RedisError

from classgate.logging import get_logger, sanitize_error_message
from classgate.storage.errors import ConstraintViolation, StorageError, StorageTimeout

logger = get_logger(__name__)

T = TypeVar("T")

_deadline_var: ContextVar[Optional[float]] = ContextVar("storage_deadline", default=None)

DEFAULT_STORAGE_TIMEOUT_SECONDS = 5.0


@contextlib.contextmanager
def storage_deadline(seconds: Optional[float]) -> Iterator[None]:
    """Bound every storage call made inside the block to ``seconds``."""
    token = _deadline_var.set(seconds)
    try:
        yield
    finally:
        _deadline_var.reset(token)


def current_deadline(default: Optional[float] = None) -> float:
    value = _deadline_var.get()
    if value is not None and value > 0:
        return value
    return default if default and default > 0 else DEFAULT_STORAGE_TIMEOUT_SECONDS


async def call_store(
    fn: Callable[..., T],
    *args: Any,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> T:
    """Run a blocking storage call in a worker thread under a deadline.

    Raises:
        StorageTimeout: the call did not finish in time
        ConstraintViolation: passed through from the backend
        StorageError: any other backend failure
    """
    limit = current_deadline(timeout)
    op = getattr(fn, "__name__", "storage_call")
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(functools.partial(fn, *args, **kwargs)), limit
        )
    except asyncio.TimeoutError as exc:
        logger.warning("storage_call_timeout", operation=op, timeout_seconds=limit)
        raise StorageTimeout("storage call timed out", {"operation": op}) from exc
    except (ConstraintViolation, StorageError):
        raise
    except (ValueError, TypeError, KeyError):
        raise
    except Exception as exc:
        logger.error(
            "storage_call_failed",
            operation=op,
            error=sanitize_error_message(str(exc)),
            error_type=type(exc).__name__,
        )
        raise StorageError("storage backend failure", {"operation": op}) from exc


async def call_cache(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> T:
    """Await a Redis cache coroutine under the storage deadline.

    Raises:
        StorageTimeout: the call did not finish in time
        StorageError: Redis or the network failed
    """
    limit = current_deadline(timeout)
    op = getattr(fn, "__name__", "cache_call")
    try:
        return await asyncio.wait_for(fn(*args, **kwargs), limit)
    except asyncio.TimeoutError as exc:
        logger.warning("cache_call_timeout", operation=op, timeout_seconds=limit)
        raise StorageTimeout("cache call timed out", {"operation": op}) from exc
    except (RedisError, OSError) as exc:
        logger.error(
            "cache_call_failed",
            operation=op,
            error=sanitize_error_message(str(exc)),
            error_type=type(exc).__name__,
        )
        raise StorageError("cache backend failure", {"operation": op}) from exc
