"""
Fulfillment Engine — Optimistic locking retry decorator

Uses exponential backoff + jitter to handle ConcurrencyConflict.
A conflict occurs when version_id in DB was incremented by another
concurrent transaction between our read and write. The decorated
function must roll back its own session before the conflict escapes,
so every retry starts the whole operation from a clean transaction.
"""
import asyncio
import random
import functools
import logging

from app.core.config import get_settings
from app.core.errors import ConcurrencyConflict

settings = get_settings()
logger = logging.getLogger(__name__)


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after the given failed attempt: base * 2^attempt + jitter, capped."""
    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(max_retries: int | None = None):
    """
    Decorator for async functions that perform optimistic-lock DB writes.
    On ConcurrencyConflict, retries with exponential backoff + jitter.
    After the last attempt the conflict propagates to the caller.

    Usage:
        @with_optimistic_retry()
        async def receive(db, ...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(*args, **kwargs)
                except ConcurrencyConflict:
                    if attempt == _max:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d retries for %s",
                            _max, func.__name__,
                        )
                        raise
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "ConcurrencyConflict in %s on attempt %d/%d — retrying in %.3fs",
                        func.__name__, attempt, _max, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
