"""Retry wrapper for units of work that may hit transient database contention."""

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

T = TypeVar("T")

# Matched case-insensitively against the error message and class name
TRANSIENT_ERROR_MARKERS = (
    "deadlock",
    "serialization",
    "could not serialize",
    "concurrent",
    "database is locked",
    "lock timeout",
)


def is_transient_error(exc: BaseException) -> bool:
    """
    Whether an error is worth retrying.

    Walks the ``__cause__`` chain so driver errors wrapped by SQLAlchemy are
    recognised as well.
    """
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = f"{type(current).__name__} {current}".lower()
        if any(marker in text for marker in TRANSIENT_ERROR_MARKERS):
            return True
        current = current.__cause__ or getattr(current, "orig", None)
    return False


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay before the attempt after ``attempt`` (1-based), capped."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def with_retry(
    unit_of_work: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``unit_of_work`` up to ``max_retries`` times.

    Only transient errors are retried; anything else propagates on the first
    occurrence. When attempts are exhausted the last error is re-raised.

    Args:
        unit_of_work: Zero-argument coroutine factory; called once per attempt
        max_retries: Total number of attempts
        base_delay: Delay after the first failed attempt (seconds)
        max_delay: Upper bound for any single delay (seconds)
        sleep: Awaitable sleep function

    Returns:
        The unit of work's result
    """
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return await unit_of_work()
        except Exception as e:
            if not is_transient_error(e):
                raise
            if attempt >= attempts:
                logger.error(
                    "transaction.retries_exhausted",
                    attempts=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "transaction.retry",
                attempt=attempt,
                max_attempts=attempts,
                delay_seconds=delay,
                error=str(e),
                error_type=type(e).__name__,
            )
            await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover


async def run_in_transaction(
    session_factory: Callable[[], AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``work`` inside a fresh session and transaction, retrying on contention.

    Each attempt opens its own session and ``session.begin()`` block: either
    everything ``work`` wrote is committed or nothing is.
    """

    async def attempt() -> T:
        async with session_factory() as session:
            async with session.begin():
                return await work(session)

    return await with_retry(
        attempt,
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        sleep=sleep,
    )
