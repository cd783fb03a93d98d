"""Retry combinator shared by label apply/remove and provider calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF: tuple[float, ...] = (0.25, 0.5, 1.0)


def backoff_delay(attempt: int, schedule: Sequence[float]) -> float:
    """Delay after the given 0-based failed attempt; the last value repeats."""
    if not schedule:
        return 0.0
    return schedule[min(attempt, len(schedule) - 1)]


async def retry_async(
    fn: Callable[..., Awaitable[T]],
    *args: object,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff: Sequence[float] = DEFAULT_BACKOFF,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
    context: str = "",
    **kwargs: object,
) -> T:
    """Await ``fn(*args, **kwargs)`` up to ``attempts`` times.

    Sleeps ``backoff[i]`` after the i-th failure. Exceptions outside
    ``retry_on``, or inside ``give_up_on``, propagate immediately; the
    last exception is re-raised once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(attempts):
        try:
            return await fn(*args, **kwargs)
        except retry_on as exc:
            if isinstance(exc, give_up_on) or attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, backoff)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                context or getattr(fn, "__name__", "call"),
                attempt + 1,
                attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
