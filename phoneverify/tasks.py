import asyncio
import logging

from .rate_limiter import MultiDimensionalRateLimiter
from .store import StoreUnavailable


logger = logging.getLogger("phoneverify.tasks")


def prune_counters_once(limiter: MultiDimensionalRateLimiter) -> int:
    try:
        return limiter.prune()
    except StoreUnavailable as exc:
        logger.warning("Counter prune skipped: %s", exc)
        return 0


async def prune_loop(limiter: MultiDimensionalRateLimiter, poll_secs: int) -> None:
    while True:
        # store I/O is blocking; keep it off the event loop
        await asyncio.to_thread(prune_counters_once, limiter)
        await asyncio.sleep(poll_secs)
