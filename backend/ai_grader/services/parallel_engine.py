"""Bounded parallel execution for dispatch rounds.

`run_parallel()` runs one worker per item with at most `concurrency` in
flight. Worker failures are captured per item so one bad job never aborts
its siblings.

With concurrency=1, behavior is identical to a sequential for-loop.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def run_parallel(
    items: Sequence[T],
    worker: Callable[[int, T], Awaitable[R]],
    *,
    concurrency: int = 1,
) -> list[R | BaseException]:
    """Run worker(index, item) for each item with bounded concurrency.

    Args:
        items: Sequence of items to process.
        worker: async (index, item) -> result. Index is 0-based.
        concurrency: Max in-flight workers. 1 = sequential.

    Returns:
        List of results in input order. Failed items are exception instances.
        Cancellation of the caller still propagates.
    """
    total = len(items)
    if total == 0:
        return []

    results: list[R | BaseException] = [None] * total  # type: ignore[list-item]
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def _run_one(index: int, item: T):
        async with semaphore:
            try:
                results[index] = await worker(index, item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                results[index] = exc

    if concurrency <= 1:
        # Sequential path: same behavior as a for loop
        for i, item in enumerate(items):
            await _run_one(i, item)
    else:
        tasks = [asyncio.create_task(_run_one(i, item)) for i, item in enumerate(items)]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for t in tasks:
                if not t.done():
                    t.cancel()
            # Wait for cancellation to propagate
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    return results
