"""
Bounded-concurrency batch runner.

Items are processed in fixed-size chunks; each chunk runs concurrently and
the next chunk starts only when the current one has settled. A failing item
is captured as its own result instead of aborting the batch. Progress is
reported as each item finishes, in completion order.
"""

import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchItemResult(Generic[T, R]):
    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


ProgressFn = Callable[[int, int, BatchItemResult], None]


async def run_batch(
    items: list[T],
    processor: Callable[[T], Awaitable[R]],
    concurrency: int = 10,
    on_progress: Optional[ProgressFn] = None,
) -> list[BatchItemResult[T, R]]:
    """
    Run `processor` over `items`, at most `concurrency` at a time.

    Args:
        items:       Work items.
        processor:   Async unit of work for one item.
        concurrency: Chunk size.
        on_progress: Called as each item finishes with
                     (completed, total, item_result).

    Returns:
        One BatchItemResult per input item, in input order.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    total = len(items)
    results: list[BatchItemResult[T, R]] = []
    completed = 0

    async def _timed(item: T) -> BatchItemResult[T, R]:
        started = time.monotonic()
        try:
            value = await processor(item)
            result = BatchItemResult(item=item, value=value,
                                     duration_ms=(time.monotonic() - started) * 1000)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Batch item failed: {e}")
            result = BatchItemResult(item=item, error=e,
                                     duration_ms=(time.monotonic() - started) * 1000)
        _report(result)
        return result

    def _report(result: BatchItemResult[T, R]) -> None:
        nonlocal completed
        completed += 1
        if on_progress:
            on_progress(completed, total, result)

    for start in range(0, total, concurrency):
        chunk = items[start:start + concurrency]
        results.extend(await asyncio.gather(*(_timed(item) for item in chunk)))

    return results
