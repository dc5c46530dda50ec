"""
Bounded batch execution for calls against rate-limited providers.

Items are split into consecutive groups of ``batch_size``. Each group runs
concurrently and must finish completely before the next one starts, so at
most ``batch_size`` calls are ever in flight. Results come back in input
order regardless of completion order.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)


class BatchExecutionError(Exception):
    """
    Raised when at least one item of a batch failed.

    ``results`` is positional over all items processed so far (``None`` where
    an item failed); ``errors`` holds ``(item_index, exception)`` pairs.
    Batches after the failing one are not started.
    """

    def __init__(self, results: List[Optional[R]], errors: List[Tuple[int, Exception]]):
        self.results = results
        self.errors = errors
        first_index, first_error = errors[0]
        super().__init__(
            f"{len(errors)} item(s) failed in batch processing; "
            f"first failure at item {first_index}: {first_error}"
        )


async def process_in_batches(
    items: Sequence[T],
    batch_size: int,
    processor: Callable[[T], Awaitable[R]],
    delay_seconds: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[R]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    results: List[Optional[R]] = []
    total_batches = (len(items) + batch_size - 1) // batch_size

    for batch_number, start in enumerate(range(0, len(items), batch_size), start=1):
        batch = items[start:start + batch_size]
        logger.debug(f"Running batch {batch_number}/{total_batches} ({len(batch)} items)")

        outcomes = await asyncio.gather(*(processor(item) for item in batch), return_exceptions=True)

        errors: List[Tuple[int, Exception]] = []
        for offset, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                errors.append((start + offset, outcome))
                results.append(None)
            else:
                results.append(outcome)

        if errors:
            raise BatchExecutionError(results, errors)

        if delay_seconds > 0 and batch_number < total_batches:
            await sleep(delay_seconds)

    return results  # type: ignore[return-value]
