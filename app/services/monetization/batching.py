"""Batched executor: bounded fan-out over a list of items.

Items are processed in consecutive slices. Every item in a slice runs
concurrently and fails independently; after each slice except the last the
executor sleeps so a capacity-limited downstream resource is not saturated.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from app.services.monetization.errors import PartialBatchFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int], Any]


@dataclass
class BatchResult:
    """Aggregated outcome of one ``BatchedExecutor.run`` call."""

    successes: int = 0
    failures: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.successes + self.failures

    def raise_if_total_failure(self) -> None:
        if self.successes == 0 and self.failures > 0:
            raise PartialBatchFailure(
                f"All {self.failures} batch items failed",
                details={"failures": self.failures, "errors": self.errors[:10]},
            )


class BatchedExecutor:
    def __init__(self, batch_size: int = 10, delay_seconds: float = 0.1) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be non-negative")
        self.batch_size = batch_size
        self.delay_seconds = delay_seconds

    async def run(
        self,
        items: Sequence[T],
        processor: Callable[[T], Awaitable[Any]],
        on_progress: ProgressCallback | None = None,
    ) -> BatchResult:
        """Apply *processor* to every item, at most ``batch_size`` at a time.

        Per-item exceptions are counted and logged, never propagated.
        ``on_progress(processed, total)`` is called once per slice and may be
        a plain function or a coroutine function.
        """
        result = BatchResult()
        total = len(items)

        for start in range(0, total, self.batch_size):
            batch = items[start : start + self.batch_size]
            outcomes = await asyncio.gather(
                *(processor(item) for item in batch), return_exceptions=True
            )
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    result.failures += 1
                    result.errors.append(f"{type(outcome).__name__}: {outcome}")
                    logger.warning("Batch item %r failed: %s", item, outcome)
                else:
                    result.successes += 1

            processed = min(start + self.batch_size, total)
            if on_progress is not None:
                maybe = on_progress(processed, total)
                if inspect.isawaitable(maybe):
                    await maybe

            if processed < total and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)

        return result
