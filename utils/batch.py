"""
Batch Partial-Failure Processor

Drives a fetch-and-persist workload over a set of units (page numbers),
isolating failures per unit:

1. Every unit is fetched inside the retry executor and persisted right away.
2. Units whose fetch or persist failed are collected, not raised.
3. The failed units are swept again (once by default).
4. Units still failing after the last resweep raise BatchFailure together;
   everything that succeeded in any sweep stays persisted.

Units are processed sequentially unless ``concurrency`` > 1, in which case at
most that many are in flight at once.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, Iterable, TypeVar

from utils.errors import BatchFailure
from utils.retry import RetryPolicy, Sleep

logger = logging.getLogger(__name__)

U = TypeVar("U", bound=Hashable)
R = TypeVar("R")


class BatchProcessor(Generic[U, R]):
    """Per-unit retry, immediate persistence and a batch-wide resweep."""

    def __init__(
        self,
        fetch: Callable[[U], Awaitable[R]],
        persist: Callable[[R], Awaitable[object]],
        policy: RetryPolicy,
        resweeps: int = 1,
        concurrency: int = 1,
        label: str = "unit",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.fetch = fetch
        self.persist = persist
        self.policy = policy
        self.resweeps = resweeps
        self.concurrency = max(1, concurrency)
        self.label = label
        self.sleep = sleep

    async def process_unit(self, unit: U) -> R:
        """
        Fetch ``unit`` with retries and persist the result.

        Raises:
            RetriesExhausted: If every fetch attempt failed
            Exception: Whatever the persist step raised
        """

        def on_retry(attempt: int, delay: float, error: BaseException) -> None:
            logger.warning(
                "Fetch failed for %s %s (attempt %d), retrying in %.2fs: %s",
                self.label, unit, attempt, delay, str(error),
            )

        result = await self.policy.execute(lambda: self.fetch(unit), on_retry=on_retry, sleep=self.sleep)
        await self.persist(result)
        return result

    async def sweep(self, units: Iterable[U]) -> list[U]:
        """Process every unit once. Returns the failed units, in input order."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(unit: U) -> bool:
            async with semaphore:
                try:
                    await self.process_unit(unit)
                    return True
                except Exception as e:
                    logger.warning(
                        "Failed to process %s %s, it will be collected for retry: %s",
                        self.label, unit, str(e),
                    )
                    return False

        units = list(units)
        outcomes = await asyncio.gather(*(run_one(unit) for unit in units))
        return [unit for unit, ok in zip(units, outcomes) if not ok]

    async def run(self, units: Iterable[U]) -> None:
        """
        Process all units, resweep failures, and escalate what still fails.

        Raises:
            BatchFailure: Naming the units still failing after the last resweep
        """
        failed = await self.sweep(units)

        for resweep in range(1, self.resweeps + 1):
            if not failed:
                break
            logger.warning(
                "Starting batch resweep %d/%d for %d %ss: %s",
                resweep, self.resweeps, len(failed), self.label, failed,
            )
            failed = await self.sweep(failed)

        if failed:
            raise BatchFailure(failed, f"Failed to process {self.label}s {failed} after final resweep")
