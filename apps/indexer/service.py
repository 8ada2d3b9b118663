"""
Bulk indexing of a decoded batch.

Stale rows are dropped before the bulk call, so a replayed batch never
overwrites a newer document.
"""

import asyncio
import logging

from apps.indexer.index import SearchIndex
from utils.relay import ParsedEvent
from utils.retry import RetryPolicy, Sleep
from utils.schemas import OutboxRow
from utils.staleness import StalenessGuard

logger = logging.getLogger(__name__)


class IndexingService:
    def __init__(
        self,
        index: SearchIndex,
        guard: StalenessGuard,
        policy: RetryPolicy,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.index = index
        self.guard = guard
        self.policy = policy
        self.sleep = sleep

    async def fresh_events(self, events: list[ParsedEvent[OutboxRow]]) -> list[ParsedEvent[OutboxRow]]:
        fresh = []
        for event in events:
            if not await self.guard.is_stale(event.row.key, event.row.event_timestamp):
                fresh.append(event)
        return fresh

    async def index_all(self, events: list[ParsedEvent[OutboxRow]]) -> int:
        """
        Bulk index the non-stale rows of ``events``.

        Returns:
            Number of rows sent to the index

        Raises:
            RetriesExhausted: If every bulk attempt failed; ``last_error`` may be
                a BulkIndexPartialFailure naming the rejected keys
        """
        fresh = await self.fresh_events(events)
        if not fresh:
            return 0

        def on_retry(attempt: int, delay: float, error: BaseException) -> None:
            logger.warning(
                "Bulk index failed (attempt %d, %d documents), retrying in %.2fs: %s",
                attempt, len(fresh), delay, str(error),
            )

        rows = [event.row for event in fresh]
        await self.policy.execute(lambda: self.index.index_all(rows), on_retry=on_retry, sleep=self.sleep)
        return len(fresh)
