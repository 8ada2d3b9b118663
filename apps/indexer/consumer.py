"""
Indexer Consumer - Analysis-Result Outbox Event Handler

Consumes outbox change events and keeps the search index current.

Features:
- Two-tier batch: one bulk index call, then per-record fallback
- Per-record fallback only for the keys a partial bulk failure names
- Decode and per-record failures are dead-lettered
- Graceful shutdown handling

Usage:
    # Consumer mode (default)
    python -m apps.indexer

    # Drain the stream and exit
    RUN_ONCE=true python -m apps.indexer
"""

import asyncio
import logging
import os
import sys
from typing import Optional

from apps.indexer.index import SearchIndex
from apps.indexer.service import IndexingService
from utils.config import settings
from utils.consumer import StreamConsumer
from utils.db import SEARCH_DOCUMENTS, SqliteRowStore, init_schema
from utils.dlq import DeadLetterPublisher
from utils.errors import BulkIndexPartialFailure, DecodeError, RetriesExhausted
from utils.logging import setup_logging
from utils.mq import MessageChannel, create_channel
from utils.relay import ChangeEventProcessor, ParsedEvent
from utils.retry import RetryPolicy
from utils.schemas import InboundMessage, OutboxRow
from utils.staleness import StalenessGuard

setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

logger = logging.getLogger(__name__)


def build_processor(
    channel: MessageChannel,
    index: SearchIndex,
    guard: StalenessGuard,
    policy: Optional[RetryPolicy] = None,
    dlq_topic: Optional[str] = None,
) -> ChangeEventProcessor[OutboxRow]:
    """Per-record processor: indexes one document, dead-letters it on failure."""
    return ChangeEventProcessor(
        name="indexer",
        row_type=OutboxRow,
        operation=index.index,
        guard=guard,
        dead_letters=DeadLetterPublisher(channel, dlq_topic or settings.STREAM_ANALYSIS_EVENTS_DLQ),
        policy=policy or RetryPolicy.from_settings("PROCESS"),
    )


class AnalysisResultConsumer(StreamConsumer):
    """Indexes analysis results relayed from the outbox."""

    name = "indexer"

    def __init__(
        self,
        channel: Optional[MessageChannel] = None,
        store: Optional[SqliteRowStore] = None,
        policy: Optional[RetryPolicy] = None,
        run_once: bool = False,
    ) -> None:
        super().__init__(channel, run_once=run_once)
        store = store or SqliteRowStore(SEARCH_DOCUMENTS)
        policy = policy or RetryPolicy.from_settings("PROCESS")
        index = SearchIndex(store)
        guard = StalenessGuard(store)
        self.service = IndexingService(index, guard, policy)
        self.processor = build_processor(self.channel, index, guard, policy)

    def subscriptions(self) -> list[tuple[str, str]]:
        return [(settings.STREAM_ANALYSIS_EVENTS, settings.GROUP_INDEXER)]

    async def decode_batch(self, messages: list[InboundMessage]) -> list[ParsedEvent[OutboxRow]]:
        """Creation events of the batch; undecodable messages are dead-lettered."""
        events = []
        for message in messages:
            try:
                event = self.processor.parse(message)
            except DecodeError as e:
                await self.processor.reject(message, e)
                continue
            if event is not None:
                events.append(event)
        return events

    async def handle_batch(self, messages: list[InboundMessage]) -> None:
        events = await self.decode_batch(messages)
        if not events:
            return

        try:
            indexed = await self.service.index_all(events)
            logger.info("Bulk indexed batch: size=%d, indexed=%d", len(messages), indexed)
            return
        except RetriesExhausted as e:
            fallback = self.select_fallback(events, e.last_error)

        logger.warning(
            "Bulk index failed, falling back to per-record indexing for %d of %d documents",
            len(fallback), len(events),
        )
        for event in fallback:
            await self.processor.apply(event)

    @staticmethod
    def select_fallback(
        events: list[ParsedEvent[OutboxRow]],
        error: BaseException,
    ) -> list[ParsedEvent[OutboxRow]]:
        """A partial failure names the keys to retry; any other failure retries everything."""
        if isinstance(error, BulkIndexPartialFailure):
            failed = set(error.failed_keys)
            return [event for event in events if event.row.key in failed]
        return events


async def main() -> None:
    """Main entry point for the indexer consumer."""
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    init_schema()
    consumer = AnalysisResultConsumer(create_channel(), run_once=run_once)

    try:
        await consumer.start()
    except Exception as e:
        logger.error("Indexer failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
