"""
Dead-Letter Replay Consumer

Gives dead-lettered messages another chance. The retry count travels in the
``dlq-retry-count`` header; a message that fails again goes back to the same
dead-letter stream with the count incremented, until DLQ_MAX_RETRIES.

Usage:
    python -m apps.replay

    # Drain the dead-letter streams and exit
    RUN_ONCE=true python -m apps.replay
"""

import asyncio
import logging
import os
import sys
from typing import Any, Optional

from apps.analyzer.consumer import build_processor as build_analyzer_processor
from apps.indexer.consumer import build_processor as build_indexer_processor
from apps.indexer.index import SearchIndex
from utils.config import settings
from utils.consumer import StreamConsumer
from utils.db import SEARCH_DOCUMENTS, SqliteRowStore, init_schema
from utils.dlq import read_retry_count
from utils.logging import setup_logging
from utils.mq import MessageChannel, create_channel, partition_streams
from utils.relay import ChangeEventProcessor, Outcome
from utils.retry import RetryPolicy, Sleep
from utils.schemas import InboundMessage
from utils.staleness import StalenessGuard

setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

logger = logging.getLogger(__name__)

# One attempt per replay; the backoff between replays comes from the retry count
SINGLE_ATTEMPT = RetryPolicy(max_retries=0)


class DeadLetterReplayConsumer(StreamConsumer):
    """Replays dead-lettered messages through the processor of their pipeline."""

    name = "replay"

    def __init__(
        self,
        channel: MessageChannel,
        routes: dict[str, ChangeEventProcessor[Any]],
        policy: Optional[RetryPolicy] = None,
        group: Optional[str] = None,
        sleep: Sleep = asyncio.sleep,
        run_once: bool = False,
    ) -> None:
        """
        Args:
            channel: Message channel
            routes: Processor for each dead-letter stream
            policy: Replay budget and backoff, defaults to the DLQ_* settings
            group: Consumer group, defaults to settings.GROUP_REPLAY
            sleep: Awaitable sleep, injectable for tests
            run_once: If True, stop once every stream is idle
        """
        self.routes = routes
        self.policy = policy or RetryPolicy.from_settings("DLQ")
        self.group = group or settings.GROUP_REPLAY
        self.sleep = sleep
        super().__init__(channel, run_once=run_once)

    def subscriptions(self) -> list[tuple[str, str]]:
        return [(stream, self.group) for stream in self.routes]

    async def replay(self, message: InboundMessage) -> Optional[Outcome]:
        """
        Replay one message.

        Returns:
            The outcome of reprocessing, or None if the message was discarded
        """
        retry_count = read_retry_count(message)

        if retry_count >= self.policy.max_retries:
            logger.warning(
                "Discarding dead-lettered message after %d retries: stream=%s, key=%s, message_id=%s",
                retry_count, message.stream, message.key, message.message_id,
            )
            return None

        if retry_count > 0:
            delay = self.policy.delay_for(retry_count)
            logger.info(
                "Backing off %.2fs before replay %d: stream=%s, key=%s",
                delay, retry_count + 1, message.stream, message.key,
            )
            await self.sleep(delay)

        processor = self.routes[message.stream]
        outcome = await processor.handle(message, dead_letter_retry_count=retry_count + 1)
        logger.info(
            "Replayed dead-lettered message: stream=%s, key=%s, retry_count=%d, outcome=%s",
            message.stream, message.key, retry_count, outcome.value,
        )
        return outcome

    async def handle_batch(self, messages: list[InboundMessage]) -> None:
        for message in messages:
            await self.replay(message)


def build_routes(channel: MessageChannel) -> dict[str, ChangeEventProcessor[Any]]:
    """Processors for every dead-letter stream, partitions included."""
    routes: dict[str, ChangeEventProcessor[Any]] = {}

    analyzer = build_analyzer_processor(channel, policy=SINGLE_ATTEMPT)
    for stream in partition_streams(settings.STREAM_ARTICLE_EVENTS_DLQ, settings.DLQ_PARTITIONS):
        routes[stream] = analyzer

    store = SqliteRowStore(SEARCH_DOCUMENTS)
    indexer = build_indexer_processor(channel, SearchIndex(store), StalenessGuard(store), policy=SINGLE_ATTEMPT)
    for stream in partition_streams(settings.STREAM_ANALYSIS_EVENTS_DLQ, settings.DLQ_PARTITIONS):
        routes[stream] = indexer

    return routes


async def main() -> None:
    """Main entry point for the replay consumer."""
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    init_schema()
    channel = create_channel()
    consumer = DeadLetterReplayConsumer(channel, build_routes(channel), run_once=run_once)

    try:
        await consumer.start()
    except Exception as e:
        logger.error("Replay failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
