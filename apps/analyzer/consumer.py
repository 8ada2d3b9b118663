"""
Analyzer Consumer - Article CDC Event Handler

Consumes article change events and relays new articles to analysis.

Features:
- Batches processed concurrently, bounded by CONSUMER_CONCURRENCY
- Per-message isolation: one failing message never affects its siblings
- Decode and exhausted-retry failures are dead-lettered
- Graceful shutdown handling

Usage:
    # Consumer mode (default)
    python -m apps.analyzer

    # Drain the stream and exit
    RUN_ONCE=true python -m apps.analyzer
"""

import asyncio
import logging
import os
import sys
from typing import Optional

from apps.analyzer.relay import AnalysisRequestRelay
from utils.config import settings
from utils.consumer import StreamConsumer
from utils.db import ANALYSIS_REQUESTS, SqliteRowStore, init_schema
from utils.dlq import DeadLetterPublisher
from utils.logging import setup_logging
from utils.mq import MessageChannel, create_channel
from utils.relay import ChangeEventProcessor, Outcome
from utils.retry import RetryPolicy
from utils.schemas import ArticleRow, InboundMessage
from utils.staleness import StalenessGuard

setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

logger = logging.getLogger(__name__)


def build_processor(
    channel: MessageChannel,
    store: Optional[SqliteRowStore] = None,
    policy: Optional[RetryPolicy] = None,
    dlq_topic: Optional[str] = None,
) -> ChangeEventProcessor[ArticleRow]:
    """Article event processor wired from settings; the guard and the relay share one store."""
    store = store or SqliteRowStore(ANALYSIS_REQUESTS)
    return ChangeEventProcessor(
        name="analyzer",
        row_type=ArticleRow,
        operation=AnalysisRequestRelay(store, channel),
        guard=StalenessGuard(store),
        dead_letters=DeadLetterPublisher(channel, dlq_topic or settings.STREAM_ARTICLE_EVENTS_DLQ),
        policy=policy or RetryPolicy.from_settings("PROCESS"),
    )


class ArticleEventConsumer(StreamConsumer):
    """Relays article creation events to the analysis-requests stream."""

    name = "analyzer"

    def __init__(
        self,
        channel: Optional[MessageChannel] = None,
        processor: Optional[ChangeEventProcessor[ArticleRow]] = None,
        concurrency: Optional[int] = None,
        run_once: bool = False,
    ) -> None:
        super().__init__(channel, run_once=run_once)
        self.processor = processor or build_processor(self.channel)
        self.concurrency = concurrency or settings.CONSUMER_CONCURRENCY
        self.outcomes: dict[Outcome, int] = {outcome: 0 for outcome in Outcome}

    def subscriptions(self) -> list[tuple[str, str]]:
        return [(settings.STREAM_ARTICLE_EVENTS, settings.GROUP_ANALYZER)]

    async def handle_batch(self, messages: list[InboundMessage]) -> None:
        """
        Process every message of the batch, each in isolation.

        Raises:
            DeadLetterPublishFailure: If a message could not be dead-lettered;
                raised only after every sibling has finished
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def handle_one(message: InboundMessage) -> Outcome:
            async with semaphore:
                return await self.processor.handle(message)

        results = await asyncio.gather(*(handle_one(m) for m in messages), return_exceptions=True)

        failure: Optional[BaseException] = None
        for message, result in zip(messages, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Message left unacknowledged: stream=%s, message_id=%s, error=%s",
                    message.stream, message.message_id, str(result),
                )
                failure = failure or result
            else:
                self.outcomes[result] += 1

        if failure is not None:
            raise failure

        logger.info(
            "Batch processed: size=%d (totals: committed=%d, skipped=%d, stale=%d, dead_lettered=%d)",
            len(messages),
            self.outcomes[Outcome.COMMITTED],
            self.outcomes[Outcome.SKIPPED],
            self.outcomes[Outcome.SKIPPED_STALE],
            self.outcomes[Outcome.DEAD_LETTERED],
        )


async def main() -> None:
    """Main entry point for the analyzer consumer."""
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    init_schema()
    consumer = ArticleEventConsumer(create_channel(), run_once=run_once)

    try:
        await consumer.start()
    except Exception as e:
        logger.error("Analyzer failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
