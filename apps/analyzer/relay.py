"""
Analysis request relay: the business operation run for each new article.

The request is sent to the analysis-requests stream first and the request row
is upserted only once the channel has accepted it. The row is what the
staleness guard reads, so an article whose send failed is never recorded and a
dead-letter replay still relays it. A redelivered article resends the same
keyed record, so downstream sees at-least-once delivery per article.
"""

import logging
from datetime import datetime, timezone

import orjson

from utils.config import settings
from utils.db import SqliteRowStore
from utils.mq import MessageChannel
from utils.schemas import ArticleRow, OutgoingRecord

logger = logging.getLogger(__name__)


def build_request_payload(article: ArticleRow) -> bytes:
    """Analysis request body: the article image with ISO-8601 timestamps."""
    return orjson.dumps(article.model_dump(mode="json"))


class AnalysisRequestRelay:
    """Forwards and records analysis requests."""

    def __init__(self, store: SqliteRowStore, channel: MessageChannel, topic: str | None = None) -> None:
        self.store = store
        self.channel = channel
        self.topic = topic or settings.STREAM_ANALYSIS_REQUESTS

    async def __call__(self, article: ArticleRow) -> None:
        """
        Request analysis of ``article``.

        Raises:
            redis.RedisError: If the channel rejects the record
            sqlite3.Error: If the request row cannot be written
        """
        payload = build_request_payload(article)

        message_id = await self.channel.send(
            OutgoingRecord(topic=self.topic, key=article.article_id, value=payload)
        )

        await self.store.save(
            {
                "article_id": article.article_id,
                "article_updated_at": article.modified_at,
                "payload": payload.decode("utf-8"),
                "inserted_at": datetime.now(timezone.utc),
            }
        )
        logger.debug("Analysis requested: article_id=%s, message_id=%s", article.article_id, message_id)
