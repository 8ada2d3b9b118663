"""
Dead-Letter Publisher

Emits a message that could not be processed to the overflow stream of its
pipeline. The original bytes are forwarded untouched; the only addition is the
``dlq-retry-count`` header. The correlation key becomes the record key, so
repeated dead-letters for the same row land on the same partition for replay.

Usage:
    from utils.dlq import DeadLetterPublisher

    dlq = DeadLetterPublisher(channel, settings.STREAM_ARTICLE_EVENTS_DLQ)
    await dlq.publish(message.value, 0, article_id)
"""

import logging
from typing import Optional, Union

from utils.config import settings
from utils.errors import DeadLetterPublishFailure
from utils.mq import MessageChannel, partition_topic
from utils.schemas import InboundMessage, OutgoingRecord

logger = logging.getLogger(__name__)

RETRY_COUNT_HEADER = "dlq-retry-count"


def read_retry_count(message: InboundMessage) -> int:
    """Retry count carried by a dead-lettered message; missing or non-numeric is 0."""
    raw = message.headers.get(RETRY_COUNT_HEADER)
    try:
        return int(raw) if raw is not None else 0
    except ValueError:
        return 0


class DeadLetterPublisher:
    """Publishes failed messages to a dead-letter stream."""

    def __init__(self, channel: MessageChannel, topic: str, partitions: Optional[int] = None) -> None:
        self.channel = channel
        self.topic = topic
        self.partitions = partitions or settings.DLQ_PARTITIONS

    def build_record(
        self,
        original_payload: Union[bytes, str],
        retry_count: int,
        correlation_key: Optional[str],
    ) -> OutgoingRecord:
        value = original_payload.encode("utf-8") if isinstance(original_payload, str) else original_payload
        return OutgoingRecord(
            topic=partition_topic(self.topic, correlation_key, self.partitions),
            key=correlation_key,
            value=value,
            headers={RETRY_COUNT_HEADER: str(retry_count)},
        )

    async def publish(
        self,
        original_payload: Union[bytes, str],
        retry_count: int,
        correlation_key: Optional[str],
    ) -> None:
        """
        Write one dead-letter record and wait for the channel acknowledgement.

        Args:
            original_payload: Message value exactly as received
            retry_count: Number of replays already attempted
            correlation_key: Row key, None when the message could not be decoded

        Raises:
            DeadLetterPublishFailure: If the channel rejects the write
        """
        record = self.build_record(original_payload, retry_count, correlation_key)

        try:
            await self.channel.send(record)
        except Exception as e:
            logger.error(
                "Failed to publish to DLQ: topic=%s, key=%s, retry_count=%d, error=%s",
                record.topic, correlation_key, retry_count, str(e),
            )
            raise DeadLetterPublishFailure(
                correlation_key, retry_count, f"Failed to publish to {record.topic}: {e}"
            ) from e

        logger.info(
            "Published to DLQ: topic=%s, key=%s, retry_count=%d",
            record.topic, correlation_key, retry_count,
        )
