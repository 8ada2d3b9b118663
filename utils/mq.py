"""
Message channels: Redis Streams wrapper with connection pooling and error handling,
plus an in-memory channel for local runs and tests.

A channel accepts acknowledged writes (send) and delivers batches of raw
messages to a handler (consume). A batch is acknowledged only after the handler
returns; if the handler raises, the error propagates and the batch stays
pending, to be redelivered the next time the group is consumed.

Backends are selected from CHANNEL_URL through a capability registry:
    redis://, rediss://, unix://  -> RedisStreamChannel
    memory://                     -> InMemoryChannel
"""

import asyncio
import logging
import zlib
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.config import settings
from utils.registry import CapabilityRegistry
from utils.schemas import InboundMessage, OutgoingRecord

logger = logging.getLogger(__name__)

BatchHandler = Callable[[list[InboundMessage]], Awaitable[None]]

VALUE_FIELD = b"value"
KEY_FIELD = b"key"
HEADER_PREFIX = b"h:"


def partition_topic(topic: str, key: Optional[str], partitions: int) -> str:
    """
    Destination stream for ``key`` so records sharing a key land together.

    With a single partition the topic is used as is; key-less records go to
    partition 0.
    """
    if partitions <= 1:
        return topic
    partition = zlib.crc32(key.encode("utf-8")) % partitions if key else 0
    return f"{topic}.{partition}"


def partition_streams(topic: str, partitions: int) -> list[str]:
    """Every stream partition_topic() can route ``topic`` to."""
    if partitions <= 1:
        return [topic]
    return [f"{topic}.{partition}" for partition in range(partitions)]


class MessageChannel(ABC):
    """Acknowledged writes and at-least-once batch delivery."""

    def __init__(self) -> None:
        self._stop_event = asyncio.Event()

    async def connect(self) -> None:
        """Establish the underlying connection."""

    @abstractmethod
    async def send(self, record: OutgoingRecord) -> str:
        """Write ``record`` and wait for the acknowledgement. Returns the message id."""

    @abstractmethod
    async def consume(
        self,
        stream: str,
        group: str,
        handler: BatchHandler,
        consumer: Optional[str] = None,
        batch_size: Optional[int] = None,
        stop_when_idle: bool = False,
    ) -> None:
        """Deliver batches to ``handler`` until stop() or, optionally, until idle."""

    def stop(self) -> None:
        """Signal the consume loop to stop."""
        self._stop_event.set()

    async def close(self) -> None:
        """Release resources."""


class RedisStreamChannel(MessageChannel):
    """Redis Streams channel with consumer groups and connection pooling."""

    def __init__(self, redis_url: Optional[str] = None) -> None:
        """Initialize Redis channel.

        Args:
            redis_url: Redis connection URL, defaults to settings.CHANNEL_URL
        """
        super().__init__()
        self.redis_url = redis_url or settings.CHANNEL_URL
        self.client: Optional[redis.Redis] = None

    @retry(
        retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def connect(self) -> None:
        """Establish Redis connection with connection pooling."""
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                decode_responses=False,  # payload bytes must stay untouched
            )
        await self.client.ping()

    async def send(self, record: OutgoingRecord) -> str:
        """Append ``record`` to its stream; returns once Redis has accepted it.

        Raises:
            redis.RedisError: If the write fails
        """
        if self.client is None:
            await self.connect()

        fields: dict[bytes, bytes] = {VALUE_FIELD: record.value}
        if record.key is not None:
            fields[KEY_FIELD] = record.key.encode("utf-8")
        for name, value in record.headers.items():
            fields[HEADER_PREFIX + name.encode("utf-8")] = value.encode("utf-8")

        message_id = await self.client.xadd(record.topic, fields)
        return message_id.decode("utf-8") if isinstance(message_id, bytes) else str(message_id)

    async def _ensure_group(self, stream: str, group: str) -> None:
        try:
            await self.client.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
            logger.info("Created consumer group: stream=%s, group=%s", stream, group)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    @staticmethod
    def _to_message(stream: str, message_id: bytes, fields: dict[bytes, bytes]) -> InboundMessage:
        headers = {
            name[len(HEADER_PREFIX):].decode("utf-8"): value.decode("utf-8")
            for name, value in fields.items()
            if name.startswith(HEADER_PREFIX)
        }
        key = fields.get(KEY_FIELD)
        return InboundMessage(
            stream=stream,
            message_id=message_id.decode("utf-8"),
            value=fields.get(VALUE_FIELD, b""),
            key=key.decode("utf-8") if key is not None else None,
            headers=headers,
        )

    async def consume(
        self,
        stream: str,
        group: str,
        handler: BatchHandler,
        consumer: Optional[str] = None,
        batch_size: Optional[int] = None,
        stop_when_idle: bool = False,
    ) -> None:
        """
        Read the stream through a consumer group and hand batches to ``handler``.

        Entries left pending by a previous run of this consumer are replayed
        first, then new entries are read.
        """
        if self.client is None:
            await self.connect()

        consumer = consumer or settings.CONSUMER_NAME
        batch_size = batch_size or settings.CONSUMER_BATCH_SIZE
        await self._ensure_group(stream, group)

        reading_pending = True

        while not self._stop_event.is_set():
            try:
                response = await self.client.xreadgroup(
                    groupname=group,
                    consumername=consumer,
                    streams={stream: "0" if reading_pending else ">"},
                    count=batch_size,
                    block=None if reading_pending else settings.CONSUMER_BLOCK_MS,
                )
            except redis.RedisError as e:
                logger.error("Redis error while reading stream %s: %s", stream, str(e))
                await asyncio.sleep(1)  # Brief pause before retry
                continue

            entries = response[0][1] if response else []
            if not entries:
                if reading_pending:
                    reading_pending = False
                    continue
                if stop_when_idle:
                    return
                continue

            messages = [self._to_message(stream, message_id, fields) for message_id, fields in entries]

            try:
                await handler(messages)
            except Exception as e:
                logger.error(
                    "Handler failed, batch left pending: stream=%s, size=%d, error=%s",
                    stream, len(messages), str(e),
                )
                raise

            await self.client.xack(stream, group, *[m.message_id for m in messages])

    async def close(self) -> None:
        """Close Redis connection and cleanup resources."""
        if self.client:
            await self.client.aclose()
            self.client = None


class InMemoryChannel(MessageChannel):
    """Process-local channel; each group keeps its own committed offset."""

    def __init__(self, url: str = "memory://") -> None:
        super().__init__()
        self.url = url
        self._streams: dict[str, list[tuple[str, OutgoingRecord]]] = defaultdict(list)
        self._offsets: dict[tuple[str, str], int] = defaultdict(int)
        self._sequence = 0

    async def send(self, record: OutgoingRecord) -> str:
        self._sequence += 1
        message_id = f"{self._sequence}-0"
        self._streams[record.topic].append((message_id, record))
        return message_id

    def records(self, topic: str) -> list[OutgoingRecord]:
        """Everything written to ``topic`` so far."""
        return [record for _, record in self._streams.get(topic, [])]

    def committed(self, stream: str, group: str) -> int:
        """Number of messages acknowledged by ``group``."""
        return self._offsets[(stream, group)]

    async def consume(
        self,
        stream: str,
        group: str,
        handler: BatchHandler,
        consumer: Optional[str] = None,
        batch_size: Optional[int] = None,
        stop_when_idle: bool = False,
    ) -> None:
        batch_size = batch_size or settings.CONSUMER_BATCH_SIZE

        while not self._stop_event.is_set():
            offset = self._offsets[(stream, group)]
            entries = self._streams[stream][offset:offset + batch_size]

            if not entries:
                if stop_when_idle:
                    return
                await asyncio.sleep(settings.CONSUMER_BLOCK_MS / 1000)
                continue

            messages = [
                InboundMessage(
                    stream=stream,
                    message_id=message_id,
                    value=record.value,
                    key=record.key,
                    headers=dict(record.headers),
                )
                for message_id, record in entries
            ]

            await handler(messages)
            self._offsets[(stream, group)] = offset + len(entries)


channel_backends: CapabilityRegistry[Callable[[str], MessageChannel]] = CapabilityRegistry("message channel")

channel_backends.register(
    "redis-streams",
    supports=lambda url: url.startswith(("redis://", "rediss://", "unix://")),
)(RedisStreamChannel)

channel_backends.register(
    "in-memory",
    supports=lambda url: url.startswith("memory://"),
)(InMemoryChannel)


def create_channel(url: Optional[str] = None) -> MessageChannel:
    """Build the channel backend that supports ``url`` (defaults to settings.CHANNEL_URL).

    Raises:
        UnsupportedBackendError: If no backend accepts the URL
    """
    url = url or settings.CHANNEL_URL
    backend = channel_backends.select(url)
    logger.info("Using message channel backend: %s", backend.name)
    return backend.factory(url)
