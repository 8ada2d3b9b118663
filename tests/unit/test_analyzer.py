"""
Analyzer Relay Tests

Article creation events become analysis requests; everything that cannot be
processed is dead-lettered, and only a failed dead-letter publish holds the
batch back for redelivery.
"""

from datetime import datetime, timezone

import orjson
import pytest

from apps.analyzer.consumer import ArticleEventConsumer, build_processor
from apps.analyzer.relay import AnalysisRequestRelay
from tests.factories import article_row, envelope, message
from utils.config import settings
from utils.dlq import RETRY_COUNT_HEADER, DeadLetterPublisher
from utils.errors import DeadLetterPublishFailure
from utils.mq import InMemoryChannel
from utils.relay import ChangeEventProcessor, Outcome
from utils.retry import RetryPolicy
from utils.schemas import ArticleRow, OutgoingRecord
from utils.staleness import StalenessGuard

ARTICLE_EVENTS = settings.STREAM_ARTICLE_EVENTS
ARTICLE_DLQ = settings.STREAM_ARTICLE_EVENTS_DLQ
REQUESTS = settings.STREAM_ANALYSIS_REQUESTS

T1 = "2025-01-15T01:00:00+00:00"
T2 = "2025-01-15T01:05:00+00:00"


class DeadLetterOutage(InMemoryChannel):
    """Channel whose dead-letter stream rejects writes."""

    async def send(self, record: OutgoingRecord) -> str:
        if record.topic.startswith(ARTICLE_DLQ):
            raise ConnectionError("dead-letter stream unavailable")
        return await super().send(record)


class RequestsOutage(InMemoryChannel):
    """Channel whose analysis-requests stream rejects writes until healed."""

    def __init__(self) -> None:
        super().__init__()
        self.healthy = False

    async def send(self, record: OutgoingRecord) -> str:
        if record.topic == REQUESTS and not self.healthy:
            raise ConnectionError("analysis-requests stream unavailable")
        return await super().send(record)


def processor_for(channel, store, sleep, operation=None) -> ChangeEventProcessor[ArticleRow]:
    return ChangeEventProcessor(
        name="analyzer",
        row_type=ArticleRow,
        operation=operation or AnalysisRequestRelay(store, channel),
        guard=StalenessGuard(store),
        dead_letters=DeadLetterPublisher(channel, ARTICLE_DLQ, partitions=1),
        policy=RetryPolicy(max_retries=2, base_delay=0.1),
        sleep=sleep,
    )


class TestChangeEventProcessor:
    async def test_creation_event_is_relayed(self, channel, requests_store, sleep):
        processor = processor_for(channel, requests_store, sleep)

        outcome = await processor.handle(message(envelope("c", after=article_row())))

        assert outcome is Outcome.COMMITTED
        sent = channel.records(REQUESTS)
        assert len(sent) == 1
        assert sent[0].key == "2025-01-15-1001"
        assert orjson.loads(sent[0].value)["article_id"] == "2025-01-15-1001"
        assert await requests_store.find_timestamp_by_key("2025-01-15-1001") == datetime(
            2025, 1, 15, 1, 0, tzinfo=timezone.utc
        )

    @pytest.mark.parametrize("op", ["u", "d"])
    async def test_non_creation_event_is_skipped(self, channel, requests_store, sleep, op):
        processor = processor_for(channel, requests_store, sleep)

        outcome = await processor.handle(message(envelope(op, after=article_row(), before=article_row())))

        assert outcome is Outcome.SKIPPED
        assert channel.records(REQUESTS) == []

    async def test_newer_then_older_keeps_newer(self, channel, requests_store, sleep):
        processor = processor_for(channel, requests_store, sleep)

        first = await processor.handle(message(envelope("c", after=article_row(modified_at=T2))))
        second = await processor.handle(message(envelope("c", after=article_row(modified_at=T1))))

        assert (first, second) == (Outcome.COMMITTED, Outcome.SKIPPED_STALE)
        assert await requests_store.find_timestamp_by_key("2025-01-15-1001") == datetime.fromisoformat(T2)
        assert len(channel.records(REQUESTS)) == 1

    async def test_older_then_newer_moves_forward(self, channel, requests_store, sleep):
        processor = processor_for(channel, requests_store, sleep)

        await processor.handle(message(envelope("c", after=article_row(modified_at=T1))))
        outcome = await processor.handle(message(envelope("c", after=article_row(modified_at=T2))))

        assert outcome is Outcome.COMMITTED
        assert await requests_store.find_timestamp_by_key("2025-01-15-1001") == datetime.fromisoformat(T2)

    async def test_undecodable_message_is_dead_lettered_without_key(self, channel, requests_store, sleep):
        processor = processor_for(channel, requests_store, sleep)
        raw = b'{"op": "c", "after": {"article_id": 1}'

        outcome = await processor.handle(message(raw))

        assert outcome is Outcome.DEAD_LETTERED
        dead = channel.records(ARTICLE_DLQ)
        assert len(dead) == 1
        assert dead[0].value == raw
        assert dead[0].key is None
        assert dead[0].headers == {RETRY_COUNT_HEADER: "0"}

    async def test_exhausted_operation_is_dead_lettered_with_key(self, channel, requests_store, sleep):
        calls = []

        async def unavailable(article: ArticleRow) -> None:
            calls.append(article.article_id)
            raise ConnectionError("analysis stream unavailable")

        processor = processor_for(channel, requests_store, sleep, operation=unavailable)
        raw = envelope("c", after=article_row())

        outcome = await processor.handle(message(raw), dead_letter_retry_count=1)

        assert outcome is Outcome.DEAD_LETTERED
        assert len(calls) == 3
        assert sleep.delays == [0.1, 0.2]
        dead = channel.records(ARTICLE_DLQ)
        assert [(d.key, d.value, d.headers[RETRY_COUNT_HEADER]) for d in dead] == [("2025-01-15-1001", raw, "1")]

    async def test_failed_send_records_no_request(self, requests_store, sleep):
        channel = RequestsOutage()
        processor = processor_for(channel, requests_store, sleep)
        raw = envelope("c", after=article_row())

        outcome = await processor.handle(message(raw))

        assert outcome is Outcome.DEAD_LETTERED
        assert channel.records(REQUESTS) == []
        assert await requests_store.find_timestamp_by_key("2025-01-15-1001") is None
        assert [(d.key, d.value) for d in channel.records(ARTICLE_DLQ)] == [("2025-01-15-1001", raw)]

    async def test_dead_letter_failure_propagates(self, requests_store, sleep):
        processor = processor_for(DeadLetterOutage(), requests_store, sleep)

        with pytest.raises(DeadLetterPublishFailure):
            await processor.handle(message(b"not json"))


class TestArticleEventConsumer:
    async def test_drains_stream_and_acknowledges(self, channel, requests_store):
        for no in (1, 2, 3):
            await channel.send(
                OutgoingRecord(
                    topic=ARTICLE_EVENTS,
                    value=envelope("c", after=article_row(article_id=f"2025-01-15-{no}")),
                )
            )
        await channel.send(OutgoingRecord(topic=ARTICLE_EVENTS, value=envelope("d", before=article_row())))

        consumer = ArticleEventConsumer(
            channel,
            processor=build_processor(channel, requests_store, policy=RetryPolicy(max_retries=0)),
            run_once=True,
        )
        await consumer.start(install_signal_handlers=False)

        assert channel.committed(ARTICLE_EVENTS, settings.GROUP_ANALYZER) == 4
        assert sorted(r.key for r in channel.records(REQUESTS)) == ["2025-01-15-1", "2025-01-15-2", "2025-01-15-3"]
        assert consumer.outcomes[Outcome.COMMITTED] == 3
        assert consumer.outcomes[Outcome.SKIPPED] == 1

    async def test_failing_message_does_not_affect_siblings(self, channel, requests_store, sleep):
        relay = AnalysisRequestRelay(requests_store, channel)

        async def operation(article: ArticleRow) -> None:
            if article.article_id == "2025-01-15-2":
                raise RuntimeError("payload too large")
            await relay(article)

        consumer = ArticleEventConsumer(
            channel, processor=processor_for(channel, requests_store, sleep, operation=operation)
        )
        batch = [
            message(envelope("c", after=article_row(article_id=f"2025-01-15-{no}")), message_id=f"{no}-0")
            for no in (1, 2, 3)
        ]

        await consumer.handle_batch(batch)

        assert sorted(r.key for r in channel.records(REQUESTS)) == ["2025-01-15-1", "2025-01-15-3"]
        assert [r.key for r in channel.records(ARTICLE_DLQ)] == ["2025-01-15-2"]

    async def test_dead_letter_outage_leaves_batch_unacknowledged(self, requests_store):
        channel = DeadLetterOutage()
        await channel.send(OutgoingRecord(topic=ARTICLE_EVENTS, value=b"not json"))
        await channel.send(OutgoingRecord(topic=ARTICLE_EVENTS, value=envelope("c", after=article_row())))

        consumer = ArticleEventConsumer(
            channel,
            processor=build_processor(channel, requests_store, policy=RetryPolicy(max_retries=0)),
            run_once=True,
        )

        with pytest.raises(DeadLetterPublishFailure):
            await consumer.start(install_signal_handlers=False)

        assert channel.committed(ARTICLE_EVENTS, settings.GROUP_ANALYZER) == 0
        # The healthy sibling still finished before the batch failed
        assert [r.key for r in channel.records(REQUESTS)] == ["2025-01-15-1001"]
