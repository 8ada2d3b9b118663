"""
Change-event processing shared by the CDC pipelines.

One message moves through:
    Received -> Decoded -> {Skipped | Skipped-Stale | Processing} -> {Committed | DeadLettered}

Decode failures are dead-lettered right here, without a correlation key, so a
malformed payload never blocks the stream. Exhausted business operations are
dead-lettered with the row key. A dead-letter publish failure is never caught:
it propagates to the consume loop, the batch stays unacknowledged and the
channel redelivers it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, Type

from utils.dlq import DeadLetterPublisher
from utils.envelope import creation_row, decode_envelope
from utils.errors import DecodeError, RetriesExhausted
from utils.retry import RetryPolicy, Sleep
from utils.schemas import InboundMessage, RowT
from utils.staleness import StalenessGuard

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Terminal state of one message."""

    SKIPPED = "skipped"
    SKIPPED_STALE = "skipped_stale"
    COMMITTED = "committed"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class ParsedEvent(Generic[RowT]):
    """A creation-class row together with the message that carried it."""

    message: InboundMessage
    row: RowT


class ChangeEventProcessor(Generic[RowT]):
    """Decode, guard and apply change events for one pipeline."""

    def __init__(
        self,
        name: str,
        row_type: Type[RowT],
        operation: Callable[[RowT], Awaitable[None]],
        guard: StalenessGuard,
        dead_letters: DeadLetterPublisher,
        policy: RetryPolicy,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.row_type = row_type
        self.operation = operation
        self.guard = guard
        self.dead_letters = dead_letters
        self.policy = policy
        self.sleep = sleep

    def parse(self, message: InboundMessage) -> Optional[ParsedEvent[RowT]]:
        """
        Decode ``message`` and select its creation row.

        Returns:
            The parsed event, or None when the event is skipped

        Raises:
            DecodeError: If the payload is malformed
        """
        envelope = decode_envelope(message.value, self.row_type)
        row = creation_row(envelope, {"stream": message.stream, "message_id": message.message_id})
        if row is None:
            return None

        return ParsedEvent(message=message, row=row)

    async def reject(self, message: InboundMessage, error: DecodeError, dead_letter_retry_count: int = 0) -> Outcome:
        """Dead-letter an undecodable message; it has no correlation key."""
        logger.error("[%s] Failed to decode message %s: %s", self.name, message.message_id, str(error))
        await self.dead_letters.publish(message.value, dead_letter_retry_count, None)
        return Outcome.DEAD_LETTERED

    async def apply(self, event: ParsedEvent[RowT], dead_letter_retry_count: int = 0) -> Outcome:
        """
        Run the business operation for one row unless it is stale.

        Args:
            event: Parsed creation event
            dead_letter_retry_count: Header value used if the event is dead-lettered
        """
        key = event.row.key

        if await self.guard.is_stale(key, event.row.event_timestamp):
            return Outcome.SKIPPED_STALE

        def on_retry(attempt: int, delay: float, error: BaseException) -> None:
            logger.warning(
                "[%s] Retrying key=%s (attempt=%d, delay=%.2fs): %s",
                self.name, key, attempt, delay, str(error),
            )

        try:
            await self.policy.execute(lambda: self.operation(event.row), on_retry=on_retry, sleep=self.sleep)
        except RetriesExhausted as e:
            logger.error(
                "[%s] Processing failed for key=%s after %d attempts, dead-lettering: %s",
                self.name, key, e.attempts, str(e.last_error),
            )
            await self.dead_letters.publish(event.message.value, dead_letter_retry_count, key)
            return Outcome.DEAD_LETTERED

        logger.info("[%s] Processed key=%s", self.name, key)
        return Outcome.COMMITTED

    async def handle(self, message: InboundMessage, dead_letter_retry_count: int = 0) -> Outcome:
        """Process one message end to end and report its terminal state."""
        try:
            event = self.parse(message)
        except DecodeError as e:
            return await self.reject(message, e, dead_letter_retry_count)

        if event is None:
            return Outcome.SKIPPED
        return await self.apply(event, dead_letter_retry_count)
