"""
Stream Consumer - lifecycle shared by the CDC relay services.

Subclasses name the streams they read and handle one batch at a time; this
base owns the channel, signal handling and graceful shutdown.

Usage:
    class ArticleEventConsumer(StreamConsumer):
        def subscriptions(self):
            return [(settings.STREAM_ARTICLE_EVENTS, settings.GROUP_ANALYZER)]

        async def handle_batch(self, messages):
            ...

    await ArticleEventConsumer(channel).start()
"""

import asyncio
import logging
import signal
from abc import ABC, abstractmethod
from typing import Optional

from utils.mq import MessageChannel, create_channel
from utils.schemas import InboundMessage

logger = logging.getLogger(__name__)


class StreamConsumer(ABC):
    """
    Base consumer for batches delivered by a message channel.

    Handles:
    - Channel connection and cleanup
    - One consume loop per subscribed stream
    - Signal handling for graceful shutdown
    - RUN_ONCE mode: drain what is available, then exit
    """

    name = "consumer"

    def __init__(self, channel: Optional[MessageChannel] = None, run_once: bool = False) -> None:
        """
        Args:
            channel: Message channel, built from settings.CHANNEL_URL if omitted
            run_once: If True, stop once every stream is idle
        """
        self.channel = channel or create_channel()
        self.run_once = run_once
        self.shutdown_event = asyncio.Event()
        self._processed_count = 0

        logger.info(
            "%s initialized",
            type(self).__name__,
            extra={"run_once": run_once},
        )

    @abstractmethod
    def subscriptions(self) -> list[tuple[str, str]]:
        """(stream, consumer group) pairs to read."""

    @abstractmethod
    async def handle_batch(self, messages: list[InboundMessage]) -> None:
        """
        Handle one delivered batch.

        Raising leaves the whole batch unacknowledged for redelivery.
        """

    async def _handle(self, messages: list[InboundMessage]) -> None:
        await self.handle_batch(messages)
        self._processed_count += len(messages)

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info("Received signal %d, initiating graceful shutdown", signum)
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self, install_signal_handlers: bool = True) -> None:
        """
        Consume every subscribed stream until shutdown.

        Raises:
            Exception: Whatever a consume loop raised, after cleanup
        """
        if install_signal_handlers:
            self.setup_signal_handlers()

        logger.info("Starting %s", self.name)

        try:
            await self.channel.connect()

            consume_tasks = [
                asyncio.create_task(
                    self.channel.consume(stream, group, self._handle, stop_when_idle=self.run_once)
                )
                for stream, group in self.subscriptions()
            ]
            shutdown_task = asyncio.create_task(self.shutdown_event.wait())

            logger.info("Consumer started, waiting for messages...")

            if self.run_once:
                # Idle streams end their own loops; the first failure ends the run
                done, pending = await asyncio.wait(consume_tasks, return_when=asyncio.FIRST_EXCEPTION)
                pending.add(shutdown_task)
            else:
                done, pending = await asyncio.wait(
                    [shutdown_task, *consume_tasks],
                    return_when=asyncio.FIRST_COMPLETED,
                )

            self.channel.stop()

            # Cancel pending tasks
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            for task in done:
                if task is not shutdown_task and task.exception() is not None:
                    raise task.exception()

            logger.info(
                "Consumer shutdown complete",
                extra={"processed_messages": self._processed_count},
            )

        except Exception as e:
            logger.error("Consumer failed", extra={"consumer": self.name, "error": str(e)}, exc_info=True)
            raise

        finally:
            await self.channel.close()
            logger.info("Channel connection closed")
