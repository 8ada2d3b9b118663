"""
Collection Scheduler - Cron and On-Demand Execution

Manages scheduled and manual collection runs using APScheduler.

Features:
- Cron-based scheduling (configurable via COLLECT_SCHEDULE_CRON)
- RUN_ONCE mode for immediate execution
- Collects "today" in COLLECT_TIMEZONE
- Graceful shutdown handling

Usage:
    # Scheduled mode (default)
    python -m apps.collector

    # Run once and exit
    RUN_ONCE=true python -m apps.collector
"""

import asyncio
import logging
import os
import signal
import sys
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from apps.collector.service import ArticleCollector, build_collector
from apps.collector.source import SafetyDataSource
from utils.config import settings
from utils.db import ARTICLES, SqliteRowStore, init_schema
from utils.logging import setup_logging

setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)

logger = logging.getLogger(__name__)


class CollectionScheduler:
    """
    Scheduler for periodic or on-demand collection runs.

    Handles:
    - APScheduler setup and management
    - Cron-based scheduling
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown
    """

    def __init__(self, run_once: bool = False, collector: Optional[ArticleCollector] = None) -> None:
        """
        Initialize scheduler.

        Args:
            run_once: If True, run collection once and exit
            collector: Pre-built collector (tests); built from settings on start otherwise
        """
        self.run_once = run_once
        self.collector = collector
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()
        self._client: httpx.AsyncClient | None = None

        logger.info(
            "CollectionScheduler initialized",
            extra={
                "run_once": run_once,
                "cron_schedule": settings.COLLECT_SCHEDULE_CRON,
                "page_size": settings.COLLECT_PAGE_SIZE,
            },
        )

    def today(self) -> date:
        return datetime.now(ZoneInfo(settings.COLLECT_TIMEZONE)).date()

    async def execute_collection(self) -> None:
        """
        Collect today's articles.

        A failed run is logged and re-raised; in scheduled mode APScheduler
        records the failure and keeps the schedule.
        """
        today = self.today()
        logger.info("Starting collection", extra={"date": today.isoformat()})

        try:
            pages = await self.collector.collect_for_date(today, settings.COLLECT_PAGE_SIZE)
            logger.info(
                "Collection completed successfully",
                extra={"date": today.isoformat(), "pages": pages},
            )

        except Exception as e:
            logger.error(
                "Collection failed",
                extra={"date": today.isoformat(), "error": str(e)},
                exc_info=True,
            )
            raise

        finally:
            # Signal shutdown if run_once mode
            if self.run_once:
                logger.info("RUN_ONCE mode: signaling shutdown")
                self.shutdown_event.set()

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""

        def signal_handler(signum: int, frame: object) -> None:
            logger.info("Received signal %d, initiating graceful shutdown", signum)
            self.shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def start(self) -> None:
        """
        Start scheduler or execute once.

        In scheduled mode, runs continuously until shutdown signal.
        In RUN_ONCE mode, executes immediately and exits.
        """
        self.setup_signal_handlers()

        init_schema()

        if self.collector is None:
            self._client = SafetyDataSource.create_client()
            source = SafetyDataSource(self._client)
            self.collector = build_collector(source.fetch, SqliteRowStore(ARTICLES))

        try:
            if self.run_once:
                logger.info("Running in RUN_ONCE mode")
                await self.execute_collection()
                return

            await self._run_scheduled()

        finally:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    async def _run_scheduled(self) -> None:
        logger.info("Running in scheduled mode")

        self.scheduler = AsyncIOScheduler(timezone=settings.COLLECT_TIMEZONE)

        trigger = CronTrigger.from_crontab(settings.COLLECT_SCHEDULE_CRON, timezone=settings.COLLECT_TIMEZONE)
        self.scheduler.add_job(
            self.execute_collection,
            trigger=trigger,
            id="collection_job",
            name="Periodic Article Collection",
            replace_existing=True,
            max_instances=1,
        )

        # Start scheduler first to get next_run_time
        self.scheduler.start()

        job = self.scheduler.get_job("collection_job")
        next_run = getattr(job, "next_run_time", None)

        logger.info(
            "Scheduled collection job",
            extra={
                "schedule": settings.COLLECT_SCHEDULE_CRON,
                "next_run": str(next_run) if next_run is not None else None,
            },
        )

        # Wait for shutdown signal
        await self.shutdown_event.wait()

        logger.info("Shutting down scheduler")
        self.scheduler.shutdown(wait=True)
        logger.info("Scheduler shutdown complete")


async def main() -> None:
    """Main entry point for the collector."""
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    scheduler = CollectionScheduler(run_once=run_once)

    try:
        await scheduler.start()
    except Exception as e:
        logger.error("Collector failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
