"""
Article collection for one day from the paginated source.

Page 1 is fetched eagerly: it supplies the total count, so if it cannot be
fetched nothing else is attempted. Remaining pages go through the batch
processor, which persists each page as soon as it arrives and resweeps failed
pages once before escalating.
"""

import asyncio
import logging
import math
from datetime import date, datetime, timezone
from typing import Awaitable, Callable

from pydantic import ValidationError

from utils.batch import BatchProcessor
from utils.config import settings
from utils.db import SqliteRowStore
from utils.errors import BatchFailure, CollectionError, RetriesExhausted
from utils.retry import RetryPolicy, Sleep
from utils.schemas import ArticlePage, ArticleRecord

logger = logging.getLogger(__name__)

FetchPage = Callable[[str, int, int], Awaitable[ArticlePage]]


def to_api_date(day: date) -> str:
    return day.strftime("%Y%m%d")


def total_pages(total_count: int, page_size: int) -> int:
    return math.ceil(total_count / page_size)


class ArticleCollector:
    """Collects a day of articles into the ``articles`` Row Store."""

    def __init__(
        self,
        fetch_page: FetchPage,
        store: SqliteRowStore,
        policy: RetryPolicy,
        resweeps: int = 1,
        concurrency: int = 1,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.fetch_page = fetch_page
        self.store = store
        self.policy = policy
        self.resweeps = resweeps
        self.concurrency = concurrency
        self.sleep = sleep

    async def save_articles(self, page: ArticlePage) -> int:
        """
        Validate a page's articles and store the ones not stored yet.

        Returns:
            Number of rows inserted
        """
        valid: list[ArticleRecord] = []
        for fields in page.articles:
            try:
                valid.append(ArticleRecord.model_validate(fields))
            except ValidationError as e:
                logger.debug(
                    "Dropping invalid article: article_id=%s, error=%s",
                    fields.get("article_id"), str(e).split("\n")[0],
                )

        if not valid:
            return 0

        existing = await self.store.find_existing_keys(a.article_id for a in valid)
        inserted_at = datetime.now(timezone.utc)
        new_rows = [
            {**article.model_dump(), "inserted_at": inserted_at}
            for article in valid
            if article.article_id not in existing
        ]

        inserted = await self.store.save_all(new_rows)
        logger.debug(
            "Saved page %d: valid=%d, already_stored=%d, inserted=%d",
            page.page_no, len(valid), len(existing), inserted,
        )
        return inserted

    async def collect_for_date(self, day: date, page_size: int) -> int:
        """
        Collect every page published for ``day``.

        Returns:
            Number of pages in the day

        Raises:
            CollectionError: If page 1 cannot be fetched or persisted
            BatchFailure: Naming the pages still failing after the resweep
        """
        api_date = to_api_date(day)

        processor: BatchProcessor[int, ArticlePage] = BatchProcessor(
            fetch=lambda page_no: self.fetch_page(api_date, page_no, page_size),
            persist=self.save_articles,
            policy=self.policy,
            resweeps=self.resweeps,
            concurrency=self.concurrency,
            label="page",
            sleep=self.sleep,
        )

        try:
            first_page = await processor.process_unit(1)
        except RetriesExhausted as e:
            raise CollectionError(f"Max retries exceeded fetching page 1 for {api_date}") from e
        except Exception as e:
            raise CollectionError(f"Failed to persist page 1 for {api_date}: {e}") from e

        pages = total_pages(first_page.total_count, page_size)
        logger.info(
            "Collection started: date=%s, total_count=%d, pages=%d",
            api_date, first_page.total_count, pages,
        )
        if pages <= 1:
            return pages

        try:
            await processor.run(range(2, pages + 1))
        except BatchFailure as e:
            logger.error("Failed to collect pages %s for %s after final retry", e.unit_ids, api_date)
            raise

        return pages


def build_collector(fetch_page: FetchPage, store: SqliteRowStore) -> ArticleCollector:
    """Collector configured from the COLLECT_* settings."""
    return ArticleCollector(
        fetch_page=fetch_page,
        store=store,
        policy=RetryPolicy.from_settings("COLLECT"),
        resweeps=settings.COLLECT_RESWEEPS,
        concurrency=settings.COLLECT_CONCURRENCY,
    )
