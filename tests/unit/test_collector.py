"""
Article Collector Tests

Page 1 is fetched eagerly and fixes the page count; remaining pages are
persisted as they arrive and resweeped before the run fails.
"""

import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from apps.collector.service import ArticleCollector, to_api_date, total_pages
from utils.errors import BatchFailure, CollectionError
from utils.retry import RetryPolicy
from utils.schemas import ArticlePage

KST = timezone(timedelta(hours=9))
WRITTEN_AT = datetime(2025, 1, 15, 9, 30, tzinfo=KST)


def article_fields(no: int, title: str = "Heavy rain warning") -> dict:
    return {
        "article_id": f"2025-01-15-{no}",
        "origin_id": str(no),
        "source_id": "yonhapnews",
        "written_at": WRITTEN_AT,
        "modified_at": WRITTEN_AT,
        "title": title,
        "content": "Heavy rain warning issued for the capital area.",
        "source_url": None,
    }


class FakeSource:
    """``pages[page_no]`` lists article numbers; pages in ``failing`` always fail."""

    def __init__(self, pages: dict[int, list[int]], total_count: int, failing: set[int] = frozenset()) -> None:
        self.pages = pages
        self.total_count = total_count
        self.failing = set(failing)
        self.requests: list[tuple[str, int, int]] = []

    async def __call__(self, inq_date: str, page_no: int, page_size: int) -> ArticlePage:
        self.requests.append((inq_date, page_no, page_size))
        if page_no in self.failing:
            raise ConnectionError(f"page {page_no} timed out")
        return ArticlePage(
            articles=[article_fields(no) for no in self.pages.get(page_no, [])],
            total_count=self.total_count,
            page_no=page_no,
            num_of_rows=page_size,
        )


def collector(source, store, sleep) -> ArticleCollector:
    return ArticleCollector(
        fetch_page=source,
        store=store,
        policy=RetryPolicy(max_retries=2, base_delay=0.1),
        sleep=sleep,
    )


class TestHelpers:
    def test_api_date(self):
        assert to_api_date(date(2025, 1, 5)) == "20250105"

    @pytest.mark.parametrize(
        "total_count, page_size, expected",
        [(0, 1000, 0), (1, 1000, 1), (1000, 1000, 1), (1001, 1000, 2), (2500, 1000, 3)],
    )
    def test_total_pages(self, total_count, page_size, expected):
        assert total_pages(total_count, page_size) == expected


class TestCollectForDate:
    async def test_collects_every_page(self, articles_store, sleep):
        source = FakeSource({1: [1, 2], 2: [3, 4], 3: [5]}, total_count=5)

        pages = await collector(source, articles_store, sleep).collect_for_date(date(2025, 1, 15), 2)

        assert pages == 3
        assert [request[1] for request in source.requests] == [1, 2, 3]
        assert all(request[0] == "20250115" for request in source.requests)
        stored = await articles_store.find_existing_keys(f"2025-01-15-{no}" for no in range(1, 6))
        assert len(stored) == 5

    async def test_page_one_failure_aborts_the_run(self, articles_store, sleep):
        source = FakeSource({2: [3]}, total_count=5, failing={1})

        with pytest.raises(CollectionError):
            await collector(source, articles_store, sleep).collect_for_date(date(2025, 1, 15), 2)

        assert {request[1] for request in source.requests} == {1}
        assert len(source.requests) == 3
        assert sleep.delays == [0.1, 0.2]

    async def test_page_one_persist_failure_aborts_the_run(self, articles_store, sleep, monkeypatch):
        source = FakeSource({1: [1, 2], 2: [3]}, total_count=3)

        async def locked(rows):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(articles_store, "save_all", locked)

        with pytest.raises(CollectionError) as exc_info:
            await collector(source, articles_store, sleep).collect_for_date(date(2025, 1, 15), 2)

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert [request[1] for request in source.requests] == [1]

    async def test_single_page_day_stops_after_page_one(self, articles_store, sleep):
        source = FakeSource({1: [1]}, total_count=1)

        assert await collector(source, articles_store, sleep).collect_for_date(date(2025, 1, 15), 1000) == 1
        assert len(source.requests) == 1

    async def test_failing_page_escalates_while_others_stay_persisted(self, articles_store, sleep):
        source = FakeSource({1: [1], 2: [2], 3: [3], 4: [4]}, total_count=4, failing={3})

        with pytest.raises(BatchFailure) as exc_info:
            await collector(source, articles_store, sleep).collect_for_date(date(2025, 1, 15), 1)

        assert exc_info.value.unit_ids == [3]
        stored = await articles_store.find_existing_keys(f"2025-01-15-{no}" for no in range(1, 5))
        assert stored == {"2025-01-15-1", "2025-01-15-2", "2025-01-15-4"}

    async def test_rerun_does_not_duplicate_articles(self, articles_store, sleep):
        source = FakeSource({1: [1, 2]}, total_count=2)
        run = collector(source, articles_store, sleep)

        await run.collect_for_date(date(2025, 1, 15), 1000)
        await run.collect_for_date(date(2025, 1, 15), 1000)

        page = await source("20250115", 1, 1000)
        assert await run.save_articles(page) == 0


class TestSaveArticles:
    async def test_blank_articles_are_dropped(self, articles_store, sleep):
        page = ArticlePage(
            articles=[article_fields(1), article_fields(2, title="  "), {"article_id": "2025-01-15-3"}],
            total_count=3,
            page_no=1,
            num_of_rows=1000,
        )

        inserted = await collector(FakeSource({}, 0), articles_store, sleep).save_articles(page)

        assert inserted == 1
        assert await articles_store.find_existing_keys(["2025-01-15-1", "2025-01-15-2"]) == {"2025-01-15-1"}

    async def test_empty_page_inserts_nothing(self, articles_store, sleep):
        page = ArticlePage(articles=[], total_count=0, page_no=1, num_of_rows=1000)

        assert await collector(FakeSource({}, 0), articles_store, sleep).save_articles(page) == 0
