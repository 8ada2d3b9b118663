"""Shared fixtures: temporary SQLite stores, in-memory channel, instant sleep."""

import pytest

from utils.db import ANALYSIS_REQUESTS, ARTICLES, SEARCH_DOCUMENTS, SqliteRowStore, init_schema
from utils.mq import InMemoryChannel


class RecordingSleep:
    """Awaitable sleep that records requested delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "lit.db")
    init_schema(path)
    return path


@pytest.fixture
def articles_store(db_path) -> SqliteRowStore:
    return SqliteRowStore(ARTICLES, db_path)


@pytest.fixture
def requests_store(db_path) -> SqliteRowStore:
    return SqliteRowStore(ANALYSIS_REQUESTS, db_path)


@pytest.fixture
def documents_store(db_path) -> SqliteRowStore:
    return SqliteRowStore(SEARCH_DOCUMENTS, db_path)


@pytest.fixture
def channel() -> InMemoryChannel:
    return InMemoryChannel()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
