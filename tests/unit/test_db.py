"""
Row Store Tests

Keyed writes over SQLite: save() upserts, save_all() inserts new keys only.
"""

from datetime import datetime, timedelta, timezone

from utils.db import SqliteRowStore, TableSpec, init_schema

T1 = datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc)


def article(article_id: str, modified_at: datetime = T1, title: str = "Heavy rain warning") -> dict:
    return {
        "article_id": article_id,
        "origin_id": article_id.rsplit("-", 1)[-1],
        "source_id": "yonhapnews",
        "written_at": T1,
        "modified_at": modified_at,
        "title": title,
        "content": "Heavy rain warning issued for the capital area.",
        "source_url": None,
        "inserted_at": T1,
    }


class TestSqliteRowStore:
    async def test_saving_the_same_keys_twice_stores_one_row_per_key(self, articles_store):
        rows = [article("2025-01-15-1"), article("2025-01-15-2")]

        first = await articles_store.save_all(rows)
        second = await articles_store.save_all(rows)

        assert first == 2
        assert second == 0
        assert await articles_store.find_existing_keys(["2025-01-15-1", "2025-01-15-2", "2025-01-15-3"]) == {
            "2025-01-15-1",
            "2025-01-15-2",
        }

    async def test_save_all_keeps_the_first_write(self, articles_store):
        await articles_store.save_all([article("2025-01-15-1", modified_at=T1)])
        await articles_store.save_all([article("2025-01-15-1", modified_at=T1 + timedelta(hours=1))])

        assert await articles_store.find_timestamp_by_key("2025-01-15-1") == T1

    async def test_save_is_last_write_wins(self, articles_store):
        later = T1 + timedelta(hours=1)

        await articles_store.save(article("2025-01-15-1", modified_at=T1))
        await articles_store.save(article("2025-01-15-1", modified_at=later))

        assert await articles_store.find_timestamp_by_key("2025-01-15-1") == later

    async def test_save_many_upserts(self, articles_store):
        later = T1 + timedelta(hours=1)
        await articles_store.save(article("2025-01-15-1"))

        await articles_store.save_many([article("2025-01-15-1", modified_at=later), article("2025-01-15-2")])

        assert await articles_store.find_timestamp_by_key("2025-01-15-1") == later
        assert await articles_store.find_existing_keys(["2025-01-15-2"]) == {"2025-01-15-2"}

    async def test_timestamps_are_returned_in_utc(self, articles_store):
        seoul = timezone(timedelta(hours=9))
        await articles_store.save(article("2025-01-15-1", modified_at=T1.astimezone(seoul)))

        recorded = await articles_store.find_timestamp_by_key("2025-01-15-1")

        assert recorded == T1
        assert recorded.tzinfo == timezone.utc

    async def test_unknown_key_has_no_timestamp(self, articles_store):
        assert await articles_store.find_timestamp_by_key("missing") is None

    async def test_empty_inputs(self, articles_store):
        assert await articles_store.save_all([]) == 0
        assert await articles_store.find_existing_keys([]) == set()

    async def test_table_without_timestamp_column(self, db_path):
        init_schema(db_path)
        table = TableSpec(name="articles", key_column="article_id", columns=("article_id",))

        assert await SqliteRowStore(table, db_path).find_timestamp_by_key("2025-01-15-1") is None
