"""
Database utilities for SQLite operations.

Provides connection management, schema initialization and the Row Store used by
every pipeline. Writes are keyed upserts, so redelivered or concurrent writers
converge on one row per key.
"""

import asyncio
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from utils.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableSpec:
    """Shape of one keyed table."""

    name: str
    key_column: str
    columns: tuple[str, ...]
    timestamp_column: Optional[str] = None


ARTICLES = TableSpec(
    name="articles",
    key_column="article_id",
    columns=(
        "article_id", "origin_id", "source_id", "written_at", "modified_at",
        "title", "content", "source_url", "inserted_at",
    ),
    timestamp_column="modified_at",
)

ANALYSIS_REQUESTS = TableSpec(
    name="analysis_requests",
    key_column="article_id",
    columns=("article_id", "article_updated_at", "payload", "inserted_at"),
    timestamp_column="article_updated_at",
)

SEARCH_DOCUMENTS = TableSpec(
    name="search_documents",
    key_column="article_id",
    columns=("article_id", "modified_at", "document", "indexed_at"),
    timestamp_column="modified_at",
)


def get_conn(path: Optional[str] = None) -> sqlite3.Connection:
    """
    Get SQLite database connection with dict-friendly row factory.

    Args:
        path: Database file, defaults to settings.SQLITE_PATH

    Returns:
        SQLite connection with row_factory set to sqlite3.Row

    Raises:
        sqlite3.Error: If connection fails
    """
    db_path = Path(path or settings.SQLITE_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_schema(path: Optional[str] = None) -> None:
    """
    Initialize database schema by creating required tables if they don't exist.

    Creates:
    - articles: collected articles
    - analysis_requests: articles relayed from the article CDC stream
    - search_documents: documents relayed from the analysis-result outbox

    Raises:
        sqlite3.Error: If schema creation fails
    """
    with closing(get_conn(path)) as conn, conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS articles (
                article_id TEXT PRIMARY KEY,
                origin_id TEXT NOT NULL,
                source_id TEXT NOT NULL,
                written_at TEXT NOT NULL,
                modified_at TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                source_url TEXT,
                inserted_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS analysis_requests (
                article_id TEXT PRIMARY KEY,
                article_updated_at TEXT,
                payload TEXT NOT NULL,
                inserted_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS search_documents (
                article_id TEXT PRIMARY KEY,
                modified_at TEXT,
                document TEXT NOT NULL,
                indexed_at TEXT NOT NULL
            )
        """)

    logger.info("DB schema ready")


def as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return value


class SqliteRowStore:
    """
    Row Store over one keyed SQLite table.

    Blocking sqlite3 calls run in worker threads (asyncio.to_thread) so store
    I/O is a suspension point for the event loop.
    """

    def __init__(self, table: TableSpec, path: Optional[str] = None) -> None:
        self.table = table
        self.path = path or settings.SQLITE_PATH

    def _row_values(self, row: Mapping[str, Any]) -> tuple[Any, ...]:
        return tuple(_to_column(row.get(column)) for column in self.table.columns)

    def _insert_sql(self, on_conflict: str) -> str:
        columns = ", ".join(self.table.columns)
        placeholders = ", ".join("?" for _ in self.table.columns)
        return (
            f"INSERT INTO {self.table.name} ({columns}) VALUES ({placeholders}) "
            f"ON CONFLICT({self.table.key_column}) {on_conflict}"
        )

    def _upsert_sql(self) -> str:
        updates = ", ".join(
            f"{column} = excluded.{column}"
            for column in self.table.columns
            if column != self.table.key_column
        )
        return self._insert_sql(f"DO UPDATE SET {updates}")

    def _save(self, row: Mapping[str, Any]) -> None:
        with closing(get_conn(self.path)) as conn, conn:
            conn.execute(self._upsert_sql(), self._row_values(row))

    def _save_many(self, rows: list[Mapping[str, Any]]) -> None:
        with closing(get_conn(self.path)) as conn, conn:
            conn.executemany(self._upsert_sql(), [self._row_values(row) for row in rows])

    def _save_all(self, rows: list[Mapping[str, Any]]) -> int:
        with closing(get_conn(self.path)) as conn, conn:
            before = conn.total_changes
            conn.executemany(self._insert_sql("DO NOTHING"), [self._row_values(row) for row in rows])
            return conn.total_changes - before

    def _find_existing_keys(self, keys: list[str]) -> set[str]:
        if not keys:
            return set()
        placeholders = ", ".join("?" for _ in keys)
        with closing(get_conn(self.path)) as conn:
            cursor = conn.execute(
                f"SELECT {self.table.key_column} FROM {self.table.name} "
                f"WHERE {self.table.key_column} IN ({placeholders})",
                keys,
            )
            return {row[0] for row in cursor.fetchall()}

    def _find_timestamp_by_key(self, key: str) -> Optional[datetime]:
        if self.table.timestamp_column is None:
            return None
        with closing(get_conn(self.path)) as conn:
            row = conn.execute(
                f"SELECT {self.table.timestamp_column} FROM {self.table.name} "
                f"WHERE {self.table.key_column} = ?",
                (key,),
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return as_utc(datetime.fromisoformat(row[0]))

    async def save(self, row: Mapping[str, Any]) -> None:
        """Upsert one row; last write wins per key."""
        await asyncio.to_thread(self._save, row)

    async def save_many(self, rows: Iterable[Mapping[str, Any]]) -> None:
        """Upsert rows in one transaction; last write wins per key."""
        rows = list(rows)
        if rows:
            await asyncio.to_thread(self._save_many, rows)

    async def save_all(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Insert rows whose key is not stored yet. Returns the number inserted."""
        rows = list(rows)
        if not rows:
            return 0
        return await asyncio.to_thread(self._save_all, rows)

    async def find_existing_keys(self, keys: Iterable[str]) -> set[str]:
        return await asyncio.to_thread(self._find_existing_keys, list(keys))

    async def find_timestamp_by_key(self, key: str) -> Optional[datetime]:
        return await asyncio.to_thread(self._find_timestamp_by_key, key)
