"""
Search index backed by the ``search_documents`` table.

A document is the outbox row's analysis payload, keyed by article id and
stamped with the analysis time. Writes are upserts, so re-indexing converges.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable

import orjson

from utils.db import SqliteRowStore
from utils.errors import BulkIndexPartialFailure
from utils.schemas import OutboxRow

logger = logging.getLogger(__name__)


def build_document(row: OutboxRow) -> dict[str, Any]:
    """
    Search document for one outbox row.

    Raises:
        orjson.JSONDecodeError: If the analysis payload is not valid JSON
    """
    return {
        "article_id": row.article_id,
        "modified_at": row.created_at.isoformat() if row.created_at else None,
        "analysis": orjson.loads(row.payload),
    }


def _to_row(row: OutboxRow, document: dict[str, Any], indexed_at: datetime) -> dict[str, Any]:
    return {
        "article_id": row.article_id,
        "modified_at": row.created_at,
        "document": orjson.dumps(document).decode("utf-8"),
        "indexed_at": indexed_at,
    }


class SearchIndex:
    """Writes search documents."""

    def __init__(self, store: SqliteRowStore) -> None:
        self.store = store

    async def index(self, row: OutboxRow) -> None:
        """Index one document."""
        document = build_document(row)
        await self.store.save(_to_row(row, document, datetime.now(timezone.utc)))

    async def index_all(self, rows: Iterable[OutboxRow]) -> None:
        """
        Index documents in one write.

        Documents that cannot be built are rejected individually; the rest are
        written before the rejection is reported.

        Raises:
            BulkIndexPartialFailure: Naming the keys that were rejected
        """
        indexed_at = datetime.now(timezone.utc)
        accepted: list[dict[str, Any]] = []
        rejected: list[str] = []

        for row in rows:
            try:
                accepted.append(_to_row(row, build_document(row), indexed_at))
            except orjson.JSONDecodeError as e:
                logger.warning("Rejecting document: article_id=%s, error=%s", row.article_id, str(e))
                rejected.append(row.article_id)

        await self.store.save_many(accepted)
        logger.debug("Bulk indexed %d documents, rejected %d", len(accepted), len(rejected))

        if rejected:
            raise BulkIndexPartialFailure(rejected)
