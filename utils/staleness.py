"""
Staleness Guard - idempotent skip of superseded change events.

Skipping is only an optimization: the eventual write is an upsert keyed by the
same key, so the guard fails open whenever the lookup itself fails.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol

from utils.db import as_utc

logger = logging.getLogger(__name__)


class TimestampLookup(Protocol):
    async def find_timestamp_by_key(self, key: str) -> Optional[datetime]: ...


class StalenessGuard:
    """Compares a candidate event time against the recorded time for the same key."""

    def __init__(self, store: TimestampLookup) -> None:
        self.store = store

    async def is_stale(self, key: str, candidate: Optional[datetime]) -> bool:
        """
        Return True if state at least as recent as ``candidate`` is already recorded.

        Args:
            key: Row key
            candidate: Event timestamp; events without one are never stale

        Returns:
            True to skip, False to proceed
        """
        if candidate is None:
            return False

        try:
            existing = await self.store.find_timestamp_by_key(key)
        except Exception as e:
            logger.warning(
                "Failed to look up recorded timestamp, proceeding: key=%s, error=%s", key, str(e)
            )
            return False

        if existing is None:
            return False

        stale = as_utc(existing) >= as_utc(candidate)
        if stale:
            logger.info(
                "Skipping stale event: key=%s, recorded=%s, event=%s",
                key, existing.isoformat(), candidate.isoformat(),
            )
        return stale
