"""
Error taxonomy shared by the collector, analyzer relay and indexer pipelines.

Stale events are not errors: they are reported as Outcome.SKIPPED_STALE by the
consumers, never raised.
"""

from typing import Any, Iterable, Optional


class RelayError(Exception):
    """Base class for all pipeline errors."""


class DecodeError(RelayError):
    """Raised when a raw change-event payload does not have the expected shape."""


class RetriesExhausted(RelayError):
    """Raised by the retry executor once every attempt has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class BatchFailure(RelayError):
    """Raised when units are still failing after the batch-wide resweep."""

    def __init__(self, unit_ids: Iterable[Any], message: Optional[str] = None) -> None:
        self.unit_ids = list(unit_ids)
        super().__init__(message or f"Units still failing after resweep: {self.unit_ids}")


class CollectionError(RelayError):
    """Raised when a collection run for one day cannot complete."""


class DeadLetterPublishFailure(RelayError):
    """Raised when a dead-letter record could not be written. Never retried here."""

    def __init__(self, correlation_key: Optional[str], retry_count: int, message: str) -> None:
        super().__init__(message)
        self.correlation_key = correlation_key
        self.retry_count = retry_count


class BulkIndexPartialFailure(RelayError):
    """Raised by a bulk index call when only some documents were rejected."""

    def __init__(self, failed_keys: Iterable[str]) -> None:
        self.failed_keys = list(failed_keys)
        super().__init__(f"Bulk indexing failed for {len(self.failed_keys)} documents: {self.failed_keys}")


class UnsupportedBackendError(RelayError):
    """Raised when no registered implementation accepts the requested target."""


class SourceError(RelayError):
    """Raised when the paginated source answers with an error result."""
