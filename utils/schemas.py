"""
Pydantic Schemas - Data Validation Models

Defines the schemas used throughout the pipelines:
- Change envelopes (Debezium-style before/after/op/source)
- Row images carried in the envelopes (articles, analysis-result outbox rows)
- Article records collected from the paginated source
- Outgoing and incoming channel records

Every model ignores unknown fields so upstream schema evolution never breaks
decoding.

Usage:
    from utils.schemas import ArticleRow, ChangeEnvelope

    envelope = ChangeEnvelope[ArticleRow].model_validate_json(raw)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

RowT = TypeVar("RowT", bound=BaseModel)


class Operation(str, Enum):
    """Change-event operation codes."""

    CREATE = "c"
    SNAPSHOT_READ = "r"
    UPDATE = "u"
    DELETE = "d"


CREATION_OPS = frozenset({Operation.CREATE.value, Operation.SNAPSHOT_READ.value})


class RelaxedModel(BaseModel):
    """Base model that silently drops unknown fields."""

    model_config = ConfigDict(extra="ignore", frozen=True)


class ChangeSource(RelaxedModel):
    """Origin of a change event."""

    table: Optional[str] = None
    connector: Optional[str] = None


class ChangeEnvelope(RelaxedModel, Generic[RowT]):
    """Change envelope: operation plus optional before/after row images.

    ``op`` is kept as the raw code so operations this service does not know
    about decode cleanly and are skipped, rather than rejected.
    """

    op: str
    before: Optional[RowT] = None
    after: Optional[RowT] = None
    source: Optional[ChangeSource] = None

    @property
    def is_creation(self) -> bool:
        return self.op in CREATION_OPS


class ArticleRow(RelaxedModel):
    """Row image of the upstream ``article`` table."""

    article_id: str
    origin_id: str
    source_id: str
    written_at: datetime
    modified_at: datetime
    title: str
    content: str
    source_url: Optional[str] = None

    @property
    def key(self) -> str:
        return self.article_id

    @property
    def event_timestamp(self) -> Optional[datetime]:
        return self.modified_at


class OutboxRow(RelaxedModel):
    """Row image of the ``analysis_result_outbox`` table.

    ``payload`` is the serialized analysis result; it is passed to the indexer
    untouched. ``created_at`` is the analysis time used for staleness checks.
    """

    id: Optional[int] = None
    article_id: str
    payload: str
    created_at: Optional[datetime] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def drop_unparseable_timestamp(cls, v: Any) -> Any:
        """An unparseable analysis time is treated as absent, not as a decode failure."""
        if v is None or isinstance(v, datetime):
            return v
        try:
            return datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        except ValueError:
            return None

    @property
    def key(self) -> str:
        return self.article_id

    @property
    def event_timestamp(self) -> Optional[datetime]:
        return self.created_at


class ArticleRecord(BaseModel):
    """Article collected from the paginated source, as persisted in ``articles``.

    Validates against requirements:
    - title, content, origin_id, source_id: non-blank
    """

    article_id: str = Field(..., description="'{published date}-{article no}'")
    origin_id: str
    source_id: str
    written_at: datetime
    modified_at: datetime
    title: str
    content: str
    source_url: Optional[str] = None

    @field_validator("title", "content", "origin_id", "source_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("cannot be blank")
        return v


class ArticlePage(BaseModel):
    """One page of the paginated source.

    ``articles`` holds candidate article fields; they are validated against
    ArticleRecord only when persisted, so one bad article never fails a page.
    """

    articles: list[dict[str, Any]] = Field(default_factory=list)
    total_count: int = Field(..., ge=0)
    page_no: int
    num_of_rows: int


class OutgoingRecord(BaseModel):
    """Record handed to a message channel for an acknowledged write."""

    model_config = ConfigDict(frozen=True)

    topic: str
    value: bytes
    key: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)


class InboundMessage(BaseModel):
    """Raw message delivered by a message channel."""

    model_config = ConfigDict(frozen=True)

    stream: str
    message_id: str
    value: bytes
    key: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
