"""
Paginated Source - Safety Data API (Yonhap news disaster feed)

Fetches one page of articles for a given day. Per-call timeouts belong to the
httpx client; retries are applied by the caller.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx
from pydantic import BaseModel, ConfigDict, Field

from utils.config import settings
from utils.errors import SourceError
from utils.schemas import ArticlePage

logger = logging.getLogger(__name__)

SOURCE_ID = "yonhapnews"
SUCCESS_CODE = "00"
SEOUL = ZoneInfo("Asia/Seoul")


class ResponseHeader(BaseModel):
    resultCode: str
    resultMsg: str = ""
    errorMsg: Optional[str] = None


class YonhapnewsItem(BaseModel):
    """Article as returned by the API. Field names follow the API."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    article_no: int = Field(..., alias="YNA_NO")
    title: str = Field(..., alias="YNA_TTL")
    content: str = Field(..., alias="YNA_CN")
    published_at: str = Field(..., alias="YNA_YMD")  # "yyyy-MM-dd HH:mm:ss"
    writer_name: Optional[str] = Field(default=None, alias="YNA_WRTR_NM")
    created_at: str = Field(..., alias="CRT_DT")  # "yyyy/MM/dd HH:mm:ss.fffffffff"

    def to_article_fields(self) -> dict[str, Any]:
        """Map to candidate ``articles`` fields (validated later, on save)."""
        written_at = parse_published_at(self.published_at)
        return {
            "article_id": f"{written_at.strftime('%Y-%m-%d')}-{self.article_no}",
            "origin_id": str(self.article_no),
            "source_id": SOURCE_ID,
            "written_at": written_at,
            "modified_at": parse_created_at(self.created_at),
            "title": self.title.strip(),
            "content": self.content.strip(),
            "source_url": None,
        }


class SafetyDataResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    header: ResponseHeader
    numOfRows: int = 0
    pageNo: int = 0
    totalCount: int = 0
    body: list[YonhapnewsItem] = Field(default_factory=list)


def parse_published_at(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=SEOUL)


def parse_created_at(value: str) -> datetime:
    """The API reports nanoseconds; strptime understands at most microseconds."""
    stamp, _, fraction = value.partition(".")
    micros = (fraction + "000000")[:6]
    return datetime.strptime(f"{stamp}.{micros}", "%Y/%m/%d %H:%M:%S.%f").replace(tzinfo=SEOUL)


class SafetyDataSource:
    """Paginated source backed by the Safety Data API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        """
        Args:
            client: Shared async client, configured with base_url and timeout
            api_key: Service key, defaults to settings.SAFETY_API_KEY
            path: Endpoint path, defaults to settings.SAFETY_API_PATH
        """
        self.client = client
        self.api_key = api_key if api_key is not None else settings.SAFETY_API_KEY
        self.path = path or settings.SAFETY_API_PATH

    @classmethod
    def create_client(cls) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=settings.SAFETY_API_BASE, timeout=settings.API_TIMEOUT)

    async def fetch(self, inq_date: str, page_no: int, page_size: int) -> ArticlePage:
        """
        Fetch one page of articles.

        Args:
            inq_date: Inquiry date, ``yyyyMMdd``
            page_no: 1-based page number
            page_size: Rows per page

        Returns:
            Page with candidate articles and the total row count for the day

        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses
            SourceError: If the API reports an error result code
        """
        response = await self.client.get(
            self.path,
            params={
                "serviceKey": self.api_key,
                "inqDt": inq_date,
                "pageNo": page_no,
                "numOfRows": page_size,
                "returnType": "json",
            },
        )
        response.raise_for_status()

        payload = SafetyDataResponse.model_validate_json(response.content)
        if payload.header.resultCode != SUCCESS_CODE:
            raise SourceError(
                f"Safety Data API error {payload.header.resultCode}: "
                f"{payload.header.errorMsg or payload.header.resultMsg}"
            )

        logger.debug(
            "Fetched page: date=%s, page=%d, rows=%d, total=%d",
            inq_date, page_no, len(payload.body), payload.totalCount,
        )

        return ArticlePage(
            articles=[item.to_article_fields() for item in payload.body],
            total_count=payload.totalCount,
            page_no=payload.pageNo or page_no,
            num_of_rows=payload.numOfRows or page_size,
        )
