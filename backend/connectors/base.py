"""Base connector interface for all source connectors."""

import hashlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, ClassVar

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

from config import settings
from errors import MalformedRecordError, RunTimeoutError, SourceUnreachableError
from models import SourceType

logger = logging.getLogger(__name__)


def make_item_id(source_type: str, source_id: str, url: str) -> str:
    """Derive the stable item id from its natural key."""
    raw = f"{source_type}|{source_id}|{url}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


class NormalizedItem(BaseModel):
    """Normalized item format produced by all connectors."""

    source_type: SourceType = Field(..., description="Connector variant")
    source_id: str = Field(..., min_length=1, description="Sub-source within the type")
    source_name: str = Field(..., description="Display name of the sub-source")
    source_url: str = Field(default="", description="Link to the sub-source's own page")
    title: str = Field(..., min_length=1, description="Item title")
    content: str | None = Field(default=None, description="Full text content")
    content_preview: str | None = Field(default=None, description="Short plain-text body")
    url: str = Field(..., min_length=1, description="Canonical external link")
    published_at: datetime = Field(..., description="Source-asserted publication time")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Connector-specific data")

    @field_validator("published_at")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("published_at must be timezone-aware")
        return v

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.source_type.value, self.source_id, self.url)

    @property
    def item_id(self) -> str:
        return make_item_id(*self.natural_key)


class SourceConfigBase(BaseModel):
    """Fields shared by every source entry in the sources file."""

    name: str = Field(..., min_length=1, description="Sub-source identifier (feed, subreddit, channel)")
    title: str | None = Field(default=None, description="Custom display name (optional)")
    enabled: bool = Field(default=True, description="Skip the source when false")

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class BaseConnector(ABC):
    """Abstract base class for all connectors.

    A connector instance is bound to one sub-source. Subclasses must:
    1. Define class attributes: source_type, display_name, description, config_schema
    2. Implement fetch_records() to lazily pull raw records from the source
    3. Implement normalize() to turn one raw record into a NormalizedItem

    Connectors never write anywhere; storing items is the run coordinator's job.
    """

    # Connector metadata (override in subclass)
    source_type: ClassVar[SourceType]
    display_name: ClassVar[str]  # e.g., "RSS Feed"
    description: ClassVar[str]  # Shown in the API listing
    config_schema: ClassVar[type[SourceConfigBase]]  # Pydantic model for config

    def __init__(self, config: SourceConfigBase, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client
        self.skipped = 0

    @property
    def source_id(self) -> str:
        return self.config.name

    @property
    def connector_id(self) -> str:
        """Registry key, e.g. ``rss:hackernews``."""
        return f"{self.source_type.value}:{self.source_id}"

    @property
    def source_name(self) -> str:
        return self.config.title or self.source_id

    @property
    @abstractmethod
    def source_url(self) -> str:
        """Link to the sub-source's own page."""

    @abstractmethod
    def fetch_records(self) -> AsyncIterator[Any]:
        """Lazily yield raw records from the source.

        Raises:
            SourceUnreachableError: If the source cannot be reached
            RunTimeoutError: If the transport times out
        """

    @abstractmethod
    def normalize(self, record: Any) -> NormalizedItem:
        """Turn one raw record into a NormalizedItem.

        Must be deterministic: the same record always yields the same URL and
        therefore the same item id.

        Raises:
            MalformedRecordError: If the record lacks required data
        """

    async def run(self) -> AsyncIterator[NormalizedItem]:
        """Fetch and normalize, skipping malformed records.

        Finite, and a fresh pass over the source on every call.
        """
        self.skipped = 0
        async for record in self.fetch_records():
            try:
                item = self.normalize(record)
            except (MalformedRecordError, ValidationError) as e:
                self.skipped += 1
                logger.warning(f"{self.connector_id}: skipping malformed record: {e}")
                continue
            yield item

    def build_item(self, **fields: Any) -> NormalizedItem:
        """Create a NormalizedItem carrying this connector's source fields."""
        return NormalizedItem(
            source_type=self.source_type,
            source_id=self.source_id,
            source_name=self.source_name,
            source_url=self.source_url,
            **fields,
        )

    @asynccontextmanager
    async def http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the injected client, or a short-lived one owned by this call."""
        if self._client is not None:
            yield self._client
            return

        async with httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            headers={"User-Agent": settings.user_agent},
            follow_redirects=True,
        ) as client:
            yield client

    async def get(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> httpx.Response:
        """GET a URL, classifying transport failures."""
        return await self.request(client, "GET", url, **kwargs)

    async def post(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request(client, "POST", url, **kwargs)

    async def request(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """Send a request, mapping httpx failures onto the run error taxonomy.

        Raises:
            RunTimeoutError: If the transport times out
            SourceUnreachableError: On connection errors and non-2xx responses
        """
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RunTimeoutError(f"Timed out fetching {url}") from e
        except httpx.HTTPStatusError as e:
            raise SourceUnreachableError(
                f"HTTP error {e.response.status_code} from {url}"
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnreachableError(f"Cannot reach {url}: {e}") from e
        return response

    @classmethod
    def get_config_schema_json(cls) -> dict[str, Any]:
        """Return JSON Schema of the source config."""
        return cls.config_schema.model_json_schema()
