"""Pydantic schemas for API request/response validation."""

from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from models import RunStatus, SourceType

T = TypeVar("T")


# === Base schemas ===


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(from_attributes=True)


class ApiResponse(BaseModel, Generic[T]):
    """Envelope wrapping every API response."""

    success: bool = True
    data: T | None = None
    error: str | None = None


# === News schemas ===


class NewsItemResponse(BaseSchema):
    """Schema for a news item."""

    id: str
    title: str
    content: str | None = None
    content_preview: str | None = None
    source_type: SourceType
    source_id: str
    source_name: str
    source_url: str
    url: str
    published_at: datetime
    processed_at: datetime
    metadata_: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")


class PaginationSchema(BaseSchema):
    page: int
    page_size: int
    total_pages: int
    total_items: int


class NewsListData(BaseSchema):
    """One page of the news feed."""

    items: list[NewsItemResponse]
    pagination: PaginationSchema


class SourceStats(BaseSchema):
    """Item count for one sub-source."""

    source_type: SourceType
    source_id: str
    source_name: str | None
    item_count: int
    latest_published_at: datetime | None = None


# === Connector schemas ===


def wire_status(status: RunStatus) -> Literal["success", "error"] | None:
    """Map terminal run states to the wire contract."""
    if status == RunStatus.SUCCEEDED:
        return "success"
    if status == RunStatus.FAILED:
        return "error"
    return None


class RunInfo(BaseSchema):
    """Snapshot of a connector run."""

    id: int | None = None
    connector_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    processed_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    error: str | None = None
    error_kind: str | None = None


class ConnectorRunData(BaseModel):
    """Result of triggering a single connector."""

    processed: int
    connector: str
    updated: int = 0
    skipped: int = 0


class ConnectorResultSchema(BaseModel):
    """Per-connector entry of a run-all response."""

    status: Literal["success", "error"]
    processed: int | None = None
    message: str | None = None
    error_kind: str | None = None


class RunAllData(BaseModel):
    results: dict[str, ConnectorResultSchema] = Field(default_factory=dict)


class ConnectorInfo(BaseModel):
    """A registered connector with its latest run."""

    id: str
    source_type: SourceType
    source_id: str
    source_name: str
    source_url: str
    name: str
    description: str
    running: bool = False
    last_run: RunInfo | None = None


# === Health schemas ===


class HealthData(BaseModel):
    status: str
    connectors: int
    items: int
    feed_version: int
    database: dict[str, Any] = Field(default_factory=dict)
    scheduler: list[dict[str, Any]] = Field(default_factory=list)
