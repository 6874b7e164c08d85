"""API endpoints for news items."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, Response

from api.dependencies import get_feed_versions, get_item_store
from models import SourceType
from schemas import (
    ApiResponse,
    NewsItemResponse,
    NewsListData,
    PaginationSchema,
    SourceStats,
)
from services.invalidation import FeedVersions
from services.item_store import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, ItemStore, NewsQuery

router = APIRouter()
logger = logging.getLogger(__name__)

FEED_VERSION_HEADER = "X-Feed-Version"


@router.get("/news", response_model=ApiResponse[NewsListData])
async def list_news(
    request: Request,
    response: Response,
    store: ItemStore = Depends(get_item_store),
    versions: FeedVersions = Depends(get_feed_versions),
    source_type: SourceType | None = None,
    source_id: str | None = None,
    query: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
):
    """List news items with filtering and pagination.

    Newest first. The response carries the feed version and an ETag; a
    conditional request whose ETag is still current gets 304.
    """
    news_query = NewsQuery(
        source_type=source_type,
        source_id=source_id,
        query=query,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )

    # Taken before reading, so a run finishing mid-request only makes the tag stale
    etag = versions.etag(news_query)
    headers = {"ETag": etag, FEED_VERSION_HEADER: str(versions.version)}

    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers=headers)

    result = await store.query(news_query)
    response.headers.update(headers)

    return ApiResponse(
        data=NewsListData(
            items=[NewsItemResponse.model_validate(item) for item in result.items],
            pagination=PaginationSchema.model_validate(result.pagination),
        )
    )


@router.get("/news/sources", response_model=ApiResponse[list[SourceStats]])
async def list_news_sources(
    store: ItemStore = Depends(get_item_store),
):
    """Item counts per source."""
    stats = await store.stats()
    return ApiResponse(data=[SourceStats.model_validate(s) for s in stats])


@router.get("/news/{item_id}", response_model=ApiResponse[NewsItemResponse])
async def get_news_item(
    item_id: str,
    store: ItemStore = Depends(get_item_store),
):
    """Get a single news item by ID."""
    item = await store.get_by_id(item_id)
    return ApiResponse(data=NewsItemResponse.model_validate(item))
