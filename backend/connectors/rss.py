"""RSS/Atom feed connector."""

import calendar
import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any, Literal
from urllib.parse import urljoin

import feedparser
from pydantic import Field, HttpUrl

from config import settings
from errors import MalformedRecordError, SourceUnreachableError
from models import SourceType
from utils import canonicalize_url, html_to_text, make_preview

from .base import BaseConnector, NormalizedItem, SourceConfigBase
from .registry import ConnectorRegistry

logger = logging.getLogger(__name__)


class RSSConfig(SourceConfigBase):
    """Configuration for RSS connector."""

    type: Literal["rss"] = "rss"
    url: HttpUrl = Field(..., description="Feed URL")


def _entry_datetime(entry: Any) -> datetime | None:
    """Publication time of a feed entry, falling back to its update time."""
    for field in ("published_parsed", "updated_parsed"):
        parsed = entry.get(field)
        if parsed:
            try:
                # feedparser normalizes to UTC struct_time
                return datetime.fromtimestamp(calendar.timegm(parsed), UTC)
            except (ValueError, OverflowError):
                continue
    return None


@ConnectorRegistry.register_type
class RSSConnector(BaseConnector):
    """RSS/Atom feed connector.

    Fetches items from any standard RSS or Atom feed.
    """

    source_type = SourceType.RSS
    display_name = "RSS Feed"
    description = "Subscribe to any RSS or Atom feed"
    config_schema = RSSConfig

    config: RSSConfig

    def __init__(self, config: RSSConfig, client=None):
        super().__init__(config, client)
        self._feed_title: str | None = None

    @property
    def feed_url(self) -> str:
        return str(self.config.url)

    @property
    def source_name(self) -> str:
        return self.config.title or self._feed_title or self.source_id

    @property
    def source_url(self) -> str:
        return self.feed_url

    async def fetch_records(self) -> AsyncIterator[Any]:
        """Yield feed entries from the feed document."""
        async with self.http_client() as client:
            response = await self.get(client, self.feed_url)

        feed = feedparser.parse(response.content)

        # Check if it's a valid feed
        if feed.bozo and not feed.entries:
            error_msg = str(feed.bozo_exception) if feed.bozo_exception else "Unknown error"
            raise SourceUnreachableError(f"Invalid feed at {self.feed_url}: {error_msg}")

        self._feed_title = feed.feed.get("title") or None
        logger.debug(f"Fetched {len(feed.entries)} entries from {self.feed_url}")

        for entry in feed.entries:
            yield entry

    def normalize(self, record: Any) -> NormalizedItem:
        # Get link
        link = record.get("link", "")
        if not link and record.get("links"):
            link = record.links[0].get("href", "")
        if not link:
            raise MalformedRecordError("Feed entry has no link")

        # Resolve relative URLs against feed URL
        if not link.startswith(("http://", "https://")):
            link = urljoin(self.feed_url, link)

        title = html_to_text(record.get("title"))
        if not title:
            raise MalformedRecordError(f"Feed entry {link} has no title")

        published = _entry_datetime(record)
        if published is None:
            raise MalformedRecordError(f"Feed entry {link} has no publication date")

        content = ""
        if record.get("content"):
            content = record.content[0].get("value", "")
        elif record.get("summary"):
            content = record.summary
        elif record.get("description"):
            content = record.description

        return self.build_item(
            title=title,
            content=content or None,
            content_preview=make_preview(content, settings.content_preview_length),
            url=canonicalize_url(link),
            published_at=published,
        )
