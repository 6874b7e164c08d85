"""Telegram public channel connector.

Scrapes public Telegram channels via t.me/s/ web preview.
No authentication required for public channels.
"""

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Literal

from bs4 import BeautifulSoup, Tag
from pydantic import Field, field_validator

from config import settings
from errors import MalformedRecordError, SourceUnreachableError
from models import SourceType
from utils import make_preview

from .base import BaseConnector, NormalizedItem, SourceConfigBase
from .registry import ConnectorRegistry

logger = logging.getLogger(__name__)


class TelegramConfig(SourceConfigBase):
    """Configuration for Telegram channel connector."""

    type: Literal["telegram"] = "telegram"
    max_posts: int | None = Field(
        default=None, description="Maximum posts to fetch", ge=1, le=50
    )
    include_forwards: bool = Field(default=True, description="Include forwarded messages")

    @field_validator("name")
    @classmethod
    def normalize_channel(cls, v: str) -> str:
        """Remove @ prefix and t.me URL parts if present."""
        # Handle full URLs like https://t.me/channelname
        if "t.me/" in v:
            v = v.split("t.me/")[-1].split("/")[0]
        return v.lstrip("@").lower()


@ConnectorRegistry.register_type
class TelegramConnector(BaseConnector):
    """Telegram public channel connector.

    Scrapes public Telegram channels via the t.me/s/ web preview.

    Limitations:
    - Only works for PUBLIC channels
    - Limited to ~20 most recent posts per request
    """

    source_type = SourceType.TELEGRAM
    display_name = "Telegram"
    description = "Monitor public Telegram channels"
    config_schema = TelegramConfig

    config: TelegramConfig

    @property
    def channel(self) -> str:
        return self.source_id

    @property
    def max_posts(self) -> int:
        return self.config.max_posts or settings.telegram_max_posts

    @property
    def source_name(self) -> str:
        return self.config.title or f"@{self.channel}"

    @property
    def source_url(self) -> str:
        return f"https://t.me/{self.channel}"

    async def fetch_records(self) -> AsyncIterator[Any]:
        """Yield message widgets from the channel preview page."""
        url = f"https://t.me/s/{self.channel}"
        headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }

        async with self.http_client() as client:
            response = await self.get(client, url, headers=headers)

        # Check if channel exists
        if "tgme_page_icon_error" in response.text:
            raise SourceUnreachableError(f"Telegram channel not found or private: @{self.channel}")

        soup = BeautifulSoup(response.text, "html.parser")
        messages = soup.select(".tgme_widget_message_wrap")
        logger.debug(f"Fetched {len(messages)} posts from Telegram @{self.channel}")

        for msg_wrap in messages[: self.max_posts]:
            if not self.config.include_forwards and msg_wrap.select_one(
                ".tgme_widget_message_forwarded_from"
            ):
                continue
            yield msg_wrap

    def normalize(self, record: Tag) -> NormalizedItem:
        msg = record.select_one(".tgme_widget_message")
        if not msg:
            raise MalformedRecordError("Message widget is empty")

        # Get message ID from data attribute, e.g. "durov/123"
        msg_id = msg.get("data-post", "")
        if "/" in msg_id:
            msg_id = msg_id.split("/")[-1]

        # Get message link
        link_elem = msg.select_one(".tgme_widget_message_date")
        msg_url = link_elem.get("href", "") if link_elem else ""
        if not msg_url:
            if not msg_id:
                raise MalformedRecordError(f"Message in @{self.channel} has no id or link")
            msg_url = f"https://t.me/{self.channel}/{msg_id}"

        # Get text while preserving line breaks
        text_elem = msg.select_one(".tgme_widget_message_text")
        text = text_elem.get_text(separator="\n", strip=True) if text_elem else ""

        media_types = [
            kind
            for kind in ("photo", "video", "document", "voice")
            if msg.select_one(f".tgme_widget_message_{kind}")
        ]

        # Skip empty messages (unless they have media)
        if not text and not media_types:
            raise MalformedRecordError(f"Message {msg_url} has no text or media")

        time_elem = msg.select_one(".tgme_widget_message_date time")
        datetime_str = time_elem.get("datetime", "") if time_elem else ""
        try:
            # Telegram uses ISO format with timezone
            published_at = datetime.fromisoformat(datetime_str.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedRecordError(f"Message {msg_url} has no valid timestamp") from e

        # Create title from text
        title = text.split("\n", 1)[0]
        title = title[:100] + "..." if len(title) > 100 else title
        if not title:
            title = f"[{', '.join(media_types)}] from @{self.channel}"

        return self.build_item(
            title=title,
            content=text or None,
            content_preview=make_preview(text, settings.content_preview_length),
            url=msg_url,
            published_at=published_at,
        )
