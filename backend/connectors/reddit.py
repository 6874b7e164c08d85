"""Reddit subreddit connector.

Reads the JSON listing of a subreddit. Without credentials the public
``www.reddit.com`` listing is used; with script-app credentials configured the
connector authenticates against ``oauth.reddit.com`` for higher rate limits.
"""

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

import httpx
from pydantic import Field, field_validator

from config import settings
from errors import MalformedRecordError, SourceUnreachableError
from models import SourceType
from utils import make_preview

from .base import BaseConnector, NormalizedItem, SourceConfigBase
from .registry import ConnectorRegistry

logger = logging.getLogger(__name__)

REDDIT_BASE_URL = "https://www.reddit.com"
REDDIT_OAUTH_URL = "https://oauth.reddit.com"
REDDIT_TOKEN_URL = f"{REDDIT_BASE_URL}/api/v1/access_token"


@dataclass(frozen=True)
class RedditCredentials:
    """Script-app credentials for the password grant."""

    client_id: str
    client_secret: str
    username: str
    password: str

    @classmethod
    def from_settings(cls) -> "RedditCredentials | None":
        """Credentials from settings, or None unless all four are set."""
        values = (
            settings.reddit_client_id,
            settings.reddit_client_secret,
            settings.reddit_username,
            settings.reddit_password,
        )
        if not all(values):
            return None
        return cls(*values)


class RedditConfig(SourceConfigBase):
    """Configuration for Reddit connector."""

    type: Literal["reddit"] = "reddit"
    sort: Literal["hot", "new", "top", "rising"] | None = Field(
        default=None, description="Listing to read (defaults to settings.reddit_sort)"
    )
    limit: int | None = Field(
        default=None, description="Maximum posts to fetch", ge=1, le=100
    )

    @field_validator("name")
    @classmethod
    def normalize_subreddit(cls, v: str) -> str:
        """Remove r/ prefix and reddit.com URL parts if present."""
        if "reddit.com/r/" in v:
            v = v.split("reddit.com/r/")[-1].split("/")[0]
        if v.lower().startswith("r/"):
            v = v[2:]
        return v.strip("/")


@ConnectorRegistry.register_type
class RedditConnector(BaseConnector):
    """Reddit subreddit connector.

    Polls ``/r/<name>/<sort>``. Self posts carry their body as content,
    link posts carry the outbound link. Post statistics go into the item
    metadata.
    """

    source_type = SourceType.REDDIT
    display_name = "Reddit"
    description = "Follow a subreddit listing"
    config_schema = RedditConfig

    config: RedditConfig

    def __init__(
        self,
        config: RedditConfig,
        client: httpx.AsyncClient | None = None,
        credentials: RedditCredentials | None = None,
    ):
        super().__init__(config, client)
        self.credentials = credentials or RedditCredentials.from_settings()
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def authenticated(self) -> bool:
        return self.credentials is not None

    @property
    def sort(self) -> str:
        return self.config.sort or settings.reddit_sort

    @property
    def limit(self) -> int:
        return self.config.limit or settings.reddit_limit

    @property
    def source_name(self) -> str:
        return self.config.title or f"r/{self.source_id}"

    @property
    def source_url(self) -> str:
        return f"{REDDIT_BASE_URL}/r/{self.source_id}"

    @property
    def listing_url(self) -> str:
        if self.authenticated:
            return f"{REDDIT_OAUTH_URL}/r/{self.source_id}/{self.sort}"
        return f"{REDDIT_BASE_URL}/r/{self.source_id}/{self.sort}.json"

    async def access_token(self, client: httpx.AsyncClient) -> str:
        """Bearer token for the OAuth API, fetched again shortly before it expires.

        Raises:
            SourceUnreachableError: If Reddit rejects the credentials
        """
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        creds = self.credentials
        response = await self.post(
            client,
            REDDIT_TOKEN_URL,
            auth=(creds.client_id, creds.client_secret),
            data={
                "grant_type": "password",
                "username": creds.username,
                "password": creds.password,
            },
            headers={"User-Agent": settings.user_agent},
        )

        # Bad credentials come back as 200 with an "error" field
        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as e:
            raise SourceUnreachableError("Reddit authentication failed") from e

        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
        logger.debug(f"Obtained Reddit access token for {creds.username}")
        return token

    async def fetch_records(self) -> AsyncIterator[Any]:
        """Yield the ``data`` payload of every child in the listing."""
        params: dict[str, Any] = {"limit": self.limit}
        if self.sort == "top":
            params["t"] = "day"

        headers = {"User-Agent": settings.user_agent}

        async with self.http_client() as client:
            if self.authenticated:
                headers["Authorization"] = f"bearer {await self.access_token(client)}"
            response = await self.get(client, self.listing_url, params=params, headers=headers)

        bad_format = f"Unexpected listing format from {self.listing_url}"
        try:
            listing = response.json()
            children = listing["data"]["children"]
        except (ValueError, KeyError, TypeError) as e:
            raise SourceUnreachableError(bad_format) from e
        if not isinstance(children, list):
            raise SourceUnreachableError(bad_format)

        logger.debug(f"Fetched {len(children)} posts from r/{self.source_id}")

        for child in children:
            yield child.get("data") if isinstance(child, dict) else child

    def normalize(self, record: Any) -> NormalizedItem:
        if not isinstance(record, dict):
            raise MalformedRecordError("Listing child has no data")

        permalink = record.get("permalink")
        if not permalink:
            raise MalformedRecordError(f"Post {record.get('id', '?')} has no permalink")

        title = (record.get("title") or "").strip()
        if not title:
            raise MalformedRecordError(f"Post {permalink} has no title")

        try:
            published = datetime.fromtimestamp(float(record["created_utc"]), UTC)
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise MalformedRecordError(f"Post {permalink} has no valid created_utc") from e

        content = record.get("selftext") or ""
        if not content and not record.get("is_self") and record.get("url"):
            content = f"External link: {record['url']}"

        return self.build_item(
            title=title,
            content=content or None,
            content_preview=make_preview(content, settings.content_preview_length),
            url=f"{REDDIT_BASE_URL}{permalink}",
            published_at=published,
            metadata={
                "subreddit": record.get("subreddit") or self.source_id,
                "score": record.get("score"),
                "upvote_ratio": record.get("upvote_ratio"),
                "num_comments": record.get("num_comments"),
                "permalink": permalink,
                "is_self": bool(record.get("is_self")),
            },
        )
