"""Feed versioning and read-side cache invalidation.

Every run that changes the store bumps the feed version, globally and for its
sub-source: successful runs always, failed runs when they wrote items first.
Read clients compare versions (or the ETag derived from them) and drop cached
pages whose filters could include the refreshed sub-source. Dropping too much
is always allowed; keeping a page that could have changed is not.
"""

import hashlib
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any

from models import SourceType
from services.item_store import NewsQuery, PageResult

logger = logging.getLogger(__name__)


def split_connector_id(connector_id: str) -> tuple[str, str]:
    """``"rss:hackernews"`` -> ``("rss", "hackernews")``."""
    source_type, _, source_id = connector_id.partition(":")
    return source_type, source_id


class FeedVersions:
    """Monotonic feed version counters, global and per sub-source."""

    def __init__(self) -> None:
        self._global = 0
        self._per_source: dict[tuple[str, str], int] = {}

    @property
    def version(self) -> int:
        return self._global

    def version_for(self, source_type: SourceType | str, source_id: str) -> int:
        return self._per_source.get((SourceType(source_type).value, source_id), 0)

    def bump(self, source_type: SourceType | str, source_id: str) -> int:
        """Record a completed refresh of one sub-source. Returns the new global version."""
        key = (SourceType(source_type).value, source_id)
        self._per_source[key] = self._per_source.get(key, 0) + 1
        self._global += 1
        logger.debug(f"Feed version {self._global} after refresh of {key[0]}:{key[1]}")
        return self._global

    def etag(self, query: NewsQuery) -> str:
        """Weak ETag for one page of the feed at the current version."""
        digest = hashlib.sha1(repr(query).encode("utf-8")).hexdigest()[:16]
        return f'W/"{self._global}-{digest}"'

    def snapshot(self) -> dict[str, Any]:
        return {
            "version": self._global,
            "sources": {f"{t}:{s}": v for (t, s), v in self._per_source.items()},
        }


class PageCache:
    """LRU cache of feed pages and single-item lookups for read clients.

    In conservative mode (the default) a completed run clears the whole cache.
    In precise mode only pages whose filters could match the refreshed
    sub-source are dropped.
    """

    def __init__(self, max_pages: int = 256, precise: bool = False):
        self.max_pages = max_pages
        self.precise = precise
        self._pages: OrderedDict[NewsQuery, PageResult] = OrderedDict()
        self._items: dict[str, Any] = {}
        self.hits = 0
        self.misses = 0

    def get(self, query: NewsQuery) -> PageResult | None:
        page = self._pages.get(query)
        if page is None:
            self.misses += 1
            return None
        # Move to end (most recently used)
        self._pages.move_to_end(query)
        self.hits += 1
        return page

    def put(self, query: NewsQuery, page: PageResult) -> None:
        self._pages[query] = page
        self._pages.move_to_end(query)
        while len(self._pages) > self.max_pages:
            self._pages.popitem(last=False)

    async def get_or_fetch(
        self,
        query: NewsQuery,
        fetch: Callable[[NewsQuery], Awaitable[PageResult]],
    ) -> PageResult:
        page = self.get(query)
        if page is None:
            page = await fetch(query)
            self.put(query, page)
        return page

    def get_item(self, item_id: str) -> Any | None:
        return self._items.get(item_id)

    def put_item(self, item: Any) -> None:
        self._items[item.id] = item

    def invalidate_item(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def invalidate_for_run(self, source_type: SourceType | str, source_id: str) -> int:
        """Drop everything a completed run of this sub-source could have changed.

        Returns:
            Number of cached pages dropped
        """
        if not self.precise:
            dropped = len(self._pages)
            self.clear()
            return dropped

        stale = [q for q in self._pages if q.could_match(source_type, source_id)]
        for query in stale:
            del self._pages[query]

        source_type = SourceType(source_type).value
        for item_id in [
            i
            for i, item in self._items.items()
            if item.source_type == source_type and item.source_id == source_id
        ]:
            del self._items[item_id]

        return len(stale)

    def invalidate_for_connector(self, connector_id: str) -> int:
        return self.invalidate_for_run(*split_connector_id(connector_id))

    def clear(self) -> None:
        self._pages.clear()
        self._items.clear()

    def __len__(self) -> int:
        return len(self._pages)
