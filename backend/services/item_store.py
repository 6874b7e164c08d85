"""Item store and query engine for normalized news items.

Upserts are idempotent on the natural key ``(source_type, source_id, url)``.
Writes for the same key are serialized; unrelated keys proceed independently.
"""

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, String, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.base import NormalizedItem
from database import is_sqlite
from errors import NotFoundError
from models import NewsItem, SourceType, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class KeyedLock:
    """One asyncio.Lock per key, dropped again once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class NewsQuery:
    """Filter and page selection for the news feed.

    Frozen and hashable: equal fields mean the same cached page.
    """

    source_type: SourceType | None = None
    source_id: str | None = None
    query: str | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        if self.source_type is not None and not isinstance(self.source_type, SourceType):
            object.__setattr__(self, "source_type", SourceType(self.source_type))
        if self.query is not None and not self.query.strip():
            object.__setattr__(self, "query", None)

    def could_match(self, source_type: SourceType | str, source_id: str) -> bool:
        """Whether items of this sub-source could appear in the result."""
        if self.source_type is not None and self.source_type != SourceType(source_type):
            return False
        if self.source_id is not None and self.source_id != source_id:
            return False
        return True


@dataclass(frozen=True)
class Pagination:
    page: int
    page_size: int
    total_pages: int
    total_items: int


@dataclass(frozen=True)
class PageResult:
    items: list[NewsItem] = field(default_factory=list)
    pagination: Pagination = field(default_factory=lambda: Pagination(1, DEFAULT_PAGE_SIZE, 1, 0))


@dataclass(frozen=True)
class UpsertResult:
    item: NewsItem
    created: bool


class ItemStore:
    """Persistent, de-duplicated store of NewsItems.

    Args:
        session_maker: Factory for database sessions
        write_lock: Lock serializing commits. Defaults to a private lock on
            SQLite (single writer) and none on other backends.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        write_lock: asyncio.Lock | None = None,
    ):
        self._session_maker = session_maker
        bind = session_maker.kw.get("bind")
        self._sqlite = is_sqlite(str(bind.url) if bind is not None else None)
        if write_lock is None and self._sqlite:
            write_lock = asyncio.Lock()
        self._write_lock = write_lock
        self._key_locks = KeyedLock()

    def write_guard(self):
        """Context manager held around every commit."""
        return self._write_lock or nullcontext()

    async def upsert(self, item: NormalizedItem) -> UpsertResult:
        """Insert a new item or refresh the mutable fields of an existing one.

        ``id``, the natural key and ``published_at`` never change.
        """
        async with self._key_locks.acquire(item.natural_key):
            async with self.write_guard():
                async with self._session_maker() as session:
                    row, created = await self._upsert_in_session(session, item)
                    await session.commit()

        logger.debug(f"{'Inserted' if created else 'Updated'} item {row.id} ({item.url})")
        return UpsertResult(item=row, created=created)

    async def _upsert_in_session(
        self, session: AsyncSession, item: NormalizedItem
    ) -> tuple[NewsItem, bool]:
        now = utcnow()
        existing = await self._get_by_key(session, item)
        if existing is None:
            row = NewsItem(
                id=item.item_id,
                source_type=item.source_type.value,
                source_id=item.source_id,
                source_name=item.source_name,
                source_url=item.source_url,
                title=item.title,
                content=item.content,
                content_preview=item.content_preview,
                url=item.url,
                published_at=item.published_at,
                processed_at=now,
                metadata_=item.metadata,
            )
            session.add(row)
            try:
                await session.flush()
                return row, True
            except IntegrityError:
                # Another process inserted the same key first
                await session.rollback()
                existing = await self._get_by_key(session, item)
                if existing is None:
                    raise

        existing.title = item.title
        existing.content = item.content
        existing.content_preview = item.content_preview
        existing.source_name = item.source_name
        existing.source_url = item.source_url
        existing.metadata_ = item.metadata
        existing.processed_at = now
        return existing, False

    @staticmethod
    async def _get_by_key(session: AsyncSession, item: NormalizedItem) -> NewsItem | None:
        return await session.scalar(
            select(NewsItem).where(
                NewsItem.source_type == item.source_type.value,
                NewsItem.source_id == item.source_id,
                NewsItem.url == item.url,
            )
        )

    async def query(self, q: NewsQuery) -> PageResult:
        """Filter, sort newest first (ties by id) and slice one page."""
        stmt = select(NewsItem)

        if q.source_type is not None:
            stmt = stmt.where(NewsItem.source_type == q.source_type.value)
        if q.source_id is not None:
            stmt = stmt.where(NewsItem.source_id == q.source_id)
        if q.query:
            stmt = stmt.where(self._text_filter(q.query))
        if q.from_date is not None:
            stmt = stmt.where(NewsItem.published_at >= q.from_date)
        if q.to_date is not None:
            stmt = stmt.where(NewsItem.published_at <= q.to_date)

        async with self._session_maker() as session:
            count_query = select(func.count()).select_from(stmt.subquery())
            total = await session.scalar(count_query) or 0

            stmt = stmt.order_by(NewsItem.published_at.desc(), NewsItem.id.asc())
            stmt = stmt.offset((q.page - 1) * q.page_size).limit(q.page_size)
            items = list((await session.scalars(stmt)).all())

        return PageResult(
            items=items,
            pagination=Pagination(
                page=q.page,
                page_size=q.page_size,
                total_pages=max(1, math.ceil(total / q.page_size)),
                total_items=total,
            ),
        )

    def _text_filter(self, text: str) -> ColumnElement[bool]:
        """Case-insensitive substring match over title, content and preview."""
        columns = (NewsItem.title, NewsItem.content, NewsItem.content_preview)
        if self._sqlite:
            needle = text.casefold()
            return or_(
                *(
                    func.py_casefold(col, type_=String).contains(needle, autoescape=True)
                    for col in columns
                )
            )
        return or_(*(col.icontains(text, autoescape=True) for col in columns))

    async def get_by_id(self, item_id: str) -> NewsItem:
        """Get a single item by ID.

        Raises:
            NotFoundError: If no item has this id
        """
        async with self._session_maker() as session:
            item = await session.get(NewsItem, item_id)
        if item is None:
            raise NotFoundError(f"News item {item_id} not found")
        return item

    async def count(self) -> int:
        async with self._session_maker() as session:
            return await session.scalar(select(func.count(NewsItem.id))) or 0

    async def stats(self) -> list[dict[str, Any]]:
        """Item counts per sub-source, largest first."""
        stmt = (
            select(
                NewsItem.source_type,
                NewsItem.source_id,
                func.max(NewsItem.source_name).label("source_name"),
                func.count(NewsItem.id).label("item_count"),
                func.max(NewsItem.published_at).label("latest_published_at"),
            )
            .group_by(NewsItem.source_type, NewsItem.source_id)
            .order_by(func.count(NewsItem.id).desc(), NewsItem.source_type, NewsItem.source_id)
        )
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).all()

        return [
            {
                "source_type": row.source_type,
                "source_id": row.source_id,
                "source_name": row.source_name,
                "item_count": row.item_count,
                "latest_published_at": row.latest_published_at,
            }
            for row in rows
        ]
