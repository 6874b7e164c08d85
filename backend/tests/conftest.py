"""Pytest configuration and fixtures."""

import asyncio
import os
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

# Keep the app module from pointing at a real database file
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.dependencies import (
    get_coordinator,
    get_feed_versions,
    get_item_store,
    get_registry,
    get_scheduler,
)
from connectors import BaseConnector, ConnectorRegistry, NormalizedItem, SourceConfigBase
from database import build_engine, get_db, init_db
from errors import MalformedRecordError
from main import app
from models import SourceType
from services.invalidation import FeedVersions
from services.item_store import ItemStore
from services.run_coordinator import RunCoordinator

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class FakeConnector(BaseConnector):
    """In-memory connector yielding prepared records.

    Records are dicts with ``title``, ``url`` and ``published_at``; a record
    with ``malformed=True`` fails normalization. ``fail_with`` is raised after
    the records are exhausted, ``gate`` holds the run until it is set.
    """

    display_name = "Fake"
    description = "Test connector"
    config_schema = SourceConfigBase

    def __init__(
        self,
        name: str,
        records: list[dict[str, Any]] | None = None,
        source_type: SourceType = SourceType.RSS,
        fail_with: Exception | None = None,
        delay: float = 0,
        gate: asyncio.Event | None = None,
    ):
        super().__init__(SourceConfigBase(name=name))
        self.source_type = source_type
        self.records = records or []
        self.fail_with = fail_with
        self.delay = delay
        self.gate = gate
        self.fetch_count = 0

    @property
    def source_url(self) -> str:
        return f"https://example.com/{self.source_id}"

    async def fetch_records(self) -> AsyncIterator[Any]:
        self.fetch_count += 1
        if self.gate is not None:
            await self.gate.wait()
        for record in self.records:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield record
        if self.fail_with is not None:
            raise self.fail_with

    def normalize(self, record: dict[str, Any]) -> NormalizedItem:
        if record.get("malformed"):
            raise MalformedRecordError(f"Record {record.get('url')} is malformed")
        return self.build_item(
            title=record["title"],
            content=record.get("content"),
            content_preview=record.get("content"),
            url=record["url"],
            published_at=record["published_at"],
        )


def make_records(count: int, start: int = 0, prefix: str = "story") -> list[dict[str, Any]]:
    """Distinct records, newest first, one hour apart."""
    return [
        {
            "title": f"Story {i}",
            "content": f"Body of {prefix} {i}",
            "url": f"https://news.example.com/{prefix}/{i}",
            "published_at": BASE_TIME - timedelta(hours=i),
        }
        for i in range(start, start + count)
    ]


def make_item(
    i: int,
    source_id: str = "hackernews",
    source_type: SourceType = SourceType.RSS,
    published_at: datetime | None = None,
    **fields: Any,
) -> NormalizedItem:
    values: dict[str, Any] = {
        "source_type": source_type,
        "source_id": source_id,
        "source_name": source_id.title(),
        "source_url": f"https://example.com/{source_id}",
        "title": f"Story {i}",
        "content": f"Body of story {i}",
        "content_preview": f"Body of story {i}",
        "url": f"https://news.example.com/{source_id}/{i}",
        "published_at": published_at or BASE_TIME - timedelta(hours=i),
    }
    values.update(fields)
    return NormalizedItem(**values)


@pytest.fixture
def connector_factory() -> Callable[..., FakeConnector]:
    """Build FakeConnectors."""
    return FakeConnector


@pytest.fixture
def records_factory() -> Callable[..., list[dict[str, Any]]]:
    return make_records


@pytest.fixture
def item_factory() -> Callable[..., NormalizedItem]:
    return make_item


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a test database engine.

    File-backed so that concurrent sessions see each other's commits.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def item_store(session_maker) -> ItemStore:
    return ItemStore(session_maker, write_lock=asyncio.Lock())


@pytest.fixture
def registry() -> ConnectorRegistry:
    return ConnectorRegistry()


@pytest.fixture
def feed_versions() -> FeedVersions:
    return FeedVersions()


@pytest_asyncio.fixture
async def coordinator(registry, item_store, feed_versions, session_maker) -> RunCoordinator:
    coordinator = RunCoordinator(
        registry,
        item_store,
        feed_versions,
        session_maker=session_maker,
        default_deadline=5.0,
    )
    yield coordinator
    await coordinator.wait_idle()


@pytest_asyncio.fixture
async def client(
    session_maker, item_store, registry, feed_versions, coordinator
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client with service overrides."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_item_store] = lambda: item_store
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_feed_versions] = lambda: feed_versions
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_scheduler] = lambda: None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def items_in_store(item_store) -> list[NormalizedItem]:
    """Items from two RSS feeds and one subreddit."""
    items = [make_item(i) for i in range(5)]
    items += [make_item(i, source_id="lobsters") for i in range(3)]
    items += [
        make_item(i, source_id="golang", source_type=SourceType.REDDIT, title=f"Go post {i}")
        for i in range(2)
    ]
    for item in items:
        await item_store.upsert(item)
    return items
