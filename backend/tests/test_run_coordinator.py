"""Tests for the run coordinator."""

import asyncio

import httpx
import pytest
from sqlalchemy import select

from connectors import RSSConnector
from connectors.rss import RSSConfig
from errors import AlreadyRunningError, NotFoundError, SourceUnreachableError
from models import ConnectorRun, RunStatus
from services.item_store import NewsQuery


def feed_with(indices) -> str:
    entries = "".join(
        f"""<item><title>Story {i}</title>
        <link>https://news.ycombinator.example/item?id={i}</link>
        <description>Body {i}</description>
        <pubDate>Wed, 01 May 2024 {i:02d}:00:00 GMT</pubDate></item>"""
        for i in indices
    )
    return f'<?xml version="1.0"?><rss version="2.0"><channel><title>HN</title>{entries}</channel></rss>'


class TestRunOne:
    """Tests for single connector runs."""

    @pytest.mark.asyncio
    async def test_successful_run(self, coordinator, registry, connector_factory, records_factory):
        registry.register(connector_factory("hackernews", records_factory(4)))

        run = await coordinator.run_one("rss:hackernews")

        assert run.status == RunStatus.SUCCEEDED
        assert run.processed_count == 4
        assert run.updated_count == 0
        assert run.error is None
        assert run.finished_at >= run.started_at
        assert coordinator.get_run("rss:hackernews") == run

    @pytest.mark.asyncio
    async def test_unknown_connector_raises(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.run_one("rss:missing")

    @pytest.mark.asyncio
    async def test_rerun_counts_only_new_items(
        self, coordinator, registry, item_store, connector_factory, records_factory
    ):
        connector = registry.register(connector_factory("hackernews", records_factory(3)))
        await coordinator.run_one("rss:hackernews")

        connector.records = records_factory(4)
        run = await coordinator.run_one("rss:hackernews")

        assert run.processed_count == 1
        assert run.updated_count == 3
        assert await item_store.count() == 4

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(
        self, coordinator, registry, connector_factory, records_factory
    ):
        records = records_factory(3)
        records.insert(1, {"malformed": True, "url": "https://bad.example.com"})
        registry.register(connector_factory("hackernews", records))

        run = await coordinator.run_one("rss:hackernews")

        assert run.status == RunStatus.SUCCEEDED
        assert run.processed_count == 3
        assert run.skipped_count == 1

    @pytest.mark.asyncio
    async def test_unreachable_source_fails_run(
        self, coordinator, registry, item_store, connector_factory, records_factory
    ):
        """Items upserted before the failure stay; the run is returned failed."""
        registry.register(
            connector_factory(
                "hackernews",
                records_factory(2),
                fail_with=SourceUnreachableError("HTTP error 503"),
            )
        )

        run = await coordinator.run_one("rss:hackernews")

        assert run.status == RunStatus.FAILED
        assert run.error == "HTTP error 503"
        assert run.error_kind == "source_unreachable"
        assert run.processed_count == 2
        assert await item_store.count() == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_run(self, coordinator, registry, connector_factory):
        registry.register(connector_factory("hackernews", fail_with=RuntimeError("boom")))

        run = await coordinator.run_one("rss:hackernews")

        assert run.status == RunStatus.FAILED
        assert run.error_kind == "internal"
        assert "boom" in run.error

    @pytest.mark.asyncio
    async def test_deadline_fails_run_with_timeout(
        self, coordinator, registry, connector_factory, records_factory
    ):
        registry.register(connector_factory("slow", records_factory(5), delay=0.2))

        run = await coordinator.run_one("rss:slow", deadline=0.05)

        assert run.status == RunStatus.FAILED
        assert run.error_kind == "timeout"
        assert coordinator.is_running("rss:slow") is False

    @pytest.mark.asyncio
    async def test_concurrent_run_is_rejected(
        self, coordinator, registry, connector_factory, records_factory
    ):
        """A second run_one while the first is in flight raises AlreadyRunningError."""
        gate = asyncio.Event()
        registry.register(connector_factory("hackernews", records_factory(2), gate=gate))

        first = asyncio.create_task(coordinator.run_one("rss:hackernews"))
        await asyncio.sleep(0)
        assert coordinator.is_running("rss:hackernews")

        with pytest.raises(AlreadyRunningError):
            await coordinator.run_one("rss:hackernews")

        gate.set()
        run = await first
        assert run.status == RunStatus.SUCCEEDED

        # A new run is accepted once the previous one is terminal
        again = await coordinator.run_one("rss:hackernews")
        assert again.status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_run(
        self, coordinator, registry, item_store, connector_factory, records_factory
    ):
        gate = asyncio.Event()
        registry.register(connector_factory("hackernews", records_factory(3), gate=gate))

        caller = asyncio.create_task(coordinator.run_one("rss:hackernews"))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        await coordinator.wait_idle()

        run = coordinator.get_run("rss:hackernews")
        assert run.status == RunStatus.SUCCEEDED
        assert await item_store.count() == 3

    @pytest.mark.asyncio
    async def test_terminal_runs_are_persisted(
        self, coordinator, registry, db_session, connector_factory, records_factory
    ):
        registry.register(connector_factory("hackernews", records_factory(2)))
        registry.register(
            connector_factory("broken", fail_with=SourceUnreachableError("down"))
        )

        await coordinator.run_one("rss:hackernews")
        await coordinator.run_one("rss:broken")

        rows = (await db_session.scalars(select(ConnectorRun).order_by(ConnectorRun.id))).all()
        assert [(r.connector_id, r.status) for r in rows] == [
            ("rss:hackernews", "succeeded"),
            ("rss:broken", "failed"),
        ]
        assert rows[0].processed_count == 2
        assert rows[1].error_kind == "source_unreachable"

    @pytest.mark.asyncio
    async def test_successful_run_bumps_feed_version(
        self, coordinator, registry, feed_versions, connector_factory, records_factory
    ):
        registry.register(connector_factory("hackernews", records_factory(1)))
        registry.register(connector_factory("broken", fail_with=SourceUnreachableError("down")))

        await coordinator.run_one("rss:hackernews")
        await coordinator.run_one("rss:broken")

        assert feed_versions.version == 1
        assert feed_versions.version_for("rss", "hackernews") == 1
        assert feed_versions.version_for("rss", "broken") == 0

    @pytest.mark.asyncio
    async def test_failed_run_with_writes_bumps_feed_version(
        self, coordinator, registry, feed_versions, connector_factory, records_factory
    ):
        registry.register(
            connector_factory(
                "flaky", records_factory(2), fail_with=SourceUnreachableError("HTTP error 503")
            )
        )

        run = await coordinator.run_one("rss:flaky")

        assert run.status == RunStatus.FAILED
        assert feed_versions.version == 1
        assert feed_versions.version_for("rss", "flaky") == 1


class TestRunAll:
    """Tests for fan-out runs."""

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_others(
        self, coordinator, registry, connector_factory, records_factory
    ):
        registry.register(connector_factory("a", records_factory(2, prefix="a")))
        registry.register(connector_factory("b", fail_with=SourceUnreachableError("HTTP error 500")))
        registry.register(connector_factory("c", records_factory(3, prefix="c")))

        results = await coordinator.run_all()

        assert set(results) == {"rss:a", "rss:b", "rss:c"}
        assert results["rss:a"].status == RunStatus.SUCCEEDED
        assert results["rss:a"].processed == 2
        assert results["rss:b"].status == RunStatus.FAILED
        assert results["rss:b"].message == "HTTP error 500"
        assert results["rss:c"].processed == 3
        assert all(run.is_terminal for run in coordinator.runs().values())

    @pytest.mark.asyncio
    async def test_connectors_run_concurrently(
        self, coordinator, registry, connector_factory, records_factory
    ):
        gate = asyncio.Event()
        registry.register(connector_factory("a", records_factory(1, prefix="a"), gate=gate))
        registry.register(connector_factory("b", records_factory(1, prefix="b"), gate=gate))

        task = asyncio.create_task(coordinator.run_all())
        await asyncio.sleep(0.01)
        assert coordinator.is_running("rss:a")
        assert coordinator.is_running("rss:b")

        gate.set()
        results = await task
        assert all(r.succeeded for r in results.values())

    @pytest.mark.asyncio
    async def test_busy_connector_reported_as_failed(
        self, coordinator, registry, connector_factory, records_factory
    ):
        gate = asyncio.Event()
        registry.register(connector_factory("busy", records_factory(1), gate=gate))
        registry.register(connector_factory("idle", records_factory(1, prefix="idle")))

        busy = asyncio.create_task(coordinator.run_one("rss:busy"))
        await asyncio.sleep(0)

        results = await coordinator.run_all()
        assert results["rss:busy"].status == RunStatus.FAILED
        assert results["rss:busy"].error_kind == "already_running"
        assert results["rss:idle"].succeeded

        gate.set()
        assert (await busy).status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_empty_registry(self, coordinator):
        assert await coordinator.run_all() == {}


class TestFeedScenarios:
    """End-to-end ingestion scenarios against an RSS feed."""

    @pytest.mark.asyncio
    async def test_fifteen_items_over_two_pages(self, coordinator, registry, item_store):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=feed_with(range(15))))
        )
        registry.register(
            RSSConnector(RSSConfig(name="hackernews", url="https://hn.example.com/rss"), client=client)
        )

        run = await coordinator.run_one("rss:hackernews")
        assert run.processed_count == 15

        page1 = await item_store.query(NewsQuery(source_type="rss", page=1, page_size=12))
        assert len(page1.items) == 12
        assert page1.pagination.page == 1
        assert page1.pagination.page_size == 12
        assert page1.pagination.total_pages == 2
        assert page1.pagination.total_items == 15

        page2 = await item_store.query(NewsQuery(source_type="rss", page=2, page_size=12))
        assert len(page2.items) == 3
        assert not {i.id for i in page1.items} & {i.id for i in page2.items}

    @pytest.mark.asyncio
    async def test_rerun_with_overlap(self, coordinator, registry, item_store):
        """10 of the original 15 records plus 2 new ones give 17 items, not 27."""
        payload = {"feed": feed_with(range(15))}
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=payload["feed"]))
        )
        registry.register(
            RSSConnector(RSSConfig(name="hackernews", url="https://hn.example.com/rss"), client=client)
        )
        await coordinator.run_one("rss:hackernews")

        payload["feed"] = feed_with([*range(5, 15), 20, 21])
        run = await coordinator.run_one("rss:hackernews")

        assert run.processed_count == 2
        assert run.updated_count == 10
        result = await item_store.query(NewsQuery(source_type="rss"))
        assert result.pagination.total_items == 17
