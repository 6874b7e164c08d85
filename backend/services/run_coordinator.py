"""Run coordinator: executes connectors and tracks their run state.

At most one run per connector is in flight at any time. A run drains its
connector under a deadline, upserts every item in yield order and finishes
``succeeded`` or ``failed``. Runs are shielded from the caller: a request that
goes away never aborts a run half-way.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import aclosing
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from connectors.base import BaseConnector
from connectors.registry import ConnectorRegistry
from errors import AlreadyRunningError, IngestError, RunTimeoutError
from models import ConnectorRun, RunStatus, utcnow
from services.invalidation import FeedVersions
from services.item_store import ItemStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Run:
    """Snapshot of one connector execution."""

    connector_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    processed_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    error: str | None = None
    error_kind: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_result(self) -> "RunResult":
        return RunResult(
            connector_id=self.connector_id,
            status=self.status,
            processed=self.processed_count,
            updated=self.updated_count,
            skipped=self.skipped_count,
            message=self.error,
            error_kind=self.error_kind,
        )


@dataclass(frozen=True)
class RunResult:
    """Per-connector summary reported by run_all."""

    connector_id: str
    status: RunStatus
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    message: str | None = None
    error_kind: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED


class RunCoordinator:
    """Invokes connectors, upserts their items and owns the run-state table.

    Args:
        registry: Configured connectors
        store: Destination for normalized items
        versions: Feed version tracker bumped after every run that changed the store
        session_maker: Session factory for the run history (optional)
        default_deadline: Seconds a run may take when no deadline is given
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        store: ItemStore,
        versions: FeedVersions | None = None,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        default_deadline: float | None = None,
    ):
        self.registry = registry
        self.store = store
        self.versions = versions or FeedVersions()
        self._session_maker = session_maker
        self.default_deadline = (
            default_deadline if default_deadline is not None else settings.run_timeout_seconds
        )
        self._runs: dict[str, Run] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: set[asyncio.Task] = set()

    async def run_one(self, connector_id: str, deadline: float | None = None) -> Run:
        """Run one connector to completion and return the terminal Run.

        A failed run is returned, not raised.

        Raises:
            NotFoundError: If the connector id is not registered
            AlreadyRunningError: If this connector already has a run in flight
        """
        connector = self.registry.get(connector_id)

        async with self._locks[connector_id]:
            current = self._runs.get(connector_id)
            if current is not None and not current.is_terminal:
                raise AlreadyRunningError(connector_id)
            run = Run(connector_id=connector_id, status=RunStatus.PENDING, started_at=utcnow())
            self._runs[connector_id] = run
            run = replace(run, status=RunStatus.RUNNING)
            self._runs[connector_id] = run

        task = asyncio.create_task(self._execute(connector, run, deadline))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return await asyncio.shield(task)

    async def run_all(self, deadline: float | None = None) -> dict[str, RunResult]:
        """Run every registered connector concurrently.

        Returns only after every constituent run is terminal. Failures are
        reported per connector and never raised.
        """
        connectors = self.registry.all()
        logger.info(f"Starting run of {len(connectors)} connectors")

        runs = await asyncio.gather(
            *(self._run_isolated(c.connector_id, deadline) for c in connectors)
        )
        results = {run.connector_id: run.to_result() for run in runs}

        failed = sum(1 for r in results.values() if not r.succeeded)
        logger.info(f"Completed run of {len(results)} connectors, {failed} failed")
        return results

    async def _run_isolated(self, connector_id: str, deadline: float | None) -> Run:
        try:
            return await self.run_one(connector_id, deadline)
        except IngestError as e:
            now = utcnow()
            return Run(
                connector_id=connector_id,
                status=RunStatus.FAILED,
                started_at=now,
                finished_at=now,
                error=e.message,
                error_kind=e.kind,
            )

    async def _execute(self, connector: BaseConnector, run: Run, deadline: float | None) -> Run:
        timeout = deadline if deadline is not None else self.default_deadline
        processed = updated = 0
        error: IngestError | None = None

        logger.info(f"Starting run of {connector.connector_id}")
        try:
            async with asyncio.timeout(timeout):
                async with aclosing(connector.run()) as items:
                    async for item in items:
                        result = await self.store.upsert(item)
                        if result.created:
                            processed += 1
                        else:
                            updated += 1
        except TimeoutError:
            error = RunTimeoutError(f"Run exceeded deadline of {timeout}s")
        except IngestError as e:
            error = e
        except asyncio.CancelledError:
            await self._finish(connector, run, processed, updated, IngestError("Run cancelled"))
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in run of {connector.connector_id}")
            error = IngestError(f"Unexpected error: {e}")

        return await self._finish(connector, run, processed, updated, error)

    async def _finish(
        self,
        connector: BaseConnector,
        run: Run,
        processed: int,
        updated: int,
        error: IngestError | None,
    ) -> Run:
        finished = replace(
            run,
            status=RunStatus.FAILED if error else RunStatus.SUCCEEDED,
            finished_at=utcnow(),
            processed_count=processed,
            updated_count=updated,
            skipped_count=connector.skipped,
            error=error.message if error else None,
            error_kind=error.kind if error else None,
        )
        self._runs[run.connector_id] = finished

        # Items written before a failure stay in the store, so the feed changed
        if not error or processed or updated:
            self.versions.bump(connector.source_type, connector.source_id)

        if error:
            logger.error(
                f"Run of {run.connector_id} failed ({error.kind}): {error.message} "
                f"[{processed} new, {updated} updated before failure]"
            )
        else:
            logger.info(
                f"Run of {run.connector_id} succeeded: {processed} new, {updated} updated, "
                f"{connector.skipped} skipped in {finished.duration_seconds:.2f}s"
            )

        await self._record(finished)
        return finished

    async def _record(self, run: Run) -> None:
        """Append a terminal run to the persisted history."""
        if self._session_maker is None:
            return
        try:
            async with self.store.write_guard():
                async with self._session_maker() as session:
                    session.add(
                        ConnectorRun(
                            connector_id=run.connector_id,
                            status=run.status.value,
                            started_at=run.started_at,
                            finished_at=run.finished_at,
                            processed_count=run.processed_count,
                            updated_count=run.updated_count,
                            skipped_count=run.skipped_count,
                            error=run.error,
                            error_kind=run.error_kind,
                        )
                    )
                    await session.commit()
        except SQLAlchemyError as e:
            # History is best effort; the in-memory run state stays authoritative
            logger.warning(f"Could not record run of {run.connector_id}: {e}")

    def get_run(self, connector_id: str) -> Run | None:
        """Latest run of a connector, or None if it never ran.

        Raises:
            NotFoundError: If the connector id is not registered
        """
        self.registry.get(connector_id)
        return self._runs.get(connector_id)

    def runs(self) -> dict[str, Run]:
        """Latest run snapshot per connector."""
        return dict(self._runs)

    def is_running(self, connector_id: str) -> bool:
        run = self._runs.get(connector_id)
        return run is not None and not run.is_terminal

    async def wait_idle(self) -> None:
        """Wait until no run is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def summary(self) -> dict[str, Any]:
        counts: dict[str, int] = defaultdict(int)
        for run in self._runs.values():
            counts[run.status.value] += 1
        return {
            "connectors": len(self.registry),
            "runs": dict(counts),
            "feed_version": self.versions.version,
        }

