"""Services package."""

from services.item_store import ItemStore, KeyedLock, NewsQuery, PageResult, Pagination, UpsertResult
from services.invalidation import FeedVersions, PageCache
from services.run_coordinator import Run, RunCoordinator, RunResult
from services.scheduler import (
    get_job_status,
    scheduled_run_all,
    start_scheduler,
    stop_scheduler,
)

__all__ = [
    # Item store
    "ItemStore",
    "KeyedLock",
    "NewsQuery",
    "PageResult",
    "Pagination",
    "UpsertResult",
    # Invalidation
    "FeedVersions",
    "PageCache",
    # Runs
    "Run",
    "RunCoordinator",
    "RunResult",
    # Scheduler
    "get_job_status",
    "scheduled_run_all",
    "start_scheduler",
    "stop_scheduler",
]
