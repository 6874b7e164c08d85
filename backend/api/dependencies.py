"""FastAPI dependencies resolving the services created at startup."""

from fastapi import Request

from connectors import ConnectorRegistry
from services.invalidation import FeedVersions
from services.item_store import ItemStore
from services.run_coordinator import RunCoordinator


def get_item_store(request: Request) -> ItemStore:
    return request.app.state.item_store


def get_registry(request: Request) -> ConnectorRegistry:
    return request.app.state.registry


def get_coordinator(request: Request) -> RunCoordinator:
    return request.app.state.coordinator


def get_feed_versions(request: Request) -> FeedVersions:
    return request.app.state.feed_versions


def get_scheduler(request: Request):
    """The running APScheduler instance, or None when scheduling is disabled."""
    return getattr(request.app.state, "scheduler", None)
