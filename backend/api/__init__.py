"""API routers package."""

from api import connectors, news

__all__ = [
    "connectors",
    "news",
]
