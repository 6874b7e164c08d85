"""Connector system for fetching items from various sources.

This module provides a pluggable connector system for fetching news
from different sources (RSS feeds, subreddits, Telegram channels).

Usage:
    from connectors import build_registry, load_sources

    registry = build_registry(load_sources("sources.json"))
    connector = registry.get("rss:hackernews")
    async for item in connector.run():
        ...
"""

from .base import BaseConnector, NormalizedItem, SourceConfigBase, make_item_id
from .registry import ConnectorRegistry

# Import all connectors to register them
from .rss import RSSConfig, RSSConnector
from .reddit import RedditConfig, RedditConnector
from .telegram import TelegramConfig, TelegramConnector
from .factory import SourceConfig, build_registry, load_sources, parse_sources

__all__ = [
    # Base classes
    "BaseConnector",
    "NormalizedItem",
    "SourceConfigBase",
    "ConnectorRegistry",
    "make_item_id",
    # Connectors
    "RSSConfig",
    "RSSConnector",
    "RedditConfig",
    "RedditConnector",
    "TelegramConfig",
    "TelegramConnector",
    # Factory
    "SourceConfig",
    "build_registry",
    "load_sources",
    "parse_sources",
]
