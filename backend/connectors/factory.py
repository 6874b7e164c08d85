"""Build the connector registry from the sources file."""

import json
import logging
from pathlib import Path
from typing import Annotated

import httpx
from pydantic import Field, TypeAdapter

from .registry import ConnectorRegistry
from .reddit import RedditConfig
from .rss import RSSConfig
from .telegram import TelegramConfig

logger = logging.getLogger(__name__)

SourceConfig = Annotated[
    RSSConfig | RedditConfig | TelegramConfig,
    Field(discriminator="type"),
]

_sources_adapter = TypeAdapter(list[SourceConfig])


def parse_sources(data: object) -> list[SourceConfig]:
    """Validate a decoded sources list.

    Raises:
        pydantic.ValidationError: If an entry is invalid
    """
    return _sources_adapter.validate_python(data)


def load_sources(path: str | Path) -> list[SourceConfig]:
    """Load source entries from a JSON file.

    A missing file yields no sources; an invalid one raises.
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Sources file {path} not found, no connectors configured")
        return []

    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    return parse_sources(data)


def build_registry(
    sources: list[SourceConfig],
    client: httpx.AsyncClient | None = None,
) -> ConnectorRegistry:
    """Instantiate and register a connector for every enabled source.

    Raises:
        DuplicateConnectorError: If two sources map to the same connector id
    """
    registry = ConnectorRegistry()
    for source in sources:
        if not source.enabled:
            logger.info(f"Skipping disabled source {source.type}:{source.name}")
            continue
        connector_cls = ConnectorRegistry.get_type(source.type)
        connector = registry.register(connector_cls(source, client=client))
        logger.info(f"Registered connector {connector.connector_id}")
    return registry
