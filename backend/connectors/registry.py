"""Central registry for connector types and configured connector instances."""

from typing import Any

from errors import DuplicateConnectorError, NotFoundError
from models import SourceType

from .base import BaseConnector


class ConnectorRegistry:
    """Registry of configured connectors, keyed by ``connector_id``.

    Usage:
        @ConnectorRegistry.register_type
        class MyConnector(BaseConnector):
            source_type = SourceType.RSS
            ...

        # Get a connector class for a source type
        connector_cls = ConnectorRegistry.get_type(SourceType.RSS)

        # Register configured instances
        registry = ConnectorRegistry()
        registry.register(connector_cls(config))
        registry.get("rss:hackernews")
    """

    _types: dict[SourceType, type[BaseConnector]] = {}

    def __init__(self) -> None:
        self._connectors: dict[str, BaseConnector] = {}

    @classmethod
    def register_type(cls, connector_class: type[BaseConnector]) -> type[BaseConnector]:
        """Decorator to register a connector class for its source type.

        Args:
            connector_class: The connector class to register

        Returns:
            The same connector class (for use as decorator)
        """
        cls._types[connector_class.source_type] = connector_class
        return connector_class

    @classmethod
    def get_type(cls, source_type: SourceType | str) -> type[BaseConnector]:
        """Get connector class by source type.

        Raises:
            ValueError: If the source type has no registered connector
        """
        try:
            source_type = SourceType(source_type)
        except ValueError:
            source_type = None
        if source_type not in cls._types:
            available = ", ".join(t.value for t in cls._types)
            raise ValueError(f"Unknown source type. Available: {available}")
        return cls._types[source_type]

    @classmethod
    def get_types(cls) -> list[str]:
        """Get list of all registered source types."""
        return [t.value for t in cls._types]

    def register(self, connector: BaseConnector) -> BaseConnector:
        """Register a connector instance under its connector_id.

        Raises:
            DuplicateConnectorError: If the id is already registered
        """
        connector_id = connector.connector_id
        if connector_id in self._connectors:
            raise DuplicateConnectorError(f"Connector {connector_id} is already registered")
        self._connectors[connector_id] = connector
        return connector

    def get(self, connector_id: str) -> BaseConnector:
        """Get a connector by id.

        Raises:
            NotFoundError: If no connector has this id
        """
        connector = self._connectors.get(connector_id)
        if connector is None:
            raise NotFoundError(f"Connector {connector_id} not found")
        return connector

    def all(self) -> list[BaseConnector]:
        """All connectors, in registration order."""
        return list(self._connectors.values())

    def ids(self) -> list[str]:
        return list(self._connectors)

    def is_registered(self, connector_id: str) -> bool:
        return connector_id in self._connectors

    def list_all(self) -> list[dict[str, Any]]:
        """List registered connectors with metadata.

        Returns:
            List of dicts with connector info (id, type, source, display name)
        """
        return [
            {
                "id": c.connector_id,
                "source_type": c.source_type.value,
                "source_id": c.source_id,
                "source_name": c.source_name,
                "source_url": c.source_url,
                "name": c.display_name,
                "description": c.description,
            }
            for c in self._connectors.values()
        ]

    def __len__(self) -> int:
        return len(self._connectors)

    def __contains__(self, connector_id: object) -> bool:
        return connector_id in self._connectors
