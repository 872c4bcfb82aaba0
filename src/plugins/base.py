"""
Provider Plugin Base - Abstract interface for resource providers.

Provider plugins implement the resource verbs (create/read/update/delete)
for one or more resource types. They are the only component that talks to
the outside world; everything else in the engine is pure planning or state
bookkeeping.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceTypeSchema:
    """Describes a resource type served by a provider."""

    name: str
    attributes_schema: Dict[str, Any] = field(default_factory=dict)
    # Changing any of these forces replacement instead of an in-place update
    immutable_attributes: FrozenSet[str] = frozenset()
    description: str = ""


class ProviderPlugin(ABC):
    """
    Abstract base class for provider plugins.

    Every verb may raise TransientProviderError (retried by the executor with
    backoff) or PermanentProviderError (fails the resource immediately).
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'memory')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        """Resource types served by this plugin, keyed by type name."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the plugin with configuration.

        Called once when the plugin is first requested from the registry.

        Args:
            config: Plugin-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        """
        Create a resource.

        Args:
            resource_type: The resource type name
            attributes: Fully resolved desired attributes

        Returns:
            The physical id assigned by the provider
        """
        pass

    @abstractmethod
    async def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        """
        Read the current attributes of a resource.

        Returns:
            The attributes reported by the provider (used as outputs)
        """
        pass

    @abstractmethod
    async def update(
        self, resource_type: str, physical_id: str, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Update a resource in place.

        Returns:
            The attributes reported by the provider after the update
        """
        pass

    @abstractmethod
    async def delete(self, resource_type: str, physical_id: str) -> None:
        """Delete a resource."""
        pass

    async def close(self) -> None:
        """Release any connections held by the plugin."""
        return None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load plugin-specific configuration from environment variables.

        Override this method in subclasses to define how the plugin
        loads its configuration from the environment.
        """
        return {}
