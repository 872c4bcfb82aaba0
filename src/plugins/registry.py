"""
Plugin Registry - Discovery and registration of provider plugins.

This module provides the central registry for provider plugins, handling
discovery, registration, instantiation, and the mapping from resource type
to the provider that serves it.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from plugins.base import ProviderPlugin, ResourceTypeSchema

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "converge.providers"


class PluginRegistry:
    """
    Central registry for provider plugins.

    Each resource type is served by exactly one provider plugin.
    """

    def __init__(self):
        # Registered plugin classes (not instantiated)
        self._provider_plugins: Dict[str, Type[ProviderPlugin]] = {}

        # Cached plugin metadata to avoid repeated instantiation
        self._provider_plugin_info: Dict[str, Dict[str, Any]] = {}

        # Instantiated and initialized plugin instances
        self._provider_instances: Dict[str, ProviderPlugin] = {}

        # Plugin configurations loaded from environment
        self._provider_plugin_configs: Dict[str, Dict[str, Any]] = {}

        # Resource type name -> (provider name, schema)
        self._resource_type_to_provider: Dict[str, str] = {}
        self._resource_type_schemas: Dict[str, ResourceTypeSchema] = {}

    # Registration methods

    def register_provider_plugin(self, plugin_class: Type[ProviderPlugin]) -> None:
        """
        Register a provider plugin class.

        Args:
            plugin_class: The ProviderPlugin subclass to register

        Raises:
            ValueError: If a resource type is already claimed by another provider
        """
        # Create temporary instance to get metadata (only once at registration)
        temp_instance = plugin_class()
        name = temp_instance.name
        version = temp_instance.version
        resource_types = temp_instance.resource_types

        if name in self._provider_plugins:
            logger.warning(f"Overwriting existing provider plugin: {name}")

        for type_name in resource_types:
            existing = self._resource_type_to_provider.get(type_name)
            if existing and existing != name:
                raise ValueError(
                    f"Resource type '{type_name}' is already claimed by "
                    f"provider '{existing}'. Cannot register '{name}'."
                )

        self._provider_plugins[name] = plugin_class
        self._provider_plugin_info[name] = {
            "name": name,
            "version": version,
            "resource_types": sorted(resource_types),
        }
        self._provider_plugin_configs[name] = plugin_class.load_config_from_env()

        for type_name, schema in resource_types.items():
            self._resource_type_to_provider[type_name] = name
            self._resource_type_schemas[type_name] = schema

        logger.info(
            f"Registered provider plugin: {name} v{version} "
            f"(resource types: {', '.join(sorted(resource_types)) or 'none'})"
        )

    # Instantiation methods

    async def get_provider_plugin(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ProviderPlugin:
        """
        Get an initialized provider plugin instance.

        Args:
            name: The plugin name to retrieve
            config: Optional configuration merged over the env-loaded config

        Returns:
            An initialized ProviderPlugin instance

        Raises:
            ValueError: If the plugin name is not registered
        """
        if name not in self._provider_plugins:
            available = ", ".join(self._provider_plugins.keys()) or "none"
            raise ValueError(
                f"Unknown provider plugin: {name}. Available plugins: {available}"
            )

        if name not in self._provider_instances:
            plugin_config = dict(self._provider_plugin_configs.get(name, {}))
            plugin_config.update(config or {})
            plugin = self._provider_plugins[name]()
            await plugin.initialize(plugin_config)
            self._provider_instances[name] = plugin
            logger.info(f"Initialized provider plugin: {name}")

        return self._provider_instances[name]

    async def get_provider_for_type(self, resource_type: str) -> ProviderPlugin:
        """
        Get the initialized provider serving a resource type.

        Raises:
            ValueError: If no provider serves the resource type
        """
        provider_name = self._resource_type_to_provider.get(resource_type)
        if provider_name is None:
            raise ValueError(f"No provider serves resource type: {resource_type}")
        return await self.get_provider_plugin(provider_name)

    async def close(self) -> None:
        """Close all initialized provider instances."""
        for name, plugin in list(self._provider_instances.items()):
            try:
                await plugin.close()
            except Exception as e:
                logger.error(f"Error closing provider plugin '{name}': {e}")
        self._provider_instances.clear()

    # Discovery methods

    def list_provider_plugins(self) -> List[str]:
        """List all registered provider plugin names."""
        return list(self._provider_plugins.keys())

    def list_resource_types(self) -> List[str]:
        """List all resource types served by registered providers."""
        return sorted(self._resource_type_to_provider.keys())

    def has_provider_plugin(self, name: str) -> bool:
        """Check if a provider plugin is registered."""
        return name in self._provider_plugins

    def has_resource_type(self, resource_type: str) -> bool:
        """Check if any provider serves the given resource type."""
        return resource_type in self._resource_type_to_provider

    def get_resource_type_schema(self, resource_type: str) -> ResourceTypeSchema:
        """
        Get the schema of a resource type.

        Raises:
            ValueError: If no provider serves the resource type
        """
        if resource_type not in self._resource_type_schemas:
            raise ValueError(f"No provider serves resource type: {resource_type}")
        return self._resource_type_schemas[resource_type]

    def get_immutable_attributes(self, resource_type: str) -> frozenset:
        """Immutable attribute keys of a resource type (empty if unknown)."""
        schema = self._resource_type_schemas.get(resource_type)
        return schema.immutable_attributes if schema else frozenset()

    def get_provider_plugin_info(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a registered provider plugin.

        Returns:
            Dictionary with 'name', 'version' and 'resource_types',
            or None if not found
        """
        return self._provider_plugin_info.get(name)

    def get_provider_plugin_config(self, name: str) -> Dict[str, Any]:
        """Get the env-loaded configuration for a provider plugin."""
        return self._provider_plugin_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins(
    registry: Optional[PluginRegistry] = None,
    enabled: Optional[List[str]] = None,
) -> PluginRegistry:
    """
    Register the built-in providers and discover third-party providers
    via entry points.

    Args:
        registry: Registry to populate (defaults to the global registry)
        enabled: Provider names to register (empty or None = all)

    Returns:
        The populated registry
    """
    registry = registry or get_registry()
    candidates: List[Type[ProviderPlugin]] = []

    from plugins.providers.memory import MemoryProvider

    candidates.append(MemoryProvider)

    try:
        from plugins.providers.http import HTTPProvider

        candidates.append(HTTPProvider)
    except ImportError as e:
        logger.warning(f"Could not load HTTP provider plugin: {e}")

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            candidates.append(ep.load())
        except Exception as e:
            logger.warning(f"Could not load provider plugin {ep.name}: {e}")

    for plugin_class in candidates:
        if enabled and plugin_class().name not in enabled:
            continue
        registry.register_provider_plugin(plugin_class)

    return registry
