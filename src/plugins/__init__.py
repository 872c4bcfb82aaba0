"""
Plugin system for the reconciliation engine.

This package provides the provider plugin architecture: the abstract
provider interface, the registry mapping resource types to providers, and
the built-in providers.
"""

from plugins.base import ProviderPlugin, ResourceTypeSchema
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "ProviderPlugin",
    "ResourceTypeSchema",
    "PluginRegistry",
    "get_registry",
]
