"""Unit tests for plugins/registry.py - Provider plugin registry."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from plugins.providers.memory import MemoryProvider
from plugins.registry import (
    PluginRegistry,
    get_registry,
    register_builtin_plugins,
    reset_registry,
)

from conftest import StubProvider


class ConflictingProvider(StubProvider):
    """Claims the stub's resource types under another name."""

    @property
    def name(self) -> str:
        return "conflicting"


class TestRegistration:
    """Tests for provider plugin registration."""

    def test_register_provider_plugin(self):
        registry = PluginRegistry()
        registry.register_provider_plugin(StubProvider)

        assert registry.has_provider_plugin("stub")
        assert registry.list_provider_plugins() == ["stub"]
        assert registry.list_resource_types() == ["test.net", "test.server"]
        assert registry.has_resource_type("test.net")
        assert registry.get_provider_plugin_info("stub") == {
            "name": "stub",
            "version": "0.0.1",
            "resource_types": ["test.net", "test.server"],
        }

    def test_conflicting_resource_type_rejected(self):
        registry = PluginRegistry()
        registry.register_provider_plugin(StubProvider)

        with pytest.raises(ValueError) as exc_info:
            registry.register_provider_plugin(ConflictingProvider)

        assert "already claimed" in str(exc_info.value)
        assert not registry.has_provider_plugin("conflicting")

    def test_reregister_same_provider(self):
        registry = PluginRegistry()
        registry.register_provider_plugin(StubProvider)
        registry.register_provider_plugin(StubProvider)

        assert registry.list_provider_plugins() == ["stub"]

    def test_schema_lookup(self, registry):
        schema = registry.get_resource_type_schema("test.net")

        assert schema.attributes_schema["required"] == ["cidr"]
        assert registry.get_immutable_attributes("test.server") == frozenset(
            {"subnet_id"}
        )

    def test_unknown_type_schema(self, registry):
        with pytest.raises(ValueError):
            registry.get_resource_type_schema("unknown.thing")
        assert registry.get_immutable_attributes("unknown.thing") == frozenset()

    def test_env_config_loaded(self, registry, monkeypatch):
        monkeypatch.setenv("MEMORY_PROVIDER_PATH", "/tmp/objects.json")
        registry.register_provider_plugin(MemoryProvider)

        assert registry.get_provider_plugin_config("memory") == {
            "path": "/tmp/objects.json"
        }
        assert registry.get_provider_plugin_config("missing") == {}


@pytest.mark.asyncio
class TestInstantiation:
    """Tests for provider plugin instantiation."""

    async def test_unknown_plugin(self, registry):
        with pytest.raises(ValueError) as exc_info:
            await registry.get_provider_plugin("nope")
        assert "Available plugins: stub, memory" in str(exc_info.value)

    async def test_instance_cached(self, registry):
        first = await registry.get_provider_plugin("stub", {"region": "eu"})
        second = await registry.get_provider_plugin("stub", {"region": "us"})

        assert first is second
        assert first.initialized_with == {"region": "eu"}

    async def test_config_merged_over_env(self, registry):
        provider = await registry.get_provider_plugin("memory", {"extra": 1})
        assert provider.path is None

    async def test_provider_for_type(self, registry):
        provider = await registry.get_provider_for_type("network.vpc")
        assert provider.name == "memory"

    async def test_provider_for_unknown_type(self, registry):
        with pytest.raises(ValueError):
            await registry.get_provider_for_type("unknown.thing")

    async def test_close(self, registry):
        provider = await registry.get_provider_plugin("stub")
        provider.close = AsyncMock(side_effect=RuntimeError("boom"))
        memory = await registry.get_provider_plugin("memory")
        memory.close = AsyncMock()

        await registry.close()

        provider.close.assert_awaited_once()
        memory.close.assert_awaited_once()
        assert await registry.get_provider_plugin("stub") is not provider


class TestBuiltinPlugins:
    """Tests for register_builtin_plugins and the global registry."""

    def setup_method(self):
        reset_registry()

    def teardown_method(self):
        reset_registry()

    def test_builtin_providers_registered(self):
        with patch("plugins.registry.entry_points", return_value=[]):
            registry = register_builtin_plugins(PluginRegistry())

        assert sorted(registry.list_provider_plugins()) == ["http", "memory"]

    def test_enabled_filter(self):
        with patch("plugins.registry.entry_points", return_value=[]):
            registry = register_builtin_plugins(PluginRegistry(), enabled=["memory"])

        assert registry.list_provider_plugins() == ["memory"]

    def test_entry_point_providers(self):
        good = MagicMock()
        good.name = "stub"
        good.load.return_value = StubProvider
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("missing dependency")

        with patch("plugins.registry.entry_points", return_value=[good, broken]):
            registry = register_builtin_plugins(PluginRegistry())

        assert registry.has_provider_plugin("stub")
        assert registry.has_resource_type("test.server")

    def test_defaults_to_global_registry(self):
        with patch("plugins.registry.entry_points", return_value=[]):
            registry = register_builtin_plugins()

        assert registry is get_registry()
        assert get_registry().has_provider_plugin("memory")

    def test_reset_registry(self):
        first = get_registry()
        reset_registry()
        assert get_registry() is not first
