"""Unit tests for plugins/providers/memory.py - In-process provider."""

import json

import pytest

from errors import PermanentProviderError, TransientProviderError
from plugins.providers.memory import RESOURCE_TYPES, MemoryProvider


@pytest.fixture
def provider():
    """Memory provider without a persistence path."""
    return MemoryProvider()


VPC = {"cidr": "10.0.0.0/16", "max_azs": 2}


class TestMetadata:
    """Tests for provider metadata."""

    def test_resource_types(self):
        provider = MemoryProvider()
        assert provider.name == "memory"
        assert "network.vpc" in provider.resource_types
        assert provider.resource_types["network.vpc"].immutable_attributes == frozenset(
            {"cidr"}
        )

    def test_schemas_reject_unknown_attributes(self):
        for schema in RESOURCE_TYPES.values():
            assert schema.attributes_schema["additionalProperties"] is False

    def test_load_config_from_env(self, monkeypatch):
        monkeypatch.setenv("MEMORY_PROVIDER_PATH", "/tmp/objects.json")
        assert MemoryProvider.load_config_from_env() == {"path": "/tmp/objects.json"}


@pytest.mark.asyncio
class TestVerbs:
    """Tests for create/read/update/delete."""

    async def test_create_and_read(self, provider):
        physical_id = await provider.create("network.vpc", VPC)

        outputs = await provider.read("network.vpc", physical_id)

        assert physical_id.startswith("vpc-")
        assert outputs["id"] == physical_id
        assert outputs["arn"] == f"arn:memory:network.vpc:{physical_id}"
        assert outputs["cidr"] == "10.0.0.0/16"

    async def test_bucket_name_defaults_to_physical_id(self, provider):
        physical_id = await provider.create("storage.bucket", {})
        outputs = await provider.read("storage.bucket", physical_id)
        assert outputs["bucket_name"] == physical_id

    async def test_load_balancer_dns_name(self, provider):
        physical_id = await provider.create("compute.load_balancer", {"vpc_id": "v"})
        outputs = await provider.read("compute.load_balancer", physical_id)
        assert outputs["dns_name"] == f"{physical_id}.elb.memory.local"

    async def test_read_returns_copy(self, provider):
        physical_id = await provider.create("network.vpc", VPC)

        outputs = await provider.read("network.vpc", physical_id)
        outputs["cidr"] = "changed"

        assert (await provider.read("network.vpc", physical_id))["cidr"] == VPC["cidr"]

    async def test_update(self, provider):
        physical_id = await provider.create("network.vpc", VPC)

        outputs = await provider.update("network.vpc", physical_id, {"cidr": "10.1.0.0/16"})

        assert outputs["cidr"] == "10.1.0.0/16"
        assert "max_azs" not in outputs
        assert outputs["id"] == physical_id

    async def test_update_missing(self, provider):
        with pytest.raises(PermanentProviderError):
            await provider.update("network.vpc", "vpc-missing", VPC)

    async def test_read_missing(self, provider):
        with pytest.raises(PermanentProviderError):
            await provider.read("network.vpc", "vpc-missing")

    async def test_delete(self, provider):
        physical_id = await provider.create("network.vpc", VPC)

        await provider.delete("network.vpc", physical_id)
        await provider.delete("network.vpc", physical_id)

        assert provider.objects["network.vpc"] == {}

    async def test_unsupported_type(self, provider):
        with pytest.raises(PermanentProviderError):
            await provider.create("unknown.thing", {})

    async def test_calls_recorded(self, provider):
        physical_id = await provider.create("network.vpc", VPC)
        await provider.read("network.vpc", physical_id)
        await provider.delete("network.vpc", physical_id)

        assert provider.calls == [
            ("create", "network.vpc", None),
            ("read", "network.vpc", physical_id),
            ("delete", "network.vpc", physical_id),
        ]


@pytest.mark.asyncio
class TestFaults:
    """Tests for fault injection."""

    async def test_transient_fault_once(self, provider):
        provider.inject_fault("create")

        with pytest.raises(TransientProviderError):
            await provider.create("network.vpc", VPC)
        assert (await provider.create("network.vpc", VPC)).startswith("vpc-")

    async def test_permanent_fault(self, provider):
        provider.inject_fault("update", kind="permanent")
        physical_id = await provider.create("network.vpc", VPC)

        with pytest.raises(PermanentProviderError):
            await provider.update("network.vpc", physical_id, VPC)

    async def test_type_specific_fault(self, provider):
        provider.inject_fault("create", resource_type="storage.bucket", times=-1)

        await provider.create("network.vpc", VPC)
        for _ in range(3):
            with pytest.raises(TransientProviderError):
                await provider.create("storage.bucket", {})

    async def test_clear_faults(self, provider):
        provider.inject_fault("create", times=-1)
        provider.clear_faults()

        await provider.create("network.vpc", VPC)

    async def test_failed_create_stores_nothing(self, provider):
        provider.inject_fault("create")

        with pytest.raises(TransientProviderError):
            await provider.create("network.vpc", VPC)

        assert provider.objects.get("network.vpc", {}) == {}


@pytest.mark.asyncio
class TestPersistence:
    """Tests for persisting objects to a JSON file."""

    async def test_objects_shared_between_instances(self, tmp_path):
        path = tmp_path / "objects" / "memory.json"
        first = MemoryProvider()
        await first.initialize({"path": str(path)})
        physical_id = await first.create("network.vpc", VPC)

        second = MemoryProvider()
        await second.initialize({"path": str(path)})

        assert (await second.read("network.vpc", physical_id))["cidr"] == VPC["cidr"]

    async def test_delete_persisted(self, tmp_path):
        path = tmp_path / "memory.json"
        provider = MemoryProvider()
        await provider.initialize({"path": str(path)})
        physical_id = await provider.create("network.vpc", VPC)

        await provider.delete("network.vpc", physical_id)

        assert json.loads(path.read_text()) == {"network.vpc": {}}

    async def test_corrupt_store(self, tmp_path):
        path = tmp_path / "memory.json"
        path.write_text("{broken")

        with pytest.raises(PermanentProviderError):
            await MemoryProvider().initialize({"path": str(path)})
