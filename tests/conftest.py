"""Pytest configuration and fixtures."""

import uuid
from typing import Any, Dict, List, Optional, Tuple

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import ExecutorConfig
from engine import Engine, EnvironmentContext
from errors import PermanentProviderError, TransientProviderError
from plugins.base import ProviderPlugin, ResourceTypeSchema
from plugins.providers.memory import MemoryProvider
from plugins.registry import PluginRegistry
from spec_loader import parse_specification
from state import FileStateStore


class StubProvider(ProviderPlugin):
    """Provider serving the small Net/Server types used across the tests."""

    RESOURCE_TYPES = {
        "test.net": ResourceTypeSchema(
            name="test.net",
            attributes_schema={
                "type": "object",
                "required": ["cidr"],
                "properties": {
                    "cidr": {"type": "string"},
                    "tags": {"type": "object"},
                },
            },
            immutable_attributes=frozenset({"cidr"}),
        ),
        "test.server": ResourceTypeSchema(
            name="test.server",
            attributes_schema={
                "type": "object",
                "properties": {
                    "network_id": {"type": "string"},
                    "subnet_id": {"type": "string"},
                    "size": {"type": "string"},
                    "name": {"type": "string"},
                },
            },
            immutable_attributes=frozenset({"subnet_id"}),
        ),
    }

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.faults: Dict[Tuple[str, str], List[Any]] = {}
        self.initialized_with: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        return "stub"

    @property
    def version(self) -> str:
        return "0.0.1"

    @property
    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        return self.RESOURCE_TYPES

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.initialized_with = config

    def fail(self, verb: str, resource_type: str, kind: str = "transient", times: int = 1):
        self.faults[(verb, resource_type)] = [kind, times]

    def _maybe_fail(self, verb: str, resource_type: str) -> None:
        fault = self.faults.get((verb, resource_type))
        if not fault or fault[1] == 0:
            return
        if fault[1] > 0:
            fault[1] -= 1
        if fault[0] == "permanent":
            raise PermanentProviderError(f"{verb} {resource_type} rejected")
        raise TransientProviderError(f"{verb} {resource_type} throttled")

    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        self.calls.append(("create", resource_type, None))
        self._maybe_fail("create", resource_type)
        physical_id = f"{resource_type.split('.')[-1]}-{uuid.uuid4().hex[:8]}"
        self.objects[physical_id] = dict(attributes, id=physical_id)
        return physical_id

    async def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        self.calls.append(("read", resource_type, physical_id))
        self._maybe_fail("read", resource_type)
        if physical_id not in self.objects:
            raise PermanentProviderError(f"{physical_id} not found")
        return dict(self.objects[physical_id])

    async def update(
        self, resource_type: str, physical_id: str, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls.append(("update", resource_type, physical_id))
        self._maybe_fail("update", resource_type)
        if physical_id not in self.objects:
            raise PermanentProviderError(f"{physical_id} not found")
        self.objects[physical_id] = dict(attributes, id=physical_id)
        return dict(self.objects[physical_id])

    async def delete(self, resource_type: str, physical_id: str) -> None:
        self.calls.append(("delete", resource_type, physical_id))
        self._maybe_fail("delete", resource_type)
        self.objects.pop(physical_id, None)

    def verbs(self) -> List[str]:
        return [verb for verb, _, _ in self.calls]


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def registry():
    """Registry serving the stub and memory providers."""
    registry = PluginRegistry()
    registry.register_provider_plugin(StubProvider)
    registry.register_provider_plugin(MemoryProvider)
    return registry


@pytest.fixture
def state_store(tmp_path):
    """File state store in a temporary directory."""
    return FileStateStore(tmp_path / "state")


@pytest.fixture
def executor_config():
    """Executor configuration without backoff delays."""
    return ExecutorConfig(
        max_concurrency=4,
        max_attempts=3,
        backoff_base_delay=0,
        backoff_max_delay=0,
        backoff_jitter_factor=0,
    )


@pytest.fixture
def context(state_store, registry, executor_config):
    return EnvironmentContext(
        name="test",
        state_store=state_store,
        registry=registry,
        executor_config=executor_config,
    )


@pytest.fixture
def engine(context):
    return Engine(context)


@pytest.fixture
def net_server_spec():
    """Build a Net/Server specification document."""

    def build(
        cidr: str = "10.0.0.0/16",
        server: bool = True,
        net: bool = True,
        reference_attribute: str = "network_id",
        size: str = "small",
    ):
        resources: Dict[str, Any] = {}
        if net:
            resources["Net"] = {"type": "test.net", "attributes": {"cidr": cidr}}
        if server:
            resources["Server"] = {
                "type": "test.server",
                "attributes": {reference_attribute: "${Net.id}", "size": size},
            }
        return parse_specification({"version": 1, "resources": resources})

    return build
