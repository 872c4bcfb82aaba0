"""
Memory Provider Plugin - In-process resource provider.

Serves resource families modelled on a small web application stack
(network, identity, storage, compute). Objects live in memory and can
optionally be persisted to a JSON file so that several CLI runs share them.
Useful for dry runs, demos and tests.
"""

import copy
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from errors import PermanentProviderError, TransientProviderError
from plugins.base import ProviderPlugin, ResourceTypeSchema

logger = logging.getLogger(__name__)


def _object_schema(
    properties: Dict[str, Any], required: Optional[List[str]] = None
) -> Dict[str, Any]:
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


_INGRESS_RULE = {
    "type": "object",
    "required": ["port"],
    "properties": {
        "port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "protocol": {"type": "string", "enum": ["tcp", "udp", "icmp"]},
        "cidr": {"type": "string"},
        "description": {"type": "string"},
    },
}

_HEALTH_CHECK = {
    "type": "object",
    "properties": {
        "path": {"type": "string"},
        "interval": {"type": "integer", "minimum": 1},
        "timeout": {"type": "integer", "minimum": 1},
        "healthy_threshold": {"type": "integer", "minimum": 1},
        "unhealthy_threshold": {"type": "integer", "minimum": 1},
    },
}

RESOURCE_TYPES: Dict[str, ResourceTypeSchema] = {
    "network.vpc": ResourceTypeSchema(
        name="network.vpc",
        attributes_schema=_object_schema(
            {
                "cidr": {"type": "string"},
                "max_azs": {"type": "integer", "minimum": 1},
                "nat_gateways": {"type": "integer", "minimum": 0},
                "stage": {"type": "string"},
            },
            required=["cidr"],
        ),
        immutable_attributes=frozenset({"cidr"}),
        description="Virtual private network",
    ),
    "network.security_group": ResourceTypeSchema(
        name="network.security_group",
        attributes_schema=_object_schema(
            {
                "vpc_id": {"type": "string"},
                "description": {"type": "string"},
                "ingress": {"type": "array", "items": _INGRESS_RULE},
                "stage": {"type": "string"},
            },
            required=["vpc_id"],
        ),
        immutable_attributes=frozenset({"vpc_id", "description"}),
        description="Stateful firewall attached to a VPC",
    ),
    "identity.role": ResourceTypeSchema(
        name="identity.role",
        attributes_schema=_object_schema(
            {
                "role_name": {"type": "string"},
                "assumed_by": {"type": "string"},
                "managed_policies": {"type": "array", "items": {"type": "string"}},
                "stage": {"type": "string"},
            },
            required=["assumed_by"],
        ),
        immutable_attributes=frozenset({"role_name", "assumed_by"}),
        description="Identity role assumed by compute instances",
    ),
    "storage.bucket": ResourceTypeSchema(
        name="storage.bucket",
        attributes_schema=_object_schema(
            {
                "bucket_name": {"type": "string"},
                "removal_policy": {"type": "string", "enum": ["destroy", "retain"]},
                "auto_delete_objects": {"type": "boolean"},
                "read_access": {"type": "array", "items": {"type": "string"}},
            }
        ),
        immutable_attributes=frozenset({"bucket_name"}),
        description="Object storage bucket",
    ),
    "storage.bucket_deployment": ResourceTypeSchema(
        name="storage.bucket_deployment",
        attributes_schema=_object_schema(
            {
                "bucket": {"type": "string"},
                "source": {"type": "string"},
                "key_prefix": {"type": "string"},
            },
            required=["bucket", "source"],
        ),
        immutable_attributes=frozenset({"bucket"}),
        description="Upload of local assets into a bucket",
    ),
    "compute.auto_scaling_group": ResourceTypeSchema(
        name="compute.auto_scaling_group",
        attributes_schema=_object_schema(
            {
                "vpc_id": {"type": "string"},
                "instance_type": {"type": "string"},
                "machine_image": {"type": "string"},
                "min_capacity": {"type": "integer", "minimum": 0},
                "max_capacity": {"type": "integer", "minimum": 0},
                "desired_capacity": {"type": "integer", "minimum": 0},
                "key_name": {"type": "string"},
                "security_group_id": {"type": "string"},
                "role_arn": {"type": "string"},
                "subnet_type": {"type": "string", "enum": ["public", "private"]},
                "associate_public_ip": {"type": "boolean"},
                "user_data": {"type": "array", "items": {"type": "string"}},
            },
            required=["vpc_id", "instance_type"],
        ),
        immutable_attributes=frozenset({"vpc_id", "key_name"}),
        description="Group of identical compute instances",
    ),
    "compute.load_balancer": ResourceTypeSchema(
        name="compute.load_balancer",
        attributes_schema=_object_schema(
            {
                "vpc_id": {"type": "string"},
                "internet_facing": {"type": "boolean"},
            },
            required=["vpc_id"],
        ),
        immutable_attributes=frozenset({"vpc_id", "internet_facing"}),
        description="Application load balancer",
    ),
    "compute.listener": ResourceTypeSchema(
        name="compute.listener",
        attributes_schema=_object_schema(
            {
                "load_balancer_arn": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "target_port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "protocol": {"type": "string", "enum": ["HTTP", "HTTPS"]},
                "targets": {"type": "array", "items": {"type": "string"}},
                "health_check": _HEALTH_CHECK,
            },
            required=["load_balancer_arn", "port"],
        ),
        immutable_attributes=frozenset({"load_balancer_arn"}),
        description="Load balancer listener forwarding to targets",
    ),
}

# Physical id prefixes per resource type
_ID_PREFIXES = {
    "network.vpc": "vpc",
    "network.security_group": "sg",
    "identity.role": "role",
    "storage.bucket": "bucket",
    "storage.bucket_deployment": "deploy",
    "compute.auto_scaling_group": "asg",
    "compute.load_balancer": "alb",
    "compute.listener": "listener",
}


class MemoryProvider(ProviderPlugin):
    """
    Provider plugin keeping resources in a dictionary.

    Faults can be injected per verb and resource type to exercise retry
    and rollback behaviour.
    """

    def __init__(self):
        self.path: Optional[Path] = None
        self.objects: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        # (verb, resource_type or None) -> [error kind, remaining count]
        self._faults: Dict[Tuple[str, Optional[str]], List[Any]] = {}

    @property
    def name(self) -> str:
        return "memory"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> Dict[str, ResourceTypeSchema]:
        return RESOURCE_TYPES

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load memory provider configuration from environment variables."""
        return {"path": os.getenv("MEMORY_PROVIDER_PATH", "")}

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the plugin, loading persisted objects if a path is set."""
        path = config.get("path")
        self.path = Path(path) if path else None

        if self.path and self.path.exists():
            try:
                self.objects = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise PermanentProviderError(
                    f"Memory provider store {self.path} is corrupt: {e}"
                ) from e

        logger.debug(
            f"Memory provider initialized: path={self.path}, "
            f"objects={sum(len(v) for v in self.objects.values())}"
        )

    def inject_fault(
        self,
        verb: str,
        resource_type: Optional[str] = None,
        kind: str = "transient",
        times: int = 1,
    ) -> None:
        """
        Make the next ``times`` calls of ``verb`` fail.

        Args:
            verb: One of 'create', 'read', 'update', 'delete'
            resource_type: Restrict the fault to one type (None = any type)
            kind: 'transient' or 'permanent'
            times: Number of calls to fail (-1 = forever)
        """
        self._faults[(verb, resource_type)] = [kind, times]

    def clear_faults(self) -> None:
        self._faults.clear()

    def _maybe_fail(self, verb: str, resource_type: str) -> None:
        for key in ((verb, resource_type), (verb, None)):
            fault = self._faults.get(key)
            if not fault or fault[1] == 0:
                continue
            if fault[1] > 0:
                fault[1] -= 1
            message = f"Injected {fault[0]} fault on {verb} {resource_type}"
            if fault[0] == "permanent":
                raise PermanentProviderError(message)
            raise TransientProviderError(message)

    def _persist(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(self.objects, indent=2, sort_keys=True), encoding="utf-8"
        )

    def _check_type(self, resource_type: str) -> None:
        if resource_type not in RESOURCE_TYPES:
            raise PermanentProviderError(f"Unsupported resource type: {resource_type}")

    def _get(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        obj = self.objects.get(resource_type, {}).get(physical_id)
        if obj is None:
            raise PermanentProviderError(
                f"{resource_type} {physical_id} does not exist"
            )
        return obj

    def _outputs(
        self, resource_type: str, physical_id: str, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        outputs = copy.deepcopy(attributes)
        outputs["id"] = physical_id
        outputs["arn"] = f"arn:memory:{resource_type}:{physical_id}"
        if resource_type == "compute.load_balancer":
            outputs["dns_name"] = f"{physical_id}.elb.memory.local"
        elif resource_type == "storage.bucket":
            outputs.setdefault("bucket_name", physical_id)
        return outputs

    async def create(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        self.calls.append(("create", resource_type, None))
        self._check_type(resource_type)
        self._maybe_fail("create", resource_type)

        physical_id = f"{_ID_PREFIXES[resource_type]}-{uuid.uuid4().hex[:12]}"
        self.objects.setdefault(resource_type, {})[physical_id] = self._outputs(
            resource_type, physical_id, attributes
        )
        self._persist()
        logger.debug(f"Created {resource_type} {physical_id}")
        return physical_id

    async def read(self, resource_type: str, physical_id: str) -> Dict[str, Any]:
        self.calls.append(("read", resource_type, physical_id))
        self._check_type(resource_type)
        self._maybe_fail("read", resource_type)
        return copy.deepcopy(self._get(resource_type, physical_id))

    async def update(
        self, resource_type: str, physical_id: str, attributes: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls.append(("update", resource_type, physical_id))
        self._check_type(resource_type)
        self._maybe_fail("update", resource_type)
        self._get(resource_type, physical_id)

        outputs = self._outputs(resource_type, physical_id, attributes)
        self.objects[resource_type][physical_id] = outputs
        self._persist()
        logger.debug(f"Updated {resource_type} {physical_id}")
        return copy.deepcopy(outputs)

    async def delete(self, resource_type: str, physical_id: str) -> None:
        self.calls.append(("delete", resource_type, physical_id))
        self._check_type(resource_type)
        self._maybe_fail("delete", resource_type)

        # Deleting an object that is already gone is not an error
        if self.objects.get(resource_type, {}).pop(physical_id, None) is not None:
            self._persist()
            logger.debug(f"Deleted {resource_type} {physical_id}")
