"""
State Store - Persist the last-applied state of every resource.

One state document per environment::

    {
      "version": 1,
      "environment": "beta",
      "resources": [ {StateRecord}, ... ]   # sorted by logical id
    }

Unknown fields are ignored on read so newer writers stay readable. All
writes go through a single lock per store so concurrent workers never
interleave read-modify-write cycles.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from errors import StateCorruptionError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

ENVIRONMENT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")


class ResourceStatus(Enum):
    """Status of a resource in the state store."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    DELETED = "deleted"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StateRecord:
    """Last-known-applied state of one resource."""

    logical_id: str
    resource_type: str
    physical_id: Optional[str] = None
    # Attributes as declared (references kept symbolic)
    attributes: Dict[str, Any] = field(default_factory=dict)
    # Attributes reported by the provider
    outputs: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    status: ResourceStatus = ResourceStatus.APPLIED
    # Physical ids of replaced objects still awaiting destruction
    deposed: List[str] = field(default_factory=list)
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "resource_type": self.resource_type,
            "physical_id": self.physical_id,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "dependencies": sorted(self.dependencies),
            "status": self.status.value,
            "deposed": list(self.deposed),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StateRecord":
        """
        Build a record from its persisted form.

        Raises:
            StateCorruptionError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise StateCorruptionError(f"State record must be an object, got {data!r}")

        logical_id = data.get("logical_id")
        resource_type = data.get("resource_type")
        if not isinstance(logical_id, str) or not logical_id:
            raise StateCorruptionError(f"State record has no logical_id: {data!r}")
        if not isinstance(resource_type, str) or not resource_type:
            raise StateCorruptionError(
                f"State record '{logical_id}' has no resource_type"
            )

        try:
            status = ResourceStatus(data.get("status", ResourceStatus.APPLIED.value))
        except ValueError as e:
            raise StateCorruptionError(
                f"State record '{logical_id}' has invalid status {data.get('status')!r}"
            ) from e

        physical_id = data.get("physical_id")
        attributes = data.get("attributes") or {}
        outputs = data.get("outputs") or {}
        dependencies = data.get("dependencies") or []
        deposed = data.get("deposed") or []

        if physical_id is not None and not isinstance(physical_id, str):
            raise StateCorruptionError(
                f"State record '{logical_id}' has invalid physical_id"
            )
        if not isinstance(attributes, dict) or not isinstance(outputs, dict):
            raise StateCorruptionError(
                f"State record '{logical_id}' attributes/outputs must be objects"
            )
        if not isinstance(dependencies, list) or not isinstance(deposed, list):
            raise StateCorruptionError(
                f"State record '{logical_id}' dependencies/deposed must be lists"
            )

        return cls(
            logical_id=logical_id,
            resource_type=resource_type,
            physical_id=physical_id,
            attributes=attributes,
            outputs=outputs,
            dependencies=[str(d) for d in dependencies],
            status=status,
            deposed=[str(p) for p in deposed],
            updated_at=data.get("updated_at"),
        )


def serialize_state(environment: str, records: Dict[str, StateRecord]) -> str:
    """Serialize records into a stable JSON document."""
    document = {
        "version": STATE_FORMAT_VERSION,
        "environment": environment,
        "resources": [records[lid].to_dict() for lid in sorted(records)],
    }
    return json.dumps(document, indent=2, sort_keys=True) + "\n"


def parse_state(environment: str, text: Union[str, bytes]) -> Dict[str, StateRecord]:
    """
    Parse a persisted state document.

    Raises:
        StateCorruptionError: If the document cannot be parsed into records
    """
    try:
        document = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StateCorruptionError(
            f"State for environment '{environment}' is not valid JSON: {e}"
        ) from e

    if not isinstance(document, dict) or not isinstance(
        document.get("resources", []), list
    ):
        raise StateCorruptionError(
            f"State for environment '{environment}' has an invalid layout"
        )

    version = document.get("version", STATE_FORMAT_VERSION)
    if isinstance(version, int) and version > STATE_FORMAT_VERSION:
        logger.warning(
            f"State for '{environment}' has format version {version}; "
            f"unknown fields will be ignored"
        )

    records: Dict[str, StateRecord] = {}
    for raw in document.get("resources", []):
        record = StateRecord.from_dict(raw)
        if record.logical_id in records:
            raise StateCorruptionError(
                f"State for '{environment}' has duplicate record '{record.logical_id}'"
            )
        records[record.logical_id] = record
    return records


def state_digest(records: Dict[str, StateRecord]) -> str:
    """Hash of the records, used to detect state changes between plan and apply."""
    payload = json.dumps(
        [records[lid].to_dict() for lid in sorted(records)], sort_keys=True
    )
    return hashlib.sha256(payload.encode()).hexdigest()


def validate_environment(environment: str) -> str:
    if not environment or not ENVIRONMENT_PATTERN.match(environment):
        raise ValueError(
            f"Invalid environment name '{environment}': use letters, digits, "
            f"'.', '_' or '-' (max 63 characters)"
        )
    return environment


class StateStore(ABC):
    """
    Abstract state store.

    Subclasses implement ``load``, ``_write`` and ``list_environments``; the
    record-level helpers serialize all writes through ``self._lock``.
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    @abstractmethod
    async def load(self, environment: str) -> Dict[str, StateRecord]:
        """
        Load all records of an environment (empty if none stored).

        Raises:
            StateCorruptionError: If stored data cannot be parsed
        """
        pass

    @abstractmethod
    async def _write(self, environment: str, records: Dict[str, StateRecord]) -> None:
        """Atomically replace the stored document of an environment."""
        pass

    async def save(self, environment: str, records: Dict[str, StateRecord]) -> None:
        """Atomically replace all records of an environment."""
        async with self._lock:
            await self._write(environment, records)

    async def put_record(self, environment: str, record: StateRecord) -> None:
        """Insert or replace a single record."""
        async with self._lock:
            records = await self.load(environment)
            record.updated_at = utcnow()
            records[record.logical_id] = record
            await self._write(environment, records)

    async def remove_record(self, environment: str, logical_id: str) -> None:
        """Remove a single record (no-op if absent)."""
        async with self._lock:
            records = await self.load(environment)
            if records.pop(logical_id, None) is not None:
                await self._write(environment, records)

    async def record_status(
        self, environment: str, logical_id: str, status: ResourceStatus
    ) -> None:
        """
        Update the status of a single record.

        Raises:
            KeyError: If the record does not exist
        """
        async with self._lock:
            records = await self.load(environment)
            if logical_id not in records:
                raise KeyError(f"No state record for '{logical_id}' in '{environment}'")
            records[logical_id].status = status
            records[logical_id].updated_at = utcnow()
            await self._write(environment, records)

    @abstractmethod
    async def list_environments(self) -> List[str]:
        """List environments with a stored state document."""
        pass

    async def record_apply(self, environment: str, summary: Dict[str, Any]) -> None:
        """Record an apply run in history (backends without history ignore it)."""
        return None

    async def get_apply_history(
        self, environment: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Most recent apply runs of an environment, newest first."""
        return []

    async def close(self) -> None:
        return None


def _atomic_write(path: Path, data: str) -> None:
    """Write to a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def history_row(summary: Dict[str, Any]) -> Dict[str, Any]:
    """Apply summary in the column layout of the apply history."""
    return {
        "success": summary.get("success", False),
        "cancelled": summary.get("cancelled", False),
        "resources_created": summary.get("created", 0),
        "resources_updated": summary.get("updated", 0),
        "resources_replaced": summary.get("replaced", 0),
        "resources_deleted": summary.get("deleted", 0),
        "resources_failed": summary.get("failed", 0),
        "error_message": summary.get("error_message"),
        "duration_seconds": summary.get("duration_seconds"),
    }


class FileStateStore(StateStore):
    """
    State store keeping one JSON document per environment in a directory.

    Apply history lives next to it in ``history/<environment>.json``,
    trimmed to the last ``history_limit`` runs.
    """

    def __init__(self, directory: Union[str, Path], history_limit: int = 100):
        super().__init__()
        self.directory = Path(directory)
        self.history_limit = history_limit

    def _path(self, environment: str) -> Path:
        return self.directory / f"{validate_environment(environment)}.json"

    def _history_path(self, environment: str) -> Path:
        return self.directory / "history" / f"{validate_environment(environment)}.json"

    async def load(self, environment: str) -> Dict[str, StateRecord]:
        path = self._path(environment)
        if not path.exists():
            return {}
        try:
            text = path.read_bytes()
        except OSError as e:
            raise StateCorruptionError(f"Could not read state file {path}: {e}") from e
        return parse_state(environment, text)

    async def _write(self, environment: str, records: Dict[str, StateRecord]) -> None:
        _atomic_write(self._path(environment), serialize_state(environment, records))
        logger.debug(f"Saved {len(records)} record(s) for environment '{environment}'")

    async def list_environments(self) -> List[str]:
        """List environments with a stored state document."""
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def _read_history(self, environment: str) -> List[Dict[str, Any]]:
        path = self._history_path(environment)
        if not path.exists():
            return []
        try:
            history = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StateCorruptionError(f"Could not read apply history {path}: {e}") from e
        if not isinstance(history, list):
            raise StateCorruptionError(f"Apply history {path} is not a list")
        return history

    async def record_apply(self, environment: str, summary: Dict[str, Any]) -> None:
        """Append an apply run to the environment's history file."""
        async with self._lock:
            history = self._read_history(environment)
            history.append(dict(history_row(summary), applied_at=utcnow()))
            history = history[-self.history_limit:]
            _atomic_write(
                self._history_path(environment), json.dumps(history, indent=2, default=str)
            )

    async def get_apply_history(
        self, environment: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        return list(reversed(self._read_history(environment)))[:limit]
