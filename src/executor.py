"""
Executor - Apply an execution plan through provider plugins.

Batches run strictly in order; entries inside a batch run concurrently,
bounded by a semaphore. Every provider call is retried with exponential
backoff on TransientProviderError. The state store is updated after every
completed operation so that it always reflects what was actually applied.

On failure the executor either halts (default) or rolls the failing batch
back to the records it started from and then halts.
"""

import asyncio
import copy
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import ExecutorConfig
from diff import ChangeKind, ChangeSetEntry, ReplacePhase
from errors import (
    ExecutionFailure,
    PermanentProviderError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from events import ApplyEvent, EventBus, EventType
from graph import REFERENCE_PATTERN
from plugins.registry import PluginRegistry
from scheduler import ExecutionPlan
from state import ResourceStatus, StateRecord, StateStore

logger = logging.getLogger(__name__)


class EntryState(Enum):
    """Execution state of a single plan entry."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class EntryResult:
    """Outcome of one plan entry."""

    entry: ChangeSetEntry
    state: EntryState = EntryState.PENDING
    attempts: int = 0
    physical_id: Optional[str] = None
    error: Optional[ExecutionFailure] = None

    @property
    def operation(self) -> str:
        if self.entry.phase is not None:
            return f"{self.entry.kind.value}-{self.entry.phase.value}"
        return self.entry.kind.value


@dataclass
class ApplyResult:
    """Outcome of applying a plan."""

    environment: str
    results: List[EntryResult] = field(default_factory=list)
    cancelled: bool = False
    halted: bool = False
    rolled_back: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failures(self) -> List[EntryResult]:
        return [r for r in self.results if r.state == EntryState.FAILED]

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.halted and not self.failures

    def result_for(self, logical_id: str) -> List[EntryResult]:
        return [r for r in self.results if r.entry.logical_id == logical_id]

    def counts(self) -> Dict[str, int]:
        counts = {"created": 0, "updated": 0, "replaced": 0, "deleted": 0, "failed": 0}
        for result in self.results:
            if result.state == EntryState.FAILED:
                counts["failed"] += 1
                continue
            if result.state != EntryState.APPLIED:
                continue
            kind = result.entry.kind
            if kind == ChangeKind.CREATE:
                counts["created"] += 1
            elif kind == ChangeKind.UPDATE:
                counts["updated"] += 1
            elif kind == ChangeKind.DELETE:
                counts["deleted"] += 1
            elif kind == ChangeKind.REPLACE and result.entry.phase == ReplacePhase.CREATE:
                counts["replaced"] += 1
        return counts

    def summary(self) -> Dict[str, Any]:
        """Summary in the shape stored in apply history."""
        summary: Dict[str, Any] = dict(self.counts())
        summary.update(
            success=self.success,
            cancelled=self.cancelled,
            duration_seconds=self.duration_seconds,
            error_message="; ".join(r.error.message for r in self.failures if r.error)
            or None,
        )
        return summary


def compute_backoff(
    attempt: int, base_delay: float, max_delay: float, jitter_factor: float
) -> float:
    """Exponential backoff with jitter for the given (1-based) attempt."""
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    jitter = delay * jitter_factor
    return max(0.0, delay + random.uniform(-jitter, jitter))


def _lookup_path(value: Any, path: List[str]) -> Any:
    for part in path:
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            raise KeyError(part)
    return value


def resolve_references(
    logical_id: str, value: Any, records: Dict[str, StateRecord]
) -> Any:
    """
    Replace ``${Target.attr}`` references with values from applied records.

    A string that is exactly one reference resolves to the raw output value;
    references embedded in longer strings are interpolated as text.

    Raises:
        UnresolvedReferenceError: If the target or attribute is not available
    """
    if isinstance(value, dict):
        return {k: resolve_references(logical_id, v, records) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(logical_id, v, records) for v in value]
    if not isinstance(value, str):
        return value

    def lookup(target: str, attribute: str) -> Any:
        record = records.get(target)
        if record is None or record.physical_id is None:
            raise UnresolvedReferenceError(logical_id, target)
        if attribute == "id":
            return record.physical_id
        try:
            return _lookup_path(record.outputs, attribute.split("."))
        except KeyError:
            raise UnresolvedReferenceError(logical_id, f"{target}.{attribute}")

    whole = REFERENCE_PATTERN.fullmatch(value)
    if whole:
        return lookup(whole.group(1), whole.group(2))
    return REFERENCE_PATTERN.sub(
        lambda m: str(lookup(m.group(1), m.group(2))), value
    )


class Executor:
    """
    Applies an ExecutionPlan for one environment.

    Records are kept in memory alongside the store so that later batches
    can resolve references to outputs produced by earlier ones.
    """

    def __init__(
        self,
        environment: str,
        state_store: StateStore,
        registry: PluginRegistry,
        config: Optional[ExecutorConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.environment = environment
        self.store = state_store
        self.registry = registry
        self.config = config or ExecutorConfig()
        self.semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._event_bus = event_bus
        self._records: Dict[str, StateRecord] = {}

    async def _publish(self, event_type: EventType, **kwargs: Any) -> None:
        if self._event_bus:
            await self._event_bus.publish(
                ApplyEvent(event_type=event_type, environment=self.environment, **kwargs)
            )

    async def execute(
        self, plan: ExecutionPlan, cancel_event: Optional[asyncio.Event] = None
    ) -> ApplyResult:
        """
        Apply all batches of a plan.

        Args:
            plan: The plan to apply
            cancel_event: When set, no further batch is started

        Returns:
            ApplyResult with one EntryResult per scheduled entry
        """
        start_time = time.monotonic()
        self._records = await self.store.load(self.environment)
        result = ApplyResult(environment=self.environment)
        batches = [[EntryResult(entry=entry) for entry in batch] for batch in plan.batches]
        for batch in batches:
            result.results.extend(batch)

        for index, batch in enumerate(batches):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    f"Apply of '{self.environment}' cancelled before batch "
                    f"{index + 1}/{len(batches)}"
                )
                result.cancelled = True
                break

            logger.info(
                f"Executing batch {index + 1}/{len(batches)} "
                f"({len(batch)} entr{'y' if len(batch) == 1 else 'ies'})"
            )
            snapshot = copy.deepcopy(self._records)
            await asyncio.gather(*(self._run_entry(r) for r in batch))

            if any(r.state == EntryState.FAILED for r in batch):
                if self.config.failure_policy == "rollback":
                    result.rolled_back = await self._rollback(batch, snapshot)
                result.halted = True
                logger.error(
                    f"Halting apply of '{self.environment}' after failure in batch "
                    f"{index + 1}/{len(batches)}"
                )
                break

        result.duration_seconds = time.monotonic() - start_time
        counts = result.counts()
        logger.info(f"Apply of '{self.environment}' finished: {counts}")
        await self._publish(
            EventType.APPLY_FINISHED,
            message="success" if result.success else "failed",
            data={**counts, "cancelled": result.cancelled, "halted": result.halted},
        )
        return result

    async def _run_entry(self, result: EntryResult) -> None:
        entry = result.entry
        async with self.semaphore:
            result.state = EntryState.IN_PROGRESS
            await self._publish(
                EventType.ENTRY_STARTED,
                logical_id=entry.logical_id,
                operation=result.operation,
            )
            try:
                await self._apply_entry(result)
            except Exception as e:
                failure = (
                    e
                    if isinstance(e, ExecutionFailure)
                    else ExecutionFailure(
                        entry.logical_id, result.operation, e, max(result.attempts, 1)
                    )
                )
                result.state = EntryState.FAILED
                result.error = failure
                logger.error(failure.message)
                await self._set_status(entry.logical_id, ResourceStatus.FAILED)
                await self._publish(
                    EventType.ENTRY_FAILED,
                    logical_id=entry.logical_id,
                    operation=result.operation,
                    attempt=result.attempts,
                    message=failure.message,
                )
                return

            result.state = EntryState.APPLIED
            await self._publish(
                EventType.ENTRY_APPLIED,
                logical_id=entry.logical_id,
                operation=result.operation,
                attempt=result.attempts,
                data={"physical_id": result.physical_id},
            )

    async def _call(
        self,
        result: EntryResult,
        verb: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Call a provider verb, retrying transient failures with backoff."""
        logical_id = result.entry.logical_id
        attempt = 0
        while True:
            attempt += 1
            result.attempts += 1
            try:
                return await func(*args)
            except TransientProviderError as e:
                if attempt >= self.config.max_attempts:
                    raise ExecutionFailure(
                        logical_id, result.operation, e, result.attempts
                    ) from e
                delay = compute_backoff(
                    attempt,
                    self.config.backoff_base_delay,
                    self.config.backoff_max_delay,
                    self.config.backoff_jitter_factor,
                )
                logger.warning(
                    f"Transient error on {verb} of '{logical_id}' "
                    f"(attempt {attempt}/{self.config.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._publish(
                    EventType.ENTRY_RETRYING,
                    logical_id=logical_id,
                    operation=result.operation,
                    attempt=result.attempts,
                    message=str(e),
                )
                await asyncio.sleep(delay)
            except PermanentProviderError as e:
                raise ExecutionFailure(
                    logical_id, result.operation, e, result.attempts
                ) from e

    async def _save(self, record: StateRecord) -> None:
        await self.store.put_record(self.environment, record)
        self._records[record.logical_id] = record

    async def _set_status(self, logical_id: str, status: ResourceStatus) -> None:
        if logical_id in self._records:
            await self.store.record_status(self.environment, logical_id, status)
            self._records[logical_id].status = status

    async def _apply_entry(self, result: EntryResult) -> None:
        entry = result.entry
        if entry.kind == ChangeKind.NOOP:
            result.physical_id = entry.physical_id
            return

        if entry.kind == ChangeKind.CREATE:
            await self._create(result, entry.new_attributes or {})
        elif entry.kind == ChangeKind.UPDATE:
            await self._update(result)
        elif entry.kind == ChangeKind.DELETE:
            await self._delete(result)
        elif entry.phase == ReplacePhase.DESTROY:
            await self._replace_destroy(result)
        else:
            await self._replace_create(result)

    async def _create_object(
        self, result: EntryResult, resource_type: str, attributes: Dict[str, Any]
    ) -> str:
        """Create an object and record it before reading its outputs."""
        entry = result.entry
        provider = await self.registry.get_provider_for_type(resource_type)
        resolved = resolve_references(entry.logical_id, attributes, self._records)
        return await self._call(result, "create", provider.create, resource_type, resolved)

    async def _create(self, result: EntryResult, attributes: Dict[str, Any]) -> None:
        entry = result.entry
        provider = await self.registry.get_provider_for_type(entry.resource_type)
        physical_id = await self._create_object(result, entry.resource_type, attributes)
        result.physical_id = physical_id

        # Persist the physical id first so a failed read cannot leak the object
        record = StateRecord(
            logical_id=entry.logical_id,
            resource_type=entry.resource_type,
            physical_id=physical_id,
            attributes=copy.deepcopy(attributes),
            dependencies=sorted(entry.dependencies),
            status=ResourceStatus.PENDING,
        )
        await self._save(record)

        outputs = await self._call(
            result, "read", provider.read, entry.resource_type, physical_id
        )
        record = copy.deepcopy(record)
        record.outputs = outputs
        record.status = ResourceStatus.APPLIED
        await self._save(record)
        logger.info(f"Created {entry.logical_id} ({entry.resource_type}) as {physical_id}")

    async def _update(self, result: EntryResult) -> None:
        entry = result.entry
        current = self._records[entry.logical_id]
        provider = await self.registry.get_provider_for_type(entry.resource_type)
        attributes = entry.new_attributes or {}
        resolved = resolve_references(entry.logical_id, attributes, self._records)

        await self._set_status(entry.logical_id, ResourceStatus.PENDING)
        outputs = await self._call(
            result,
            "update",
            provider.update,
            entry.resource_type,
            current.physical_id,
            resolved,
        )
        result.physical_id = current.physical_id

        record = copy.deepcopy(current)
        record.attributes = copy.deepcopy(attributes)
        record.outputs = outputs
        record.dependencies = sorted(entry.dependencies)
        record.status = ResourceStatus.APPLIED
        await self._save(record)
        logger.info(f"Updated {entry.logical_id} ({current.physical_id})")

    async def _delete(self, result: EntryResult) -> None:
        entry = result.entry
        current = self._records.get(entry.logical_id)
        physical_id = entry.physical_id or (current.physical_id if current else None)
        provider = await self.registry.get_provider_for_type(entry.resource_type)

        await self._set_status(entry.logical_id, ResourceStatus.PENDING)
        if physical_id is not None:
            await self._call(
                result, "delete", provider.delete, entry.resource_type, physical_id
            )
        result.physical_id = physical_id

        await self.store.remove_record(self.environment, entry.logical_id)
        self._records.pop(entry.logical_id, None)
        logger.info(f"Deleted {entry.logical_id} ({physical_id})")

    async def _replace_create(self, result: EntryResult) -> None:
        entry = result.entry
        current = self._records[entry.logical_id]
        attributes = entry.new_attributes or {}
        provider = await self.registry.get_provider_for_type(entry.resource_type)

        physical_id = await self._create_object(result, entry.resource_type, attributes)
        result.physical_id = physical_id

        # The old object is deposed until the destroy phase completes
        record = StateRecord(
            logical_id=entry.logical_id,
            resource_type=entry.resource_type,
            physical_id=physical_id,
            attributes=copy.deepcopy(attributes),
            dependencies=sorted(entry.dependencies),
            status=ResourceStatus.PENDING,
            deposed=list(current.deposed) + [current.physical_id],
        )
        await self._save(record)

        outputs = await self._call(
            result, "read", provider.read, entry.resource_type, physical_id
        )
        record = copy.deepcopy(record)
        record.outputs = outputs
        record.status = ResourceStatus.APPLIED
        await self._save(record)
        logger.info(
            f"Replaced {entry.logical_id}: created {physical_id}, "
            f"deposed {current.physical_id}"
        )

    async def _replace_destroy(self, result: EntryResult) -> None:
        entry = result.entry
        old_type = entry.old_resource_type or entry.resource_type
        provider = await self.registry.get_provider_for_type(old_type)

        await self._call(result, "delete", provider.delete, old_type, entry.physical_id)
        result.physical_id = entry.physical_id

        current = self._records.get(entry.logical_id)
        if current is not None and entry.physical_id in current.deposed:
            record = copy.deepcopy(current)
            record.deposed = [p for p in record.deposed if p != entry.physical_id]
            await self._save(record)
        logger.info(f"Destroyed deposed {entry.logical_id} ({entry.physical_id})")

    async def _rollback(
        self, batch: List[EntryResult], snapshot: Dict[str, StateRecord]
    ) -> List[str]:
        """
        Restore every resource of a failed batch to its record before the batch.

        Completed replace-destroy steps cannot be undone and are skipped.

        Returns:
            Logical ids that were rolled back
        """
        rolled_back = []
        for result in sorted(batch, key=lambda r: r.entry.logical_id):
            entry = result.entry
            if entry.phase == ReplacePhase.DESTROY:
                if result.state == EntryState.APPLIED:
                    logger.warning(
                        f"Cannot roll back destroyed object {entry.physical_id} "
                        f"of '{entry.logical_id}'"
                    )
                continue

            previous = snapshot.get(entry.logical_id)
            current = self._records.get(entry.logical_id)
            if previous is None and current is None:
                continue
            if (
                previous is not None
                and current is not None
                and previous.to_dict() == current.to_dict()
            ):
                continue

            try:
                await self._restore(result, previous, current)
            except Exception as e:
                logger.error(f"Rollback of '{entry.logical_id}' failed: {e}")
                continue

            rolled_back.append(entry.logical_id)
            await self._publish(
                EventType.ENTRY_ROLLED_BACK,
                logical_id=entry.logical_id,
                operation=result.operation,
            )
            logger.info(f"Rolled back {entry.logical_id}")

        return rolled_back

    async def _restore(
        self,
        result: EntryResult,
        previous: Optional[StateRecord],
        current: Optional[StateRecord],
    ) -> None:
        logical_id = result.entry.logical_id

        if previous is None:
            # Created during this batch
            if current.physical_id is not None:
                provider = await self.registry.get_provider_for_type(current.resource_type)
                await self._call(
                    result,
                    "delete",
                    provider.delete,
                    current.resource_type,
                    current.physical_id,
                )
            await self.store.remove_record(self.environment, logical_id)
            self._records.pop(logical_id, None)
            return

        provider = await self.registry.get_provider_for_type(previous.resource_type)

        if current is None:
            # Deleted during this batch
            physical_id = await self._create_object(
                result, previous.resource_type, previous.attributes
            )
            outputs = await self._call(
                result, "read", provider.read, previous.resource_type, physical_id
            )
            record = copy.deepcopy(previous)
            record.physical_id = physical_id
            record.outputs = outputs
            record.status = ResourceStatus.APPLIED
            await self._save(record)
            return

        if current.physical_id != previous.physical_id:
            # Replacement object created during this batch
            current_provider = await self.registry.get_provider_for_type(
                current.resource_type
            )
            await self._call(
                result,
                "delete",
                current_provider.delete,
                current.resource_type,
                current.physical_id,
            )
            await self._save(copy.deepcopy(previous))
            return

        resolved = resolve_references(logical_id, previous.attributes, self._records)
        outputs = await self._call(
            result,
            "update",
            provider.update,
            previous.resource_type,
            previous.physical_id,
            resolved,
        )
        record = copy.deepcopy(previous)
        record.outputs = outputs
        await self._save(record)
