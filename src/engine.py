"""
Engine - Plan, apply and drift detection for one environment.

Planning is side-effect free: it builds the graph, validates attributes
against provider schemas, loads state and computes an ordered plan without
calling any provider. Applying re-checks that state has not moved since the
plan was made and hands the plan to the executor.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import ExecutorConfig
from diff import DiffEngine, changed_keys
from errors import PermanentProviderError, StalePlanError, TransientProviderError
from events import EventBus
from executor import ApplyResult, Executor
from graph import DependencyGraph, build_graph
from plugins.registry import PluginRegistry
from scheduler import ExecutionPlan, PlanScheduler
from spec_loader import SpecificationDocument
from state import ResourceStatus, StateStore, state_digest, validate_environment
from validation import validate_graph

logger = logging.getLogger(__name__)


@dataclass
class EnvironmentContext:
    """Everything an engine needs to act on one environment."""

    name: str
    state_store: StateStore
    registry: PluginRegistry
    executor_config: ExecutorConfig = field(default_factory=ExecutorConfig)

    def __post_init__(self):
        validate_environment(self.name)


@dataclass
class DriftResult:
    """Difference between stored outputs and what the provider reports."""

    logical_id: str
    resource_type: str
    physical_id: Optional[str]
    changed_attributes: List[str] = field(default_factory=list)
    missing: bool = False
    error: Optional[str] = None

    @property
    def drifted(self) -> bool:
        return self.missing or bool(self.changed_attributes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "resource_type": self.resource_type,
            "physical_id": self.physical_id,
            "changed_attributes": self.changed_attributes,
            "missing": self.missing,
            "error": self.error,
        }


class Engine:
    """Reconciles a specification against the state of one environment."""

    def __init__(self, context: EnvironmentContext, event_bus: Optional[EventBus] = None):
        self.context = context
        self.event_bus = event_bus or EventBus()
        self.scheduler = PlanScheduler()

    def build_graph(self, document: SpecificationDocument) -> DependencyGraph:
        """Build and validate the dependency graph of a specification."""
        graph = build_graph(document)
        validate_graph(graph, self.context.registry)
        return graph

    async def plan(self, document: SpecificationDocument) -> ExecutionPlan:
        """
        Compute the execution plan for a specification.

        Raises:
            SpecificationError: If the specification is malformed, cyclic or invalid
            StateCorruptionError: If stored state cannot be parsed
        """
        env = self.context.name
        graph = self.build_graph(document)
        records = await self.context.state_store.load(env)

        for record in records.values():
            if record.deposed:
                logger.warning(
                    f"Resource '{record.logical_id}' has deposed object(s) "
                    f"{record.deposed} left by an interrupted replace; "
                    f"delete them manually"
                )

        changes = DiffEngine(self.context.registry.get_immutable_attributes).diff(
            graph, records
        )
        return self.scheduler.schedule(
            changes, environment=env, state_digest=state_digest(records)
        )

    async def apply(
        self, plan: ExecutionPlan, cancel_event: Optional[asyncio.Event] = None
    ) -> ApplyResult:
        """
        Apply a plan computed by :meth:`plan`.

        Raises:
            StalePlanError: If state changed since the plan was computed
            StateCorruptionError: If stored state cannot be parsed
        """
        env = self.context.name
        if plan.environment != env:
            raise StalePlanError(
                f"Plan was computed for environment '{plan.environment}', not '{env}'"
            )

        records = await self.context.state_store.load(env)
        if state_digest(records) != plan.state_digest:
            raise StalePlanError(
                f"State of environment '{env}' changed since the plan was computed; "
                f"re-run plan"
            )

        executor = Executor(
            env,
            self.context.state_store,
            self.context.registry,
            config=self.context.executor_config,
            event_bus=self.event_bus,
        )
        result = await executor.execute(plan, cancel_event=cancel_event)

        try:
            await self.context.state_store.record_apply(env, result.summary())
        except Exception as e:
            logger.error(f"Failed to record apply history for '{env}': {e}")

        return result

    async def detect_drift(self) -> List[DriftResult]:
        """Compare stored outputs of applied resources with what providers report."""
        env = self.context.name
        records = await self.context.state_store.load(env)
        results = []

        for logical_id in sorted(records):
            record = records[logical_id]
            if record.status != ResourceStatus.APPLIED or record.physical_id is None:
                continue

            result = DriftResult(
                logical_id=logical_id,
                resource_type=record.resource_type,
                physical_id=record.physical_id,
            )
            try:
                provider = await self.context.registry.get_provider_for_type(
                    record.resource_type
                )
                current = await provider.read(record.resource_type, record.physical_id)
            except PermanentProviderError as e:
                result.missing = True
                result.error = e.message
            except (TransientProviderError, ValueError) as e:
                result.error = str(e)
            else:
                result.changed_attributes = changed_keys(record.outputs, current)

            if result.drifted:
                logger.info(f"Drift detected for {logical_id}: {result.to_dict()}")
            results.append(result)

        return results
