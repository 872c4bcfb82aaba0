"""
Plan Scheduler - Order a change-set into concurrent batches.

Each change-set entry becomes one step, except Replace which becomes a
create step and a destroy step. Ordering edges between steps:

- a forward step (create / update / replace-create) runs after the forward
  steps of the resource's dependencies
- a destroy step (delete / replace-destroy) runs after the destroy step of
  every stored dependent, and after the forward step of every dependent that
  survives (it must stop pointing at the old object first)
- replace-create runs before replace-destroy (create-before-destroy)

NoOp steps do nothing, so they are contracted out of the ordering graph and
placed in the first batch. Batches are produced with Kahn's algorithm; ties
inside a batch are broken by logical id so plans are deterministic.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set, Tuple

from diff import ChangeKind, ChangeSetEntry, ReplacePhase, summarize
from errors import CyclicDependencyError
from state import utcnow

logger = logging.getLogger(__name__)

StepKey = Tuple[str, str]

_FORWARD = "forward"
_DESTROY = "destroy"


@dataclass
class ExecutionPlan:
    """Ordered batches of change-set entries for one environment."""

    environment: str
    batches: List[List[ChangeSetEntry]] = field(default_factory=list)
    state_digest: str = ""
    created_at: str = field(default_factory=utcnow)

    @property
    def entries(self) -> List[ChangeSetEntry]:
        return [entry for batch in self.batches for entry in batch]

    @property
    def has_changes(self) -> bool:
        return any(entry.kind != ChangeKind.NOOP for entry in self.entries)

    def summary(self) -> Dict[str, int]:
        return summarize(self.entries)

    def labels(self) -> List[List[str]]:
        return [[entry.label for entry in batch] for batch in self.batches]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "environment": self.environment,
            "created_at": self.created_at,
            "state_digest": self.state_digest,
            "summary": self.summary(),
            "batches": [[entry.to_dict() for entry in batch] for batch in self.batches],
        }


def _sort_key(entry: ChangeSetEntry) -> Tuple[str, int]:
    return (entry.logical_id, 1 if entry.phase == ReplacePhase.DESTROY else 0)


class PlanScheduler:
    """Builds an ExecutionPlan from a change-set."""

    def schedule(
        self,
        entries: List[ChangeSetEntry],
        environment: str,
        state_digest: str = "",
    ) -> ExecutionPlan:
        """
        Order the change-set into batches.

        Raises:
            CyclicDependencyError: If the ordering constraints contain a cycle
        """
        steps, forward, destroy = self._expand(entries)
        edges = self._build_edges(entries, forward, destroy)
        noops = {key for key, step in steps.items() if step.kind == ChangeKind.NOOP}
        edges = self._contract(edges, noops)

        batches = self._kahn(
            {key: step for key, step in steps.items() if key not in noops}, edges
        )
        noop_steps = sorted((steps[key] for key in noops), key=_sort_key)
        if noop_steps:
            if batches:
                batches[0] = sorted(batches[0] + noop_steps, key=_sort_key)
            else:
                batches = [noop_steps]

        plan = ExecutionPlan(
            environment=environment, batches=batches, state_digest=state_digest
        )
        logger.info(
            f"Planned {len(plan.entries)} step(s) in {len(batches)} batch(es) "
            f"for '{environment}': {plan.summary()}"
        )
        return plan

    def _expand(
        self, entries: List[ChangeSetEntry]
    ) -> Tuple[Dict[StepKey, ChangeSetEntry], Dict[str, StepKey], Dict[str, StepKey]]:
        steps: Dict[StepKey, ChangeSetEntry] = {}
        forward: Dict[str, StepKey] = {}
        destroy: Dict[str, StepKey] = {}

        for entry in entries:
            lid = entry.logical_id
            if entry.kind == ChangeKind.REPLACE:
                forward[lid] = (lid, _FORWARD)
                destroy[lid] = (lid, _DESTROY)
                steps[forward[lid]] = dataclasses.replace(entry, phase=ReplacePhase.CREATE)
                steps[destroy[lid]] = dataclasses.replace(entry, phase=ReplacePhase.DESTROY)
            elif entry.kind == ChangeKind.DELETE:
                destroy[lid] = (lid, _DESTROY)
                steps[destroy[lid]] = entry
            else:
                forward[lid] = (lid, _FORWARD)
                steps[forward[lid]] = entry

        return steps, forward, destroy

    def _build_edges(
        self,
        entries: List[ChangeSetEntry],
        forward: Dict[str, StepKey],
        destroy: Dict[str, StepKey],
    ) -> Set[Tuple[StepKey, StepKey]]:
        edges: Set[Tuple[StepKey, StepKey]] = set()

        # Resources depending on each logical id, old and new
        dependents: Dict[str, Set[str]] = {}
        for entry in entries:
            deps = set(entry.old_dependencies)
            if entry.kind != ChangeKind.DELETE:
                deps |= set(entry.dependencies)
            for dep in deps:
                dependents.setdefault(dep, set()).add(entry.logical_id)

        for entry in entries:
            lid = entry.logical_id
            if lid in forward:
                for dep in entry.dependencies:
                    if dep in forward and entry.kind != ChangeKind.DELETE:
                        edges.add((forward[dep], forward[lid]))

            if lid in destroy:
                for dependent in dependents.get(lid, ()):
                    if dependent == lid:
                        continue
                    if dependent in destroy:
                        edges.add((destroy[dependent], destroy[lid]))
                    if dependent in forward:
                        edges.add((forward[dependent], destroy[lid]))

            if lid in forward and lid in destroy:
                edges.add((forward[lid], destroy[lid]))

        return edges

    def _contract(
        self, edges: Set[Tuple[StepKey, StepKey]], removed: Set[StepKey]
    ) -> Set[Tuple[StepKey, StepKey]]:
        """Drop steps from the edge set, linking their predecessors to successors."""
        edges = set(edges)
        for key in sorted(removed):
            preds = {u for u, v in edges if v == key}
            succs = {v for u, v in edges if u == key}
            edges = {(u, v) for u, v in edges if key not in (u, v)}
            edges |= {(p, s) for p in preds for s in succs if p != s}
        return edges

    def _kahn(
        self,
        steps: Dict[StepKey, ChangeSetEntry],
        edges: Set[Tuple[StepKey, StepKey]],
    ) -> List[List[ChangeSetEntry]]:
        in_degree = {key: 0 for key in steps}
        successors: Dict[StepKey, Set[StepKey]] = {key: set() for key in steps}
        for u, v in edges:
            if u in steps and v in steps:
                successors[u].add(v)
                in_degree[v] += 1

        ready = [key for key, degree in in_degree.items() if degree == 0]
        batches: List[List[ChangeSetEntry]] = []
        scheduled = 0

        while ready:
            batch = sorted((steps[key] for key in ready), key=_sort_key)
            batches.append(batch)
            scheduled += len(ready)

            next_ready = []
            for key in ready:
                for successor in successors[key]:
                    in_degree[successor] -= 1
                    if in_degree[successor] == 0:
                        next_ready.append(successor)
            ready = next_ready

        if scheduled != len(steps):
            remaining = sorted(
                f"{lid}:{side}" for (lid, side), degree in in_degree.items() if degree > 0
            )
            raise CyclicDependencyError(remaining)

        return batches
