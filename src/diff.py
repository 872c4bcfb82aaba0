"""
Diff Engine - Compare the desired graph against stored state.

Produces one ChangeSetEntry per logical id found in either side:

- only desired                      -> Create
- only stored                       -> Delete
- both, equal attributes            -> NoOp
- both, differing attributes        -> Update
- a changed attribute is immutable  -> Replace (create-before-destroy)

Comparison is structural: attributes are normalised through JSON before
being compared, so tuples and lists or key order never cause a diff.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from graph import DependencyGraph
from state import ResourceStatus, StateRecord

logger = logging.getLogger(__name__)

_MISSING = object()


class ChangeKind(Enum):
    """Operation kind of a change-set entry."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


class ReplacePhase(Enum):
    """Half of a Replace once scheduled."""

    CREATE = "create"
    DESTROY = "destroy"


@dataclass(frozen=True)
class ChangeSetEntry:
    """A planned change to one resource."""

    logical_id: str
    resource_type: str
    kind: ChangeKind
    old_attributes: Optional[Dict[str, Any]] = None
    new_attributes: Optional[Dict[str, Any]] = None
    # Dependencies in the desired graph (stored dependencies for deletes)
    dependencies: FrozenSet[str] = frozenset()
    old_dependencies: FrozenSet[str] = frozenset()
    changed_attributes: Tuple[str, ...] = ()
    physical_id: Optional[str] = None
    old_resource_type: Optional[str] = None
    phase: Optional[ReplacePhase] = None
    reason: str = ""

    @property
    def label(self) -> str:
        name = self.kind.value.capitalize() if self.kind != ChangeKind.NOOP else "NoOp"
        if self.phase is not None:
            return f"{name}({self.logical_id}, {self.phase.value})"
        return f"{name}({self.logical_id})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logical_id": self.logical_id,
            "resource_type": self.resource_type,
            "kind": self.kind.value,
            "phase": self.phase.value if self.phase else None,
            "physical_id": self.physical_id,
            "changed_attributes": list(self.changed_attributes),
            "dependencies": sorted(self.dependencies),
            "old_attributes": self.old_attributes,
            "new_attributes": self.new_attributes,
            "reason": self.reason,
        }


def normalize(value: Any) -> Any:
    """Normalise a value for structural comparison."""
    return json.loads(json.dumps(value, sort_keys=True, default=str))


def changed_keys(old: Dict[str, Any], new: Dict[str, Any]) -> List[str]:
    """Top-level attribute keys whose values differ structurally."""
    old_n, new_n = normalize(old), normalize(new)
    return sorted(
        key
        for key in set(old_n) | set(new_n)
        if old_n.get(key, _MISSING) != new_n.get(key, _MISSING)
    )


def summarize(entries: List[ChangeSetEntry]) -> Dict[str, int]:
    """Count entries per kind (Replace halves count once)."""
    counts = {kind.value: 0 for kind in ChangeKind}
    for entry in entries:
        if entry.phase == ReplacePhase.DESTROY:
            continue
        counts[entry.kind.value] += 1
    return counts


class DiffEngine:
    """Computes the change-set between a desired graph and stored records."""

    def __init__(
        self, immutable_lookup: Optional[Callable[[str], FrozenSet[str]]] = None
    ):
        self._immutable_lookup = immutable_lookup or (lambda resource_type: frozenset())

    def diff(
        self, graph: DependencyGraph, records: Dict[str, StateRecord]
    ) -> List[ChangeSetEntry]:
        """
        Compute the change-set, sorted by logical id.

        Nodes are visited in dependency order so that a Replace can promote
        its dependents: those referencing it are re-pointed (Update, or
        Replace through an immutable attribute), the others are replaced.
        """
        live = {
            lid: record
            for lid, record in records.items()
            if record.status != ResourceStatus.DELETED
        }
        entries: Dict[str, ChangeSetEntry] = {}
        replaced: Set[str] = set()

        for logical_id in graph.topological_order():
            entry = self._diff_node(graph, logical_id, live.get(logical_id), replaced)
            if entry.kind == ChangeKind.REPLACE:
                replaced.add(logical_id)
            entries[logical_id] = entry

        for logical_id in sorted(set(live) - set(graph.nodes)):
            record = live[logical_id]
            entries[logical_id] = ChangeSetEntry(
                logical_id=logical_id,
                resource_type=record.resource_type,
                kind=ChangeKind.DELETE,
                old_attributes=record.attributes,
                dependencies=frozenset(record.dependencies),
                old_dependencies=frozenset(record.dependencies),
                physical_id=record.physical_id,
                reason="removed from specification",
            )

        result = [entries[lid] for lid in sorted(entries)]
        logger.debug(f"Computed change-set: {summarize(result)}")
        return result

    def _diff_node(
        self,
        graph: DependencyGraph,
        logical_id: str,
        record: Optional[StateRecord],
        replaced: Set[str],
    ) -> ChangeSetEntry:
        node = graph.nodes[logical_id]
        base = dict(
            logical_id=logical_id,
            resource_type=node.resource_type,
            new_attributes=node.attributes,
            dependencies=node.dependencies,
        )

        if record is None or record.physical_id is None:
            return ChangeSetEntry(
                kind=ChangeKind.CREATE,
                old_attributes=record.attributes if record else None,
                changed_attributes=tuple(sorted(node.attributes)),
                reason="not yet created",
                **base,
            )

        immutable = self._immutable_lookup(node.resource_type)
        changed = changed_keys(record.attributes, node.attributes)
        changed_set = set(changed)

        if record.resource_type != node.resource_type:
            kind, reason = ChangeKind.REPLACE, "resource type changed"
        elif changed_set & immutable:
            forcing = ", ".join(sorted(changed_set & immutable))
            kind, reason = ChangeKind.REPLACE, f"immutable attribute(s) changed: {forcing}"
        elif changed:
            kind, reason = ChangeKind.UPDATE, "attributes changed"
        elif record.status != ResourceStatus.APPLIED:
            kind, reason = ChangeKind.UPDATE, f"previous apply left status {record.status.value}"
        else:
            kind, reason = ChangeKind.NOOP, ""

        if kind != ChangeKind.REPLACE and replaced:
            referenced = node.referenced_by_attribute()
            by_reference = set().union(*referenced.values()) if referenced else set()
            # Dependents linked only by depends_on or nesting cannot be
            # re-pointed, so they are rebuilt on the new object
            structural = (node.dependencies & replaced) - by_reference
            if structural:
                kind = ChangeKind.REPLACE
                reason = f"depends on replaced {sorted(structural)}"

        if kind != ChangeKind.REPLACE and replaced:
            for key, targets in sorted(referenced.items()):
                repointed = targets & replaced
                if not repointed:
                    continue
                changed_set.add(key)
                if key in immutable:
                    kind = ChangeKind.REPLACE
                    reason = f"immutable attribute '{key}' references replaced {sorted(repointed)}"
                    break
                if kind == ChangeKind.NOOP:
                    kind = ChangeKind.UPDATE
                    reason = f"re-point references to replaced {sorted(repointed)}"

        return ChangeSetEntry(
            kind=kind,
            old_attributes=record.attributes,
            old_dependencies=frozenset(record.dependencies),
            changed_attributes=tuple(sorted(changed_set)),
            physical_id=record.physical_id,
            old_resource_type=record.resource_type,
            reason=reason,
            **base,
        )
