"""
Resource Graph Builder - Turn a specification tree into a dependency graph.

Edges come from three sources:
- explicit ``depends_on`` lists
- references ``${<logical id>.<attribute>}`` inside attribute values
- nesting (a child declaration depends on its parent)

An edge A -> B means A must exist before B is created, and B must be
destroyed before A.
"""

import copy
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Set

from errors import CyclicDependencyError, DuplicateResourceError, UnresolvedReferenceError
from spec_loader import ResourceDeclaration, SpecificationDocument

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"\$\{([A-Za-z][A-Za-z0-9_\-/]*)\.([A-Za-z0-9_\-.]+)\}")

# Separator for nested logical ids (e.g. "MyALB/MyListener")
PATH_SEPARATOR = "/"


@dataclass(frozen=True)
class Reference:
    """A symbolic reference to another resource's output."""

    target: str
    attribute: str


def find_references(value: Any) -> List[Reference]:
    """Collect all references contained in an attribute value, recursively."""
    found: List[Reference] = []
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            found.append(Reference(target=match.group(1), attribute=match.group(2)))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(find_references(item))
    return found


@dataclass(frozen=True)
class ResourceNode:
    """A typed resource with its desired attributes and dependency edges."""

    logical_id: str
    resource_type: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    explicit_dependencies: FrozenSet[str] = frozenset()
    inferred_dependencies: FrozenSet[str] = frozenset()
    parent: Optional[str] = None

    @property
    def dependencies(self) -> FrozenSet[str]:
        return self.explicit_dependencies | self.inferred_dependencies

    def referenced_by_attribute(self) -> Dict[str, Set[str]]:
        """Map each top-level attribute key to the logical ids it references."""
        result: Dict[str, Set[str]] = {}
        for key, value in self.attributes.items():
            targets = {ref.target for ref in find_references(value)}
            if targets:
                result[key] = targets
        return result


class DependencyGraph:
    """Directed acyclic graph of ResourceNodes keyed by logical id."""

    def __init__(self):
        self.nodes: Dict[str, ResourceNode] = {}
        self._dependents: Dict[str, Set[str]] = {}

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        for logical_id in sorted(self.nodes):
            yield self.nodes[logical_id]

    def add_node(self, node: ResourceNode) -> None:
        if node.logical_id in self.nodes:
            raise DuplicateResourceError(node.logical_id)
        self.nodes[node.logical_id] = node
        self._dependents.setdefault(node.logical_id, set())

    def dependencies_of(self, logical_id: str) -> FrozenSet[str]:
        return self.nodes[logical_id].dependencies

    def dependents_of(self, logical_id: str) -> Set[str]:
        return set(self._dependents.get(logical_id, set()))

    def link(self) -> None:
        """
        Resolve dependency edges and index dependents.

        Raises:
            UnresolvedReferenceError: If an edge targets an unknown node
        """
        self._dependents = {logical_id: set() for logical_id in self.nodes}
        for logical_id in sorted(self.nodes):
            for dependency in sorted(self.nodes[logical_id].dependencies):
                if dependency not in self.nodes:
                    raise UnresolvedReferenceError(logical_id, dependency)
                self._dependents[dependency].add(logical_id)

    def _find_cycle_from(
        self, logical_id: str, stack: List[str], on_stack: Set[str], done: Set[str]
    ) -> Optional[List[str]]:
        if logical_id in on_stack:
            return stack[stack.index(logical_id) :] + [logical_id]
        if logical_id in done:
            return None

        stack.append(logical_id)
        on_stack.add(logical_id)
        for dependency in sorted(self.nodes[logical_id].dependencies):
            cycle = self._find_cycle_from(dependency, stack, on_stack, done)
            if cycle:
                return cycle
        stack.pop()
        on_stack.remove(logical_id)
        done.add(logical_id)
        return None

    def validate(self) -> None:
        """
        Check the graph is acyclic using DFS with a recursion stack.

        Raises:
            CyclicDependencyError: With the nodes forming the cycle
        """
        done: Set[str] = set()
        for logical_id in sorted(self.nodes):
            cycle = self._find_cycle_from(logical_id, [], set(), done)
            if cycle:
                raise CyclicDependencyError(cycle)

    def topological_order(self) -> List[str]:
        """
        Return logical ids in dependency order (Kahn's algorithm).

        Ties are broken by logical id so the order is deterministic.
        """
        in_degree = {
            logical_id: len(node.dependencies) for logical_id, node in self.nodes.items()
        }
        ready = deque(sorted(lid for lid, degree in in_degree.items() if degree == 0))
        order: List[str] = []

        while ready:
            logical_id = ready.popleft()
            order.append(logical_id)
            released = []
            for dependent in self._dependents.get(logical_id, ()):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    released.append(dependent)
            ready.extend(sorted(released))

        if len(order) != len(self.nodes):
            remaining = sorted(set(self.nodes) - set(order))
            raise CyclicDependencyError(remaining)
        return order

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph Resources {", "    rankdir=LR;", "    node [shape=box];"]
        for node in self:
            label = f"{node.logical_id}\\n({node.resource_type})"
            lines.append(f'    "{node.logical_id}" [label="{label}"];')
            for dependency in sorted(node.dependencies):
                lines.append(f'    "{dependency}" -> "{node.logical_id}";')
        lines.append("}")
        return "\n".join(lines)


class GraphBuilder:
    """Builds a DependencyGraph from a SpecificationDocument."""

    def build(self, document: SpecificationDocument) -> DependencyGraph:
        """
        Build and validate the dependency graph for a specification.

        Raises:
            DuplicateResourceError: If two declarations share a logical id
            UnresolvedReferenceError: If an edge targets an unknown logical id
            CyclicDependencyError: If the edges contain a cycle
        """
        graph = DependencyGraph()
        for name in sorted(document.resources):
            self._add_declaration(graph, name, document.resources[name], parent=None)

        graph.link()
        graph.validate()
        logger.debug(f"Built dependency graph with {len(graph)} resources")
        return graph

    def _add_declaration(
        self,
        graph: DependencyGraph,
        logical_id: str,
        declaration: ResourceDeclaration,
        parent: Optional[str],
    ) -> None:
        attributes = copy.deepcopy(declaration.attributes)
        inferred = {ref.target for ref in find_references(attributes)}
        if parent is not None:
            inferred.add(parent)

        graph.add_node(
            ResourceNode(
                logical_id=logical_id,
                resource_type=declaration.type,
                attributes=attributes,
                explicit_dependencies=frozenset(declaration.depends_on),
                inferred_dependencies=frozenset(inferred),
                parent=parent,
            )
        )

        for child_name in sorted(declaration.resources):
            self._add_declaration(
                graph,
                f"{logical_id}{PATH_SEPARATOR}{child_name}",
                declaration.resources[child_name],
                parent=logical_id,
            )


def build_graph(document: SpecificationDocument) -> DependencyGraph:
    """Convenience wrapper around GraphBuilder().build()."""
    return GraphBuilder().build(document)
