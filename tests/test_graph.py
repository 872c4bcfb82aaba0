"""Unit tests for graph.py - Resource Graph Builder."""

import pytest

from errors import (
    CyclicDependencyError,
    DuplicateResourceError,
    SpecificationError,
    UnresolvedReferenceError,
)
from graph import DependencyGraph, Reference, ResourceNode, build_graph, find_references
from spec_loader import parse_specification


def graph_of(resources):
    return build_graph(parse_specification({"resources": resources}))


class TestFindReferences:
    """Tests for find_references."""

    def test_plain_string(self):
        assert find_references("${Net.id}") == [Reference("Net", "id")]

    def test_embedded_and_multiple(self):
        refs = find_references("s3://${Bucket.bucket_name}/${Net.cidr}")
        assert refs == [Reference("Bucket", "bucket_name"), Reference("Net", "cidr")]

    def test_nested_structures(self):
        value = {"a": ["${A.id}", {"b": "${B.outputs.x}"}], "c": 3}
        targets = sorted(ref.target for ref in find_references(value))
        assert targets == ["A", "B"]

    def test_nested_logical_id(self):
        assert find_references("${LoadBalancer/Listener.arn}") == [
            Reference("LoadBalancer/Listener", "arn")
        ]

    def test_no_references(self):
        assert find_references({"a": "$notaref", "b": 1}) == []


class TestGraphBuilder:
    """Tests for building graphs from specifications."""

    def test_inferred_dependencies(self):
        graph = graph_of(
            {
                "Net": {"type": "test.net", "attributes": {"cidr": "x"}},
                "Server": {"type": "test.server", "attributes": {"network_id": "${Net.id}"}},
            }
        )
        assert graph.dependencies_of("Server") == frozenset({"Net"})
        assert graph.dependents_of("Net") == {"Server"}
        assert graph.nodes["Server"].inferred_dependencies == frozenset({"Net"})

    def test_explicit_dependencies(self):
        graph = graph_of(
            {
                "A": {"type": "t"},
                "B": {"type": "t", "depends_on": "A"},
            }
        )
        assert graph.nodes["B"].explicit_dependencies == frozenset({"A"})

    def test_nested_declarations(self):
        graph = graph_of(
            {
                "LoadBalancer": {
                    "type": "compute.load_balancer",
                    "resources": {"Listener": {"type": "compute.listener"}},
                }
            }
        )
        child = graph.nodes["LoadBalancer/Listener"]
        assert child.parent == "LoadBalancer"
        assert graph.dependencies_of("LoadBalancer/Listener") == frozenset({"LoadBalancer"})

    def test_attributes_are_copied(self):
        document = parse_specification(
            {"resources": {"A": {"type": "t", "attributes": {"list": [1]}}}}
        )
        graph = build_graph(document)
        document.resources["A"].attributes["list"].append(2)
        assert graph.nodes["A"].attributes["list"] == [1]

    def test_unresolved_reference(self):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            graph_of({"A": {"type": "t", "attributes": {"x": "${Missing.id}"}}})
        assert exc_info.value.target == "Missing"

    def test_unresolved_depends_on(self):
        with pytest.raises(UnresolvedReferenceError):
            graph_of({"A": {"type": "t", "depends_on": ["Missing"]}})

    def test_cycle_detected_with_path(self):
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph_of(
                {
                    "A": {"type": "t", "depends_on": ["C"]},
                    "B": {"type": "t", "depends_on": ["A"]},
                    "C": {"type": "t", "depends_on": ["B"]},
                }
            )
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A", "B", "C"}
        assert isinstance(exc_info.value, SpecificationError)

    def test_self_reference_is_cycle(self):
        with pytest.raises(CyclicDependencyError):
            graph_of({"A": {"type": "t", "attributes": {"x": "${A.id}"}}})

    def test_topological_order(self):
        graph = graph_of(
            {
                "App": {"type": "t", "depends_on": ["Db", "Net"]},
                "Db": {"type": "t", "depends_on": ["Net"]},
                "Net": {"type": "t"},
                "Bucket": {"type": "t"},
            }
        )
        order = graph.topological_order()
        assert order == ["Bucket", "Net", "Db", "App"]
        for node in graph:
            for dependency in node.dependencies:
                assert order.index(dependency) < order.index(node.logical_id)

    def test_iteration_sorted(self):
        graph = graph_of({"b": {"type": "t"}, "a": {"type": "t"}})
        assert [node.logical_id for node in graph] == ["a", "b"]
        assert len(graph) == 2
        assert "a" in graph

    def test_to_dot(self):
        graph = graph_of(
            {"Net": {"type": "t"}, "Server": {"type": "t", "depends_on": ["Net"]}}
        )
        dot = graph.to_dot()
        assert dot.startswith("digraph Resources {")
        assert '"Net" -> "Server";' in dot


class TestDependencyGraph:
    """Tests for DependencyGraph primitives."""

    def test_duplicate_node(self):
        graph = DependencyGraph()
        graph.add_node(ResourceNode(logical_id="A", resource_type="t"))
        with pytest.raises(DuplicateResourceError):
            graph.add_node(ResourceNode(logical_id="A", resource_type="t"))

    def test_referenced_by_attribute(self):
        node = ResourceNode(
            logical_id="S",
            resource_type="t",
            attributes={"a": "${Net.id}", "b": ["${Net.id}", "${Db.id}"], "c": 1},
        )
        assert node.referenced_by_attribute() == {"a": {"Net"}, "b": {"Net", "Db"}}
