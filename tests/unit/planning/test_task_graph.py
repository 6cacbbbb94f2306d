"""Unit tests for planning.task_graph."""

from __future__ import annotations

import random

import pytest

from paigent_orchestrator.planning.task_graph import CycleError, TaskGraph


def test_topological_sort_breaks_ties_lexicographically() -> None:
    graph = TaskGraph(
        edges=(
            ("root", "zeta"),
            ("root", "alpha"),
            ("alpha", "omega"),
            ("zeta", "omega"),
        )
    )
    assert graph.topological_sort() == ("root", "alpha", "zeta", "omega")


def test_topological_sort_is_independent_of_insertion_order() -> None:
    edges = [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d"), ("d", "e"), ("x", "e")]
    expected = TaskGraph(edges=edges).topological_sort()
    rng = random.Random(7)
    for _ in range(10):
        shuffled = list(edges)
        rng.shuffle(shuffled)
        assert TaskGraph(edges=shuffled).topological_sort() == expected


def test_cycle_detection_returns_rotated_closed_paths() -> None:
    graph = TaskGraph(edges=(("c", "a"), ("a", "b"), ("b", "c"), ("c", "d")))

    assert graph.detect_cycles() == (("a", "b", "c", "a"),)
    with pytest.raises(CycleError) as error:
        graph.topological_sort()
    assert error.value.cycles == (("a", "b", "c", "a"),)
    assert str(error.value) == "Graph contains cycles: a -> b -> c -> a"


def test_acyclic_graph_has_no_cycles() -> None:
    graph = TaskGraph(nodes=("solo",), edges=(("a", "b"),))
    assert graph.detect_cycles() == ()
    assert graph.nodes == ("a", "b", "solo")


def test_dependency_queries() -> None:
    graph = TaskGraph(
        nodes=("node-b", "node-a"),
        edges=(("node-a", "node-c"), ("node-b", "node-c"), ("node-c", "node-d")),
    )

    assert graph.roots() == ("node-a", "node-b")
    assert graph.parents("node-c") == ("node-a", "node-b")
    assert graph.children("node-a") == ("node-c",)
    assert graph.ancestors("node-d") == ("node-a", "node-b", "node-c")
    assert graph.reachable_from("node-a") == frozenset({"node-a", "node-c", "node-d"})

    with pytest.raises(KeyError, match="unknown node: ghost"):
        graph.parents("ghost")


def test_add_node_rejects_empty_ids() -> None:
    with pytest.raises(ValueError, match="node id must be non-empty"):
        TaskGraph(nodes=("",))


def test_cycle_error_message_truncates_after_three_cycles() -> None:
    error = CycleError([("a", "a"), ("b", "b"), ("c", "c"), ("d", "d")])
    assert str(error) == "Graph contains cycles: a -> a, b -> b, c -> c..."
    assert str(CycleError([])) == "Graph contains cycles"
