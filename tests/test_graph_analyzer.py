"""Tests for static graph analysis."""

import itertools
import random

import pytest

from machina.graph.analyzer import GraphAnalyzer


def brute_force_cycles(names, links):
    """Every elementary cycle, as a tuple rotated to start at its earliest node."""
    found = set()
    for length in range(1, len(names) + 1):
        for perm in itertools.permutations(range(len(names)), length):
            if perm[0] != min(perm):
                continue
            if all((perm[i], perm[(i + 1) % length]) in links for i in range(length)):
                found.add(tuple(names[i] for i in perm))
    return found


def random_graph(make_graph, seed, size):
    rng = random.Random(seed)
    names = [f"n{i}" for i in range(size)]
    links = {(i, j) for i in range(size) for j in range(size) if rng.random() < 0.3}
    edges = [{"source": names[i], "target": names[j]} for i, j in sorted(links)]
    return make_graph(nodes=[{"name": n} for n in names], edges=edges), names, links


def test_linear_graph(linear_graph):
    analyzer = GraphAnalyzer(linear_graph)
    assert analyzer.find_entry_points() == ["A"]
    assert analyzer.find_exit_points() == ["C"]
    assert analyzer.find_unreachable_nodes() == []
    assert analyzer.find_orphaned_nodes() == []
    assert analyzer.detect_cycles() == []
    assert analyzer.find_path("A", "C") == ["A", "B", "C"]
    assert analyzer.find_path("C", "A") == []
    assert analyzer.find_path("B", "B") == ["B"]
    assert analyzer.find_longest_path() == ["A", "B", "C"]


def test_statistics(linear_graph):
    stats = GraphAnalyzer(linear_graph).get_statistics()
    assert stats.node_count == 3
    assert stats.edge_count == 2
    assert stats.entry_point_count == 1
    assert stats.exit_point_count == 1
    assert stats.max_depth == 3
    assert stats.cycle_count == 0


def test_structural_findings(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "start", "kind": "init"},
            {"name": "a"},
            {"name": "b"},
            {"name": "lonely"},
            {"name": "x"},
            {"name": "y"},
        ],
        edges=[
            {"source": "start", "target": "a"},
            {"source": "a", "target": "b"},
            {"source": "b", "target": "a"},
            {"source": "x", "target": "y"},
            {"source": "y", "target": "x"},
        ],
    )
    analyzer = GraphAnalyzer(graph)
    assert analyzer.find_entry_points() == ["start", "lonely"]
    assert analyzer.find_orphaned_nodes() == ["lonely"]
    assert analyzer.find_unreachable_nodes() == ["x", "y"]
    assert analyzer.detect_cycles() == [["a", "b", "a"], ["x", "y", "x"]]
    assert analyzer.is_node_in_cycle("b")
    assert not analyzer.is_node_in_cycle("start")

    result = analyzer.validate()
    assert result.valid is False
    assert result.unreachable_nodes == ["x", "y"]
    assert "Node 'x' is unreachable from entry points" in result.warnings
    assert "Cycle detected: a -> b -> a" in result.warnings


def test_context_nodes_are_not_steps(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "start", "kind": "init"},
            {"name": "Config", "kind": "context"},
            {"name": "Orphan", "kind": "context"},
            {"name": "done"},
        ],
        edges=[
            {"source": "start", "target": "done"},
            {"source": "start", "target": "Config"},
        ],
    )
    analyzer = GraphAnalyzer(graph)
    assert analyzer.find_entry_points() == ["start"]
    assert analyzer.find_exit_points() == ["done"]
    assert analyzer.find_orphaned_nodes() == []
    assert analyzer.find_unreachable_nodes() == []
    assert analyzer.validate().valid is True


def test_init_node_is_entry_even_with_inbound_edges(make_graph):
    graph = make_graph(
        nodes=[{"name": "A", "kind": "init"}],
        edges=[{"source": "A", "target": "A"}],
    )
    analyzer = GraphAnalyzer(graph)
    assert analyzer.find_entry_points() == ["A"]
    assert analyzer.detect_cycles() == [["A", "A"]]


def test_cycles_reported_once_in_search_order(make_graph):
    graph = make_graph(
        nodes=[{"name": "a"}, {"name": "b"}, {"name": "c"}],
        edges=[
            {"source": "a", "target": "b"},
            {"source": "b", "target": "a"},
            {"source": "b", "target": "c"},
            {"source": "c", "target": "a"},
        ],
    )
    assert GraphAnalyzer(graph).detect_cycles() == [["a", "b", "a"], ["a", "b", "c", "a"]]


def test_no_entry_points_is_reported(make_graph):
    graph = make_graph(
        nodes=[{"name": "a"}, {"name": "b"}],
        edges=[{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
    )
    result = GraphAnalyzer(graph).validate()
    assert result.entry_points == []
    assert result.valid is False
    assert "Graph has no entry points" in result.warnings


def test_results_are_reproducible(make_graph):
    graph, _, _ = random_graph(make_graph, seed=7, size=6)
    first = GraphAnalyzer(graph).validate()
    second = GraphAnalyzer(graph).validate()
    assert first == second


@pytest.mark.parametrize("seed", range(30))
def test_detect_cycles_matches_brute_force(make_graph, seed):
    size = 3 + seed % 4
    graph, names, links = random_graph(make_graph, seed, size)
    cycles = GraphAnalyzer(graph).detect_cycles()

    as_tuples = [tuple(cycle[:-1]) for cycle in cycles]
    assert len(as_tuples) == len(set(as_tuples))
    assert all(cycle[0] == cycle[-1] for cycle in cycles)
    assert set(as_tuples) == brute_force_cycles(names, links)
