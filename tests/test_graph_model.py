"""Tests for loading and indexing the graph model."""

import pytest

from machina.errors import GraphModelError
from machina.graph.model import (
    Edge,
    EndType,
    GraphModel,
    NodeKind,
    extract_access_markers,
    extract_condition,
)


def test_node_kinds_resolve_with_aliases(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "s", "type": "initial"},
            {"name": "w", "kind": "widget"},
            {"name": "plain"},
            {"name": "Config", "kind": "context"},
        ],
        edges=[],
    )
    assert graph.get_node("s").kind == NodeKind.INIT
    assert graph.get_node("w").kind == NodeKind.OTHER
    assert graph.get_node("plain").kind == NodeKind.STATE
    assert graph.is_context("Config")
    assert [n.name for n in graph.context_nodes()] == ["Config"]


def test_attributes_accept_mapping_and_list(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "a", "attributes": {"limit": 3, "label": "x"}},
            {"name": "b", "attributes": [{"name": "count", "declaredType": "number", "value": 1}]},
            {"name": "c", "attributes": [{"name": "flag", "type": "boolean", "value": True}]},
        ],
        edges=[],
    )
    assert graph.get_node("a").attribute_values() == {"limit": 3, "label": "x"}
    assert graph.get_node("b").get_attribute("count").declared_type == "number"
    assert graph.get_node("c").get_attribute("flag").declared_type == "boolean"
    assert graph.get_node("a").get_attribute("missing") is None


def test_nested_nodes_are_flattened_with_parent(make_graph):
    graph = make_graph(
        nodes=[
            {
                "name": "M",
                "nodes": [
                    {"name": "m1", "kind": "task"},
                    {"name": "inner", "nodes": [{"name": "deep"}]},
                ],
            },
        ],
        edges=[],
    )
    assert graph.node_names() == ["M", "m1", "inner", "deep"]
    assert graph.get_node("m1").parent == "M"
    assert [c.name for c in graph.children("M")] == ["m1", "inner"]
    assert [a.name for a in graph.ancestors("deep")] == ["inner", "M"]


def test_edge_target_forms_become_segments(make_graph):
    graph = make_graph(
        nodes=[{"name": "a"}, {"name": "b"}, {"name": "c"}],
        edges=[
            {"source": "a", "target": "b", "arrowType": "=>"},
            {"source": "a", "targets": ["b", "c"]},
            {"source": "b", "segments": [{"target": "c", "endType": "inheritance"}]},
        ],
    )
    first, fork, structural = graph.edges
    assert first.segments[0].end_type == EndType.CAUSAL
    assert fork.targets == ["b", "c"]
    assert all(s.end_type == EndType.PLAIN for s in fork.segments)
    assert structural.segments[0].end_type == EndType.INHERITANCE
    assert not structural.segments[0].end_type.transfers_control


def test_arrow_tokens_resolve():
    assert EndType.resolve("->") == EndType.PLAIN
    assert EndType.resolve("-->") == EndType.DEPENDENCY
    assert EndType.resolve("*-->") == EndType.COMPOSITION
    assert EndType.resolve("o-->") == EndType.AGGREGATION
    assert EndType.resolve("<-->") == EndType.BIDIRECTIONAL
    assert EndType.resolve(None) == EndType.PLAIN
    assert EndType.BIDIRECTIONAL.transfers_control


def test_unknown_end_type_is_rejected():
    with pytest.raises(GraphModelError):
        EndType.resolve("~~>")
    with pytest.raises(ValueError):
        Edge.model_validate({"source": "a", "target": "b", "arrowType": "~~>"})


def test_conditions_lifted_from_labels():
    assert extract_condition("when: Config.retries > 2") == "Config.retries > 2"
    assert extract_condition("unless: done") == "not (done)"
    assert extract_condition("if: \"mode == 'fast'\"") == "mode == 'fast'"
    assert extract_condition("retry; when: x > 1; priority high") == "x > 1"
    assert extract_condition("just a label") is None
    assert extract_condition(None) is None

    edge = Edge.model_validate({"source": "a", "target": "b", "label": "unless: ok"})
    assert edge.condition == "not (ok)"


def test_explicit_condition_wins_over_label():
    edge = Edge.model_validate(
        {"source": "a", "target": "b", "label": "when: x > 1", "condition": "y < 2"}
    )
    assert edge.condition == "y < 2"
    assert edge.display_label == "when: x > 1"


def test_access_markers_lifted_from_labels():
    reads, writes = extract_access_markers("reads: Config.a, Config.b writes: Config.c")
    assert reads == ["Config.a", "Config.b"]
    assert writes == ["Config.c"]

    edge = Edge.model_validate({"source": "a", "target": "b", "label": "writes: Notes.text"})
    assert edge.writes == ["Notes.text"]
    assert edge.reads == []


def test_auto_annotation_and_label_mark_edges_automatic():
    by_annotation = Edge.model_validate({"source": "a", "target": "b", "annotations": ["@auto"]})
    by_label = Edge.model_validate({"source": "a", "target": "b", "label": "@auto"})
    plain = Edge.model_validate({"source": "a", "target": "b"})
    assert by_annotation.automatic
    assert by_label.automatic
    assert not plain.automatic


def test_meta_capability_from_attribute_or_annotation(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "by_attr", "attributes": {"meta": "true"}},
            {"name": "by_annotation", "annotations": [{"name": "@meta"}]},
            {"name": "off", "attributes": {"meta": False}},
        ],
        edges=[],
    )
    assert graph.get_node("by_attr").meta_enabled
    assert graph.get_node("by_annotation").meta_enabled
    assert not graph.get_node("off").meta_enabled


def test_prompt_property_ignores_blank_values(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "t", "attributes": {"prompt": "  Decide  "}},
            {"name": "blank", "attributes": {"prompt": "   "}},
            {"name": "none"},
        ],
        edges=[],
    )
    assert graph.get_node("t").prompt == "Decide"
    assert graph.get_node("blank").prompt is None
    assert graph.get_node("none").prompt is None


@pytest.mark.parametrize(
    "nodes,edges",
    [
        ([{"name": "a"}, {"name": "a"}], []),
        ([{"name": "a"}], [{"source": "a", "target": "ghost"}]),
        ([{"name": "a"}], [{"source": "ghost", "target": "a"}]),
        ([{"name": "a", "parent": "ghost"}], []),
        ([{"name": "a", "parent": "b"}, {"name": "b", "parent": "a"}], []),
    ],
    ids=["duplicate", "unknown-target", "unknown-source", "unknown-parent", "parent-cycle"],
)
def test_inconsistent_models_are_rejected(make_graph, nodes, edges):
    with pytest.raises(ValueError):
        make_graph(nodes=nodes, edges=edges)


def test_indexes_follow_declaration_order(make_graph):
    graph = make_graph(
        nodes=[{"name": "a"}, {"name": "b"}, {"name": "c"}],
        edges=[
            {"source": "a", "target": "c"},
            {"source": "a", "target": "b"},
            {"source": "b", "target": "c"},
        ],
    )
    assert [i for i, _ in graph.outbound_edges("a")] == [0, 1]
    assert [i for i, _ in graph.inbound_edges("c")] == [0, 2]
    assert graph.declaration_index("c") == 2
    with pytest.raises(GraphModelError):
        graph.get_node("nope")


def test_add_edge_rolls_back_on_unknown_target(make_graph):
    graph = make_graph(nodes=[{"name": "a"}, {"name": "b"}], edges=[])
    index = graph.add_edge(Edge.model_validate({"source": "a", "target": "b"}))
    assert index == 0

    with pytest.raises(GraphModelError):
        graph.add_edge(Edge.model_validate({"source": "a", "target": "ghost"}))
    assert len(graph.edges) == 1
    assert [i for i, _ in graph.outbound_edges("a")] == [0]


def test_json_round_trip_keeps_lifted_fields(make_graph):
    graph = make_graph(
        nodes=[{"name": "a", "kind": "init"}, {"name": "b", "attributes": {"x": 1}}],
        edges=[{"source": "a", "target": "b", "label": "when: b_ready", "priority": 2}],
    )
    restored = GraphModel.from_json(graph.to_json())
    assert restored.get_node("a").kind == NodeKind.INIT
    assert restored.edges[0].condition == "b_ready"
    assert restored.edges[0].priority == 2
    assert restored.get_node("b").attribute_values() == {"x": 1}
