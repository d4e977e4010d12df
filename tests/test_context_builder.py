"""Tests for agent request and tool catalogue construction."""

import pytest

from machina.agent.context_builder import AgentContextBuilder, unique_tool_name
from machina.agent.meta_tools import MetaToolRegistry
from machina.agent.protocol import ToolKind
from machina.graph.context_access import ContextAccessResolver
from machina.graph.transition import TransitionEvaluator
from machina.runtime.path import ExecutionPath, HistoryEntry
from machina.runtime.shared_state import SharedAttributeStore


@pytest.fixture
def review_graph(make_graph):
    return make_graph(
        nodes=[
            {"name": "start", "kind": "init"},
            {
                "name": "Config",
                "kind": "context",
                "attributes": [
                    {"name": "retries", "type": "number", "value": 0},
                    {"name": "secret", "value": "hidden"},
                ],
            },
            {"name": "Notes", "kind": "context", "attributes": {"topic": "billing", "empty": None}},
            {
                "name": "work",
                "kind": "task",
                "title": "Review the claim",
                "attributes": {"prompt": "Decide whether to retry"},
            },
            {"name": "done"},
            {"name": "retry"},
        ],
        edges=[
            {"source": "start", "target": "work"},
            {"source": "work", "target": "done", "label": "approve"},
            {"source": "work", "target": "retry", "label": "when: Config.retries < 3"},
            {"source": "work", "target": "Config", "label": "writes: Config.retries"},
            {"source": "work", "target": "Notes"},
        ],
    )


def make_builder(graph, registry=None, history_tail=10):
    store = SharedAttributeStore.from_graph(graph)
    builder = AgentContextBuilder(
        graph,
        ContextAccessResolver(graph),
        store,
        registry or MetaToolRegistry(),
        history_tail=history_tail,
    )
    candidates, _ = TransitionEvaluator(graph).candidates("work", store)
    return builder, candidates


def test_catalogue_lists_transitions_then_contexts(review_graph):
    builder, candidates = make_builder(review_graph)
    catalogue = builder.build_catalogue("work", candidates)

    assert catalogue.names() == [
        "transition_to_done",
        "transition_to_retry",
        "write_Config",
        "read_Notes",
    ]
    assert [e.name for e in catalogue.of_kind(ToolKind.TRANSITION)] == [
        "transition_to_done",
        "transition_to_retry",
    ]
    retry = catalogue.get("transition_to_retry")
    assert "Condition: Config.retries < 3" in retry.tool.description


def test_restricted_write_tool_enumerates_fields(review_graph):
    builder, candidates = make_builder(review_graph)
    write = builder.build_catalogue("work", candidates).get("write_Config")
    params = write.tool.parameters
    assert params["properties"]["attribute"]["enum"] == ["retries"]
    assert params["required"] == ["attribute", "value"]
    assert write.permissions.can_write_field("retries")


def test_duplicate_targets_get_suffixes(make_graph):
    graph = make_graph(
        nodes=[{"name": "work", "attributes": {"prompt": "p"}}, {"name": "done"}],
        edges=[
            {"source": "work", "target": "done", "label": "fast"},
            {"source": "work", "target": "done", "label": "slow"},
        ],
    )
    builder, candidates = make_builder(graph)
    assert builder.build_catalogue("work", candidates).names() == [
        "transition_to_done",
        "transition_to_done_2",
    ]


def test_suffixes_skip_names_taken_by_other_targets(make_graph):
    graph = make_graph(
        nodes=[
            {"name": "work", "attributes": {"prompt": "p"}},
            {"name": "X"},
            {"name": "X_2"},
        ],
        edges=[
            {"source": "work", "target": "X", "label": "first"},
            {"source": "work", "target": "X", "label": "again"},
            {"source": "work", "target": "X_2"},
        ],
    )
    builder, candidates = make_builder(graph)
    catalogue = builder.build_catalogue("work", candidates)

    assert catalogue.names() == ["transition_to_X", "transition_to_X_3", "transition_to_X_2"]
    assert catalogue.get("transition_to_X_2").candidate.targets == ("X_2",)
    assert catalogue.get("transition_to_X_3").candidate.edge.label == "again"


def test_unique_tool_name():
    used: set[str] = set()
    assert unique_tool_name("read_a", used) == "read_a"
    assert unique_tool_name("read_a", used) == "read_a_2"
    assert unique_tool_name("read_a", used, reserved={"read_a_3"}) == "read_a_4"
    assert used == {"read_a", "read_a_2", "read_a_4"}


def test_meta_tools_only_for_meta_nodes(make_graph):
    graph = make_graph(
        nodes=[{"name": "work", "attributes": {"prompt": "p", "meta": True}}, {"name": "done"}],
        edges=[{"source": "work", "target": "done"}],
    )
    builder, candidates = make_builder(graph)
    names = builder.build_catalogue("work", candidates).names()
    assert names == ["transition_to_done", "construct_tool", "get_definition", "update_definition"]


def test_constructed_tools_are_offered_everywhere(review_graph):
    registry = MetaToolRegistry()
    registry.register("summarize", "Summarize the notes", {"type": "object"})
    builder, candidates = make_builder(review_graph, registry=registry)
    catalogue = builder.build_catalogue("work", candidates)
    assert catalogue.names()[-1] == "summarize"
    assert catalogue.get("summarize").kind == ToolKind.DYNAMIC


def test_context_holds_only_known_values(review_graph):
    builder, candidates = make_builder(review_graph)
    catalogue = builder.build_catalogue("work", candidates)
    path = ExecutionPath(id="path-1", current_node="work")
    context = builder.build_context(path, catalogue)

    assert context["machine"] == "test"
    assert context["node"]["prompt"] == "Decide whether to retry"
    assert context["node"]["title"] == "Review the claim"
    assert context["contexts"]["Notes"]["values"] == {"topic": "billing"}
    assert context["contexts"]["Config"]["values"] == {}
    assert context["contexts"]["Config"]["permissions"]["write_fields"] == ["retries"]
    assert [t["tool"] for t in context["transitions"]] == ["transition_to_done", "transition_to_retry"]
    assert context["transitions"][1]["condition_result"] is True


def test_history_is_tailed_and_uses_wire_names(review_graph):
    builder, candidates = make_builder(review_graph, history_tail=2)
    catalogue = builder.build_catalogue("work", candidates)
    path = ExecutionPath(id="path-1", current_node="work")
    for i in range(3):
        path.history.append(
            HistoryEntry(from_node=f"n{i}", to_node=f"n{i + 1}", timestamp="t", reason="r")
        )
    history = builder.build_context(path, catalogue)["history"]
    assert [entry["from"] for entry in history] == ["n1", "n2"]
    assert history[-1]["to"] == "n3"


def test_request_carries_prompt_tools_and_feedback(review_graph):
    builder, candidates = make_builder(review_graph)
    catalogue = builder.build_catalogue("work", candidates)
    path = ExecutionPath(id="path-1", current_node="work")
    request = builder.build_request(
        path, catalogue, "req-000001", turn=1, feedback=[{"tool": "read_Notes", "result": {}}]
    )

    assert request.request_id == "req-000001"
    assert request.path_id == "path-1"
    assert request.turn == 1
    assert request.tool_names() == catalogue.names()
    assert request.tools[0]["kind"] == "transition"
    assert request.feedback == [{"tool": "read_Notes", "result": {}}]
    assert "# Available Transitions" in request.system_prompt
    assert "Objective: Decide whether to retry" in request.system_prompt
    assert "- Notes (read)" in request.system_prompt
