"""Tests for tool call validation and application."""

from dataclasses import dataclass

import pytest

from machina.agent.context_builder import AgentContextBuilder
from machina.agent.dispatcher import NOT_SET_SENTINEL, ToolExecutionDispatcher
from machina.agent.meta_tools import DefinitionEditor, MetaToolRegistry
from machina.agent.protocol import AgentResponse, ToolCatalogue, ToolKind
from machina.errors import InvalidToolCallError, PermissionDeniedError, UnknownTransitionError
from machina.graph.context_access import ContextAccessResolver
from machina.graph.model import GraphModel
from machina.graph.transition import TransitionEvaluator
from machina.runtime.path import ExecutionPath
from machina.runtime.shared_state import SharedAttributeStore


@dataclass
class Harness:
    graph: GraphModel
    store: SharedAttributeStore
    registry: MetaToolRegistry
    builder: AgentContextBuilder
    evaluator: TransitionEvaluator
    dispatcher: ToolExecutionDispatcher
    path: ExecutionPath

    def catalogue(self) -> ToolCatalogue:
        candidates, _ = self.evaluator.candidates(self.path.current_node, self.store)
        return self.builder.build_catalogue(self.path.current_node, candidates)

    def call(self, tool_name, arguments=None, reasoning=""):
        response = AgentResponse(
            request_id="req-000001", tool_name=tool_name, arguments=arguments or {}, reasoning=reasoning
        )
        return self.dispatcher.dispatch(self.path, self.catalogue(), response)


@pytest.fixture
def harness(make_graph):
    graph = make_graph(
        nodes=[
            {
                "name": "Config",
                "kind": "context",
                "attributes": [
                    {"name": "retries", "type": "number", "value": 0},
                    {"name": "mode", "value": "fast"},
                ],
            },
            {"name": "Notes", "kind": "context", "attributes": {"topic": "billing", "draft": None}},
            {"name": "work", "kind": "task", "attributes": {"prompt": "Handle it", "meta": True}},
            {"name": "done"},
            {"name": "left"},
            {"name": "right"},
            {"name": "M", "nodes": [{"name": "m1", "kind": "task"}]},
        ],
        edges=[
            {"source": "work", "target": "done", "label": "approve"},
            {"source": "work", "targets": ["left", "right"]},
            {"source": "work", "target": "M", "label": "delegate"},
            {"source": "work", "target": "Config", "label": "writes: Config.retries"},
            {"source": "work", "target": "Notes"},
        ],
    )
    store = SharedAttributeStore.from_graph(graph)
    evaluator = TransitionEvaluator(graph)
    registry = MetaToolRegistry()
    editor = DefinitionEditor(graph, store)
    return Harness(
        graph=graph,
        store=store,
        registry=registry,
        builder=AgentContextBuilder(graph, ContextAccessResolver(graph), store, registry),
        evaluator=evaluator,
        dispatcher=ToolExecutionDispatcher(graph, store, evaluator, registry, editor),
        path=ExecutionPath(id="path-1", current_node="work"),
    )


def test_catalogue_shape(harness):
    assert harness.catalogue().names() == [
        "transition_to_done",
        "transition_to_left",
        "transition_to_M",
        "write_Config",
        "read_Notes",
        "construct_tool",
        "get_definition",
        "update_definition",
    ]


# ----------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------


def test_transition_reason_falls_back_to_reasoning(harness):
    outcome = harness.call("transition_to_done")
    assert outcome.is_transition
    assert outcome.candidate.targets == ("done",)
    assert outcome.reason == "Agent decision"

    assert harness.call("transition_to_done", reasoning="looks fine").reason == "looks fine"
    assert harness.call("transition_to_done", {"reason": "approved"}, "ignored").reason == "approved"
    # validation alone does not move the path
    assert harness.path.current_node == "work"


def test_unknown_tools_are_classified(harness):
    with pytest.raises(UnknownTransitionError):
        harness.call("transition_to_nowhere")
    with pytest.raises(PermissionDeniedError):
        harness.call("write_Notes", {"attribute": "topic", "value": "x"})
    with pytest.raises(InvalidToolCallError):
        harness.call("frobnicate")


def test_apply_transition_forks_extra_targets(harness):
    candidate = harness.catalogue().get("transition_to_left").candidate
    forks = harness.dispatcher.apply_transition(
        harness.path, candidate, "split", "2024-01-01T12:00:00+00:00", lambda p: p.fork("path-2")
    )

    assert harness.path.current_node == "left"
    assert [f.id for f in forks] == ["path-2"]
    assert forks[0].current_node == "right"
    assert forks[0].parent_id == "path-1"
    assert forks[0].history[-1].from_node == "work"
    assert harness.path.step_count == 1
    assert forks[0].step_count == 1


def test_apply_transition_enters_modules(harness):
    candidate = harness.catalogue().get("transition_to_M").candidate
    forks = harness.dispatcher.apply_transition(harness.path, candidate, "go", "ts", lambda p: p)

    assert forks == []
    assert harness.path.current_node == "m1"
    entry = harness.path.history[-1]
    assert entry.to_node == "m1"
    assert entry.reason == "go (entered 'M' at 'm1')"
    assert entry.transition_label == "delegate"


# ----------------------------------------------------------------------
# Reads and writes
# ----------------------------------------------------------------------


def test_write_updates_the_store(harness):
    outcome = harness.call("write_Config", {"attribute": "retries", "value": 2})
    assert outcome.kind == ToolKind.WRITE
    assert outcome.result == {"attribute": "retries", "value": 2, "revision": 1}
    assert harness.store.read("Config.retries") == 2
    assert harness.store.get_recent_changes()[-1].path_id == "path-1"


def test_write_outside_granted_fields_is_denied(harness):
    with pytest.raises(PermissionDeniedError):
        harness.call("write_Config", {"attribute": "mode", "value": "slow"})
    assert harness.store.read("Config.mode") == "fast"


@pytest.mark.parametrize(
    "arguments",
    [
        {"attribute": "retries", "value": "lots"},
        {"attribute": "retries"},
        {"value": 1},
    ],
)
def test_malformed_writes_are_rejected(harness, arguments):
    with pytest.raises(InvalidToolCallError):
        harness.call("write_Config", arguments)
    assert harness.store.revision == 0


def test_reads_never_raise(harness):
    assert harness.call("read_Notes", {"attribute": "topic"}).result == "billing"
    assert harness.call("read_Notes", {"attribute": "draft"}).result is None
    assert harness.call("read_Notes", {"attribute": "missing"}).result == NOT_SET_SENTINEL
    assert harness.call("read_Notes", {"attribute": 5}).result == NOT_SET_SENTINEL
    assert harness.call("read_Notes").result == {"topic": "billing", "draft": None}


# ----------------------------------------------------------------------
# Meta and constructed tools
# ----------------------------------------------------------------------

SUMMARIZE = {
    "name": "summarize",
    "description": "Summarize a piece of text",
    "input_schema": {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
    "implementation_strategy": "agent_backed",
    "implementation_details": "Ask the agent for three bullet points",
}


def test_construct_tool_registers_and_offers_the_tool(harness):
    result = harness.call("construct_tool", SUMMARIZE).result
    assert result == {"success": True, "tool_id": "tool-1", "name": "summarize"}
    assert "summarize" in harness.catalogue()

    outcome = harness.call("summarize", {"text": "long story"})
    assert outcome.kind == ToolKind.DYNAMIC
    assert outcome.result["status"] == "acknowledged"
    assert outcome.result["input"] == {"text": "long story"}
    assert outcome.result["details"] == "Ask the agent for three bullet points"

    with pytest.raises(InvalidToolCallError):
        harness.call("summarize", {"text": 1})


@pytest.mark.parametrize(
    "override",
    [
        {},
        {"name": "read_secrets"},
        {"name": "get_definition"},
        {"name": "other", "input_schema": {"type": 5}},
    ],
)
def test_rejected_constructions_report_failure(harness, override):
    if not override:
        harness.call("construct_tool", SUMMARIZE)
    result = harness.call("construct_tool", {**SUMMARIZE, **override}).result
    assert result["success"] is False
    assert result["error"]


def test_construct_tool_requires_a_strategy(harness):
    arguments = {k: v for k, v in SUMMARIZE.items() if k != "implementation_strategy"}
    with pytest.raises(InvalidToolCallError):
        harness.call("construct_tool", arguments)
    assert len(harness.registry) == 0


def test_get_and_update_definition(harness):
    definition = harness.call("get_definition").result
    assert "work" in [node["name"] for node in definition["nodes"]]

    result = harness.call(
        "update_definition", {"reason": "slow down", "node": "Config", "attributes": {"mode": "slow"}}
    ).result
    assert result["applied"][0]["kind"] == "update_node"
    assert harness.store.read("Config.mode") == "slow"
    assert harness.graph.get_node("Config").get_attribute("mode").value == "slow"
