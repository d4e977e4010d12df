"""Shared fixtures: graph builders, a fixed clock and scripted agents."""

from datetime import UTC, datetime
from typing import Any

import pytest

from machina.agent.protocol import AgentClient, AgentRequest, AgentResponse
from machina.graph.model import GraphModel


def build_graph(nodes: list[dict[str, Any]], edges: list[dict[str, Any]], title: str = "test") -> GraphModel:
    return GraphModel.from_dict({"title": title, "nodes": nodes, "edges": edges})


class ScriptedAgent(AgentClient):
    """Answers requests with a fixed script of ``(tool_name, arguments)`` pairs.

    Once the script runs out, the last entry is repeated.
    """

    def __init__(self, script: list[tuple[str, dict[str, Any]]]):
        self.script = list(script)
        self.requests: list[AgentRequest] = []

    async def decide(self, request: AgentRequest) -> AgentResponse:
        self.requests.append(request)
        index = min(len(self.requests), len(self.script)) - 1
        tool_name, arguments = self.script[index]
        return AgentResponse(
            request_id=request.request_id,
            tool_name=tool_name,
            arguments=arguments,
            reasoning=f"scripted step {len(self.requests)}",
        )


@pytest.fixture
def make_graph():
    return build_graph


@pytest.fixture
def scripted_agent():
    return ScriptedAgent


@pytest.fixture
def fixed_clock():
    moment = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    return lambda: moment


@pytest.fixture
def linear_graph() -> GraphModel:
    return build_graph(
        nodes=[{"name": "A", "kind": "init"}, {"name": "B"}, {"name": "C"}],
        edges=[{"source": "A", "target": "B"}, {"source": "B", "target": "C"}],
        title="linear",
    )


@pytest.fixture
def choice_graph() -> GraphModel:
    """start -> T, where T has a prompt and two ways out."""
    return build_graph(
        nodes=[
            {"name": "start", "kind": "init"},
            {"name": "T", "kind": "task", "attributes": {"prompt": "Pick the right branch"}},
            {"name": "X"},
            {"name": "Y"},
        ],
        edges=[
            {"source": "start", "target": "T"},
            {"source": "T", "target": "X", "label": "left"},
            {"source": "T", "target": "Y", "label": "right"},
        ],
        title="choice",
    )
