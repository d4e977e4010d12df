"""
Agent protocol - the boundary between the engine and an external reasoner.

A request carries the node context and the tool catalogue; a response names
one tool, its arguments and free-text reasoning. Requests and responses are
paired by an opaque ``request_id`` so recorded exchanges can be replayed.

The boundary is transport-agnostic: an in-process call, an LLM round trip or
a queued file exchange are all valid ``AgentClient`` implementations.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from machina.graph.context_access import ContextPermissions
from machina.graph.transition import CandidateTransition
from machina.llm.provider import Tool


class ToolKind(StrEnum):
    TRANSITION = "transition"
    READ = "read"
    WRITE = "write"
    META = "meta"
    DYNAMIC = "dynamic"


@dataclass
class CatalogueEntry:
    """A tool offered to the agent plus what the dispatcher needs to apply it."""

    tool: Tool
    kind: ToolKind
    candidate: CandidateTransition | None = None
    context: str | None = None
    permissions: ContextPermissions | None = None

    @property
    def name(self) -> str:
        return self.tool.name


class ToolCatalogue:
    """Ordered, name-indexed set of tools offered for one decision."""

    def __init__(self, entries: list[CatalogueEntry]):
        self._entries = list(entries)
        self._by_name = {entry.name: entry for entry in self._entries}
        if len(self._by_name) != len(self._entries):
            names = [entry.name for entry in self._entries]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Tool catalogue contains duplicate tool names: {duplicates}")

    def __iter__(self) -> Iterator[CatalogueEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> CatalogueEntry | None:
        return self._by_name.get(name)

    def names(self) -> list[str]:
        return [entry.name for entry in self._entries]

    def tools(self) -> list[Tool]:
        return [entry.tool for entry in self._entries]

    def of_kind(self, kind: ToolKind) -> list[CatalogueEntry]:
        return [entry for entry in self._entries if entry.kind == kind]

    def to_dicts(self) -> list[dict[str, Any]]:
        return [{**entry.tool.to_dict(), "kind": str(entry.kind)} for entry in self._entries]


class AgentRequest(BaseModel):
    """Everything the agent sees for one turn of one decision."""

    request_id: str
    path_id: str
    node: str
    turn: int = 0
    system_prompt: str
    context: dict[str, Any] = Field(default_factory=dict)
    tools: list[dict[str, Any]] = Field(default_factory=list)
    feedback: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Results of earlier tool calls within the same decision",
    )

    def tool_names(self) -> list[str]:
        return [tool["name"] for tool in self.tools]


class AgentResponse(BaseModel):
    """The agent's choice: one tool call."""

    request_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""


class AgentClient(ABC):
    """Anything that can answer an AgentRequest."""

    @abstractmethod
    async def decide(self, request: AgentRequest) -> AgentResponse:
        """
        Choose one tool from ``request.tools``.

        Raises:
            AgentUnavailableError: The transport failed. The engine fails the
                path and does not retry.
        """
        pass
