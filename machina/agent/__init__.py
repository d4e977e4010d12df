"""Agent boundary: requests, tool catalogues, dispatch and transports."""

from machina.agent.protocol import (
    AgentClient,
    AgentRequest,
    AgentResponse,
    CatalogueEntry,
    ToolCatalogue,
    ToolKind,
)
from machina.agent.context_builder import AgentContextBuilder
from machina.agent.dispatcher import ToolExecutionDispatcher, ToolOutcome
from machina.agent.meta_tools import DefinitionEditor, MetaToolRegistry, ToolDescriptor
from machina.agent.llm_agent import LLMAgentClient
from machina.agent.recording import PlaybackAgentClient, RecordingAgentClient

__all__ = [
    "AgentClient",
    "AgentRequest",
    "AgentResponse",
    "CatalogueEntry",
    "ToolCatalogue",
    "ToolKind",
    "AgentContextBuilder",
    "ToolExecutionDispatcher",
    "ToolOutcome",
    "MetaToolRegistry",
    "DefinitionEditor",
    "ToolDescriptor",
    "LLMAgentClient",
    "PlaybackAgentClient",
    "RecordingAgentClient",
]
