"""
Machina - an execution engine for state-machine graphs driven by agents.

A graph model (nodes, edges, attributes) is walked by one or more execution
paths. Transitions that can be decided from conditions and priorities are
taken automatically; everything else is handed to an agent through a closed
set of tools.
"""

from machina.agent.llm_agent import LLMAgentClient
from machina.agent.protocol import AgentClient, AgentRequest, AgentResponse
from machina.agent.recording import PlaybackAgentClient, RecordingAgentClient
from machina.config import RuntimeConfig
from machina.errors import MachinaError
from machina.graph.analyzer import GraphAnalyzer
from machina.graph.model import Attribute, Edge, EdgeSegment, EndType, GraphModel, Node, NodeKind
from machina.runtime.executor import ExecutionEngine, ExecutionResult
from machina.runtime.limits import ExecutionLimits
from machina.runtime.path import ExecutionPath, PathStatus
from machina.runtime.shared_state import SharedAttributeStore
from machina.storage.recording_store import RecordingStore

__version__ = "0.1.0"

__all__ = [
    # Model
    "GraphModel",
    "Node",
    "NodeKind",
    "Edge",
    "EdgeSegment",
    "EndType",
    "Attribute",
    "GraphAnalyzer",
    # Execution
    "ExecutionEngine",
    "ExecutionResult",
    "ExecutionLimits",
    "ExecutionPath",
    "PathStatus",
    "SharedAttributeStore",
    # Agents
    "AgentClient",
    "AgentRequest",
    "AgentResponse",
    "LLMAgentClient",
    "RecordingAgentClient",
    "PlaybackAgentClient",
    "RecordingStore",
    # Config and errors
    "RuntimeConfig",
    "MachinaError",
]
