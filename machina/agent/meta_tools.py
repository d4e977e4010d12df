"""
Meta tools - extend the tool registry and edit the live graph model.

Two pieces of session state live here:
1. MetaToolRegistry holds tool descriptors built with ``construct_tool``. It
   is append-only and keyed by id. Constructed tools are resolved by lookup
   at dispatch time. No code is generated or executed for them.
2. DefinitionEditor applies ``update_definition`` edits. Only attribute-level
   changes (node attribute values; edge label, condition, priority,
   automatic flag) and purely additive structure (new nodes, new edges) are
   allowed, so transitions already taken stay consistent with the model.
   Every edit is appended to a change log.
"""

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from machina.errors import GraphModelError, InvalidToolCallError
from machina.graph.model import Edge, GraphModel, Node
from machina.llm.provider import Tool
from machina.runtime.shared_state import SharedAttributeStore, qualify

logger = logging.getLogger(__name__)

CONSTRUCT_TOOL = "construct_tool"
GET_DEFINITION = "get_definition"
UPDATE_DEFINITION = "update_definition"
META_TOOL_NAMES = (CONSTRUCT_TOOL, GET_DEFINITION, UPDATE_DEFINITION)

RESERVED_PREFIXES = ("transition_to_", "read_", "write_")


class ImplementationStrategy(StrEnum):
    AGENT_BACKED = "agent_backed"
    COMPOSITION = "composition"


class ToolDescriptor(BaseModel):
    """A tool constructed at runtime."""

    id: str
    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object"})
    strategy: ImplementationStrategy = ImplementationStrategy.AGENT_BACKED
    implementation_details: str = ""
    created_by_path: str = ""
    created_at_node: str = ""

    def as_tool(self) -> Tool:
        return Tool(name=self.name, description=self.description, parameters=self.input_schema)


class DefinitionChange(BaseModel):
    """One applied ``update_definition`` edit."""

    kind: str
    target: str
    details: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    path_id: str = ""


def meta_tool_definitions() -> list[Tool]:
    """The built-in meta tools, in the order they are offered."""
    return [
        Tool(
            name=CONSTRUCT_TOOL,
            description=(
                "Register a new tool for the rest of this execution. The tool's "
                "behavior is described, not coded."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "pattern": "^[A-Za-z_][A-Za-z0-9_]*$"},
                    "description": {"type": "string"},
                    "input_schema": {"type": "object"},
                    "implementation_strategy": {
                        "type": "string",
                        "enum": [s.value for s in ImplementationStrategy],
                    },
                    "implementation_details": {"type": "string"},
                },
                "required": ["name", "description", "input_schema", "implementation_strategy"],
            },
        ),
        Tool(
            name=GET_DEFINITION,
            description="Return the current machine definition as JSON.",
            parameters={"type": "object", "properties": {}},
        ),
        Tool(
            name=UPDATE_DEFINITION,
            description=(
                "Edit node attributes or edge label/condition/priority, or add new "
                "nodes and edges. Existing structure cannot be removed or rewired."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "reason": {"type": "string"},
                    "node": {"type": "string"},
                    "attributes": {"type": "object"},
                    "edge": {"type": "integer", "minimum": 0},
                    "label": {"type": "string"},
                    "condition": {"type": ["string", "null"]},
                    "priority": {"type": "integer"},
                    "automatic": {"type": "boolean"},
                    "add_nodes": {"type": "array", "items": {"type": "object"}},
                    "add_edges": {"type": "array", "items": {"type": "object"}},
                },
                "required": ["reason"],
            },
        ),
    ]


class MetaToolRegistry:
    """Session-scoped, append-only registry of constructed tools."""

    def __init__(self) -> None:
        self._tools: list[ToolDescriptor] = []

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(list(self._tools))

    def get(self, name: str) -> ToolDescriptor | None:
        for descriptor in self._tools:
            if descriptor.name == name:
                return descriptor
        return None

    def get_by_id(self, tool_id: str) -> ToolDescriptor | None:
        for descriptor in self._tools:
            if descriptor.id == tool_id:
                return descriptor
        return None

    def register(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        strategy: str = ImplementationStrategy.AGENT_BACKED,
        implementation_details: str = "",
        path_id: str = "",
        node: str = "",
    ) -> ToolDescriptor:
        """
        Append a new tool descriptor.

        Raises:
            ValueError: The name is taken, reserved, or the strategy is unknown.
        """
        if name in META_TOOL_NAMES or name.startswith(RESERVED_PREFIXES):
            raise ValueError(f"Tool name '{name}' is reserved")
        if self.get(name) is not None:
            raise ValueError(f"Tool '{name}' already exists")

        descriptor = ToolDescriptor(
            id=f"tool-{len(self._tools) + 1}",
            name=name,
            description=description,
            input_schema=input_schema or {"type": "object"},
            strategy=ImplementationStrategy(strategy),
            implementation_details=implementation_details,
            created_by_path=path_id,
            created_at_node=node,
        )
        self._tools.append(descriptor)
        logger.info(f"🔧 Constructed tool '{name}' ({descriptor.strategy}) from path {path_id}")
        return descriptor


class DefinitionEditor:
    """Applies attribute-level and additive edits to the live graph model."""

    def __init__(self, graph: GraphModel, store: SharedAttributeStore):
        self.graph = graph
        self.store = store
        self.changes: list[DefinitionChange] = []

    def get_definition(self) -> dict[str, Any]:
        return self.graph.model_dump(mode="json")

    def update_definition(self, arguments: dict[str, Any], path_id: str = "") -> dict[str, Any]:
        """
        Apply one ``update_definition`` call.

        The call is all or nothing. A rejected part undoes the parts applied
        before it, and the store is written only once every part succeeded.

        Raises:
            InvalidToolCallError: The edit names unknown structure or tries to
                change structure that already exists.
        """
        reason = arguments.get("reason", "")
        applied: list[DefinitionChange] = []
        writes: list[tuple[str, Any]] = []
        undo: list[Callable[[], None]] = []
        node_count, edge_count = len(self.graph.nodes), len(self.graph.edges)

        try:
            if "node" in arguments or "attributes" in arguments:
                applied.append(self._update_node(arguments, reason, path_id, writes, undo))
            if "edge" in arguments:
                applied.append(self._update_edge(arguments, reason, path_id, undo))
            for raw in arguments.get("add_nodes") or []:
                node = Node.model_validate(raw)
                self.graph.add_node(node)
                writes.extend((qualify(node.name, attr.name), attr.value) for attr in node.attributes)
                applied.append(
                    DefinitionChange(kind="add_node", target=node.name, reason=reason, path_id=path_id)
                )
            for raw in arguments.get("add_edges") or []:
                index = self.graph.add_edge(Edge.model_validate(raw))
                applied.append(
                    DefinitionChange(
                        kind="add_edge",
                        target=str(index),
                        details={"source": raw.get("source")},
                        reason=reason,
                        path_id=path_id,
                    )
                )
        except (GraphModelError, ValidationError) as e:
            for revert in reversed(undo):
                revert()
            self.graph.discard_additions(node_count, edge_count)
            raise InvalidToolCallError(f"update_definition rejected: {e}", path_id=path_id) from e

        if not applied:
            raise InvalidToolCallError("update_definition made no changes", path_id=path_id)

        for key, value in writes:
            self.store.write(key, value, path_id=path_id)
        for change in applied:
            logger.info(f"📝 Applied {change.kind} to '{change.target}': {reason}")
        self.changes.extend(applied)
        return {"applied": [change.model_dump() for change in applied]}

    def _update_node(
        self,
        arguments: dict[str, Any],
        reason: str,
        path_id: str,
        writes: list[tuple[str, Any]],
        undo: list[Callable[[], None]],
    ) -> DefinitionChange:
        name = arguments.get("node")
        attributes = arguments.get("attributes")
        if not name or not isinstance(attributes, dict) or not attributes:
            raise GraphModelError("Node edits need 'node' and a non-empty 'attributes' mapping")
        node = self.graph.get_node(name)
        previous = [attr.model_copy() for attr in node.attributes]

        def restore() -> None:
            node.attributes[:] = previous

        undo.append(restore)
        for attr_name, value in attributes.items():
            node.set_attribute(attr_name, value)
            writes.append((qualify(name, attr_name), value))
        return DefinitionChange(
            kind="update_node", target=name, details={"attributes": attributes}, reason=reason, path_id=path_id
        )

    def _update_edge(
        self, arguments: dict[str, Any], reason: str, path_id: str, undo: list[Callable[[], None]]
    ) -> DefinitionChange:
        index = arguments["edge"]
        if not isinstance(index, int) or not 0 <= index < len(self.graph.edges):
            raise GraphModelError(f"Unknown edge index: {index!r}")
        edge = self.graph.edges[index]
        fields = [f for f in ("label", "condition", "priority", "automatic") if f in arguments]
        previous = {f: getattr(edge, f) for f in fields}

        def restore() -> None:
            for field_name, value in previous.items():
                setattr(edge, field_name, value)

        if not fields:
            raise GraphModelError("Edge edits need one of label, condition, priority, automatic")
        undo.append(restore)
        details = {field_name: arguments[field_name] for field_name in fields}
        for field_name, value in details.items():
            setattr(edge, field_name, value)
        return DefinitionChange(
            kind="update_edge", target=str(index), details=details, reason=reason, path_id=path_id
        )
