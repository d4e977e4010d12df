"""
Agent context builder - the prompt payload and tool catalogue for a decision.

For a node that needs an agent decision this produces:
1. A structured description of the node (title, description, prompt, recent
   history of the path).
2. The candidate transitions with their labels and conditions.
3. A snapshot of the accessible contexts holding only currently known values.
4. The tool catalogue:
   - ``transition_to_<target>`` for each candidate edge (suffixed ``_2``,
     ``_3``... when two edges lead to the same target)
   - ``read_<context>`` / ``write_<context>`` for each permitted context
   - ``construct_tool``, ``get_definition``, ``update_definition`` for
     meta-enabled nodes only
   - every tool constructed earlier in the session

The output depends only on the graph, the store, the registry and the path's
history, so recorded agent exchanges replay deterministically.
"""

import json
import logging
import re
from typing import Any

from machina.agent.meta_tools import MetaToolRegistry, meta_tool_definitions
from machina.agent.protocol import AgentRequest, CatalogueEntry, ToolCatalogue, ToolKind
from machina.graph.context_access import ContextAccessResolver, ContextPermissions
from machina.graph.model import GraphModel
from machina.graph.transition import CandidateTransition
from machina.llm.provider import Tool
from machina.runtime.path import ExecutionPath
from machina.runtime.shared_state import NOT_SET, SharedAttributeStore

logger = logging.getLogger(__name__)

TRANSITION_PREFIX = "transition_to_"
READ_PREFIX = "read_"
WRITE_PREFIX = "write_"

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_]")


def tool_safe(name: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", name)


def unique_tool_name(
    base: str, used: set[str], reserved: set[str] | frozenset[str] = frozenset()
) -> str:
    """Claim ``base``, or the first free ``base_2``, ``base_3``... not in ``used`` or ``reserved``."""
    name = base
    suffix = 1
    while name in used or (suffix > 1 and name in reserved):
        suffix += 1
        name = f"{base}_{suffix}"
    used.add(name)
    return name


def _attribute_property(attributes: list[str], restricted: bool) -> dict[str, Any]:
    prop: dict[str, Any] = {"type": "string", "description": "Attribute name"}
    if restricted:
        prop["enum"] = attributes
    elif attributes:
        prop["description"] = f"Attribute name, e.g. one of: {', '.join(attributes)}"
    return prop


class AgentContextBuilder:
    """Builds agent requests and tool catalogues for agent-required nodes."""

    def __init__(
        self,
        graph: GraphModel,
        access: ContextAccessResolver,
        store: SharedAttributeStore,
        registry: MetaToolRegistry,
        history_tail: int = 10,
    ):
        self.graph = graph
        self.access = access
        self.store = store
        self.registry = registry
        self.history_tail = history_tail

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------

    def _transition_entries(
        self, candidates: list[CandidateTransition], used: set[str]
    ) -> list[CatalogueEntry]:
        entries = []
        bases = [f"{TRANSITION_PREFIX}{tool_safe(c.targets[0])}" for c in candidates]
        reserved = set(bases)
        for candidate, base in zip(candidates, bases, strict=True):
            # Suffixed names never shadow the plain name of another target
            name = unique_tool_name(base, used, reserved=reserved)

            description = f"Move from '{candidate.source}' to {', '.join(repr(t) for t in candidate.targets)}"
            if candidate.is_fork:
                description += " (forks one path per target)"
            if candidate.edge.label:
                description += f". Label: {candidate.edge.label}"
            if candidate.condition:
                description += f". Condition: {candidate.condition}"

            tool = Tool(
                name=name,
                description=description,
                parameters={
                    "type": "object",
                    "properties": {
                        "reason": {"type": "string", "description": "Why this transition is taken"}
                    },
                },
            )
            entries.append(CatalogueEntry(tool=tool, kind=ToolKind.TRANSITION, candidate=candidate))
        return entries

    def _context_entries(self, node_name: str, used: set[str]) -> list[CatalogueEntry]:
        entries = []
        for ctx, perm in self.access.accessible(node_name).items():
            declared = [attr.name for attr in self.graph.get_node(ctx).attributes]
            if perm.can_read:
                readable = [a for a in declared if perm.can_read_field(a)]
                if perm.read_fields is not None:
                    readable = sorted(set(readable) | set(perm.read_fields))
                tool = Tool(
                    name=unique_tool_name(f"{READ_PREFIX}{tool_safe(ctx)}", used),
                    description=f"Read an attribute of context '{ctx}'. Omit 'attribute' to read all.",
                    parameters={
                        "type": "object",
                        "properties": {
                            "attribute": _attribute_property(readable, perm.read_fields is not None)
                        },
                    },
                )
                entries.append(
                    CatalogueEntry(tool=tool, kind=ToolKind.READ, context=ctx, permissions=perm)
                )
            if perm.can_write:
                writable = [a for a in declared if perm.can_write_field(a)]
                if perm.write_fields is not None:
                    writable = sorted(set(writable) | set(perm.write_fields))
                tool = Tool(
                    name=unique_tool_name(f"{WRITE_PREFIX}{tool_safe(ctx)}", used),
                    description=f"Set an attribute of context '{ctx}'.",
                    parameters={
                        "type": "object",
                        "properties": {
                            "attribute": _attribute_property(writable, perm.write_fields is not None),
                            "value": {"description": "New value"},
                        },
                        "required": ["attribute", "value"],
                    },
                )
                entries.append(
                    CatalogueEntry(tool=tool, kind=ToolKind.WRITE, context=ctx, permissions=perm)
                )
        return entries

    def build_catalogue(self, node_name: str, candidates: list[CandidateTransition]) -> ToolCatalogue:
        node = self.graph.get_node(node_name)
        used: set[str] = set()
        entries = self._transition_entries(candidates, used)
        entries.extend(self._context_entries(node_name, used))
        if node.meta_enabled:
            entries.extend(CatalogueEntry(tool=t, kind=ToolKind.META) for t in meta_tool_definitions())
        entries.extend(
            CatalogueEntry(tool=descriptor.as_tool(), kind=ToolKind.DYNAMIC) for descriptor in self.registry
        )
        catalogue = ToolCatalogue(entries)
        logger.debug(f"Catalogue for '{node_name}': {catalogue.names()}")
        return catalogue

    # ------------------------------------------------------------------
    # Context payload
    # ------------------------------------------------------------------

    def _known_values(self, ctx: str, perm: ContextPermissions) -> dict[str, Any]:
        values = {}
        for attr, value in self.store.namespace(ctx).items():
            if perm.can_read_field(attr) and value is not None and value is not NOT_SET:
                values[attr] = value
        return values

    def build_context(
        self, path: ExecutionPath, catalogue: ToolCatalogue
    ) -> dict[str, Any]:
        node = self.graph.get_node(path.current_node)
        transitions = [
            {
                "tool": entry.name,
                "targets": list(entry.candidate.targets),
                "label": entry.candidate.edge.label,
                "condition": entry.candidate.condition,
                "condition_result": entry.candidate.condition_result,
                "priority": entry.candidate.edge.priority,
            }
            for entry in catalogue.of_kind(ToolKind.TRANSITION)
        ]
        contexts = {
            ctx: {"permissions": perm.to_dict(), "values": self._known_values(ctx, perm)}
            for ctx, perm in self.access.accessible(node.name).items()
        }
        tail = path.history[-self.history_tail :] if self.history_tail else []
        return {
            "machine": self.graph.title,
            "node": {
                "name": node.name,
                "kind": str(node.kind),
                "title": node.title,
                "description": node.description,
                "prompt": node.prompt,
                "attributes": self.store.namespace(node.name),
                "meta_enabled": node.meta_enabled,
            },
            "history": [entry.model_dump(by_alias=True) for entry in tail],
            "transitions": transitions,
            "contexts": contexts,
        }

    def build_system_prompt(self, context: dict[str, Any], catalogue: ToolCatalogue) -> str:
        node = context["node"]
        lines = [
            "# Role",
            f"You are deciding the next step of the state machine '{context['machine'] or 'machine'}'.",
            "",
            "# Current Position",
            f"Node: {node['name']} ({node['kind']})",
        ]
        if node["title"]:
            lines.append(f"Title: {node['title']}")
        if node["prompt"]:
            lines.append(f"Objective: {node['prompt']}")
        if node["description"] and node["description"] != node["title"]:
            lines.append(f"Description: {node['description']}")

        if context["contexts"]:
            lines += ["", "# Available Context"]
            for ctx, info in context["contexts"].items():
                perm = info["permissions"]
                access = "/".join(
                    mode for mode, allowed in (("read", perm["can_read"]), ("write", perm["can_write"])) if allowed
                )
                values = json.dumps(info["values"], sort_keys=True, default=str)
                lines.append(f"- {ctx} ({access}): {values}")

        lines += ["", "# Available Transitions"]
        for transition in context["transitions"]:
            line = f"- {transition['tool']}: -> {', '.join(transition['targets'])}"
            if transition["label"]:
                line += f" [{transition['label']}]"
            if transition["condition"]:
                line += f" (condition: {transition['condition']})"
            lines.append(line)

        if node["meta_enabled"]:
            lines += [
                "",
                "# Meta-Programming",
                "You may construct new tools, inspect the machine definition and edit "
                "attributes or add nodes and edges.",
            ]

        lines += [
            "",
            "# Instructions",
            "Call exactly one tool. Reading or writing context keeps you at this node; "
            "calling a transition tool moves on.",
            f"Tools: {', '.join(catalogue.names())}",
        ]
        return "\n".join(lines)

    def build_request(
        self,
        path: ExecutionPath,
        catalogue: ToolCatalogue,
        request_id: str,
        turn: int = 0,
        feedback: list[dict[str, Any]] | None = None,
    ) -> AgentRequest:
        context = self.build_context(path, catalogue)
        return AgentRequest(
            request_id=request_id,
            path_id=path.id,
            node=path.current_node,
            turn=turn,
            system_prompt=self.build_system_prompt(context, catalogue),
            context=context,
            tools=catalogue.to_dicts(),
            feedback=list(feedback or []),
        )
