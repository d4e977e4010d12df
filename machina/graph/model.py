"""
Graph model - the node/edge structure the engine executes.

The model is produced by an external parser and handed over as a flattened
node/edge list. It is the only structural input: nothing here re-parses DSL
source text.

Layout:
1. Nodes live in a flat arena indexed by name. Nesting is a ``parent`` name,
   never an embedded child object, so the model stays trivially serializable.
2. Node kinds and edge end types are closed enumerations resolved once at load.
3. Edge conditions and access markers written inside labels
   (``when: x > 1``, ``reads: Config.limit``) are lifted into fields at load.

Example:
    graph = GraphModel.from_dict({
        "title": "review",
        "nodes": [
            {"name": "start", "kind": "init"},
            {"name": "Config", "kind": "context", "attributes": {"limit": 3}},
            {"name": "work", "kind": "task", "attributes": {"prompt": "Do it"}},
        ],
        "edges": [
            {"source": "start", "target": "work"},
            {"source": "work", "target": "Config", "label": "writes: Config.limit"},
        ],
    })
"""

import json
import logging
import re
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, PrivateAttr, field_validator, model_validator

from machina.errors import GraphModelError

logger = logging.getLogger(__name__)


class NodeKind(StrEnum):
    """What a node is for."""

    INIT = "init"
    STATE = "state"
    TASK = "task"
    CONTEXT = "context"
    RESOURCE = "resource"
    OTHER = "other"

    @classmethod
    def resolve(cls, value: Any) -> "NodeKind":
        if isinstance(value, NodeKind):
            return value
        if value is None or str(value).strip() == "":
            return cls.STATE
        key = str(value).strip().lower()
        key = _NODE_KIND_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return cls.OTHER


_NODE_KIND_ALIASES = {
    "initial": "init",
    "start": "init",
}


class EndType(StrEnum):
    """Semantic type of an edge segment, derived from its arrow."""

    PLAIN = "plain"
    DEPENDENCY = "dependency"
    CAUSAL = "causal"
    INHERITANCE = "inheritance"
    COMPOSITION = "composition"
    AGGREGATION = "aggregation"
    BIDIRECTIONAL = "bidirectional"

    @property
    def transfers_control(self) -> bool:
        """Whether a path may move along a segment of this type."""
        return self not in _STRUCTURAL_END_TYPES

    @classmethod
    def resolve(cls, value: Any) -> "EndType":
        if isinstance(value, EndType):
            return value
        if value is None or str(value).strip() == "":
            return cls.PLAIN
        key = str(value).strip()
        if key in _ARROW_END_TYPES:
            return _ARROW_END_TYPES[key]
        try:
            return cls(key.lower())
        except ValueError as e:
            raise GraphModelError(f"Unknown edge end type: {value!r}") from e


_ARROW_END_TYPES = {
    "->": EndType.PLAIN,
    "-->": EndType.DEPENDENCY,
    "=>": EndType.CAUSAL,
    "<|--": EndType.INHERITANCE,
    "*-->": EndType.COMPOSITION,
    "o-->": EndType.AGGREGATION,
    "<-->": EndType.BIDIRECTIONAL,
}

_STRUCTURAL_END_TYPES = frozenset(
    {EndType.INHERITANCE, EndType.COMPOSITION, EndType.AGGREGATION}
)

# when: expr / unless: expr / if: expr, double-quoted, single-quoted or bare up to ';'
_CONDITION_RE = re.compile(
    r"\b(?P<kw>when|unless|if)\s*:\s*"
    r"(?:\"(?P<dq>[^\"]*)\"|'(?P<sq>[^']*)'|(?P<bare>[^;\"']+))",
    re.IGNORECASE,
)
_MARKER_RE = re.compile(
    r"\b(?P<kind>reads|writes)\s*:\s*"
    r"(?P<refs>[A-Za-z_][\w.]*(?:\s*,\s*[A-Za-z_][\w.]*)*)",
    re.IGNORECASE,
)

META_CAPABILITY = "meta"
PROMPT_ATTRIBUTE = "prompt"


def extract_condition(label: str | None) -> str | None:
    """Pull a condition expression out of an edge label, if it carries one."""
    if not label:
        return None
    match = _CONDITION_RE.search(label)
    if not match:
        return None
    expr = (match.group("dq") or match.group("sq") or match.group("bare") or "").strip()
    if not expr:
        return None
    if match.group("kw").lower() == "unless":
        return f"not ({expr})"
    return expr


def extract_access_markers(label: str | None) -> tuple[list[str], list[str]]:
    """Return the ``(reads, writes)`` references written in an edge label."""
    reads: list[str] = []
    writes: list[str] = []
    if not label:
        return reads, writes
    for match in _MARKER_RE.finditer(label):
        refs = [r.strip() for r in match.group("refs").split(",") if r.strip()]
        target = reads if match.group("kind").lower() == "reads" else writes
        for ref in refs:
            if ref not in target:
                target.append(ref)
    return reads, writes


def _is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


class Attribute(BaseModel):
    """A typed, named value declared on a node."""

    name: str
    declared_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("declared_type", "declaredType", "type"),
    )
    value: Any = None


class Node(BaseModel):
    """
    A node in the state-machine graph.

    Context nodes act as attribute containers. A node whose ``meta`` attribute
    is true, or which carries a ``@meta`` annotation, may use meta tools.
    """

    name: str
    kind: NodeKind = Field(
        default=NodeKind.STATE,
        validation_alias=AliasChoices("kind", "type"),
    )
    parent: str | None = None
    title: str | None = None
    attributes: list[Attribute] = Field(default_factory=list)
    capabilities: list[str] = Field(default_factory=list)
    annotations: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("kind", mode="before")
    @classmethod
    def _resolve_kind(cls, value: Any) -> NodeKind:
        return NodeKind.resolve(value)

    @field_validator("attributes", mode="before")
    @classmethod
    def _normalize_attributes(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [{"name": k, "value": v} for k, v in value.items()]
        return value

    @field_validator("annotations", mode="before")
    @classmethod
    def _strip_annotation_markers(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [
                (a.get("name", "") if isinstance(a, dict) else str(a)).lstrip("@")
                for a in value
            ]
        return value

    @model_validator(mode="after")
    def _derive_capabilities(self) -> "Node":
        meta_attr = self.get_attribute(META_CAPABILITY)
        is_meta = (meta_attr is not None and _is_truthy(meta_attr.value)) or (
            META_CAPABILITY in self.annotations
        )
        if is_meta and META_CAPABILITY not in self.capabilities:
            self.capabilities.append(META_CAPABILITY)
        return self

    def get_attribute(self, name: str) -> Attribute | None:
        for attr in self.attributes:
            if attr.name == name:
                return attr
        return None

    def attribute_values(self) -> dict[str, Any]:
        return {attr.name: attr.value for attr in self.attributes}

    def set_attribute(self, name: str, value: Any) -> None:
        attr = self.get_attribute(name)
        if attr is None:
            self.attributes.append(Attribute(name=name, value=value))
        else:
            attr.value = value

    @property
    def is_context(self) -> bool:
        return self.kind == NodeKind.CONTEXT

    @property
    def meta_enabled(self) -> bool:
        return META_CAPABILITY in self.capabilities

    @property
    def prompt(self) -> str | None:
        """The node's non-empty prompt, or None."""
        attr = self.get_attribute(PROMPT_ATTRIBUTE)
        if attr is None or attr.value is None:
            return None
        text = str(attr.value).strip()
        return text or None

    @property
    def description(self) -> str | None:
        attr = self.get_attribute("description")
        if attr is not None and attr.value not in (None, ""):
            return str(attr.value)
        return self.title


class EdgeSegment(BaseModel):
    """One target of an edge. Edges with several segments fork the path."""

    target: str
    end_type: EndType = Field(
        default=EndType.PLAIN,
        validation_alias=AliasChoices("end_type", "endType", "arrowType"),
    )
    label: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("end_type", mode="before")
    @classmethod
    def _resolve_end_type(cls, value: Any) -> EndType:
        return EndType.resolve(value)


class Edge(BaseModel):
    """
    A directed edge from ``source`` to one or more target segments.

    Conditions and access markers may be given explicitly or written inside
    the label. ``unless:`` conditions are stored negated.
    """

    source: str
    segments: list[EdgeSegment] = Field(min_length=1)
    label: str | None = None
    condition: str | None = None
    priority: int | None = None
    reads: list[str] = Field(default_factory=list, description="Attribute refs read, e.g. 'Ctx.key'")
    writes: list[str] = Field(
        default_factory=list, description="Attribute refs written, e.g. 'Ctx.key'"
    )
    automatic: bool = False
    annotations: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def _normalize_targets(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "segments" in data:
            return data
        data = dict(data)
        arrow = data.pop("arrowType", None) or data.pop("end_type", None) or data.pop("endType", None)
        targets = data.pop("targets", None)
        if targets is None:
            target = data.pop("target", None)
            targets = [target] if target is not None else []
        segments = []
        for target in targets:
            if isinstance(target, dict):
                segment = dict(target)
                segment.setdefault("end_type", arrow)
            else:
                segment = {"target": target, "end_type": arrow}
            segments.append(segment)
        data["segments"] = segments
        return data

    @field_validator("annotations", mode="before")
    @classmethod
    def _strip_annotation_markers(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [
                (a.get("name", "") if isinstance(a, dict) else str(a)).lstrip("@")
                for a in value
            ]
        return value

    @model_validator(mode="after")
    def _lift_label_markers(self) -> "Edge":
        if self.condition is not None and not self.condition.strip():
            self.condition = None
        if self.condition is None:
            self.condition = extract_condition(self.label)
        if not self.reads and not self.writes:
            self.reads, self.writes = extract_access_markers(self.label)
        if "auto" in self.annotations or (self.label and "@auto" in self.label):
            self.automatic = True
        return self

    @property
    def targets(self) -> list[str]:
        return [segment.target for segment in self.segments]

    @property
    def effective_priority(self) -> int:
        return self.priority if self.priority is not None else 0

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        if self.condition:
            return f"when: {self.condition}"
        return ""


def _flatten_nodes(raw_nodes: list[Any], parent: str | None, out: list[Any]) -> None:
    for raw in raw_nodes:
        if not isinstance(raw, dict):
            out.append(raw)
            continue
        node = dict(raw)
        children = node.pop("nodes", None) or node.pop("children", None) or []
        if parent is not None and not node.get("parent"):
            node["parent"] = parent
        out.append(node)
        _flatten_nodes(children, node.get("name"), out)


class GraphModel(BaseModel):
    """
    The complete node/edge model.

    Lookups go through name-indexed tables built at load time. The only
    mutations allowed after load are attribute edits and additive structure
    (new nodes and edges) made through meta tools.
    """

    title: str = ""
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    _index: dict[str, int] = PrivateAttr(default_factory=dict)
    _children: dict[str, list[str]] = PrivateAttr(default_factory=dict)
    _outbound: dict[str, list[int]] = PrivateAttr(default_factory=dict)
    _inbound: dict[str, list[int]] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("nodes"), list):
            data = dict(data)
            flat: list[Any] = []
            _flatten_nodes(data["nodes"], None, flat)
            data["nodes"] = flat
        return data

    def model_post_init(self, __context: Any) -> None:
        self._rebuild_index()

    def _rebuild_index(self) -> None:
        index: dict[str, int] = {}
        for i, node in enumerate(self.nodes):
            if node.name in index:
                raise GraphModelError(f"Duplicate node name: {node.name}")
            index[node.name] = i

        children: dict[str, list[str]] = {name: [] for name in index}
        for node in self.nodes:
            if node.parent is None:
                continue
            if node.parent not in index:
                raise GraphModelError(f"Node '{node.name}' has unknown parent '{node.parent}'")
            children[node.parent].append(node.name)

        outbound: dict[str, list[int]] = {name: [] for name in index}
        inbound: dict[str, list[int]] = {name: [] for name in index}
        for i, edge in enumerate(self.edges):
            if edge.source not in index:
                raise GraphModelError(f"Edge {i} has unknown source '{edge.source}'")
            outbound[edge.source].append(i)
            for target in edge.targets:
                if target not in index:
                    raise GraphModelError(f"Edge {i} from '{edge.source}' has unknown target '{target}'")
                if i not in inbound[target]:
                    inbound[target].append(i)

        self._index = index
        self._children = children
        self._outbound = outbound
        self._inbound = inbound

        # parent chains must terminate
        for node in self.nodes:
            seen = {node.name}
            parent = node.parent
            while parent is not None:
                if parent in seen:
                    raise GraphModelError(f"Parent cycle through node '{node.name}'")
                seen.add(parent)
                parent = self.nodes[index[parent]].parent

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GraphModel":
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, text: str) -> "GraphModel":
        return cls.from_dict(json.loads(text))

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def node_names(self) -> list[str]:
        return [node.name for node in self.nodes]

    def has_node(self, name: str) -> bool:
        return name in self._index

    def find_node(self, name: str) -> Node | None:
        i = self._index.get(name)
        return self.nodes[i] if i is not None else None

    def get_node(self, name: str) -> Node:
        node = self.find_node(name)
        if node is None:
            raise GraphModelError(f"Unknown node: {name}")
        return node

    def declaration_index(self, name: str) -> int:
        return self._index[name]

    def is_context(self, name: str) -> bool:
        node = self.find_node(name)
        return node is not None and node.is_context

    def context_nodes(self) -> list[Node]:
        return [node for node in self.nodes if node.is_context]

    def outbound_edges(self, name: str) -> list[tuple[int, Edge]]:
        """Edges leaving ``name`` as ``(edge_index, edge)`` in declaration order."""
        return [(i, self.edges[i]) for i in self._outbound.get(name, [])]

    def inbound_edges(self, name: str) -> list[tuple[int, Edge]]:
        return [(i, self.edges[i]) for i in self._inbound.get(name, [])]

    def children(self, name: str) -> list[Node]:
        return [self.nodes[self._index[c]] for c in self._children.get(name, [])]

    def ancestors(self, name: str) -> list[Node]:
        """Ancestors of ``name``, nearest first."""
        result = []
        node = self.get_node(name)
        while node.parent is not None:
            node = self.get_node(node.parent)
            result.append(node)
        return result

    # ------------------------------------------------------------------
    # Additive mutation (meta tools)
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        self.nodes.append(node)
        try:
            self._rebuild_index()
        except GraphModelError:
            self.nodes.pop()
            self._rebuild_index()
            raise
        logger.info(f"Added node '{node.name}' ({node.kind})")

    def add_edge(self, edge: Edge) -> int:
        self.edges.append(edge)
        try:
            self._rebuild_index()
        except GraphModelError:
            self.edges.pop()
            self._rebuild_index()
            raise
        logger.info(f"Added edge {edge.source} -> {', '.join(edge.targets)}")
        return len(self.edges) - 1

    def discard_additions(self, node_count: int, edge_count: int) -> None:
        """Drop nodes and edges appended after the first ``node_count``/``edge_count``."""
        if len(self.nodes) == node_count and len(self.edges) == edge_count:
            return
        logger.info(
            f"Discarding {len(self.nodes) - node_count} added nodes and "
            f"{len(self.edges) - edge_count} added edges"
        )
        del self.nodes[node_count:]
        del self.edges[edge_count:]
        self._rebuild_index()
