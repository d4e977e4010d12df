"""
Context access permissions.

A node may read or write a context node's attributes when:
1. It has an edge to the context. ``reads:``/``writes:`` markers grant exactly
   what they name. Without markers the label keywords decide: ``read``
   grants read, ``write``/``update``/``set`` grant write, and no keyword
   means read-only. ``write: a, b`` restricts the grant to those fields.
2. Any of its edges carries a marker naming ``Ctx.attr`` for a context ``Ctx``.
3. A context has an edge into the node. This grants read-only access.
4. A context is one of its ancestors in the nesting hierarchy. This grants
   read-only access and never write.

Non-context ancestors pass nothing down.
"""

import logging
import re
from dataclasses import dataclass

from machina.graph.model import Edge, GraphModel

logger = logging.getLogger(__name__)

_FIELD_LIST_RE = re.compile(r"\b(?:read|write|update|set)\s*:\s*([A-Za-z0-9_,\s]+)", re.IGNORECASE)


def _merge_fields(
    a_on: bool, a_fields: frozenset[str] | None, b_on: bool, b_fields: frozenset[str] | None
) -> frozenset[str] | None:
    if not a_on:
        return b_fields
    if not b_on:
        return a_fields
    if a_fields is None or b_fields is None:
        return None
    return a_fields | b_fields


@dataclass(frozen=True)
class ContextPermissions:
    """What one node may do with one context. ``None`` fields means all attributes."""

    can_read: bool = False
    can_write: bool = False
    read_fields: frozenset[str] | None = None
    write_fields: frozenset[str] | None = None
    inherited: bool = False

    def can_read_field(self, attribute: str) -> bool:
        return self.can_read and (self.read_fields is None or attribute in self.read_fields)

    def can_write_field(self, attribute: str) -> bool:
        return self.can_write and (self.write_fields is None or attribute in self.write_fields)

    def merge(self, other: "ContextPermissions") -> "ContextPermissions":
        return ContextPermissions(
            can_read=self.can_read or other.can_read,
            can_write=self.can_write or other.can_write,
            read_fields=_merge_fields(self.can_read, self.read_fields, other.can_read, other.read_fields),
            write_fields=_merge_fields(
                self.can_write, self.write_fields, other.can_write, other.write_fields
            ),
            inherited=self.inherited and other.inherited,
        )

    def to_dict(self) -> dict:
        return {
            "can_read": self.can_read,
            "can_write": self.can_write,
            "read_fields": sorted(self.read_fields) if self.read_fields is not None else None,
            "write_fields": sorted(self.write_fields) if self.write_fields is not None else None,
            "inherited": self.inherited,
        }


def permissions_from_label(label: str | None) -> ContextPermissions:
    """Derive permissions for an unmarked edge to a context from its label keywords."""
    text = (label or "").lower()
    can_read = "read" in text
    can_write = "write" in text or "update" in text or "set" in text
    if not can_read and not can_write:
        can_read = True

    fields = None
    match = _FIELD_LIST_RE.search(text)
    if match:
        names = [f.strip() for f in match.group(1).split(",") if f.strip()]
        fields = frozenset(names) if names else None

    return ContextPermissions(
        can_read=can_read,
        can_write=can_write,
        read_fields=fields if can_read else None,
        write_fields=fields if can_write else None,
    )


class ContextAccessResolver:
    """Computes, per node, which contexts it may read and write."""

    def __init__(self, graph: GraphModel, include_inbound: bool = True):
        self.graph = graph
        self.include_inbound = include_inbound

    def _marker_grants(self, edge: Edge) -> list[tuple[str, ContextPermissions]]:
        grants: list[tuple[str, ContextPermissions]] = []
        context_targets = [t for t in edge.targets if self.graph.is_context(t)]

        for refs, writing in ((edge.reads, False), (edge.writes, True)):
            for ref in refs:
                head, _, attr = ref.partition(".")
                if self.graph.is_context(head):
                    contexts, field = [head], attr or None
                else:
                    # bare attribute name applies to the contexts this edge points at
                    contexts, field = context_targets, ref
                fields = frozenset([field]) if field else None
                for ctx in contexts:
                    if writing:
                        perm = ContextPermissions(can_write=True, write_fields=fields)
                    else:
                        perm = ContextPermissions(can_read=True, read_fields=fields)
                    grants.append((ctx, perm))
        return grants

    def accessible(self, node_name: str) -> dict[str, ContextPermissions]:
        """
        Map each accessible context name to the node's permissions on it.

        Contexts are listed in declaration order.
        """
        grants: dict[str, ContextPermissions] = {}

        def grant(ctx: str, perm: ContextPermissions) -> None:
            grants[ctx] = grants[ctx].merge(perm) if ctx in grants else perm

        for _, edge in self.graph.outbound_edges(node_name):
            marker_grants = self._marker_grants(edge)
            marked = {ctx for ctx, _ in marker_grants}
            for ctx, perm in marker_grants:
                grant(ctx, perm)
            for target in edge.targets:
                if self.graph.is_context(target) and target not in marked:
                    grant(target, permissions_from_label(edge.label))

        if self.include_inbound:
            for _, edge in self.graph.inbound_edges(node_name):
                if self.graph.is_context(edge.source):
                    grant(edge.source, ContextPermissions(can_read=True))

        for ancestor in self.graph.ancestors(node_name):
            if ancestor.is_context:
                grant(ancestor.name, ContextPermissions(can_read=True, inherited=True))

        ordered = sorted(grants, key=self.graph.declaration_index)
        return {ctx: grants[ctx] for ctx in ordered}

    def readable_attributes(self, node_name: str, context: str) -> list[str]:
        """Declared attributes of ``context`` that ``node_name`` may read."""
        perm = self.accessible(node_name).get(context)
        if perm is None or not perm.can_read:
            return []
        return [
            attr.name
            for attr in self.graph.get_node(context).attributes
            if perm.can_read_field(attr.name)
        ]
