"""
Transition evaluation - decide whether a node's next move is automated.

For a node and the current store contents the evaluator classifies every
outbound transition and returns one of three decisions:

1. AUTOMATED: exactly one transition is chosen without an agent. An edge is
   automated-eligible if it is marked automatic, or it is the node's only
   edge and has no condition, or its condition evaluates to a definite
   boolean. Among eligible edges that are unconditional or evaluated true,
   the highest priority wins and declaration order breaks ties.
2. AGENT_REQUIRED: the agent picks among all outbound transitions. This is
   always the case for a node with a prompt.
3. TERMINAL: the node has no outbound transitions, or every one of them has
   a condition that evaluated false.

A condition that references an attribute the store does not hold is
undecidable. It forces an agent decision and is logged as a warning rather
than read as false.

Hierarchy:
- A node without outbound transitions uses its nearest ancestor module's
  transitions (module exit).
- Moving into a state that has children enters its first child, preferring
  tasks, then states, then any other non-context node (module entry).
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from machina.errors import MissingContextError
from machina.graph.model import Edge, GraphModel, NodeKind
from machina.graph.safe_eval import safe_eval_condition
from machina.runtime.shared_state import NOT_SET, SharedAttributeStore, qualify

logger = logging.getLogger(__name__)


class DecisionKind(StrEnum):
    AUTOMATED = "automated"
    AGENT_REQUIRED = "agent_required"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class CandidateTransition:
    """One outbound edge as seen from the node being evaluated."""

    edge_index: int
    edge: Edge
    source: str
    targets: tuple[str, ...]
    condition_result: bool | None = None
    automated_eligible: bool = False

    @property
    def condition(self) -> str | None:
        return self.edge.condition

    @property
    def label(self) -> str:
        return self.edge.display_label

    @property
    def inherited(self) -> bool:
        """True when the edge belongs to an enclosing module."""
        return self.source != self.edge.source

    @property
    def is_fork(self) -> bool:
        return len(self.targets) > 1


@dataclass
class TransitionDecision:
    """Outcome of evaluating one node."""

    node: str
    kind: DecisionKind
    candidates: list[CandidateTransition] = field(default_factory=list)
    chosen: CandidateTransition | None = None
    reason: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def is_automated(self) -> bool:
        return self.kind == DecisionKind.AUTOMATED

    @property
    def is_terminal(self) -> bool:
        return self.kind == DecisionKind.TERMINAL


class TransitionEvaluator:
    """Classifies a node's outbound transitions against the shared store."""

    def __init__(self, graph: GraphModel):
        self.graph = graph

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def _control_targets(self, edge: Edge) -> tuple[str, ...]:
        return tuple(
            segment.target
            for segment in edge.segments
            if segment.end_type.transfers_control and not self.graph.is_context(segment.target)
        )

    def outbound_transitions(self, node_name: str) -> list[tuple[int, Edge, tuple[str, ...]]]:
        """
        Edges a path at ``node_name`` may move along, as ``(index, edge, targets)``.

        Falls back to the nearest ancestor module's transitions when the node
        has none of its own.
        """
        scopes = [self.graph.get_node(node_name)] + [
            a for a in self.graph.ancestors(node_name) if not a.is_context
        ]
        for scope in scopes:
            transitions = []
            for index, edge in self.graph.outbound_edges(scope.name):
                targets = self._control_targets(edge)
                if targets:
                    transitions.append((index, edge, targets))
            if transitions:
                return transitions
        return []

    def resolve_entry(self, target: str) -> str:
        """Follow module entry from ``target`` down to the node a path lands on."""
        node = self.graph.get_node(target)
        seen = {node.name}
        while node.kind == NodeKind.STATE:
            children = [c for c in self.graph.children(node.name) if not c.is_context]
            if not children:
                break
            child = (
                next((c for c in children if c.kind == NodeKind.TASK), None)
                or next((c for c in children if c.kind == NodeKind.STATE), None)
                or children[0]
            )
            if child.name in seen:
                break
            seen.add(child.name)
            node = child
        return node.name

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def resolve_reference(self, node_name: str, ref: str, store: SharedAttributeStore) -> Any:
        """
        Value of ``ref`` as seen from ``node_name``.

        ``Node.attr`` names an attribute directly. A bare ``attr`` is looked up
        on the node itself, then on its ancestors, nearest first. Raises
        KeyError when nothing holds a value.
        """
        head, dot, attr = ref.partition(".")
        if dot and self.graph.has_node(head):
            keys = [qualify(head, attr)]
        else:
            scopes = [node_name] + [a.name for a in self.graph.ancestors(node_name)]
            keys = [qualify(scope, ref) for scope in scopes]
        for key in keys:
            value = store.read(key)
            if value is not NOT_SET and value is not None:
                return value
        raise KeyError(ref)

    def evaluate_condition(
        self, node_name: str, condition: str, store: SharedAttributeStore
    ) -> tuple[bool | None, str | None]:
        """
        Returns:
            ``(result, warning)``. ``result`` is None when the condition is
            undecidable, and ``warning`` then says why.
        """
        try:
            result = safe_eval_condition(
                condition, lambda ref: self.resolve_reference(node_name, ref, store)
            )
            return result, None
        except MissingContextError as e:
            warning = f"Condition on '{node_name}' is undecidable: {e}"
            logger.warning(warning)
            return None, warning
        except ValueError as e:
            warning = f"Condition on '{node_name}' could not be evaluated: {e}"
            logger.warning(warning)
            return None, warning

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def candidates(
        self, node_name: str, store: SharedAttributeStore
    ) -> tuple[list[CandidateTransition], list[str]]:
        transitions = self.outbound_transitions(node_name)
        candidates = []
        warnings = []
        for index, edge, targets in transitions:
            result = None
            if edge.condition is not None:
                result, warning = self.evaluate_condition(node_name, edge.condition, store)
                if warning:
                    warnings.append(warning)
            eligible = (
                edge.automatic
                or (edge.condition is None and len(transitions) == 1)
                or (edge.condition is not None and result is not None)
            )
            candidates.append(
                CandidateTransition(
                    edge_index=index,
                    edge=edge,
                    source=node_name,
                    targets=targets,
                    condition_result=result,
                    automated_eligible=eligible,
                )
            )
        return candidates, warnings

    def evaluate(self, node_name: str, store: SharedAttributeStore) -> TransitionDecision:
        node = self.graph.get_node(node_name)
        candidates, warnings = self.candidates(node_name, store)

        if not candidates:
            return TransitionDecision(
                node=node_name,
                kind=DecisionKind.TERMINAL,
                reason="No outbound transitions",
                warnings=warnings,
            )

        if node.prompt:
            return TransitionDecision(
                node=node_name,
                kind=DecisionKind.AGENT_REQUIRED,
                candidates=candidates,
                reason="Node has a prompt",
                warnings=warnings,
            )

        survivors = [
            (position, c)
            for position, c in enumerate(candidates)
            if c.automated_eligible and (c.condition is None or c.condition_result is True)
        ]
        if survivors:
            survivors.sort(key=lambda item: (-item[1].edge.effective_priority, item[0]))
            chosen = survivors[0][1]
            return TransitionDecision(
                node=node_name,
                kind=DecisionKind.AUTOMATED,
                candidates=candidates,
                chosen=chosen,
                reason=self._automated_reason(chosen, len(survivors)),
                warnings=warnings,
            )

        if all(c.condition is not None and c.condition_result is False for c in candidates):
            return TransitionDecision(
                node=node_name,
                kind=DecisionKind.TERMINAL,
                candidates=candidates,
                reason="Every outbound condition evaluated false",
                warnings=warnings,
            )

        return TransitionDecision(
            node=node_name,
            kind=DecisionKind.AGENT_REQUIRED,
            candidates=candidates,
            reason="No transition resolvable without an agent",
            warnings=warnings,
        )

    @staticmethod
    def _automated_reason(chosen: CandidateTransition, eligible: int) -> str:
        if chosen.condition is not None:
            reason = f"Condition '{chosen.condition}' evaluated true"
        elif chosen.edge.automatic:
            reason = "Automatic transition"
        else:
            reason = "Single unconditional transition"
        if eligible > 1:
            reason += f" (priority {chosen.edge.effective_priority} of {eligible} eligible)"
        return reason
