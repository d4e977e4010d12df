"""Graph model, static analysis, context access and transition evaluation."""

from machina.graph.analyzer import GraphAnalyzer, GraphStatistics, GraphValidationResult
from machina.graph.context_access import ContextAccessResolver, ContextPermissions
from machina.graph.model import Attribute, Edge, EdgeSegment, EndType, GraphModel, Node, NodeKind
from machina.graph.safe_eval import SafeConditionEvaluator, safe_eval_condition
from machina.graph.transition import (
    CandidateTransition,
    DecisionKind,
    TransitionDecision,
    TransitionEvaluator,
)

__all__ = [
    "GraphModel",
    "Node",
    "NodeKind",
    "Edge",
    "EdgeSegment",
    "EndType",
    "Attribute",
    "GraphAnalyzer",
    "GraphStatistics",
    "GraphValidationResult",
    "ContextAccessResolver",
    "ContextPermissions",
    "SafeConditionEvaluator",
    "safe_eval_condition",
    "TransitionEvaluator",
    "TransitionDecision",
    "CandidateTransition",
    "DecisionKind",
]
