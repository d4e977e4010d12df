"""
Execution limits and stalled-cycle detection.

Limits bound an otherwise unbounded graph walk:
- max_steps: applied transitions across all paths
- max_node_invocations: evaluations of any one node, across all paths
- timeout_ms: wall clock from execution start
- cycle_detection_window: recent visits inspected per path (0 disables)
- max_tool_retries: invalid agent tool calls tolerated per decision
- max_agent_turns: read/write/meta calls tolerated per decision
- max_paths: paths alive or finished, forks included

A loop is only a stalled cycle when it repeats without changing any
attribute it depends on. Loops that make progress through context writes are
left alone until a hard limit stops them.
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any

from machina.errors import CycleDetectedError
from machina.graph.context_access import ContextAccessResolver
from machina.graph.model import GraphModel
from machina.graph.safe_eval import extract_references
from machina.graph.transition import TransitionEvaluator
from machina.runtime.path import ExecutionPath
from machina.runtime.shared_state import SharedAttributeStore, qualify

logger = logging.getLogger(__name__)

_CAMEL_CASE_KEYS = {
    "maxSteps": "max_steps",
    "maxNodeInvocations": "max_node_invocations",
    "timeoutMs": "timeout_ms",
    "cycleDetectionWindow": "cycle_detection_window",
    "maxToolRetries": "max_tool_retries",
    "maxAgentTurns": "max_agent_turns",
    "maxPaths": "max_paths",
    "historyTail": "history_tail",
}


@dataclass
class ExecutionLimits:
    max_steps: int = 1000
    max_node_invocations: int = 100
    timeout_ms: int = 300_000
    cycle_detection_window: int = 20
    max_tool_retries: int = 3
    max_agent_turns: int = 10
    max_paths: int = 64
    history_tail: int = 10

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{f.name} must be a non-negative integer, got {value!r}")
        if self.max_paths < 1:
            raise ValueError("max_paths must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionLimits":
        """Build limits from a config mapping. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class CycleDetector:
    """
    Finds stalled cycles in a path's recent visits.

    A node sequence of length >= 2 that appears twice back to back at the end
    of the window is stalled when none of the attributes it depends on changed
    between the start of the first repetition and now. A node depends on the
    attributes its outbound conditions reference, its own attributes, and
    every attribute of the contexts it may write.
    """

    def __init__(
        self,
        graph: GraphModel,
        evaluator: TransitionEvaluator,
        access: ContextAccessResolver,
        window: int,
    ):
        self.graph = graph
        self.evaluator = evaluator
        self.access = access
        self.window = window

    def dependencies(self, node_name: str, store: SharedAttributeStore) -> set[str]:
        keys: set[str] = set()
        scopes = [node_name] + [a.name for a in self.graph.ancestors(node_name)]

        for _, edge, _ in self.evaluator.outbound_transitions(node_name):
            if edge.condition is None:
                continue
            try:
                refs = extract_references(edge.condition)
            except ValueError:
                continue
            for ref in refs:
                head, dot, attr = ref.partition(".")
                if dot and self.graph.has_node(head):
                    keys.add(qualify(head, attr))
                else:
                    keys.update(qualify(scope, ref) for scope in scopes)

        keys.update(qualify(node_name, attr) for attr in store.namespace(node_name))

        for ctx, perm in self.access.accessible(node_name).items():
            if perm.can_write:
                keys.update(qualify(ctx, attr.name) for attr in self.graph.get_node(ctx).attributes)
                keys.update(qualify(ctx, attr) for attr in store.namespace(ctx))
        return keys

    def find_stalled_cycle(
        self, path: ExecutionPath, store: SharedAttributeStore
    ) -> list[str] | None:
        if self.window <= 0:
            return None
        recent = path.visits[-self.window :]
        for length in range(2, len(recent) // 2 + 1):
            first = recent[-2 * length : -length]
            second = recent[-length:]
            pattern = [v.node for v in second]
            if [v.node for v in first] != pattern:
                continue
            keys: set[str] = set()
            for node_name in dict.fromkeys(pattern):
                keys |= self.dependencies(node_name, store)
            if not store.changed_since(keys, first[0].revision):
                return pattern
        return None

    def check(self, path: ExecutionPath, store: SharedAttributeStore) -> None:
        """Raise CycleDetectedError if ``path`` is in a stalled cycle."""
        pattern = self.find_stalled_cycle(path, store)
        if pattern is not None:
            raise CycleDetectedError(pattern, path_id=path.id)
