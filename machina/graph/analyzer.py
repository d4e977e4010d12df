"""
Static structural analysis of a graph model.

All queries are pure functions of the model as it was when the analyzer was
built, and every result is ordered by node declaration order so validation
reports are reproducible.

Context nodes are attribute containers, not steps. They never count as entry
points, exit points, unreachable or orphaned nodes.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from machina.graph.model import GraphModel, NodeKind

logger = logging.getLogger(__name__)


@dataclass
class GraphStatistics:
    node_count: int
    edge_count: int
    entry_point_count: int
    exit_point_count: int
    max_depth: int
    cycle_count: int


@dataclass
class GraphValidationResult:
    """Structural findings. Nothing here is fatal to execution."""

    valid: bool
    entry_points: list[str] = field(default_factory=list)
    exit_points: list[str] = field(default_factory=list)
    unreachable_nodes: list[str] = field(default_factory=list)
    orphaned_nodes: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class GraphAnalyzer:
    """
    Reachability, cycle and path queries over the forward adjacency.

    Adjacency is deduplicated: two edges from A to B give one A -> B link.
    Multi-segment edges contribute one link per segment target.
    """

    def __init__(self, graph: GraphModel):
        self.graph = graph
        self._names = graph.node_names()
        self._adjacency: dict[str, list[str]] = {name: [] for name in self._names}
        self._reverse: dict[str, list[str]] = {name: [] for name in self._names}
        for edge in graph.edges:
            for target in edge.targets:
                if target not in self._adjacency[edge.source]:
                    self._adjacency[edge.source].append(target)
                if edge.source not in self._reverse[target]:
                    self._reverse[target].append(edge.source)
        self._cycles: list[list[str]] | None = None

    def successors(self, name: str) -> list[str]:
        return list(self._adjacency.get(name, []))

    def predecessors(self, name: str) -> list[str]:
        return list(self._reverse.get(name, []))

    def _is_step(self, name: str) -> bool:
        return not self.graph.get_node(name).is_context

    def find_entry_points(self) -> list[str]:
        """Nodes marked ``init`` or with no incoming edges."""
        return [
            name
            for name in self._names
            if self._is_step(name)
            and (self.graph.get_node(name).kind == NodeKind.INIT or not self._reverse[name])
        ]

    def find_exit_points(self) -> list[str]:
        """Nodes with no outgoing edges."""
        return [name for name in self._names if self._is_step(name) and not self._adjacency[name]]

    def find_unreachable_nodes(self) -> list[str]:
        """Nodes not reached by a breadth-first walk from the entry points."""
        reached: set[str] = set()
        queue = deque(self.find_entry_points())
        reached.update(queue)
        while queue:
            current = queue.popleft()
            for neighbor in self._adjacency[current]:
                if neighbor not in reached:
                    reached.add(neighbor)
                    queue.append(neighbor)
        return [name for name in self._names if self._is_step(name) and name not in reached]

    def find_orphaned_nodes(self) -> list[str]:
        """Nodes with neither incoming nor outgoing edges, excluding init nodes."""
        return [
            name
            for name in self._names
            if self._is_step(name)
            and self.graph.get_node(name).kind != NodeKind.INIT
            and not self._adjacency[name]
            and not self._reverse[name]
        ]

    def detect_cycles(self) -> list[list[str]]:
        """
        Enumerate every elementary cycle.

        Each cycle is reported once, starting from its earliest-declared node
        and closed by repeating that node: ``["A", "B", "A"]``. A self-loop is
        ``["A", "A"]``. Cycles are ordered by start node, then by the order in
        which the depth-first search meets them.
        """
        if self._cycles is not None:
            return [list(c) for c in self._cycles]

        cycles: list[list[str]] = []
        for start_index, start in enumerate(self._names):
            allowed = set(self._names[start_index:])
            stack = [start]
            on_stack = {start}
            iterators = [iter(self._adjacency[start])]
            while iterators:
                neighbor = next(iterators[-1], None)
                if neighbor is None:
                    iterators.pop()
                    on_stack.discard(stack.pop())
                    continue
                if neighbor == start:
                    cycles.append(stack + [start])
                elif neighbor in allowed and neighbor not in on_stack:
                    stack.append(neighbor)
                    on_stack.add(neighbor)
                    iterators.append(iter(self._adjacency[neighbor]))

        self._cycles = cycles
        return [list(c) for c in cycles]

    def is_node_in_cycle(self, name: str) -> bool:
        return any(name in cycle for cycle in self.detect_cycles())

    def find_path(self, source: str, target: str) -> list[str]:
        """Shortest path from ``source`` to ``target`` by BFS, or [] if none."""
        if source not in self._adjacency or target not in self._adjacency:
            return []
        if source == target:
            return [source]
        parents: dict[str, str] = {}
        visited = {source}
        queue = deque([source])
        while queue:
            current = queue.popleft()
            for neighbor in self._adjacency[current]:
                if neighbor in visited:
                    continue
                parents[neighbor] = current
                if neighbor == target:
                    path = [target]
                    while path[-1] != source:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                visited.add(neighbor)
                queue.append(neighbor)
        return []

    def find_longest_path(self) -> list[str]:
        """The longest of the shortest entry-to-exit paths (first found wins ties)."""
        longest: list[str] = []
        exits = self.find_exit_points()
        for entry in self.find_entry_points():
            for exit_point in exits:
                path = self.find_path(entry, exit_point)
                if len(path) > len(longest):
                    longest = path
        return longest

    def get_statistics(self) -> GraphStatistics:
        return GraphStatistics(
            node_count=len(self._names),
            edge_count=sum(len(targets) for targets in self._adjacency.values()),
            entry_point_count=len(self.find_entry_points()),
            exit_point_count=len(self.find_exit_points()),
            max_depth=len(self.find_longest_path()),
            cycle_count=len(self.detect_cycles()),
        )

    def validate(self) -> GraphValidationResult:
        entry_points = self.find_entry_points()
        unreachable = self.find_unreachable_nodes()
        orphaned = self.find_orphaned_nodes()
        cycles = self.detect_cycles()

        warnings = []
        if not entry_points:
            warnings.append("Graph has no entry points")
        for name in unreachable:
            warnings.append(f"Node '{name}' is unreachable from entry points")
        for name in orphaned:
            warnings.append(f"Node '{name}' is orphaned (no incoming or outgoing edges)")
        for cycle in cycles:
            warnings.append(f"Cycle detected: {' -> '.join(cycle)}")

        return GraphValidationResult(
            valid=bool(entry_points) and not unreachable,
            entry_points=entry_points,
            exit_points=self.find_exit_points(),
            unreachable_nodes=unreachable,
            orphaned_nodes=orphaned,
            cycles=cycles,
            warnings=warnings,
        )
