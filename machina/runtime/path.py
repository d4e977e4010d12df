"""
Execution paths - independent cursors through the graph.

A path moves through the statuses

    active -> waiting_for_agent -> active -> ... -> completed | failed

``waiting_for_agent`` is real path state, not a suspended coroutine, so
timeouts and cancellation have something concrete to act on. Completed and
failed are final.
"""

import logging
from collections import Counter
from enum import StrEnum

from pydantic import BaseModel, Field

from machina.errors import AgentUnavailableError, MachinaError, PathStateError

logger = logging.getLogger(__name__)


class PathStatus(StrEnum):
    ACTIVE = "active"
    WAITING_FOR_AGENT = "waiting_for_agent"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (PathStatus.COMPLETED, PathStatus.FAILED)


_ALLOWED_STATUS_CHANGES = {
    PathStatus.ACTIVE: {PathStatus.WAITING_FOR_AGENT, PathStatus.COMPLETED, PathStatus.FAILED},
    PathStatus.WAITING_FOR_AGENT: {PathStatus.ACTIVE, PathStatus.COMPLETED, PathStatus.FAILED},
    PathStatus.COMPLETED: set(),
    PathStatus.FAILED: set(),
}


class HistoryEntry(BaseModel):
    """One applied transition."""

    from_node: str = Field(serialization_alias="from")
    to_node: str = Field(serialization_alias="to")
    transition_label: str = ""
    timestamp: str
    reason: str = ""

    model_config = {"populate_by_name": True}


class Visit(BaseModel):
    """A visit to a node, stamped with the store revision at arrival."""

    node: str
    revision: int


class ExecutionPath(BaseModel):
    """
    One token moving through the graph.

    ``visits`` keeps every arrival in order, including the entry node, and
    ``history`` keeps every applied transition. A forked path starts with a
    copy of both from its parent.
    """

    id: str
    current_node: str
    status: PathStatus = PathStatus.ACTIVE
    step_count: int = 0
    visits: list[Visit] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)
    parent_id: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def visited_nodes(self) -> list[str]:
        return [visit.node for visit in self.visits]

    @property
    def visit_counts(self) -> dict[str, int]:
        return dict(Counter(self.visited_nodes))

    @property
    def is_final(self) -> bool:
        return self.status.is_final

    def set_status(self, status: PathStatus) -> None:
        if status == self.status:
            return
        if status not in _ALLOWED_STATUS_CHANGES[self.status]:
            raise PathStateError(f"Path {self.id} cannot move from {self.status} to {status}")
        self.status = status

    def visit(self, node: str, revision: int) -> None:
        self.current_node = node
        self.visits.append(Visit(node=node, revision=revision))

    def record_transition(self, entry: HistoryEntry, revision: int) -> None:
        self.history.append(entry)
        self.step_count += 1
        self.visit(entry.to_node, revision)

    def complete(self) -> None:
        self.set_status(PathStatus.COMPLETED)
        logger.info(f"✓ Path {self.id} completed at '{self.current_node}'")

    def fail(self, error: MachinaError) -> None:
        self.set_status(PathStatus.FAILED)
        self.error = str(error)
        self.error_code = error.code
        level = logging.ERROR if isinstance(error, AgentUnavailableError) else logging.WARNING
        logger.log(level, f"✗ Path {self.id} failed at '{self.current_node}': {error.code}: {error}")

    def fork(self, new_id: str) -> "ExecutionPath":
        """A new active path sharing this path's history so far."""
        return ExecutionPath(
            id=new_id,
            current_node=self.current_node,
            step_count=self.step_count,
            visits=[v.model_copy() for v in self.visits],
            history=[h.model_copy() for h in self.history],
            parent_id=self.id,
        )
