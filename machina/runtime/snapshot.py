"""Visualization snapshots: a read-only picture of a running execution."""

from pydantic import BaseModel, Field

from machina.runtime.path import PathStatus


class PathSnapshot(BaseModel):
    id: str
    status: PathStatus
    current_node: str
    step_count: int
    parent_id: str | None = None
    error_code: str | None = None


class AvailableTransition(BaseModel):
    """A move a live path could make from where it stands."""

    path_id: str
    node: str
    targets: list[str]
    label: str = ""
    condition: str | None = None
    automated: bool = False


class VisualizationSnapshot(BaseModel):
    """
    State of an execution for rendering.

    ``node_visits`` counts arrivals across all paths. ``active_paths_by_node``
    lists the non-final paths at each node.
    """

    step: int
    elapsed_ms: int
    paths: list[PathSnapshot] = Field(default_factory=list)
    node_visits: dict[str, int] = Field(default_factory=dict)
    active_paths_by_node: dict[str, list[str]] = Field(default_factory=dict)
    available_transitions: list[AvailableTransition] = Field(default_factory=list)
