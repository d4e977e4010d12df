"""
Shared Attribute Store - attribute values visible to every path.

Keys are qualified attribute paths (``"Config.retries"``). The store is seeded
from the attributes declared on the graph's nodes and then changes only
through dispatcher writes. All paths step inside one cooperative loop, so no
locking is needed. A write is a single dict update plus a history record.

Every change bumps a revision counter and is kept in the change history, so
the value of any key at any past revision can be reconstructed. Cycle
detection relies on this to tell a loop that makes progress from one that
does not.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from machina.graph.model import GraphModel

logger = logging.getLogger(__name__)


class _NotSet:
    """Sentinel for attributes that have no value in the store."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_SET"

    def __bool__(self) -> bool:
        return False


NOT_SET = _NotSet()


def qualify(node: str, attribute: str) -> str:
    return f"{node}.{attribute}"


@dataclass
class StateChange:
    """Record of a state change."""

    key: str
    old_value: Any
    new_value: Any
    revision: int
    path_id: str = ""
    timestamp: float = field(default_factory=time.time)


class SharedAttributeStore:
    """
    Qualified attribute path -> value, with revisioned change history.

    Example:
        store = SharedAttributeStore.from_graph(graph)
        store.write("Config.retries", 2, path_id="path-1")
        store.read("Config.retries")          # 2
        store.read("Config.unknown")          # NOT_SET
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._values: dict[str, Any] = dict(initial or {})
        self._initial: dict[str, Any] = dict(self._values)
        self._change_history: list[StateChange] = []
        self._revision = 0

    @classmethod
    def from_graph(cls, graph: "GraphModel") -> "SharedAttributeStore":
        """Seed the store with every attribute declared on every node."""
        initial = {}
        for node in graph.nodes:
            for attr in node.attributes:
                initial[qualify(node.name, attr.name)] = attr.value
        return cls(initial)

    @property
    def revision(self) -> int:
        return self._revision

    def has(self, key: str) -> bool:
        return key in self._values

    def read(self, key: str, default: Any = NOT_SET) -> Any:
        return self._values.get(key, default)

    def write(self, key: str, value: Any, path_id: str = "") -> StateChange:
        old_value = self._values.get(key, NOT_SET)
        self._values[key] = value
        self._revision += 1
        change = StateChange(
            key=key,
            old_value=old_value,
            new_value=value,
            revision=self._revision,
            path_id=path_id,
        )
        self._change_history.append(change)
        logger.debug(f"store[{key}] = {value!r} (rev {self._revision}, path {path_id or '-'})")
        return change

    def write_batch(self, updates: dict[str, Any], path_id: str = "") -> list[StateChange]:
        """Apply several writes back to back. Nothing else runs between them."""
        return [self.write(key, value, path_id=path_id) for key, value in updates.items()]

    def namespace(self, node: str) -> dict[str, Any]:
        """All attributes stored under ``node``, unqualified."""
        prefix = f"{node}."
        return {
            key[len(prefix) :]: value for key, value in self._values.items() if key.startswith(prefix)
        }

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)

    def value_at(self, key: str, revision: int) -> Any:
        """The value ``key`` held right after ``revision`` was reached."""
        value = self._initial.get(key, NOT_SET)
        for change in self._change_history:
            if change.revision > revision:
                break
            if change.key == key:
                value = change.new_value
        return value

    def changed_since(self, keys: list[str] | set[str], revision: int) -> bool:
        """Whether any of ``keys`` now differs from its value at ``revision``."""
        return any(self.read(key) != self.value_at(key, revision) for key in keys)

    def get_recent_changes(self, limit: int = 10) -> list[StateChange]:
        return self._change_history[-limit:]

    def get_stats(self) -> dict:
        return {
            "keys": len(self._values),
            "revision": self._revision,
            "history_size": len(self._change_history),
        }
