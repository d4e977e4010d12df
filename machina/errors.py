"""
Error taxonomy for graph loading and execution.

Errors fall into four families:
1. Structural issues are not exceptions. GraphAnalyzer reports them as warnings.
2. Decision errors come from an agent's tool call and fail one path.
3. Safety errors stop a path that hit a limit, a stalled cycle or the timeout.
4. Data errors flag undefined attribute references. They make a condition
   undecidable and are never coerced to true or false.

Every error carries a stable ``code`` which is what a failed path records.
"""

from typing import Any


class MachinaError(Exception):
    """Base class for all machina errors."""

    code = "MachinaError"


class GraphModelError(MachinaError, ValueError):
    """The node/edge model handed to the engine is inconsistent."""

    code = "GraphModelError"


class PathStateError(MachinaError, RuntimeError):
    """A path was asked to move to a status it cannot reach."""

    code = "PathStateError"


class MissingContextError(MachinaError):
    """A condition referenced attributes that are not in the store."""

    code = "MissingContextError"

    def __init__(self, references: list[str], expression: str = ""):
        self.references = list(references)
        self.expression = expression
        refs = ", ".join(self.references)
        message = f"Undefined attribute reference(s): {refs}"
        if expression:
            message += f" in '{expression}'"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Engine-level errors abort the execution before any step
# ---------------------------------------------------------------------------


class EngineError(MachinaError):
    code = "EngineError"


class NoEntryPointsError(EngineError):
    code = "NoEntryPointsError"


# ---------------------------------------------------------------------------
# Path-local errors
# ---------------------------------------------------------------------------


class PathError(MachinaError):
    """An error that fails a single path and leaves its siblings running."""

    code = "PathError"

    def __init__(self, message: str, path_id: str | None = None):
        self.path_id = path_id
        super().__init__(message)


class DecisionError(PathError):
    code = "DecisionError"


class UnknownTransitionError(DecisionError):
    code = "UnknownTransitionError"


class PermissionDeniedError(DecisionError):
    code = "PermissionDeniedError"


class InvalidToolCallError(DecisionError):
    """The tool name is not in the catalogue or its arguments are malformed."""

    code = "InvalidToolCallError"


class AgentProtocolError(DecisionError):
    code = "AgentProtocolError"


class SafetyError(PathError):
    code = "SafetyError"


class CycleDetectedError(SafetyError):
    code = "CycleDetectedError"

    def __init__(self, pattern: list[str], path_id: str | None = None):
        self.pattern = list(pattern)
        super().__init__(
            f"Stalled cycle detected: {' -> '.join(self.pattern)} repeated "
            f"with no change to the attributes it depends on",
            path_id=path_id,
        )


class LimitExceededError(SafetyError):
    code = "LimitExceededError"

    def __init__(self, limit: str, value: Any, path_id: str | None = None, detail: str = ""):
        self.limit = limit
        self.value = value
        message = f"{limit} exceeded (limit={value})"
        if detail:
            message += f": {detail}"
        super().__init__(message, path_id=path_id)


class ExecutionTimeoutError(SafetyError):
    code = "TimeoutError"


class ExecutionCancelledError(PathError):
    code = "CancelledError"


class AgentUnavailableError(PathError):
    """The agent transport failed. The path fails and nothing is retried."""

    code = "AgentUnavailableError"


class PathCrashedError(PathError):
    """An unexpected exception while stepping one path."""

    code = "InternalError"
