"""
Execution Engine - steps every execution path through the graph.

The engine owns the set of paths and drives them from one cooperative loop:

1. Pick the next active path. Selection is round-robin in creation order,
   except that a path whose next move needs no agent is picked before one
   that does.
2. Evaluate its node. Automated moves are applied at once. Terminal nodes
   complete the path.
3. For an agent decision, build the request, mark the path
   ``waiting_for_agent`` and start the agent call as a task. Other paths keep
   stepping while it runs.
4. Responses are applied one at a time, in the order they arrive, by the
   tool dispatcher. Reads, writes and meta calls feed their result back to
   the agent for another turn. Invalid calls are retried up to
   ``max_tool_retries``.
5. Step and node invocation limits are checked before a transition is
   applied, the stalled-cycle check after it. A limit or cycle fails only
   the path that hit it.

Execution ends when every path is completed or failed, or when the timeout
elapses, in which case the remaining paths fail with TimeoutError and keep
their partial history.
"""

import asyncio
import logging
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from machina.agent.context_builder import AgentContextBuilder
from machina.agent.dispatcher import ToolExecutionDispatcher
from machina.agent.meta_tools import DefinitionEditor, MetaToolRegistry
from machina.agent.protocol import AgentClient, AgentRequest, AgentResponse, ToolCatalogue
from machina.errors import (
    AgentProtocolError,
    AgentUnavailableError,
    DecisionError,
    EngineError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    LimitExceededError,
    MachinaError,
    NoEntryPointsError,
    PathCrashedError,
    PathError,
)
from machina.graph.analyzer import GraphAnalyzer
from machina.graph.context_access import ContextAccessResolver
from machina.graph.model import GraphModel, NodeKind
from machina.graph.transition import CandidateTransition, DecisionKind, TransitionDecision, TransitionEvaluator
from machina.observability.logging import set_trace_context
from machina.runtime.limits import CycleDetector, ExecutionLimits
from machina.runtime.path import ExecutionPath, HistoryEntry, PathStatus
from machina.runtime.shared_state import SharedAttributeStore
from machina.runtime.snapshot import AvailableTransition, PathSnapshot, VisualizationSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of executing a graph."""

    success: bool
    paths: list[ExecutionPath] = field(default_factory=list)
    steps_executed: int = 0
    agent_invocations: int = 0
    node_invocation_counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    store: dict[str, Any] = field(default_factory=dict)
    elapsed_ms: int = 0
    error: str | None = None
    error_code: str | None = None

    def path(self, path_id: str) -> ExecutionPath | None:
        return next((p for p in self.paths if p.id == path_id), None)

    @property
    def histories(self) -> dict[str, list[HistoryEntry]]:
        return {p.id: p.history for p in self.paths}

    @property
    def failed_paths(self) -> list[ExecutionPath]:
        return [p for p in self.paths if p.status == PathStatus.FAILED]


@dataclass
class _PendingDecision:
    """An agent decision in flight for one path."""

    request: AgentRequest
    task: asyncio.Task
    catalogue: ToolCatalogue
    turn: int = 0
    invalid_calls: int = 0
    tool_calls: int = 0
    feedback: list[dict[str, Any]] = field(default_factory=list)


class ExecutionEngine:
    """
    Runs a graph model against an agent.

    Example:
        engine = ExecutionEngine(graph, agent=LLMAgentClient.from_config())
        result = await engine.run()
        for path in result.paths:
            print(path.id, path.status, [h.to_node for h in path.history])
    """

    def __init__(
        self,
        graph: GraphModel,
        agent: AgentClient | None = None,
        limits: ExecutionLimits | None = None,
        store: SharedAttributeStore | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        on_snapshot: Callable[[VisualizationSnapshot], None] | None = None,
    ):
        """
        Args:
            graph: The loaded graph model. Meta tools may extend it during the run.
            agent: Client for agent decisions. Without one, any node that needs
                a decision fails its path with AgentUnavailableError.
            limits: Safety limits, defaults if omitted.
            store: Shared attribute store, seeded from the graph if omitted.
            clock: Source of history timestamps.
            monotonic: Source of elapsed time for the timeout.
            on_snapshot: Called with a VisualizationSnapshot after every step.
        """
        self.graph = graph
        self.agent = agent
        self.limits = limits or ExecutionLimits()
        self.store = store if store is not None else SharedAttributeStore.from_graph(graph)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._monotonic = monotonic
        self.on_snapshot = on_snapshot

        self.analyzer = GraphAnalyzer(graph)
        self.validation = self.analyzer.validate()
        self.access = ContextAccessResolver(graph)
        self.evaluator = TransitionEvaluator(graph)
        self.registry = MetaToolRegistry()
        self.editor = DefinitionEditor(graph, self.store)
        self.builder = AgentContextBuilder(
            graph, self.access, self.store, self.registry, history_tail=self.limits.history_tail
        )
        self.dispatcher = ToolExecutionDispatcher(
            graph, self.store, self.evaluator, self.registry, self.editor
        )
        self.cycle_detector = CycleDetector(
            graph, self.evaluator, self.access, self.limits.cycle_detection_window
        )

        self.execution_id = uuid.uuid4().hex
        self.paths: dict[str, ExecutionPath] = {}
        self.warnings: list[str] = list(self.validation.warnings)
        self.total_steps = 0
        self.agent_invocations = 0
        self.node_invocations: Counter[str] = Counter()

        self._started_at: float | None = None
        self._path_counter = 0
        self._request_counter = 0
        self._cursor = -1
        self._decisions: dict[str, tuple[tuple, TransitionDecision]] = {}
        self._pending: dict[str, _PendingDecision] = {}
        self._arrivals: deque[tuple[str, str]] = deque()
        self._wakeup = asyncio.Event()
        self._cancel_requests: deque[str | None] = deque()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def _next_path_id(self) -> str:
        self._path_counter += 1
        return f"path-{self._path_counter}"

    def _next_request_id(self) -> str:
        self._request_counter += 1
        return f"req-{self._request_counter:06d}"

    def _entry_nodes(self) -> list[str]:
        inits = [n.name for n in self.graph.nodes if n.kind == NodeKind.INIT and n.parent is None]
        return inits or self.validation.entry_points[:1]

    def start(self) -> list[ExecutionPath]:
        """
        Create the initial paths: one per top-level init node, otherwise one
        at the first entry point.

        Raises:
            NoEntryPointsError: The graph has nowhere to start.
        """
        if self.started:
            return list(self.paths.values())

        entries = self._entry_nodes()
        if not entries:
            raise NoEntryPointsError(f"Graph '{self.graph.title or 'untitled'}' has no entry points")

        self._started_at = self._monotonic()
        logger.info(f"🚀 Starting execution: {self.graph.title or 'untitled'}")
        logger.info(f"   Entry nodes: {entries}")
        for warning in self.validation.warnings:
            logger.warning(f"   {warning}")

        for name in entries:
            landing = self.evaluator.resolve_entry(name)
            path = ExecutionPath(id=self._next_path_id(), current_node=landing)
            path.visit(landing, self.store.revision)
            self.paths[path.id] = path
            self._arrive(path)
        return list(self.paths.values())

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _timestamp(self) -> str:
        return self._clock().isoformat()

    def elapsed_ms(self) -> int:
        if self._started_at is None:
            return 0
        return int((self._monotonic() - self._started_at) * 1000)

    def _remaining_seconds(self) -> float:
        return max(0.0, (self.limits.timeout_ms - self.elapsed_ms()) / 1000)

    def _add_warnings(self, warnings: list[str]) -> None:
        for warning in warnings:
            if warning not in self.warnings:
                self.warnings.append(warning)

    def live_paths(self) -> list[ExecutionPath]:
        return [p for p in self.paths.values() if not p.is_final]

    def _fail(self, path: ExecutionPath, error: MachinaError) -> None:
        pending = self._pending.pop(path.id, None)
        if pending is not None:
            pending.task.cancel()
            logger.debug(f"Abandoned agent request {pending.request.request_id} of path {path.id}")
        path.fail(error)

    def _spawn(self, parent: ExecutionPath) -> ExecutionPath:
        fork = parent.fork(self._next_path_id())
        if len(self.paths) >= self.limits.max_paths:
            fork.fail(
                LimitExceededError(
                    "max_paths", self.limits.max_paths, path_id=fork.id, detail=f"fork of {parent.id}"
                )
            )
        self.paths[fork.id] = fork
        return fork

    def _arrive(self, path: ExecutionPath) -> None:
        """Checks run each time a path lands on a node."""
        if path.is_final:
            return
        self._decisions.pop(path.id, None)
        try:
            self.cycle_detector.check(path, self.store)
        except PathError as e:
            self._fail(path, e)
            return
        self.node_invocations[path.current_node] += 1

    def _check_invocations(self, path: ExecutionPath, candidate: CandidateTransition) -> None:
        """Refuse a move that would invoke any landing node past the limit."""
        landings = Counter(self.evaluator.resolve_entry(t) for t in candidate.targets)
        for node, arriving in landings.items():
            count = self.node_invocations[node]
            if count + arriving > self.limits.max_node_invocations:
                raise LimitExceededError(
                    "max_node_invocations",
                    self.limits.max_node_invocations,
                    path_id=path.id,
                    detail=f"'{node}' already invoked {count} times",
                )

    def _apply(self, path: ExecutionPath, candidate: CandidateTransition, reason: str) -> None:
        if self.total_steps >= self.limits.max_steps:
            raise LimitExceededError("max_steps", self.limits.max_steps, path_id=path.id)
        self._check_invocations(path, candidate)
        forks = self.dispatcher.apply_transition(
            path, candidate, reason, self._timestamp(), spawn=self._spawn
        )
        self.total_steps += 1
        for moved in [path, *forks]:
            self._arrive(moved)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _decide(self, path: ExecutionPath) -> TransitionDecision:
        key = (path.current_node, self.store.revision, len(self.editor.changes))
        cached = self._decisions.get(path.id)
        if cached is not None and cached[0] == key:
            return cached[1]
        decision = self.evaluator.evaluate(path.current_node, self.store)
        self._add_warnings(decision.warnings)
        self._decisions[path.id] = (key, decision)
        return decision

    def _select(self) -> tuple[ExecutionPath, TransitionDecision] | None:
        order = list(self.paths)
        rotated = order[self._cursor + 1 :] + order[: self._cursor + 1]
        fallback = None
        chosen = None
        for path_id in rotated:
            path = self.paths[path_id]
            if path.status != PathStatus.ACTIVE:
                continue
            decision = self._guarded(path, self._decide, path)
            if decision is None:
                continue
            if decision.kind != DecisionKind.AGENT_REQUIRED:
                chosen = (path, decision)
                break
            if fallback is None:
                fallback = (path, decision)
        chosen = chosen or fallback
        if chosen is not None:
            self._cursor = order.index(chosen[0].id)
        return chosen

    def _advance(self, path: ExecutionPath, decision: TransitionDecision) -> None:
        if decision.kind == DecisionKind.TERMINAL:
            logger.info(f"   {decision.reason} at '{path.current_node}'", extra={"path_id": path.id})
            path.complete()
        elif decision.kind == DecisionKind.AUTOMATED:
            self._apply(path, decision.chosen, decision.reason)
        else:
            self._request_decision(path, decision.candidates)

    def _request_decision(
        self,
        path: ExecutionPath,
        candidates: list[CandidateTransition],
        previous: _PendingDecision | None = None,
        feedback: list[dict[str, Any]] | None = None,
    ) -> None:
        if self.agent is None:
            raise AgentUnavailableError(
                f"'{path.current_node}' needs an agent decision and no agent is configured",
                path_id=path.id,
            )
        try:
            catalogue = self.builder.build_catalogue(path.current_node, candidates)
        except ValueError as e:
            raise AgentProtocolError(
                f"Cannot offer tools at '{path.current_node}': {e}", path_id=path.id
            ) from e
        turn = previous.turn + 1 if previous else 0
        request = self.builder.build_request(
            path, catalogue, self._next_request_id(), turn=turn, feedback=feedback
        )
        path.set_status(PathStatus.WAITING_FOR_AGENT)
        task = asyncio.create_task(self.agent.decide(request))
        self.agent_invocations += 1
        self._pending[path.id] = _PendingDecision(
            request=request,
            task=task,
            catalogue=catalogue,
            turn=turn,
            invalid_calls=previous.invalid_calls if previous else 0,
            tool_calls=previous.tool_calls if previous else 0,
            feedback=list(feedback or []),
        )
        task.add_done_callback(
            lambda t, path_id=path.id, request_id=request.request_id: self._on_agent_done(
                path_id, request_id, t
            )
        )
        logger.info(
            f"🤖 Path {path.id} waiting for agent at '{path.current_node}' ({request.request_id})",
            extra={"path_id": path.id, "node": path.current_node, "request_id": request.request_id},
        )

    def _on_agent_done(self, path_id: str, request_id: str, task: asyncio.Task) -> None:
        pending = self._pending.get(path_id)
        if pending is None or pending.request.request_id != request_id:
            # Abandoned request
            if not task.cancelled() and task.exception() is not None:
                logger.debug(f"Discarding failed response for abandoned request {request_id}")
            return
        self._arrivals.append((path_id, request_id))
        self._wakeup.set()

    def _next_arrival(self) -> tuple[ExecutionPath, _PendingDecision] | None:
        while self._arrivals:
            path_id, request_id = self._arrivals.popleft()
            pending = self._pending.get(path_id)
            if pending is not None and pending.request.request_id == request_id:
                del self._pending[path_id]
                return self.paths[path_id], pending
        self._wakeup.clear()
        return None

    def _response_of(self, path: ExecutionPath, pending: _PendingDecision) -> AgentResponse:
        task = pending.task
        if task.cancelled():
            raise AgentUnavailableError(
                f"Agent request {pending.request.request_id} was cancelled", path_id=path.id
            )
        exc = task.exception()
        if isinstance(exc, AgentUnavailableError):
            exc.path_id = path.id
            raise exc
        if exc is not None:
            raise AgentUnavailableError(f"Agent call failed: {exc}", path_id=path.id) from exc
        response = task.result()
        if response.request_id != pending.request.request_id:
            raise AgentProtocolError(
                f"Response for {response.request_id} does not answer {pending.request.request_id}",
                path_id=path.id,
            )
        return response

    def _handle_response(self, path: ExecutionPath, pending: _PendingDecision) -> None:
        response = self._response_of(path, pending)
        path.set_status(PathStatus.ACTIVE)
        node = path.current_node

        try:
            outcome = self.dispatcher.dispatch(path, pending.catalogue, response)
        except DecisionError as e:
            pending.invalid_calls += 1
            if pending.invalid_calls > self.limits.max_tool_retries:
                raise AgentProtocolError(
                    f"{pending.invalid_calls} invalid tool calls at '{node}' "
                    f"(max_tool_retries={self.limits.max_tool_retries}). Last error: {e}",
                    path_id=path.id,
                ) from e
            logger.warning(
                f"Invalid tool call from agent at '{node}' "
                f"({pending.invalid_calls}/{self.limits.max_tool_retries}): {e}",
                extra={"path_id": path.id, "node": node, "tool": response.tool_name},
            )
            feedback = pending.feedback + [
                {"tool": response.tool_name, "error": str(e), "error_code": e.code}
            ]
            candidates, _ = self.evaluator.candidates(node, self.store)
            self._request_decision(path, candidates, previous=pending, feedback=feedback)
            return

        if outcome.is_transition:
            self._apply(path, outcome.candidate, outcome.reason)
            return

        pending.tool_calls += 1
        if pending.tool_calls > self.limits.max_agent_turns:
            raise AgentProtocolError(
                f"Agent made {pending.tool_calls} tool calls at '{node}' without choosing a transition "
                f"(max_agent_turns={self.limits.max_agent_turns})",
                path_id=path.id,
            )
        logger.info(
            f"🔧 {outcome.tool_name} at '{node}'",
            extra={"path_id": path.id, "node": node, "tool": outcome.tool_name},
        )
        candidates, _ = self.evaluator.candidates(node, self.store)
        self._request_decision(
            path, candidates, previous=pending, feedback=pending.feedback + [outcome.feedback()]
        )

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, path_id: str | None = None) -> None:
        """
        Cancel one path, or every path when ``path_id`` is None.

        Takes effect between steps. A cancelled path fails with CancelledError
        and its agent request, if any, is abandoned.
        """
        if path_id is not None and path_id not in self.paths:
            raise KeyError(f"Unknown path '{path_id}'")
        self._cancel_requests.append(path_id)
        self._wakeup.set()

    def _apply_cancellations(self) -> None:
        while self._cancel_requests:
            path_id = self._cancel_requests.popleft()
            targets = [self.paths[path_id]] if path_id is not None else list(self.paths.values())
            for path in targets:
                if not path.is_final:
                    self._fail(path, ExecutionCancelledError("Execution cancelled", path_id=path.id))

    def _apply_timeout(self) -> bool:
        if self.elapsed_ms() < self.limits.timeout_ms:
            return False
        for path in self.live_paths():
            self._fail(
                path,
                ExecutionTimeoutError(
                    f"Execution exceeded timeout_ms={self.limits.timeout_ms}", path_id=path.id
                ),
            )
        return True

    def _guarded(self, path: ExecutionPath, fn: Callable[..., Any], *args: Any) -> Any:
        """Run one unit of work for ``path``. Any failure stays with that path."""
        try:
            return fn(*args)
        except PathError as e:
            self._fail(path, e)
        except Exception as e:
            logger.exception(f"✗ Path {path.id}: unexpected error at '{path.current_node}'")
            if not path.is_final:
                self._fail(path, PathCrashedError(f"{type(e).__name__}: {e}", path_id=path.id))

    async def step(self) -> bool:
        """
        Run one unit of work: apply one agent response, or advance one path.

        Returns:
            False when nothing could progress (every live path is waiting).
        """
        if not self.started:
            self.start()
        # Let agent tasks run
        await asyncio.sleep(0)
        self._apply_cancellations()

        arrival = self._next_arrival()
        if arrival is not None:
            path, pending = arrival
            self._guarded(path, self._handle_response, path, pending)
            self._emit_snapshot()
            return True

        selected = self._select()
        if selected is None:
            return False
        path, decision = selected
        self._guarded(path, self._advance, path, decision)
        self._emit_snapshot()
        return True

    async def run(self) -> ExecutionResult:
        """Run until every path is final or the timeout elapses."""
        try:
            self.start()
        except EngineError as e:
            logger.error(f"✗ Execution aborted: {e}")
            return self._result(error=e)

        set_trace_context(execution_id=self.execution_id, graph=self.graph.title)
        try:
            while self.live_paths():
                if self._apply_timeout():
                    break
                progressed = await self.step()
                if not progressed and self.live_paths():
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=self._remaining_seconds())
                    except TimeoutError:
                        logger.debug("Timed out waiting for agent responses")
        finally:
            for pending in self._pending.values():
                pending.task.cancel()
            self._pending.clear()

        result = self._result()
        status = "✓" if result.success else "✗"
        logger.info(
            f"{status} Execution finished: {len(result.paths)} paths, "
            f"{result.steps_executed} steps, {result.agent_invocations} agent calls, {result.elapsed_ms}ms"
        )
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def snapshot(self) -> VisualizationSnapshot:
        active_by_node: dict[str, list[str]] = {}
        available = []
        for path in self.paths.values():
            if path.is_final:
                continue
            active_by_node.setdefault(path.current_node, []).append(path.id)
            decision = self._decide(path)
            for candidate in decision.candidates:
                available.append(
                    AvailableTransition(
                        path_id=path.id,
                        node=path.current_node,
                        targets=list(candidate.targets),
                        label=candidate.label,
                        condition=candidate.condition,
                        automated=decision.is_automated and candidate is decision.chosen,
                    )
                )
        return VisualizationSnapshot(
            step=self.total_steps,
            elapsed_ms=self.elapsed_ms(),
            paths=[
                PathSnapshot(
                    id=p.id,
                    status=p.status,
                    current_node=p.current_node,
                    step_count=p.step_count,
                    parent_id=p.parent_id,
                    error_code=p.error_code,
                )
                for p in self.paths.values()
            ],
            node_visits=dict(self.node_invocations),
            active_paths_by_node=active_by_node,
            available_transitions=available,
        )

    def _emit_snapshot(self) -> None:
        if self.on_snapshot is not None:
            self.on_snapshot(self.snapshot())

    def _result(self, error: MachinaError | None = None) -> ExecutionResult:
        paths = list(self.paths.values())
        return ExecutionResult(
            success=error is None and bool(paths) and all(p.status == PathStatus.COMPLETED for p in paths),
            paths=paths,
            steps_executed=self.total_steps,
            agent_invocations=self.agent_invocations,
            node_invocation_counts=dict(self.node_invocations),
            warnings=list(self.warnings),
            store=self.store.snapshot(),
            elapsed_ms=self.elapsed_ms(),
            error=str(error) if error else None,
            error_code=error.code if error else None,
        )
