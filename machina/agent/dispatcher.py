"""
Tool execution dispatcher - validate and apply an agent's tool call.

Every call is checked against the catalogue built for the path's current
node before anything changes:
- Transition tools move the path: the chosen edge is recorded with its
  reason, ``current_node`` is updated and history appended. Extra targets of
  a multi-segment edge fork new paths. A transition name that was not offered
  raises UnknownTransitionError.
- Read tools return the value or the ``"<not set>"`` sentinel and never raise.
- Write tools need write permission on the attribute, otherwise they raise
  PermissionDeniedError. The value goes into the shared store before the call
  returns.
- Meta tools go to the MetaToolRegistry and the DefinitionEditor.
- Constructed tools validate their input against their schema and return an
  acknowledgement of the described behavior. No code runs.

Arguments are validated with JSON Schema (Draft 7).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jsonschema

from machina.agent.context_builder import TRANSITION_PREFIX, WRITE_PREFIX
from machina.agent.meta_tools import (
    CONSTRUCT_TOOL,
    GET_DEFINITION,
    UPDATE_DEFINITION,
    DefinitionEditor,
    MetaToolRegistry,
)
from machina.agent.protocol import AgentResponse, CatalogueEntry, ToolCatalogue, ToolKind
from machina.errors import InvalidToolCallError, PermissionDeniedError, UnknownTransitionError
from machina.graph.model import GraphModel
from machina.graph.transition import CandidateTransition, TransitionEvaluator
from machina.runtime.path import ExecutionPath, HistoryEntry
from machina.runtime.shared_state import NOT_SET, SharedAttributeStore, qualify

logger = logging.getLogger(__name__)

NOT_SET_SENTINEL = "<not set>"

_DECLARED_TYPE_SCHEMAS = {
    "number": {"type": "number"},
    "float": {"type": "number"},
    "integer": {"type": "integer"},
    "int": {"type": "integer"},
    "boolean": {"type": "boolean"},
    "bool": {"type": "boolean"},
    "string": {"type": "string"},
    "str": {"type": "string"},
    "array": {"type": "array"},
    "list": {"type": "array"},
    "object": {"type": "object"},
}


def schema_errors(instance: Any, schema: dict[str, Any]) -> list[str]:
    """Draft 7 validation errors for ``instance``, as readable strings."""
    validator = jsonschema.Draft7Validator(schema)
    errors = []
    for error in validator.iter_errors(instance):
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        errors.append(f"{path}: {error.message}")
    return errors


@dataclass
class ToolOutcome:
    """What a dispatched call did."""

    kind: ToolKind
    tool_name: str
    result: Any = None
    candidate: CandidateTransition | None = None
    reason: str = ""

    @property
    def is_transition(self) -> bool:
        return self.kind == ToolKind.TRANSITION

    def feedback(self) -> dict[str, Any]:
        return {"tool": self.tool_name, "result": self.result}


class ToolExecutionDispatcher:
    """Validates and applies tool calls against shared execution state."""

    def __init__(
        self,
        graph: GraphModel,
        store: SharedAttributeStore,
        evaluator: TransitionEvaluator,
        registry: MetaToolRegistry,
        editor: DefinitionEditor,
    ):
        self.graph = graph
        self.store = store
        self.evaluator = evaluator
        self.registry = registry
        self.editor = editor

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def resolve(self, catalogue: ToolCatalogue, response: AgentResponse, path_id: str) -> CatalogueEntry:
        """Find the catalogue entry for a call or raise the matching decision error."""
        name = response.tool_name
        entry = catalogue.get(name)
        if entry is not None:
            return entry
        if name.startswith(TRANSITION_PREFIX):
            raise UnknownTransitionError(
                f"'{name}' is not an offered transition. Offered: "
                f"{[e.name for e in catalogue.of_kind(ToolKind.TRANSITION)]}",
                path_id=path_id,
            )
        if name.startswith(WRITE_PREFIX):
            raise PermissionDeniedError(f"No write access through '{name}'", path_id=path_id)
        raise InvalidToolCallError(f"Unknown tool '{name}'", path_id=path_id)

    def _check_arguments(self, entry: CatalogueEntry, arguments: dict[str, Any], path_id: str) -> None:
        errors = schema_errors(arguments, entry.tool.parameters or {"type": "object"})
        if errors:
            raise InvalidToolCallError(
                f"Invalid arguments for '{entry.name}': {'; '.join(errors)}", path_id=path_id
            )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self, path: ExecutionPath, catalogue: ToolCatalogue, response: AgentResponse
    ) -> ToolOutcome:
        """
        Apply one tool call for ``path``.

        Transition calls are validated here and applied by
        :meth:`apply_transition`, which the engine calls once it has checked
        its limits.

        Raises:
            UnknownTransitionError: The transition was not offered.
            PermissionDeniedError: A write the node is not allowed to make.
            InvalidToolCallError: Unknown tool or malformed arguments.
        """
        entry = self.resolve(catalogue, response, path.id)
        arguments = response.arguments if isinstance(response.arguments, dict) else {}
        logger.debug(f"Dispatching {entry.name} for path {path.id}: {arguments}")

        if entry.kind == ToolKind.TRANSITION:
            self._check_arguments(entry, arguments, path.id)
            reason = arguments.get("reason") or response.reasoning or "Agent decision"
            return ToolOutcome(
                kind=entry.kind, tool_name=entry.name, candidate=entry.candidate, reason=reason
            )
        if entry.kind == ToolKind.READ:
            return ToolOutcome(kind=entry.kind, tool_name=entry.name, result=self._read(entry, arguments))
        if entry.kind == ToolKind.WRITE:
            return ToolOutcome(
                kind=entry.kind, tool_name=entry.name, result=self._write(entry, arguments, path.id)
            )
        if entry.kind == ToolKind.META:
            return ToolOutcome(
                kind=entry.kind, tool_name=entry.name, result=self._meta(entry, arguments, path)
            )
        self._check_arguments(entry, arguments, path.id)
        return ToolOutcome(kind=entry.kind, tool_name=entry.name, result=self._dynamic(entry, arguments))

    def _read(self, entry: CatalogueEntry, arguments: dict[str, Any]) -> Any:
        ctx, perm = entry.context, entry.permissions
        attribute = arguments.get("attribute")
        if attribute is None:
            return {
                attr: (NOT_SET_SENTINEL if value is NOT_SET else value)
                for attr, value in self.store.namespace(ctx).items()
                if perm.can_read_field(attr)
            }
        attribute = str(attribute)
        if not perm.can_read_field(attribute):
            return NOT_SET_SENTINEL
        value = self.store.read(qualify(ctx, attribute))
        return NOT_SET_SENTINEL if value is NOT_SET else value

    def _write(self, entry: CatalogueEntry, arguments: dict[str, Any], path_id: str) -> dict[str, Any]:
        ctx, perm = entry.context, entry.permissions
        attribute = arguments.get("attribute")
        if not isinstance(attribute, str) or not attribute:
            raise InvalidToolCallError(f"'{entry.name}' needs a string 'attribute'", path_id=path_id)
        if not perm.can_write_field(attribute):
            raise PermissionDeniedError(f"No write access to {ctx}.{attribute}", path_id=path_id)
        self._check_arguments(entry, arguments, path_id)

        value = arguments["value"]
        declared = self.graph.get_node(ctx).get_attribute(attribute)
        if declared is not None and declared.declared_type:
            type_schema = _DECLARED_TYPE_SCHEMAS.get(declared.declared_type.lower())
            if type_schema is not None and schema_errors(value, type_schema):
                raise InvalidToolCallError(
                    f"{ctx}.{attribute} is declared {declared.declared_type}, got {value!r}",
                    path_id=path_id,
                )

        change = self.store.write(qualify(ctx, attribute), value, path_id=path_id)
        logger.info(f"✎ Path {path_id} wrote {change.key} = {value!r}")
        return {"attribute": attribute, "value": value, "revision": change.revision}

    def _meta(self, entry: CatalogueEntry, arguments: dict[str, Any], path: ExecutionPath) -> Any:
        self._check_arguments(entry, arguments, path.id)
        if entry.name == GET_DEFINITION:
            return self.editor.get_definition()
        if entry.name == UPDATE_DEFINITION:
            return self.editor.update_definition(arguments, path_id=path.id)
        if entry.name == CONSTRUCT_TOOL:
            input_schema = arguments["input_schema"]
            try:
                jsonschema.Draft7Validator.check_schema(input_schema)
                descriptor = self.registry.register(
                    name=arguments["name"],
                    description=arguments["description"],
                    input_schema=input_schema,
                    strategy=arguments["implementation_strategy"],
                    implementation_details=arguments.get("implementation_details", ""),
                    path_id=path.id,
                    node=path.current_node,
                )
            except (ValueError, jsonschema.SchemaError) as e:
                return {"success": False, "error": str(e)}
            return {"success": True, "tool_id": descriptor.id, "name": descriptor.name}
        raise InvalidToolCallError(f"Unknown meta tool '{entry.name}'", path_id=path.id)

    def _dynamic(self, entry: CatalogueEntry, arguments: dict[str, Any]) -> dict[str, Any]:
        descriptor = self.registry.get(entry.name)
        if descriptor is None:
            raise InvalidToolCallError(f"Constructed tool '{entry.name}' is not registered")
        return {
            "tool": descriptor.name,
            "tool_id": descriptor.id,
            "strategy": str(descriptor.strategy),
            "behavior": descriptor.description,
            "details": descriptor.implementation_details,
            "input": arguments,
            "status": "acknowledged",
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_transition(
        self,
        path: ExecutionPath,
        candidate: CandidateTransition,
        reason: str,
        timestamp: str,
        spawn: Callable[[ExecutionPath], ExecutionPath],
    ) -> list[ExecutionPath]:
        """
        Move ``path`` along ``candidate`` and fork for each extra target.

        ``spawn`` creates a copy of the path before the move. Forks get their
        own history entry for their segment.

        Returns:
            The forked paths, in segment order.
        """
        from_node = path.current_node
        landings = [self.evaluator.resolve_entry(target) for target in candidate.targets]

        def entry_for(target: str, landing: str) -> HistoryEntry:
            entry_reason = reason
            if landing != target:
                entry_reason += f" (entered '{target}' at '{landing}')"
            return HistoryEntry(
                from_node=from_node,
                to_node=landing,
                transition_label=candidate.label,
                timestamp=timestamp,
                reason=entry_reason,
            )

        forks = []
        for target, landing in zip(candidate.targets[1:], landings[1:], strict=True):
            fork = spawn(path)
            fork.record_transition(entry_for(target, landing), self.store.revision)
            forks.append(fork)

        path.record_transition(entry_for(candidate.targets[0], landings[0]), self.store.revision)
        logger.info(f"→ Path {path.id}: {from_node} → {landings[0]} ({reason})")
        for fork in forks:
            logger.info(f"⑂ Path {fork.id} forked from {path.id} → {fork.current_node}")
        return forks
