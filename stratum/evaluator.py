"""
Expression evaluator

Resolves node attribute expressions to concrete values, walking the graph
dependencies first. Computed attributes of nodes that do not exist yet are
UNKNOWN ("known after apply"); unknown values propagate through function
calls and conditionals and are re-resolved by the execution engine right
before the provider call.

A failing node does not abort evaluation: it is recorded with its error and
every transitive dependent is skipped.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from stratum.error_msg import EvaluationError
from stratum.functions import FunctionRegistry
from stratum.graph.ir import ResourceGraph, ResourceNode
from stratum.parser import (
    ECall,
    EConditional,
    EList,
    ELiteral,
    EMap,
    EReference,
    Expression,
)

logger = logging.getLogger("stratum.evaluator")


class _Unknown:
    """Singleton marker for values only known after apply."""

    _instance: Optional["_Unknown"] = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __copy__(self) -> "_Unknown":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Unknown":
        return self

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


def is_known(value: Any) -> bool:
    """True when the value contains no UNKNOWN anywhere."""
    if value is UNKNOWN:
        return False
    if isinstance(value, dict):
        return all(is_known(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return all(is_known(item) for item in value)
    return True


# Values of one node: attribute name -> value. ``scope`` maps node ids to those.
NodeValues = Dict[str, Any]
Projection = Callable[[ResourceNode, NodeValues], NodeValues]


@dataclass
class EvaluationResult:
    """Outcome of a graph-wide evaluation."""

    values: Dict[str, NodeValues] = field(default_factory=dict)
    projected: Dict[str, NodeValues] = field(default_factory=dict)
    errors: Dict[str, EvaluationError] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.skipped


class ExpressionEvaluator:
    """Evaluate expressions against variables and a scope of node values"""

    def __init__(self, functions: Optional[FunctionRegistry] = None, variables: Optional[Mapping[str, Any]] = None):
        self.functions = functions or FunctionRegistry()
        self.variables = dict(variables or {})

    def evaluate(self, expression: Expression, scope: Mapping[str, NodeValues], owner: str = "") -> Any:
        if isinstance(expression, ELiteral):
            return expression.value

        if isinstance(expression, EReference):
            return self._resolve_reference(expression, scope, owner)

        if isinstance(expression, EList):
            return [self.evaluate(item, scope, owner) for item in expression.items]

        if isinstance(expression, EMap):
            return {key: self.evaluate(value, scope, owner) for key, value in expression.entries}

        if isinstance(expression, EConditional):
            predicate = self.evaluate(expression.predicate, scope, owner)
            if predicate is UNKNOWN:
                return UNKNOWN
            if not isinstance(predicate, bool):
                raise EvaluationError(
                    f"Condition must be a boolean, got {type(predicate).__name__}",
                    node_id=owner or None,
                    stack_trace=[(expression.predicate.to_syntax(), "")],
                )
            branch = expression.when_true if predicate else expression.when_false
            return self.evaluate(branch, scope, owner)

        if isinstance(expression, ECall):
            return self._call(expression, scope, owner)

        raise EvaluationError(f"Unsupported expression {type(expression).__name__}", node_id=owner or None)

    def _resolve_reference(self, reference: EReference, scope: Mapping[str, NodeValues], owner: str) -> Any:
        if reference.is_variable:
            name = reference.variable_name
            if name not in self.variables:
                raise EvaluationError(
                    f"Variable '{name}' has no value", node_id=owner or None,
                    stack_trace=[(reference.to_syntax(), reference.position)],
                )
            current: Any = self.variables[name]
        else:
            if reference.node_id not in scope:
                raise EvaluationError(
                    f"'{reference.node_id}' has not been evaluated", node_id=owner or None,
                    stack_trace=[(reference.to_syntax(), reference.position)],
                )
            current = scope[reference.node_id]

        for step in reference.path:
            if current is UNKNOWN:
                return UNKNOWN
            if isinstance(step, int):
                if not isinstance(current, list) or not -len(current) <= step < len(current):
                    raise EvaluationError(
                        f"Index {step} out of range in '{reference.to_syntax()}'",
                        node_id=owner or None,
                        stack_trace=[(reference.to_syntax(), reference.position)],
                    )
                current = current[step]
            else:
                if not isinstance(current, dict) or step not in current:
                    raise EvaluationError(
                        f"Unsupported attribute '{step}' in '{reference.to_syntax()}'",
                        node_id=owner or None,
                        stack_trace=[(reference.to_syntax(), reference.position)],
                    )
                current = current[step]
        return current

    def _call(self, call: ECall, scope: Mapping[str, NodeValues], owner: str) -> Any:
        arguments = [self.evaluate(argument, scope, owner) for argument in call.arguments]
        try:
            spec = self.functions.resolve(call.identifier)
        except KeyError as e:
            raise EvaluationError(
                f"Unknown function '{call.identifier}'", node_id=owner or None,
                stack_trace=[(call.identifier, call.position)],
            ) from e

        if not spec.accepts_unknown and not all(is_known(argument) for argument in arguments):
            return UNKNOWN

        try:
            return self.functions.call(call.identifier, arguments)
        except EvaluationError:
            raise
        except Exception as e:
            raise EvaluationError(
                f"{call.identifier}: {e}", node_id=owner or None,
                stack_trace=[(call.to_syntax(), call.position)],
            ) from e

    def evaluate_node(self, node: ResourceNode, scope: Mapping[str, NodeValues]) -> NodeValues:
        return {
            name: self.evaluate(expression, scope, owner=node.node_id)
            for name, expression in node.attributes.items()
        }

    def evaluate_graph(
        self,
        graph: ResourceGraph,
        state: Optional[Mapping[str, Any]] = None,
        project: Optional[Projection] = None,
        nodes: Optional[Iterable[str]] = None,
    ) -> EvaluationResult:
        """
        Evaluate every node (or the ``nodes`` subset) in dependency order.

        ``project`` turns a node's desired values into the values its
        dependents see (desired attributes plus computed ones). Without it,
        computed attributes come from the state record of the node.
        """
        selected: Optional[Set[str]] = set(nodes) if nodes is not None else None
        if project is None:
            project = lambda node, desired: state_projection(node, desired, state)  # noqa: E731

        result = EvaluationResult()
        scope: Dict[str, NodeValues] = {}
        for node_id in graph.topological_order():
            if selected is not None and node_id not in selected:
                continue
            node = graph.node(node_id)

            blocked = [dep for dep in node.dependencies if dep in result.errors or dep in result.skipped]
            if blocked:
                root = blocked[0]
                cause = result.skipped.get(root, root)
                result.skipped[node_id] = cause
                logger.debug("Skipping %s: depends on failed %s", node_id, cause)
                continue

            try:
                desired = self.evaluate_node(node, scope)
            except EvaluationError as e:
                result.errors[node_id] = e
                logger.warning("Evaluation of %s failed: %s", node_id, e)
                continue

            result.values[node_id] = desired
            scope[node_id] = project(node, desired)
            result.projected[node_id] = scope[node_id]
        return result

    def evaluate_outputs(self, graph: ResourceGraph, scope: Mapping[str, NodeValues]) -> Dict[str, Any]:
        """Evaluate outputs; outputs whose inputs failed evaluate to errors."""
        outputs: Dict[str, Any] = {}
        for output in graph.outputs:
            try:
                outputs[output.name] = self.evaluate(output.value, scope, owner=f"output.{output.name}")
            except EvaluationError as e:
                logger.warning("Output %s could not be evaluated: %s", output.name, e)
                outputs[output.name] = UNKNOWN
        return outputs


def state_projection(node: ResourceNode, desired: NodeValues, state: Optional[Mapping[str, Any]]) -> NodeValues:
    """Desired values of ``node`` plus the computed values of its state record."""
    projected: NodeValues = dict(desired)
    record = (state or {}).get(node.node_id)
    if record is not None:
        projected.update(copy.deepcopy(record.computed))
        projected["id"] = record.resource_id
    return projected


def resolve_unknowns(
    evaluator: ExpressionEvaluator,
    node: ResourceNode,
    desired: NodeValues,
    scope: Mapping[str, NodeValues],
) -> NodeValues:
    """Re-evaluate attributes that were unknown at plan time."""
    resolved = dict(desired)
    for name, value in desired.items():
        if is_known(value) or name not in node.attributes:
            continue
        resolved[name] = evaluator.evaluate(node.attributes[name], scope, owner=node.node_id)
    return resolved
