"""
Resource graph builder

Turns a parsed Document into a ResourceGraph. Every reference is checked
statically: undeclared nodes and variables, unknown functions, bad arity and
cycles are all build errors, raised before anything is evaluated against
state or providers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from stratum.error_msg import (
    BuildError,
    BuildErrors,
    CyclicDependency,
    DuplicateIdentifier,
    EvaluationError,
    MalformedExpression,
    MissingVariable,
    UnknownProviderType,
    UnknownReference,
)
from stratum.functions import FunctionRegistry
from stratum.graph.ir import LifecyclePolicy, ResourceGraph, ResourceNode
from stratum.parser import (
    Document,
    ECall,
    EList,
    ELiteral,
    EReference,
    Expression,
    ResourceDeclaration,
)

logger = logging.getLogger("stratum.graph")


class GraphBuilder:
    """Build a validated, acyclic ResourceGraph from declarations"""

    def __init__(self, providers, functions: Optional[FunctionRegistry] = None):
        self.providers = providers
        self.functions = functions or FunctionRegistry()

    def build(self, document: Document, variables: Optional[Mapping[str, Any]] = None) -> ResourceGraph:
        errors: List[BuildError] = []
        overrides = dict(variables or {})

        declared_variables = self._check_unique_variables(document, errors)
        resolved_variables = self._resolve_variables(document, overrides, errors)
        addresses = self._check_unique_resources(document, errors)

        graph = ResourceGraph(variables=resolved_variables, outputs=list(document.outputs))
        dependencies: Dict[str, List[str]] = {}

        for declaration in document.resources:
            if graph.index.get(declaration.address) is not None:
                continue
            provider_name = self._provider_for(declaration, errors)
            lifecycle = self._lifecycle(declaration, errors)
            deps = self._scan_resource(declaration, declared_variables, addresses, errors)
            dependencies[declaration.address] = deps
            graph.add_node(
                ResourceNode(
                    node_id=declaration.address,
                    resource_type=declaration.resource_type,
                    name=declaration.name,
                    attributes=dict(declaration.attributes),
                    dependencies=tuple(deps),
                    lifecycle=lifecycle,
                    provider=provider_name,
                    position=declaration.position,
                )
            )

        seen_outputs: set[str] = set()
        for output in document.outputs:
            if output.name in seen_outputs:
                errors.append(
                    DuplicateIdentifier(
                        f"Output '{output.name}' declared more than once",
                        location=output.position,
                        symbol=output.name,
                    )
                )
            seen_outputs.add(output.name)
            self._scan_expression(output.value, f"output.{output.name}", declared_variables, addresses, errors)

        graph.provider_configs = self._provider_configs(document, resolved_variables, errors)

        if errors:
            if len(errors) == 1:
                raise errors[0]
            raise BuildErrors(errors)

        cycle = find_cycle(dependencies)
        if cycle:
            raise CyclicDependency(cycle)

        for node_id, deps in dependencies.items():
            for dependency in deps:
                graph.add_edge(node_id, dependency)

        logger.debug(
            "Built resource graph: %d nodes, %d edges, %d variables",
            len(graph.nodes),
            len(graph.edges),
            len(graph.variables),
        )
        return graph

    # ----------------- Declarations -----------------

    def _check_unique_variables(self, document: Document, errors: List[BuildError]) -> set[str]:
        names: set[str] = set()
        for variable in document.variables:
            if variable.name in names:
                errors.append(
                    DuplicateIdentifier(
                        f"Variable '{variable.name}' declared more than once",
                        location=variable.position,
                        symbol=variable.name,
                    )
                )
            names.add(variable.name)
        return names

    def _check_unique_resources(self, document: Document, errors: List[BuildError]) -> set[str]:
        addresses: set[str] = set()
        for declaration in document.resources:
            if declaration.address in addresses:
                errors.append(
                    DuplicateIdentifier(
                        f"Resource '{declaration.address}' declared more than once",
                        location=declaration.position,
                        symbol=declaration.address,
                    )
                )
            addresses.add(declaration.address)
        return addresses

    def _resolve_variables(
        self, document: Document, overrides: Dict[str, Any], errors: List[BuildError]
    ) -> Dict[str, Any]:
        from stratum.evaluator import ExpressionEvaluator

        evaluator = ExpressionEvaluator(self.functions, {})
        resolved: Dict[str, Any] = {}
        for variable in document.variables:
            if variable.name in resolved:
                continue
            if variable.name in overrides:
                resolved[variable.name] = overrides[variable.name]
                continue
            if variable.default is None:
                errors.append(
                    MissingVariable(
                        f"No value for variable '{variable.name}'",
                        location=variable.position,
                        symbol=variable.name,
                    )
                )
                continue
            if variable.default.references():
                errors.append(
                    MalformedExpression(
                        f"Default of variable '{variable.name}' cannot contain references",
                        location=variable.position,
                        symbol=variable.name,
                    )
                )
                continue
            try:
                resolved[variable.name] = evaluator.evaluate(variable.default, {}, owner=f"var.{variable.name}")
            except EvaluationError as e:
                errors.append(
                    MalformedExpression(e.msg, location=variable.position, symbol=variable.name)
                )

        unused = sorted(set(overrides) - {variable.name for variable in document.variables})
        if unused:
            logger.warning("Values given for undeclared variables: %s", ", ".join(unused))
        return resolved

    def _provider_for(self, declaration: ResourceDeclaration, errors: List[BuildError]) -> str:
        try:
            return self.providers.resolve(declaration.resource_type).name
        except KeyError:
            errors.append(
                UnknownProviderType(
                    f"No provider handles resource type '{declaration.resource_type}'",
                    location=declaration.position,
                    symbol=declaration.address,
                )
            )
            return ""

    def _lifecycle(self, declaration: ResourceDeclaration, errors: List[BuildError]) -> LifecyclePolicy:
        flags: Dict[str, bool] = {}
        for key in ("create_before_destroy", "prevent_destroy"):
            expression = declaration.lifecycle.get(key)
            if expression is None:
                flags[key] = False
            elif isinstance(expression, ELiteral) and isinstance(expression.value, bool):
                flags[key] = expression.value
            else:
                errors.append(
                    MalformedExpression(
                        f"lifecycle.{key} of {declaration.address} must be a literal boolean",
                        location=declaration.position,
                        symbol=declaration.address,
                    )
                )
                flags[key] = False

        ignored: set[str] = set()
        expression = declaration.lifecycle.get("ignore_changes")
        if expression is not None:
            items = expression.items if isinstance(expression, EList) else None
            if items is None:
                errors.append(
                    MalformedExpression(
                        f"lifecycle.ignore_changes of {declaration.address} must be a list",
                        location=declaration.position,
                        symbol=declaration.address,
                    )
                )
                items = []
            for item in items:
                if isinstance(item, ELiteral) and isinstance(item.value, str):
                    ignored.add(item.value)
                elif isinstance(item, EReference) and len(item.parts) == 1:
                    ignored.add(str(item.parts[0]))
                else:
                    errors.append(
                        MalformedExpression(
                            f"lifecycle.ignore_changes of {declaration.address} must list attribute names",
                            location=declaration.position,
                            symbol=declaration.address,
                        )
                    )
            unknown = sorted(ignored - set(declaration.attributes))
            if unknown:
                logger.warning(
                    "%s ignores changes to undeclared attribute(s): %s",
                    declaration.address,
                    ", ".join(unknown),
                )

        return LifecyclePolicy(
            create_before_destroy=flags["create_before_destroy"],
            prevent_destroy=flags["prevent_destroy"],
            ignore_changes=frozenset(ignored),
        )

    # ----------------- Static reference scan -----------------

    def _scan_resource(
        self,
        declaration: ResourceDeclaration,
        variables: set[str],
        addresses: set[str],
        errors: List[BuildError],
    ) -> List[str]:
        owner = declaration.address
        deps: List[str] = []

        def add(node_id: str) -> None:
            if node_id not in deps:
                deps.append(node_id)

        for expression in declaration.attributes.values():
            for node_id in self._scan_expression(expression, owner, variables, addresses, errors):
                add(node_id)

        for item in declaration.depends_on:
            if not (isinstance(item, EReference) and len(item.parts) == 2 and not item.is_variable):
                errors.append(
                    MalformedExpression(
                        f"depends_on of {owner} must list resource addresses",
                        location=declaration.position,
                        symbol=owner,
                    )
                )
                continue
            for node_id in self._scan_expression(item, owner, variables, addresses, errors):
                add(node_id)

        if owner in deps:
            errors.append(CyclicDependency([owner, owner]))
            deps.remove(owner)
        return deps

    def _scan_expression(
        self,
        expression: Expression,
        owner: str,
        variables: set[str],
        addresses: set[str],
        errors: List[BuildError],
    ) -> List[str]:
        found: List[str] = []
        for sub in expression.walk():
            if isinstance(sub, ECall):
                self._check_call(sub, owner, errors)
            if not isinstance(sub, EReference):
                continue
            if not sub.is_well_formed:
                errors.append(
                    MalformedExpression(
                        f"'{sub.to_syntax()}' in {owner} is not a resource or variable reference",
                        location=sub.position,
                        symbol=owner,
                    )
                )
                continue
            if sub.is_variable:
                if sub.variable_name not in variables:
                    errors.append(
                        UnknownReference(
                            f"{owner} references undeclared variable '{sub.variable_name}'",
                            location=sub.position,
                            symbol=sub.to_syntax(),
                        )
                    )
                continue
            if sub.node_id not in addresses:
                errors.append(
                    UnknownReference(
                        f"{owner} references undeclared resource '{sub.node_id}'",
                        location=sub.position,
                        symbol=sub.node_id,
                    )
                )
                continue
            if sub.node_id not in found:
                found.append(sub.node_id)
        return found

    def _check_call(self, call: ECall, owner: str, errors: List[BuildError]) -> None:
        if not self.functions.has(call.identifier):
            errors.append(
                MalformedExpression(
                    f"Unknown function '{call.identifier}' in {owner}",
                    location=call.position,
                    symbol=call.identifier,
                )
            )
            return
        try:
            self.functions.resolve(call.identifier).arity.validate(len(call.arguments))
        except ValueError as e:
            errors.append(
                MalformedExpression(
                    f"{call.identifier} in {owner}: {e}", location=call.position, symbol=call.identifier
                )
            )

    # ----------------- Provider configuration -----------------

    def _provider_configs(
        self, document: Document, variables: Dict[str, Any], errors: List[BuildError]
    ) -> Dict[str, Dict[str, Any]]:
        from stratum.evaluator import ExpressionEvaluator

        evaluator = ExpressionEvaluator(self.functions, variables)
        configs: Dict[str, Dict[str, Any]] = {}
        for declaration in document.providers:
            owner = f"provider.{declaration.name}"
            if declaration.name in configs:
                errors.append(
                    DuplicateIdentifier(
                        f"Provider '{declaration.name}' configured more than once",
                        location=declaration.position,
                        symbol=declaration.name,
                    )
                )
                continue
            if not self.providers.has_provider(declaration.name):
                errors.append(
                    UnknownProviderType(
                        f"Unknown provider '{declaration.name}'",
                        location=declaration.position,
                        symbol=declaration.name,
                    )
                )
                continue
            config: Dict[str, Any] = {}
            for key, expression in declaration.attributes.items():
                bad = [ref for ref in expression.references() if not ref.is_variable]
                if bad:
                    errors.append(
                        MalformedExpression(
                            f"{owner}.{key} may only reference variables",
                            location=declaration.position,
                            symbol=owner,
                        )
                    )
                    continue
                try:
                    config[key] = evaluator.evaluate(expression, {}, owner=owner)
                except EvaluationError as e:
                    errors.append(MalformedExpression(e.msg, location=declaration.position, symbol=owner))
            configs[declaration.name] = config
        return configs


def find_cycle(dependencies: Mapping[str, List[str]]) -> List[str]:
    """Iterative DFS colouring; returns one cycle as a closed path, or []."""
    white, grey, black = 0, 1, 2
    colour = {node: white for node in dependencies}

    for root in dependencies:
        if colour[root] != white:
            continue
        path: List[str] = [root]
        iterators = [iter(dependencies[root])]
        colour[root] = grey
        while iterators:
            advanced = False
            for dependency in iterators[-1]:
                state = colour.get(dependency, black)
                if state == grey:
                    start = path.index(dependency)
                    return path[start:] + [dependency]
                if state == white:
                    colour[dependency] = grey
                    path.append(dependency)
                    iterators.append(iter(dependencies.get(dependency, [])))
                    advanced = True
                    break
            if not advanced:
                colour[path.pop()] = black
                iterators.pop()
    return []
