"""
Diff planner

Compares the evaluated desired attributes of every node with its state
record and produces an ordered list of Create/Update/Destroy/NoOp actions.

Each action carries the keys of the actions it requires: applies follow the
applies of their dependencies, destroys follow the destroys of their
dependents and, when a node goes away, the applies that stop referencing it.
Replacements become a Destroy plus a Create whose relative order follows the
create-before-destroy flag. Nodes with plan errors lose their actions, and
everything that needed those actions is skipped.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from stratum.error_msg import PlanError, ProviderError, StratumException
from stratum.evaluator import UNKNOWN, ExpressionEvaluator
from stratum.functions import FunctionRegistry
from stratum.graph.hash import hash_graph
from stratum.graph.ir import ResourceGraph, ResourceNode
from stratum.providers import ProviderRegistry, ResourceSchema
from stratum.storage import StateRecord, StateSnapshot, utc_now

logger = logging.getLogger("stratum.planner")


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "noop"


_KIND_RANK = {ActionKind.NOOP: 0, ActionKind.DESTROY: 1, ActionKind.CREATE: 2, ActionKind.UPDATE: 3}


@dataclass(frozen=True)
class AttributeChange:
    before: Any
    after: Any
    requires_replacement: bool = False


@dataclass
class PlanAction:
    """One step of a plan, bound to a node identifier."""

    kind: ActionKind
    node_id: str
    resource_type: str
    provider: str = ""
    desired: Dict[str, Any] = field(default_factory=dict)
    prior: Optional[Dict[str, Any]] = None
    changes: Dict[str, AttributeChange] = field(default_factory=dict)
    resource_id: Optional[str] = None
    replacement: bool = False
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    deposed: bool = False
    requires: tuple[str, ...] = ()
    reason: str = ""
    dependencies: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        if self.deposed:
            return f"{self.kind.value}:{self.node_id}#{self.resource_id}"
        return f"{self.kind.value}:{self.node_id}"

    @property
    def is_apply(self) -> bool:
        return self.kind in (ActionKind.CREATE, ActionKind.UPDATE)


@dataclass
class Plan:
    """Ordered actions plus everything that kept nodes out of the plan."""

    actions: List[PlanAction] = field(default_factory=list)
    errors: List[StratumException] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    drift: Dict[str, Optional[Dict[str, AttributeChange]]] = field(default_factory=dict)
    destroy_mode: bool = False
    state_serial: int = 0
    state_lineage: str = ""
    config_digest: str = ""
    created_at: str = ""
    graph: Optional[ResourceGraph] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    targets: tuple[str, ...] = ()

    def summary(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in ActionKind}
        for action in self.actions:
            counts[action.kind.value] += 1
        counts["replace"] = sum(
            1 for a in self.actions if a.kind == ActionKind.CREATE and a.replacement
        )
        return counts

    @property
    def has_changes(self) -> bool:
        return any(action.kind != ActionKind.NOOP for action in self.actions)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.skipped

    def action(self, key: str) -> Optional[PlanAction]:
        for candidate in self.actions:
            if candidate.key == key:
                return candidate
        return None

    def actions_for(self, node_id: str) -> List[PlanAction]:
        return [action for action in self.actions if action.node_id == node_id]

    def kinds(self) -> Dict[str, List[str]]:
        """node id -> action kinds in plan order"""
        kinds: Dict[str, List[str]] = {}
        for action in self.actions:
            kinds.setdefault(action.node_id, []).append(action.kind.value)
        return kinds


@dataclass
class _Classification:
    kind: str  # create | update | noop | replace
    desired: Dict[str, Any]
    record: Optional[StateRecord] = None
    changes: Dict[str, AttributeChange] = field(default_factory=dict)
    reason: str = ""


def diff_attributes(
    prior: Mapping[str, Any], desired: Mapping[str, Any], schema: ResourceSchema
) -> Dict[str, AttributeChange]:
    """Per-attribute changes; computed attributes never diff."""
    changes: Dict[str, AttributeChange] = {}
    for key in sorted(set(prior) | set(desired)):
        if key in schema.computed_attributes:
            continue
        before, after = prior.get(key), desired.get(key)
        if before != after:
            changes[key] = AttributeChange(before, after, key in schema.replace_attributes)
    return changes


def apply_ignore_changes(desired: Dict[str, Any], prior: Mapping[str, Any], ignored: Iterable[str]) -> Dict[str, Any]:
    """Keep the recorded value of every ignored attribute."""
    adjusted = dict(desired)
    for key in ignored:
        if key in prior:
            adjusted[key] = prior[key]
        else:
            adjusted.pop(key, None)
    return adjusted


class DiffPlanner:
    """Side-effect free: plan() can be re-run any number of times."""

    def __init__(self, providers: ProviderRegistry, functions: Optional[FunctionRegistry] = None):
        self.providers = providers
        self.functions = functions or FunctionRegistry()

    def plan(
        self,
        graph: ResourceGraph,
        snapshot: StateSnapshot,
        destroy: bool = False,
        targets: Optional[Iterable[str]] = None,
        refresh: bool = False,
    ) -> Plan:
        plan = Plan(
            destroy_mode=destroy,
            state_serial=snapshot.serial,
            state_lineage=snapshot.lineage,
            config_digest=hash_graph(graph),
            created_at=utc_now(),
            graph=graph,
            variables=dict(graph.variables),
            targets=tuple(targets or ()),
        )
        records: Dict[str, StateRecord] = dict(snapshot.records)
        blocked: Dict[str, str] = {}

        for node_id, record in sorted(records.items()):
            if not self.providers.has(record.resource_type):
                self._error(
                    plan,
                    blocked,
                    PlanError(
                        f"state references resource type '{record.resource_type}' that no provider handles",
                        node_id,
                    ),
                )

        if refresh:
            records = self._refresh(plan, records, blocked)

        scope = self._scope(graph, records, destroy, plan.targets, plan)

        classified: Dict[str, _Classification] = {}
        if not destroy:
            classified = self._evaluate(graph, records, scope, plan)

        actions = self._actions(graph, records, scope, classified, destroy, plan, blocked)
        self._link(graph, records, scope, actions, plan, blocked)
        actions = self._prune(graph, actions, plan, blocked)
        plan.actions = self._order(graph, records, actions)

        logger.info(
            "Plan: %s",
            ", ".join(f"{count} {kind}" for kind, count in plan.summary().items() if count),
        )
        return plan

    # ----------------- Refresh -----------------

    def refresh(self, snapshot: StateSnapshot) -> Plan:
        """Read every recorded resource and report drift only."""
        plan = Plan(state_serial=snapshot.serial, state_lineage=snapshot.lineage, created_at=utc_now())
        blocked: Dict[str, str] = {}
        records = {k: v for k, v in snapshot.records.items() if self.providers.has(v.resource_type)}
        for node_id in sorted(set(snapshot.records) - set(records)):
            self._error(plan, blocked, PlanError("no provider handles the recorded resource type", node_id))
        self._refresh(plan, records, blocked)
        return plan

    def _refresh(
        self, plan: Plan, records: Dict[str, StateRecord], blocked: Dict[str, str]
    ) -> Dict[str, StateRecord]:
        refreshed = dict(records)
        for node_id, record in sorted(records.items()):
            if node_id in blocked:
                continue
            provider = self.providers.resolve(record.resource_type)
            try:
                observed = provider.read(record.resource_type, record.resource_id)
            except ProviderError as e:
                self._error(plan, blocked, PlanError(f"refresh failed: {e.msg}", node_id))
                continue

            if observed is None:
                logger.warning("%s (%s) no longer exists", node_id, record.resource_id)
                plan.drift[node_id] = None
                del refreshed[node_id]
                continue

            changes = {
                key: AttributeChange(record.attributes.get(key), observed.attributes.get(key))
                for key in sorted(set(record.attributes) | set(observed.attributes))
                if record.attributes.get(key) != observed.attributes.get(key)
            }
            if changes:
                logger.warning("%s drifted: %s", node_id, ", ".join(changes))
                plan.drift[node_id] = changes
                refreshed[node_id] = record.model_copy(
                    update={
                        "attributes": dict(observed.attributes),
                        "computed": {**record.computed, **observed.computed},
                    }
                )
        return refreshed

    # ----------------- Scope -----------------

    def _dependents(self, node_id: str, graph: ResourceGraph, records: Mapping[str, StateRecord]) -> List[str]:
        found = list(graph.dependents_of(node_id)) if node_id in graph else []
        for other, record in sorted(records.items()):
            if node_id in record.dependencies and other not in found:
                found.append(other)
        return found

    def _scope(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        destroy: bool,
        targets: tuple[str, ...],
        plan: Plan,
    ) -> Set[str]:
        every = set(graph.node_ids) | set(records)
        if not targets:
            return every

        valid = []
        for target in targets:
            if target in every:
                valid.append(target)
            else:
                plan.errors.append(PlanError(f"target '{target}' is neither declared nor recorded", target))

        scope = set(valid)
        if destroy:
            stack = list(valid)
            while stack:
                for dependent in self._dependents(stack.pop(), graph, records):
                    if dependent not in scope:
                        scope.add(dependent)
                        stack.append(dependent)
        else:
            scope |= graph.transitive_dependencies([t for t in valid if t in graph])
        logger.debug("Targeting %d of %d nodes", len(scope), len(every))
        return scope

    # ----------------- Evaluation and classification -----------------

    def _evaluate(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        scope: Set[str],
        plan: Plan,
    ) -> Dict[str, _Classification]:
        classified: Dict[str, _Classification] = {}

        def project(node: ResourceNode, desired: Dict[str, Any]) -> Dict[str, Any]:
            schema = self.providers.resolve(node.resource_type).schema(node.resource_type)
            classification = self._classify(node, desired, records.get(node.node_id), schema)
            classified[node.node_id] = classification
            logger.debug("%s: %s %s", node.node_id, classification.kind, classification.reason)

            projected = dict(classification.desired)
            record = classification.record
            if classification.kind in ("create", "replace") or record is None:
                for name in schema.computed_attributes:
                    projected[name] = UNKNOWN
            else:
                projected.update(record.computed)
                projected["id"] = record.resource_id
            return projected

        evaluator = ExpressionEvaluator(self.functions, graph.variables)
        result = evaluator.evaluate_graph(
            graph, project=project, nodes=[n for n in graph.node_ids if n in scope]
        )
        plan.errors.extend(result.errors.values())
        plan.skipped.update(result.skipped)
        plan.outputs = evaluator.evaluate_outputs(graph, result.projected)
        return classified

    def _classify(
        self,
        node: ResourceNode,
        desired: Dict[str, Any],
        record: Optional[StateRecord],
        schema: ResourceSchema,
    ) -> _Classification:
        if record is None:
            return _Classification("create", desired, reason="no state record")

        desired = apply_ignore_changes(desired, record.attributes, node.lifecycle.ignore_changes)
        changes = diff_attributes(record.attributes, desired, schema)
        if record.tainted:
            return _Classification("replace", desired, record, changes, reason="tainted")
        if not changes:
            return _Classification("noop", desired, record)
        forcing = [name for name, change in changes.items() if change.requires_replacement]
        if forcing:
            return _Classification(
                "replace", desired, record, changes, reason="forces replacement: " + ", ".join(forcing)
            )
        return _Classification("update", desired, record, changes, reason="changed: " + ", ".join(changes))

    # ----------------- Actions -----------------

    def _actions(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        scope: Set[str],
        classified: Mapping[str, _Classification],
        destroy: bool,
        plan: Plan,
        blocked: Dict[str, str],
    ) -> List[PlanAction]:
        actions: List[PlanAction] = []

        replaced = {node_id for node_id, c in classified.items() if c.kind == "replace"}
        create_first = {n for n in replaced if graph.node(n).lifecycle.create_before_destroy}
        stack = list(create_first)
        while stack:
            for dependency in graph.dependencies_of(stack.pop()):
                if dependency in replaced and dependency not in create_first:
                    logger.debug("%s inherits create_before_destroy", dependency)
                    create_first.add(dependency)
                    stack.append(dependency)

        for node_id in graph.topological_order():
            classification = classified.get(node_id)
            if classification is None or node_id in blocked:
                continue
            node = graph.node(node_id)
            common = dict(
                node_id=node_id,
                resource_type=node.resource_type,
                provider=node.provider,
                desired=classification.desired,
                dependencies=node.dependencies,
                prevent_destroy=node.lifecycle.prevent_destroy,
                create_before_destroy=node.lifecycle.create_before_destroy,
                reason=classification.reason,
            )
            record = classification.record

            if classification.kind == "create":
                actions.append(PlanAction(ActionKind.CREATE, **common))
            elif classification.kind == "noop":
                actions.append(PlanAction(ActionKind.NOOP, prior=record.attributes, resource_id=record.resource_id, **common))
            elif classification.kind == "update":
                actions.append(
                    PlanAction(
                        ActionKind.UPDATE,
                        prior=record.attributes,
                        changes=classification.changes,
                        resource_id=record.resource_id,
                        **common,
                    )
                )
            else:
                if node.lifecycle.prevent_destroy:
                    self._error(
                        plan,
                        blocked,
                        PlanError(
                            f"must be replaced ({classification.reason}) but lifecycle.prevent_destroy is set",
                            node_id,
                        ),
                    )
                    continue
                common["create_before_destroy"] = node_id in create_first
                actions.append(
                    PlanAction(
                        ActionKind.DESTROY,
                        prior=record.attributes,
                        resource_id=record.resource_id,
                        replacement=True,
                        **{**common, "desired": {}},
                    )
                )
                actions.append(
                    PlanAction(
                        ActionKind.CREATE,
                        prior=record.attributes,
                        changes=classification.changes,
                        resource_id=record.resource_id,
                        replacement=True,
                        **common,
                    )
                )

        for node_id, record in sorted(records.items()):
            if node_id not in scope or node_id in blocked:
                continue
            if destroy or node_id not in graph:
                prevent = record.prevent_destroy
                if node_id in graph:
                    prevent = prevent or graph.node(node_id).lifecycle.prevent_destroy
                if prevent:
                    self._error(plan, blocked, PlanError("cannot destroy: lifecycle.prevent_destroy is set", node_id))
                    continue
                actions.append(
                    PlanAction(
                        ActionKind.DESTROY,
                        node_id=node_id,
                        resource_type=record.resource_type,
                        provider=record.provider,
                        prior=record.attributes,
                        resource_id=record.resource_id,
                        dependencies=tuple(record.dependencies),
                        reason="destroy requested" if destroy else "no longer declared",
                    )
                )

        for node_id, record in sorted(records.items()):
            if node_id not in scope or not self.providers.has(record.resource_type):
                continue
            for deposed in record.deposed:
                actions.append(
                    PlanAction(
                        ActionKind.DESTROY,
                        node_id=node_id,
                        resource_type=record.resource_type,
                        provider=record.provider,
                        prior=deposed.attributes,
                        resource_id=deposed.resource_id,
                        deposed=True,
                        reason="deposed object",
                    )
                )
        return actions

    def _link(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        scope: Set[str],
        actions: List[PlanAction],
        plan: Plan,
        blocked: Dict[str, str],
    ) -> None:
        apply_key = {a.node_id: a.key for a in actions if a.is_apply}
        destroy_key = {a.node_id: a.key for a in actions if a.kind == ActionKind.DESTROY and not a.deposed}
        unchanged = {a.node_id for a in actions if a.kind == ActionKind.NOOP}

        for action in actions:
            requires: List[str] = []
            node_id = action.node_id
            if action.is_apply:
                if node_id in graph:
                    for dependency in graph.dependencies_of(node_id):
                        if dependency in apply_key:
                            requires.append(apply_key[dependency])
                if action.replacement and not action.create_before_destroy and node_id in destroy_key:
                    requires.append(destroy_key[node_id])

            elif action.kind == ActionKind.DESTROY and not action.deposed:
                removed = not action.replacement
                for dependent in self._dependents(node_id, graph, records):
                    if dependent in destroy_key:
                        requires.append(destroy_key[dependent])
                    elif dependent in apply_key:
                        if removed or action.create_before_destroy:
                            requires.append(apply_key[dependent])
                    elif dependent in records and dependent not in unchanged:
                        verb = "destroy" if removed else "replace"
                        self._error(
                            plan,
                            blocked,
                            PlanError(
                                f"cannot {verb}: live dependent {dependent} still references it",
                                node_id,
                            ),
                        )
                        break
                if action.create_before_destroy and node_id in apply_key:
                    requires.append(apply_key[node_id])

            action.requires = tuple(dict.fromkeys(requires))

    def _prune(
        self,
        graph: ResourceGraph,
        actions: List[PlanAction],
        plan: Plan,
        blocked: Mapping[str, str],
    ) -> List[PlanAction]:
        removed = {a.key: a.node_id for a in actions if not a.deposed and a.node_id in blocked}
        kept = [a for a in actions if a.key not in removed]
        pruned: Set[str] = set(blocked)

        changed = True
        while changed:
            changed = False
            for action in list(kept):
                cause = next((removed[r] for r in action.requires if r in removed), None)
                if cause is None and action.is_apply and action.node_id in graph:
                    cause = next((d for d in graph.dependencies_of(action.node_id) if d in pruned), None)
                if cause is None:
                    continue
                kept = [a for a in kept if a.key != action.key]
                removed[action.key] = plan.skipped.get(cause, cause)
                pruned.add(action.node_id)
                plan.skipped.setdefault(action.node_id, removed[action.key])
                logger.debug("Skipping %s: blocked by %s", action.key, cause)
                changed = True
        return kept

    def _order(
        self, graph: ResourceGraph, records: Mapping[str, StateRecord], actions: List[PlanAction]
    ) -> List[PlanAction]:
        """Kahn's algorithm over ``requires``; ties by declaration order then kind."""
        rank = {node_id: position for position, node_id in enumerate(graph.topological_order())}
        for node_id in sorted(records):
            rank.setdefault(node_id, len(rank))

        by_key = {action.key: action for action in actions}
        pending = {key: {r for r in action.requires if r in by_key} for key, action in by_key.items()}
        waiting: Dict[str, List[str]] = {}
        for key, requirements in pending.items():
            for requirement in requirements:
                waiting.setdefault(requirement, []).append(key)

        def entry(key: str):
            action = by_key[key]
            return (rank.get(action.node_id, len(rank)), _KIND_RANK[action.kind], key)

        ready = [entry(key) for key, requirements in pending.items() if not requirements]
        heapq.heapify(ready)
        ordered: List[PlanAction] = []
        while ready:
            _, _, key = heapq.heappop(ready)
            ordered.append(by_key[key])
            for follower in waiting.get(key, []):
                pending[follower].discard(key)
                if not pending[follower]:
                    heapq.heappush(ready, entry(follower))

        if len(ordered) != len(by_key):
            stuck = sorted(set(by_key) - {a.key for a in ordered})
            raise PlanError("action ordering is cyclic: " + ", ".join(stuck))
        return ordered

    @staticmethod
    def _error(plan: Plan, blocked: Dict[str, str], error: PlanError) -> None:
        logger.warning("Plan error: %s", error)
        plan.errors.append(error)
        if error.node_id:
            blocked.setdefault(error.node_id, error.node_id)
