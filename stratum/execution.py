"""
Stratum execution engine

Walks a Plan through a bounded thread pool. An action is dispatched only
when every action it requires has been applied; a failure skips everything
that transitively requires the failed action, while unrelated actions keep
going. Transient provider errors are retried with capped exponential
backoff. State is written under the node lock right after each provider
call succeeds, and partial results of failed calls are kept as tainted
records so nothing created in the real world goes untracked.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from stratum.error_msg import EvaluationError, ProviderError, StratumException
from stratum.evaluator import UNKNOWN, ExpressionEvaluator, is_known, resolve_unknowns
from stratum.functions import FunctionRegistry
from stratum.log import VERBOSE_LEVEL
from stratum.planner import ActionKind, Plan, PlanAction
from stratum.providers import ProviderRegistry, ProviderResult, ResourceProvider
from stratum.storage import DeposedObject, StateRecord, StateStore, utc_now

logger = logging.getLogger("stratum.execution")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with monotonic, capped exponential backoff."""

    max_attempts: int = 4
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1 for a monotonic backoff")

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failed attempt (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** max(0, attempt - 1))


class NodeStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# Worst status wins when a node has several actions
_STATUS_SEVERITY = {
    NodeStatus.UNCHANGED: 0,
    NodeStatus.APPLIED: 1,
    NodeStatus.CANCELLED: 2,
    NodeStatus.SKIPPED: 3,
    NodeStatus.FAILED: 4,
}


@dataclass
class ActionOutcome:
    key: str
    node_id: str
    kind: ActionKind
    status: NodeStatus
    attempts: int = 0
    error: Optional[str] = None
    classification: Optional[str] = None
    resource_id: Optional[str] = None
    duration: float = 0.0
    # a failed call whose partial result was recorded as tainted
    partial: bool = False


@dataclass
class RunSummary:
    """Result of one engine run, plan-time failures included."""

    outcomes: List[ActionOutcome] = field(default_factory=list)
    plan_errors: List[StratumException] = field(default_factory=list)
    plan_skipped: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def node_statuses(self) -> Dict[str, NodeStatus]:
        statuses: Dict[str, NodeStatus] = {}
        for outcome in self.outcomes:
            current = statuses.get(outcome.node_id)
            if current is None or _STATUS_SEVERITY[outcome.status] > _STATUS_SEVERITY[current]:
                statuses[outcome.node_id] = outcome.status
        for node_id in self.plan_skipped:
            statuses.setdefault(node_id, NodeStatus.SKIPPED)
        for error in self.plan_errors:
            node_id = getattr(error, "node_id", None)
            if node_id:
                statuses[node_id] = NodeStatus.FAILED
        return statuses

    def _nodes(self, status: NodeStatus) -> List[str]:
        return sorted(node for node, value in self.node_statuses().items() if value == status)

    @property
    def applied(self) -> List[str]:
        return self._nodes(NodeStatus.APPLIED)

    @property
    def failed(self) -> List[str]:
        return self._nodes(NodeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._nodes(NodeStatus.SKIPPED)

    @property
    def unchanged(self) -> List[str]:
        return self._nodes(NodeStatus.UNCHANGED)

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in NodeStatus}
        for status in self.node_statuses().values():
            counts[status.value] += 1
        unscoped = [e for e in self.plan_errors if not getattr(e, "node_id", None)]
        counts[NodeStatus.FAILED.value] += len(unscoped)
        return counts

    def failures(self) -> List[tuple[str, str, str]]:
        """Every failure as (node or "-", classification, message)."""
        found: List[tuple[str, str, str]] = []
        for error in self.plan_errors:
            found.append((getattr(error, "node_id", None) or "-", error.classification, error.msg))
        for outcome in self.outcomes:
            if outcome.status == NodeStatus.FAILED:
                found.append((outcome.node_id, outcome.classification or "error", outcome.error or ""))
        return found

    @property
    def status(self) -> str:
        """``no-changes``, ``applied``, ``partial`` or ``failed``."""
        changed = any(o.status == NodeStatus.APPLIED or o.partial for o in self.outcomes)
        failed = self.counts()[NodeStatus.FAILED.value] > 0 or self.cancelled
        if failed:
            return "partial" if changed else "failed"
        return "applied" if changed else "no-changes"

    @property
    def exit_code(self) -> int:
        return 1 if self.status in ("partial", "failed") else 0


class ExecutionEngine:
    """Apply plans through providers, persisting state per node"""

    def __init__(
        self,
        providers: ProviderRegistry,
        state: StateStore,
        functions: Optional[FunctionRegistry] = None,
        max_workers: int = 4,
        retry: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.providers = providers
        self.state = state
        self.functions = functions or FunctionRegistry()
        self.max_workers = max_workers
        self.retry = retry or RetryPolicy()
        self._cancel = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Stop dispatching; in-flight provider calls run to completion."""
        logger.warning("Cancellation requested: no new actions will be dispatched")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, plan: Plan) -> RunSummary:
        summary = RunSummary(plan_errors=list(plan.errors), plan_skipped=dict(plan.skipped))
        evaluator = ExpressionEvaluator(self.functions, plan.variables)

        by_key = {action.key: action for action in plan.actions}
        pending = {key: {r for r in action.requires if r in by_key} for key, action in by_key.items()}
        followers: Dict[str, List[str]] = {}
        for key, requirements in pending.items():
            for requirement in requirements:
                followers.setdefault(requirement, []).append(key)

        outcomes: Dict[str, ActionOutcome] = {}
        ready: Deque[str] = deque(action.key for action in plan.actions if not pending[action.key])

        def release(key: str) -> None:
            for follower in followers.get(key, []):
                pending[follower].discard(key)
                if not pending[follower] and follower not in outcomes:
                    ready.append(follower)

        def skip_followers(key: str, cause: str) -> None:
            stack = list(followers.get(key, []))
            while stack:
                follower = stack.pop()
                if follower in outcomes:
                    continue
                action = by_key[follower]
                outcomes[follower] = ActionOutcome(
                    follower, action.node_id, action.kind, NodeStatus.SKIPPED, error=f"blocked by {cause}"
                )
                logger.warning("Skipping %s: blocked by %s", follower, cause)
                stack.extend(followers.get(follower, []))

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stratum-apply") as pool:
            in_flight: Dict[Future, PlanAction] = {}
            while True:
                while ready and not self.cancelled and len(in_flight) < self.max_workers:
                    key = ready.popleft()
                    if key in outcomes:
                        continue
                    action = by_key[key]
                    if action.kind == ActionKind.NOOP:
                        outcomes[key] = ActionOutcome(
                            key, action.node_id, action.kind, NodeStatus.UNCHANGED, resource_id=action.resource_id
                        )
                        release(key)
                        continue
                    logger.debug("Dispatching %s", key)
                    in_flight[pool.submit(self._run, action, plan, evaluator)] = action

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    action = in_flight.pop(future)
                    outcome = future.result()
                    outcomes[action.key] = outcome
                    if outcome.status == NodeStatus.APPLIED:
                        release(action.key)
                    else:
                        skip_followers(action.key, action.node_id)

        for action in plan.actions:
            if action.key not in outcomes:
                status = NodeStatus.CANCELLED if self.cancelled else NodeStatus.SKIPPED
                outcomes[action.key] = ActionOutcome(action.key, action.node_id, action.kind, status)

        summary.outcomes = [outcomes[action.key] for action in plan.actions]
        summary.cancelled = self.cancelled
        if plan.graph is not None and not plan.destroy_mode:
            summary.outputs = self.outputs(plan, evaluator)

        logger.info(
            "Apply finished (%s): %s",
            summary.status,
            ", ".join(f"{count} {name}" for name, count in summary.counts().items() if count),
        )
        return summary

    # ----------------- One action -----------------

    def _run(self, action: PlanAction, plan: Plan, evaluator: ExpressionEvaluator) -> ActionOutcome:
        started = time.monotonic()
        outcome = ActionOutcome(action.key, action.node_id, action.kind, NodeStatus.FAILED, resource_id=action.resource_id)

        with self.state.lock(action.node_id):
            try:
                provider = self.providers.resolve(action.resource_type)
                desired = self._resolve_desired(action, plan, evaluator) if action.is_apply else {}
            except (KeyError, EvaluationError) as e:
                outcome.error = str(e)
                outcome.classification = getattr(e, "classification", "plan")
                logger.error("%s failed before dispatch: %s", action.key, e)
                return outcome

            while True:
                outcome.attempts += 1
                try:
                    result = self._dispatch(provider, action, desired)
                    self._persist(action, provider, desired, result)
                except ProviderError as e:
                    if e.transient and outcome.attempts < self.retry.max_attempts:
                        delay = self.retry.delay_for(outcome.attempts)
                        logger.log(
                            VERBOSE_LEVEL,
                            "%s: transient error on attempt %d, retrying in %.2fs: %s",
                            action.key,
                            outcome.attempts,
                            delay,
                            e.msg,
                        )
                        if self._cancel.wait(delay):
                            outcome.status = NodeStatus.CANCELLED
                            outcome.error = f"cancelled while retrying: {e.msg}"
                            outcome.classification = e.classification
                            break
                        continue
                    outcome.partial = self._persist_partial(action, provider, e)
                    outcome.error = e.msg
                    outcome.classification = e.classification
                    logger.error(
                        "%s failed after %d attempt(s) (%s): %s",
                        action.key,
                        outcome.attempts,
                        e.classification,
                        e.msg,
                    )
                    break
                except Exception as e:
                    outcome.error = f"{type(e).__name__}: {e}"
                    outcome.classification = "error"
                    logger.exception("%s raised an unexpected error", action.key)
                    break
                else:
                    outcome.status = NodeStatus.APPLIED
                    if result is not None:
                        outcome.resource_id = result.resource_id
                    logger.info("%s: %s", action.node_id, action.kind.value)
                    break

        outcome.duration = time.monotonic() - started
        return outcome

    def _resolve_desired(self, action: PlanAction, plan: Plan, evaluator: ExpressionEvaluator) -> Dict[str, Any]:
        if is_known(action.desired):
            return dict(action.desired)
        if plan.graph is None or action.node_id not in plan.graph:
            raise EvaluationError("values unknown and no configuration to resolve them", action.node_id)

        node = plan.graph.node(action.node_id)
        snapshot = self.state.load()
        scope = {}
        for dependency in node.dependencies:
            record = snapshot.get(dependency)
            if record is not None:
                scope[dependency] = {**record.attributes, **record.computed, "id": record.resource_id}
        resolved = resolve_unknowns(evaluator, node, action.desired, scope)
        if not is_known(resolved):
            unknown = sorted(k for k, v in resolved.items() if not is_known(v))
            raise EvaluationError(f"still unknown after dependencies applied: {', '.join(unknown)}", action.node_id)
        logger.debug("%s: resolved %d unknown value(s)", action.node_id, len(resolved))
        return resolved

    def _dispatch(
        self, provider: ResourceProvider, action: PlanAction, desired: Dict[str, Any]
    ) -> Optional[ProviderResult]:
        logger.debug("%s -> %s.%s", action.key, provider.name, action.kind.value)
        if action.kind == ActionKind.CREATE:
            return provider.create(action.resource_type, desired)
        if action.kind == ActionKind.UPDATE:
            assert action.resource_id is not None
            return provider.update(
                action.resource_type,
                action.resource_id,
                action.prior or {},
                desired,
                frozenset(action.changes),
            )
        if action.kind == ActionKind.DESTROY:
            assert action.resource_id is not None
            provider.delete(action.resource_type, action.resource_id)
            return None
        raise ValueError(f"Cannot dispatch {action.kind.value}")

    # ----------------- State writes -----------------

    def _record(
        self,
        action: PlanAction,
        provider: ResourceProvider,
        result: ProviderResult,
        tainted: bool = False,
    ) -> StateRecord:
        current = self.state.load().get(action.node_id)
        deposed: List[DeposedObject] = list(current.deposed) if current else []
        if (
            action.kind == ActionKind.CREATE
            and current is not None
            and current.resource_id != result.resource_id
            and action.replacement
            and action.create_before_destroy
        ):
            deposed.append(DeposedObject(resource_id=current.resource_id, attributes=current.attributes))

        computed = dict(current.computed) if current is not None and action.kind == ActionKind.UPDATE else {}
        computed.update(result.computed)
        return StateRecord(
            node_id=action.node_id,
            resource_type=action.resource_type,
            provider=provider.name,
            resource_id=result.resource_id,
            attributes=dict(result.attributes),
            computed=computed,
            dependencies=list(action.dependencies),
            create_before_destroy=action.create_before_destroy,
            prevent_destroy=action.prevent_destroy,
            tainted=tainted,
            deposed=deposed,
            applied_at=utc_now(),
        )

    def _persist(
        self,
        action: PlanAction,
        provider: ResourceProvider,
        desired: Dict[str, Any],
        result: Optional[ProviderResult],
    ) -> None:
        if action.kind == ActionKind.DESTROY:
            assert action.resource_id is not None
            self.state.remove_object(action.node_id, action.resource_id)
            return
        assert result is not None
        self.state.save(action.node_id, self._record(action, provider, result))

    def _persist_partial(self, action: PlanAction, provider: ResourceProvider, error: ProviderError) -> bool:
        if not isinstance(error.partial, ProviderResult):
            return False
        logger.warning(
            "%s left partial state behind (%s); recording it as tainted",
            action.node_id,
            error.partial.resource_id,
        )
        self.state.save(action.node_id, self._record(action, provider, error.partial, tainted=True))
        return True

    # ----------------- Outputs -----------------

    def outputs(self, plan: Plan, evaluator: ExpressionEvaluator) -> Dict[str, Any]:
        assert plan.graph is not None
        snapshot = self.state.load()
        scope = {
            node_id: {**record.attributes, **record.computed, "id": record.resource_id}
            for node_id, record in snapshot.records.items()
        }
        values = evaluator.evaluate_outputs(plan.graph, scope)
        return {name: (None if value is UNKNOWN else value) for name, value in values.items()}

