"""
In-memory provider with deterministic ids and fault injection.

Resources live in a dict keyed by provider id. Every resource gets the
computed attributes ``id`` and ``arn``. Failures are injected per operation
and resource type, optionally leaving a partially created resource behind.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from stratum.error_msg import PermanentProviderError, TransientProviderError
from stratum.providers.base import ProviderResult, ResourceProvider, ResourceSchema

logger = logging.getLogger("stratum.providers")

COMPUTED = frozenset({"id", "arn"})


@dataclass
class InjectedFailure:
    operation: str
    resource_type: Optional[str]
    resource_id: Optional[str]
    transient: bool
    remaining: Optional[int]
    partial: bool

    def matches(self, operation: str, resource_type: str, resource_id: Optional[str]) -> bool:
        if self.remaining is not None and self.remaining <= 0:
            return False
        if self.operation != operation:
            return False
        if self.resource_type is not None and self.resource_type != resource_type:
            return False
        return self.resource_id is None or self.resource_id == resource_id


class SimulatedProvider(ResourceProvider):
    """Deterministic provider for tests and dry runs.

    Configuration keys:
        replace_attributes: mapping of resource type -> attribute names that
            force replacement.
    """

    name = "simulated"

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        resource_types: Optional[Iterable[str]] = None,
        name: Optional[str] = None,
        latency: float = 0.0,
    ):
        if name:
            self.name = name
        self.resource_types = frozenset(resource_types) if resource_types is not None else None
        self.latency = latency
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.RLock()
        self._resources: dict[str, tuple[str, dict[str, Any]]] = {}
        self._counters: dict[str, int] = {}
        self._failures: list[InjectedFailure] = []
        super().__init__(config)

    # ----------------- Schema -----------------

    def supports(self, resource_type: str) -> bool:
        return self.resource_types is None or resource_type in self.resource_types

    def schema(self, resource_type: str) -> ResourceSchema:
        replace = self.config.get("replace_attributes", {}).get(resource_type, ())
        return ResourceSchema(replace_attributes=frozenset(replace), computed_attributes=COMPUTED)

    # ----------------- Test hooks -----------------

    def inject_failure(
        self,
        operation: str,
        resource_type: Optional[str] = None,
        transient: bool = False,
        times: Optional[int] = 1,
        partial: bool = False,
        resource_id: Optional[str] = None,
    ) -> None:
        """Fail the next ``times`` matching operations (``None``: forever)."""
        with self._lock:
            self._failures.append(
                InjectedFailure(operation, resource_type, resource_id, transient, times, partial)
            )

    def drift(self, resource_id: str, **attributes: Any) -> None:
        """Change a resource behind the engine's back."""
        with self._lock:
            resource_type, stored = self._load(resource_id)
            stored.update(attributes)
            self._store(resource_type, resource_id, stored)

    def forget(self, resource_id: str) -> None:
        """Delete a resource behind the engine's back."""
        with self._lock:
            self._discard(resource_id)

    def resources(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {rid: copy.deepcopy(attrs) for rid, (_, attrs) in self._snapshot().items()}

    def operations(self, operation: Optional[str] = None) -> list[tuple[str, str, Optional[str]]]:
        with self._lock:
            return [call for call in self.calls if operation is None or call[0] == operation]

    # ----------------- Storage hooks -----------------

    def _snapshot(self) -> dict[str, tuple[str, dict[str, Any]]]:
        return self._resources

    def _load(self, resource_id: str) -> tuple[str, dict[str, Any]]:
        if resource_id not in self._resources:
            raise KeyError(resource_id)
        resource_type, attributes = self._resources[resource_id]
        return resource_type, copy.deepcopy(attributes)

    def _store(self, resource_type: str, resource_id: str, attributes: dict[str, Any]) -> None:
        self._resources[resource_id] = (resource_type, copy.deepcopy(attributes))

    def _discard(self, resource_id: str) -> None:
        self._resources.pop(resource_id, None)

    def _next_id(self, resource_type: str) -> str:
        self._counters[resource_type] = self._counters.get(resource_type, 0) + 1
        return f"{resource_type}-{self._counters[resource_type]:04d}"

    # ----------------- Operations -----------------

    def _enter(self, operation: str, resource_type: str, resource_id: Optional[str]) -> Optional[InjectedFailure]:
        with self._lock:
            self.calls.append((operation, resource_type, resource_id))
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
            for failure in self._failures:
                if failure.matches(operation, resource_type, resource_id):
                    if failure.remaining is not None:
                        failure.remaining -= 1
                    return failure
        return None

    def _leave(self) -> None:
        with self._lock:
            self.in_flight -= 1

    def _sleep(self) -> None:
        if self.latency:
            time.sleep(self.latency)

    def _result(self, resource_type: str, resource_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        return ProviderResult(
            resource_id=resource_id,
            attributes=copy.deepcopy(dict(attributes)),
            computed={"id": resource_id, "arn": f"arn:{self.name}:{resource_type}/{resource_id}"},
        )

    def _raise(self, failure: InjectedFailure, message: str, partial: Optional[ProviderResult] = None) -> None:
        logger.debug("Injected %s failure: %s", "transient" if failure.transient else "permanent", message)
        error_type = TransientProviderError if failure.transient else PermanentProviderError
        raise error_type(message, partial=partial)

    def create(self, resource_type: str, desired: Mapping[str, Any]) -> ProviderResult:
        failure = self._enter("create", resource_type, None)
        try:
            self._sleep()
            with self._lock:
                if failure is not None and not failure.partial:
                    self._raise(failure, f"create {resource_type} failed")
                resource_id = self._next_id(resource_type)
                self._store(resource_type, resource_id, dict(desired))
                result = self._result(resource_type, resource_id, desired)
            if failure is not None:
                self._raise(failure, f"create {resource_type} partially failed", partial=result)
            logger.debug("Created %s %s", resource_type, resource_id)
            return result
        finally:
            self._leave()

    def read(self, resource_type: str, resource_id: str) -> Optional[ProviderResult]:
        failure = self._enter("read", resource_type, resource_id)
        try:
            if failure is not None:
                self._raise(failure, f"read {resource_id} failed")
            with self._lock:
                try:
                    _, attributes = self._load(resource_id)
                except KeyError:
                    return None
            return self._result(resource_type, resource_id, attributes)
        finally:
            self._leave()

    def update(
        self,
        resource_type: str,
        resource_id: str,
        prior: Mapping[str, Any],
        desired: Mapping[str, Any],
        changed: frozenset[str],
    ) -> ProviderResult:
        failure = self._enter("update", resource_type, resource_id)
        try:
            self._sleep()
            with self._lock:
                if failure is not None and not failure.partial:
                    self._raise(failure, f"update {resource_id} failed")
                try:
                    _, attributes = self._load(resource_id)
                except KeyError:
                    raise PermanentProviderError(f"{resource_type} {resource_id} does not exist") from None
                for key in changed:
                    if key in desired:
                        attributes[key] = copy.deepcopy(desired[key])
                    else:
                        attributes.pop(key, None)
                self._store(resource_type, resource_id, attributes)
                result = self._result(resource_type, resource_id, attributes)
            if failure is not None:
                self._raise(failure, f"update {resource_id} partially failed", partial=result)
            logger.debug("Updated %s %s (%s)", resource_type, resource_id, ", ".join(sorted(changed)))
            return result
        finally:
            self._leave()

    def delete(self, resource_type: str, resource_id: str) -> None:
        failure = self._enter("delete", resource_type, resource_id)
        try:
            self._sleep()
            if failure is not None:
                self._raise(failure, f"delete {resource_id} failed")
            with self._lock:
                self._discard(resource_id)
            logger.debug("Deleted %s %s", resource_type, resource_id)
        finally:
            self._leave()
