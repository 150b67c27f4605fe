"""Generic resource provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

DEFAULT_COMPUTED = frozenset({"id"})


@dataclass(frozen=True)
class ResourceSchema:
    """What a provider knows about one resource type.

    ``replace_attributes`` cannot change in place: a change forces
    destroy+create. ``computed_attributes`` are assigned by the provider and
    never appear in declarations.
    """

    replace_attributes: frozenset[str] = frozenset()
    computed_attributes: frozenset[str] = DEFAULT_COMPUTED


@dataclass
class ProviderResult:
    """Successful operation: provider id, applied attributes, computed values."""

    resource_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    computed: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """One polymorphic implementation per resource type family.

    Operations raise ``ProviderError`` (transient or permanent) on failure.
    """

    name = "provider"

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config: dict[str, Any] = {}
        if config:
            self.configure(config)

    def configure(self, config: Mapping[str, Any]) -> None:
        self.config.update(config)

    def supports(self, resource_type: str) -> bool:
        return True

    def schema(self, resource_type: str) -> ResourceSchema:
        return ResourceSchema()

    @abstractmethod
    def create(self, resource_type: str, desired: Mapping[str, Any]) -> ProviderResult:
        ...

    @abstractmethod
    def read(self, resource_type: str, resource_id: str) -> Optional[ProviderResult]:
        """Observed state, or None when the resource no longer exists."""

    @abstractmethod
    def update(
        self,
        resource_type: str,
        resource_id: str,
        prior: Mapping[str, Any],
        desired: Mapping[str, Any],
        changed: frozenset[str],
    ) -> ProviderResult:
        ...

    @abstractmethod
    def delete(self, resource_type: str, resource_id: str) -> None:
        ...
