"""Resource type to provider dispatch."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Iterable, Mapping, Optional

from stratum.providers.base import ResourceProvider

logger = logging.getLogger("stratum.providers")


class ProviderRegistry:
    """Providers in registration order, with optional explicit type bindings.

    A resource type resolves to its explicit binding if any, otherwise to the
    first registered provider that supports it.
    """

    def __init__(self) -> None:
        self._providers: OrderedDict[str, ResourceProvider] = OrderedDict()
        self._by_type: dict[str, str] = {}

    def register(self, provider: ResourceProvider, resource_types: Optional[Iterable[str]] = None) -> None:
        if provider.name in self._providers:
            raise ValueError(f"Provider already registered: {provider.name}")
        self._providers[provider.name] = provider
        for resource_type in resource_types or ():
            self._by_type[resource_type] = provider.name
        logger.debug("Registered provider %s", provider.name)

    def resolve(self, resource_type: str) -> ResourceProvider:
        if resource_type in self._by_type:
            return self._providers[self._by_type[resource_type]]
        for provider in self._providers.values():
            if provider.supports(resource_type):
                return provider
        raise KeyError(f"No provider for resource type: {resource_type}")

    def has(self, resource_type: str) -> bool:
        try:
            self.resolve(resource_type)
        except KeyError:
            return False
        return True

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    def configure(self, configs: Mapping[str, Mapping[str, Any]]) -> None:
        for name, config in configs.items():
            self._providers[name].configure(config)
            logger.debug("Configured provider %s with %s", name, sorted(config))
