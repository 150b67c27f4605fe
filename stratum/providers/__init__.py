"""Resource providers."""

from stratum.providers.base import ProviderResult, ResourceProvider, ResourceSchema
from stratum.providers.local import LocalFileProvider
from stratum.providers.registry import ProviderRegistry
from stratum.providers.simulated import SimulatedProvider

__all__ = [
    "LocalFileProvider",
    "ProviderRegistry",
    "ProviderResult",
    "ResourceProvider",
    "ResourceSchema",
    "SimulatedProvider",
]
