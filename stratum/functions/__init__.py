"""Pure function library available to declaration expressions."""

from stratum.functions.api import AritySpec, FunctionSpec, function
from stratum.functions.registry import FunctionRegistry

__all__ = [
    "AritySpec",
    "FunctionRegistry",
    "FunctionSpec",
    "function",
]
