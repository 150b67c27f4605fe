"""Stable function library API contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

FunctionFn = Callable[..., Any]


@dataclass(frozen=True)
class AritySpec:
    """Arity contract for function calls."""

    min_args: int
    max_args: int | None = None

    @classmethod
    def fixed(cls, count: int) -> "AritySpec":
        return cls(min_args=count, max_args=count)

    @classmethod
    def variadic(cls, min_args: int = 0) -> "AritySpec":
        return cls(min_args=min_args, max_args=None)

    def validate(self, count: int) -> None:
        if count < self.min_args:
            raise ValueError(
                f"Expected at least {self.min_args} arguments, got {count}"
            )
        if self.max_args is not None and count > self.max_args:
            raise ValueError(
                f"Expected at most {self.max_args} arguments, got {count}"
            )


@dataclass(frozen=True)
class FunctionSpec:
    """Function descriptor consumed by the graph builder and the evaluator.

    ``accepts_unknown`` functions are invoked even when an argument is not
    known until apply; every other function short-circuits to unknown.
    """

    name: str
    arity: AritySpec
    namespace: str = "default"
    description: str = ""
    accepts_unknown: bool = False

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}"


def function(
    name: str,
    arity: AritySpec,
    description: str = "",
    accepts_unknown: bool = False,
) -> Callable[[FunctionFn], FunctionFn]:
    """Decorator attaching a FunctionSpec to a plain Python callable."""

    def _decorate(fn: FunctionFn) -> FunctionFn:
        fn.__function_spec__ = FunctionSpec(  # type: ignore[attr-defined]
            name=name,
            arity=arity,
            description=description or (fn.__doc__ or "").strip().split("\n")[0],
            accepts_unknown=accepts_unknown,
        )
        return fn

    return _decorate


def validate_spec(spec: FunctionSpec) -> None:
    """Validate a function spec before registration."""

    if not spec.name:
        raise ValueError("Function name cannot be empty")
    if "." in spec.name:
        raise ValueError("Function name must be unqualified")
    if not spec.namespace:
        raise ValueError("Function namespace cannot be empty")
    if spec.arity.max_args is not None and spec.arity.max_args < spec.arity.min_args:
        raise ValueError(f"Invalid arity for {spec.name}")
