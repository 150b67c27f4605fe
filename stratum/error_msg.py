"""
Stratum error taxonomy

Build errors abort before any provider call, evaluation and plan errors are
scoped to a node subgraph, provider errors carry a transient/permanent
classification.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

# Type alias for the address trace attached to an exception
Stack = List[Tuple[str, str]]


@dataclass(frozen=True)
class Diagnostic:
    """Machine-friendly build diagnostic."""

    code: str
    message: str
    location: str | None = None
    symbol: str | None = None


def diagnostics_payload(diagnostics: Iterable[Diagnostic]) -> list[dict[str, Any]]:
    """Serialize diagnostics for API payloads."""
    payload: list[dict[str, Any]] = []
    for diag in diagnostics:
        item: dict[str, Any] = {"code": diag.code, "message": diag.message}
        if diag.location:
            item["location"] = diag.location
        if diag.symbol:
            item["symbol"] = diag.symbol
        payload.append(item)
    return payload


class StratumException(Exception):
    """Stratum specific exception with address trace support"""

    classification = "error"

    def __init__(self, msg: str, stack_trace: Optional[Stack] = None):
        self.msg = msg
        self.stack_trace = stack_trace or []
        super().__init__(self.format_message())

    def format_message(self) -> str:
        if not self.stack_trace:
            return self.msg

        trace_str = ""
        for identifier, position in self.stack_trace:
            trace_str += f"\n  in {identifier} at {position}"

        return f"{self.msg}{trace_str}"


# ----------------- Build errors -----------------


class BuildError(StratumException):
    """Declarations cannot be turned into a resource graph. Fatal."""

    classification = "build"
    code = "E_BUILD"

    def __init__(
        self,
        msg: str,
        location: str | None = None,
        symbol: str | None = None,
        stack_trace: Optional[Stack] = None,
    ):
        self.location = location
        self.symbol = symbol
        super().__init__(msg, stack_trace)

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        return (
            Diagnostic(
                code=self.code,
                message=self.msg,
                location=self.location,
                symbol=self.symbol,
            ),
        )


class DeclarationSyntaxError(BuildError):
    code = "E_SYNTAX"


class DuplicateIdentifier(BuildError):
    code = "E_DUPLICATE_IDENTIFIER"


class UnknownProviderType(BuildError):
    code = "E_UNKNOWN_PROVIDER_TYPE"


class MalformedExpression(BuildError):
    code = "E_MALFORMED_EXPRESSION"


class UnknownReference(BuildError):
    code = "E_UNKNOWN_REFERENCE"


class MissingVariable(BuildError):
    code = "E_MISSING_VARIABLE"


class CyclicDependency(BuildError):
    code = "E_CYCLIC_DEPENDENCY"

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            "Cyclic dependency: " + " -> ".join(self.cycle),
            symbol=self.cycle[0] if self.cycle else None,
        )


class BuildErrors(BuildError):
    """Several build errors collected from one document."""

    def __init__(self, errors: Iterable[BuildError]):
        self.errors = tuple(errors)
        first = self.errors[0].msg if self.errors else "Build failed"
        extra = len(self.errors) - 1
        msg = first if extra <= 0 else f"{first} (and {extra} more)"
        super().__init__(msg)

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        collected: list[Diagnostic] = []
        for error in self.errors:
            collected.extend(error.diagnostics)
        return tuple(collected)


# ----------------- Node scoped errors -----------------


class EvaluationError(StratumException):
    """Expression or function failure, scoped to the owning node."""

    classification = "evaluation"

    def __init__(self, msg: str, node_id: str | None = None, stack_trace: Optional[Stack] = None):
        self.node_id = node_id
        super().__init__(msg, stack_trace)

    def format_message(self) -> str:
        base = super().format_message()
        if self.node_id:
            return f"{self.node_id}: {base}"
        return base


class PlanError(StratumException):
    """Inconsistent state or policy violation blocking one node."""

    classification = "plan"

    def __init__(self, msg: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(msg)

    def format_message(self) -> str:
        if self.node_id:
            return f"{self.node_id}: {self.msg}"
        return self.msg


class ProviderError(StratumException):
    """Failure reported by a resource provider.

    ``partial`` holds whatever the provider managed to create before failing
    (a ``ProviderResult``), so that the engine can keep tracking it.
    """

    def __init__(self, msg: str, transient: bool = False, partial: Any = None):
        self.transient = transient
        self.partial = partial
        super().__init__(msg)

    @property
    def classification(self) -> str:  # type: ignore[override]
        return "transient" if self.transient else "permanent"


class TransientProviderError(ProviderError):
    def __init__(self, msg: str, partial: Any = None):
        super().__init__(msg, transient=True, partial=partial)


class PermanentProviderError(ProviderError):
    def __init__(self, msg: str, partial: Any = None):
        super().__init__(msg, transient=False, partial=partial)


# ----------------- State errors -----------------


class StateError(StratumException):
    classification = "state"


class StateFormatError(StateError):
    """Persisted state was written by an unsupported format version."""


class ConfigurationError(StratumException):
    """Invalid settings or variable assignments."""

    classification = "configuration"

