"""Deterministic function discovery and resolution registry."""

from __future__ import annotations

from collections import OrderedDict
from pathlib import Path
from typing import Any
import importlib
import logging

from stratum.functions.api import FunctionFn, FunctionSpec, validate_spec

logger = logging.getLogger("stratum.functions")


class FunctionRegistry:
    """Registry with deterministic namespace loading and name resolution."""

    def __init__(self, functions_dir: Path | None = None) -> None:
        if functions_dir is None:
            functions_dir = Path(__file__).parent

        self.functions_dir = functions_dir
        self._specs_by_qualified: OrderedDict[str, FunctionSpec] = OrderedDict()
        self._functions_by_qualified: dict[str, FunctionFn] = {}
        self._specs_by_namespace: dict[str, OrderedDict[str, FunctionSpec]] = {}
        self._loaded_namespaces: set[str] = set()

        self._load_namespace("default")

    def _load_namespace(self, namespace: str) -> None:
        if namespace in self._loaded_namespaces:
            return

        namespace_dir = self.functions_dir / namespace
        if not namespace_dir.exists() or not namespace_dir.is_dir():
            raise ValueError(f"Unknown function namespace: {namespace}")

        module_path = f"stratum.functions.{namespace}"
        for py_file in sorted(namespace_dir.glob("*.py"), key=lambda p: p.name):
            if py_file.name.startswith("_"):
                continue
            module = importlib.import_module(f"{module_path}.{py_file.stem}")
            for name in sorted(vars(module)):
                candidate = getattr(module, name)
                spec = getattr(candidate, "__function_spec__", None)
                if isinstance(spec, FunctionSpec):
                    if spec.namespace != namespace:
                        spec = FunctionSpec(
                            name=spec.name,
                            arity=spec.arity,
                            namespace=namespace,
                            description=spec.description,
                            accepts_unknown=spec.accepts_unknown,
                        )
                    self.register(spec, candidate)

        self._loaded_namespaces.add(namespace)
        logger.debug(
            "Loaded function namespace %s (%d functions)",
            namespace,
            len(self._specs_by_namespace.get(namespace, {})),
        )

    def register(self, spec: FunctionSpec, fn: FunctionFn) -> None:
        validate_spec(spec)

        qualified_name = spec.qualified_name
        if qualified_name in self._specs_by_qualified:
            raise ValueError(f"Function already registered: {qualified_name}")

        self._specs_by_qualified[qualified_name] = spec
        self._functions_by_qualified[qualified_name] = fn
        self._specs_by_namespace.setdefault(spec.namespace, OrderedDict())[spec.name] = spec

    def resolve(self, name: str) -> FunctionSpec:
        if "." in name:
            if name not in self._specs_by_qualified:
                raise KeyError(f"Unknown function: {name}")
            return self._specs_by_qualified[name]

        default_specs = self._specs_by_namespace.get("default", OrderedDict())
        if name in default_specs:
            return default_specs[name]

        for namespace in sorted(self._specs_by_namespace):
            specs = self._specs_by_namespace[namespace]
            if name in specs:
                return specs[name]

        raise KeyError(f"Unknown function: {name}")

    def has(self, name: str) -> bool:
        try:
            self.resolve(name)
        except KeyError:
            return False
        return True

    def call(self, name: str, args: list[Any]) -> Any:
        spec = self.resolve(name)
        spec.arity.validate(len(args))
        return self._functions_by_qualified[spec.qualified_name](*args)

    def list_namespaces(self) -> list[str]:
        return sorted(self._specs_by_namespace.keys())

    def list_functions(self, namespace_name: str | None = None) -> dict[str, str]:
        if namespace_name is not None:
            selected = self._specs_by_namespace.get(namespace_name, OrderedDict())
            return {name: spec.description or "Function" for name, spec in selected.items()}

        output: dict[str, str] = {}
        for namespace in self.list_namespaces():
            for function_name, spec in self._specs_by_namespace[namespace].items():
                output[f"{namespace}.{function_name}"] = spec.description or "Function"
        return output
