"""
This module defines all Stratum features using a unified registry system.
The CLI and the HTTP API both dispatch through it.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from stratum.config import EngineSettings
from stratum.converters import summary_to_json, summary_to_text, to_dot, to_json, to_text
from stratum.error_msg import BuildError, StratumException, diagnostics_payload
from stratum.execution import ExecutionEngine
from stratum.functions import FunctionRegistry
from stratum.graph import GraphBuilder, ResourceGraph
from stratum.parser import Document, parse_document, parse_document_content
from stratum.planner import DiffPlanner, Plan
from stratum.providers import LocalFileProvider, ProviderRegistry
from stratum.storage import SQLiteStateStore, StateStore

logger = logging.getLogger("stratum.features")

T = TypeVar("T")


class OperationResult(Generic[T]):
    """Wrapper for operation results with success/error handling"""

    def __init__(
        self,
        success: bool,
        data: Optional[T] = None,
        error: Optional[str] = None,
        diagnostics: Optional[List[Dict[str, Any]]] = None,
    ):
        self.success = success
        self.data = data
        self.error = error
        self.diagnostics = diagnostics or []

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(True, data=data)

    @classmethod
    def fail(cls, error: str, data: Optional[T] = None, diagnostics=None) -> "OperationResult[T]":
        return cls(False, data=data, error=error, diagnostics=diagnostics)


@dataclass
class Feature:
    """A named operation shared by the CLI and the API"""

    name: str
    description: str
    handler: Callable
    api_endpoint: Optional[Dict[str, Any]] = None


class FeatureRegistry:
    """Registry for all Stratum features"""

    _features: Dict[str, Feature] = {}

    @classmethod
    def register(cls, feature: Feature) -> Feature:
        cls._features[feature.name] = feature
        return feature

    @classmethod
    def get_feature(cls, name: str) -> Optional[Feature]:
        return cls._features.get(name)

    @classmethod
    def get_all_features(cls) -> Dict[str, Feature]:
        return cls._features.copy()


# ----------------- Workspace -----------------


@dataclass
class Workspace:
    """Explicitly passed run context: settings, registries and the state store."""

    settings: EngineSettings
    providers: ProviderRegistry
    state: StateStore
    functions: FunctionRegistry = field(default_factory=FunctionRegistry)

    def close(self) -> None:
        self.state.close()


def default_providers(settings: EngineSettings) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(LocalFileProvider(root=settings.provider_root))
    return registry


def open_workspace(
    settings: Optional[EngineSettings] = None,
    providers: Optional[ProviderRegistry] = None,
    state: Optional[StateStore] = None,
) -> Workspace:
    settings = settings or EngineSettings.from_env()
    return Workspace(
        settings=settings,
        providers=providers or default_providers(settings),
        state=state or SQLiteStateStore(settings.state_path),
    )


def load_document(source: Optional[str] = None, content: Optional[str] = None) -> Document:
    if content is not None:
        return parse_document_content(content, source=source or "<string>")
    if source is None:
        raise BuildError("Either declaration content or a path must be provided")
    return parse_document(source)


def build_graph(
    workspace: Workspace,
    source: Optional[str] = None,
    content: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
) -> ResourceGraph:
    document = load_document(source, content)
    graph = GraphBuilder(workspace.providers, workspace.functions).build(document, variables)
    workspace.providers.configure(graph.provider_configs)
    return graph


def make_plan(
    workspace: Workspace,
    source: Optional[str] = None,
    content: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    targets: Optional[Iterable[str]] = None,
    refresh: bool = False,
    destroy: bool = False,
) -> Plan:
    graph = build_graph(workspace, source, content, variables)
    snapshot = workspace.state.load()
    planner = DiffPlanner(workspace.providers, workspace.functions)
    return planner.plan(graph, snapshot, destroy=destroy, targets=targets, refresh=refresh)


def _build_failure(error: BuildError) -> OperationResult[Dict[str, Any]]:
    logger.debug("Build failed: %s", error)
    return OperationResult.fail(str(error), diagnostics=diagnostics_payload(error.diagnostics))


# ----------------- Feature Handlers -----------------


def handle_version(**kwargs) -> OperationResult[Dict[str, str]]:
    """Handle version request"""
    from stratum.version import get_version

    return OperationResult.ok({"version": get_version()})


def handle_list_functions(
    workspace: Optional[Workspace] = None,
    namespace: Optional[str] = None,
    **kwargs,
) -> OperationResult[Dict[str, Any]]:
    """List the functions available to expressions"""
    functions = workspace.functions if workspace is not None else FunctionRegistry()
    namespaces = functions.list_namespaces()
    if namespace is not None and namespace not in namespaces:
        return OperationResult.fail(f"Unknown function namespace: {namespace}")
    return OperationResult.ok(
        {
            "functions": functions.list_functions(namespace),
            "namespaces": namespaces,
            "namespace_filter": namespace,
        }
    )


def handle_plan(
    workspace: Workspace,
    source: Optional[str] = None,
    content: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    targets: Optional[Iterable[str]] = None,
    refresh: bool = False,
    destroy: bool = False,
    **kwargs,
) -> OperationResult[Dict[str, Any]]:
    """Build, evaluate and diff; no side effects"""
    try:
        plan = make_plan(workspace, source, content, variables, targets, refresh, destroy)
    except BuildError as e:
        return _build_failure(e)
    except StratumException as e:
        return OperationResult.fail(str(e))

    data = {"plan": plan, "text": to_text(plan), "json": to_json(plan)}
    if plan.errors:
        return OperationResult.fail(f"{len(plan.errors)} plan error(s)", data=data)
    return OperationResult.ok(data)


def handle_apply(
    workspace: Workspace,
    source: Optional[str] = None,
    content: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    targets: Optional[Iterable[str]] = None,
    refresh: bool = False,
    destroy: bool = False,
    cancel_event: Optional[threading.Event] = None,
    **kwargs,
) -> OperationResult[Dict[str, Any]]:
    """Plan, then execute the plan through the engine"""
    try:
        plan = make_plan(workspace, source, content, variables, targets, refresh, destroy)
    except BuildError as e:
        return _build_failure(e)
    except StratumException as e:
        return OperationResult.fail(str(e))

    current = workspace.state.load()
    if (current.serial, current.lineage) != (plan.state_serial, plan.state_lineage):
        return OperationResult.fail("State changed since the plan was computed; plan again")

    engine = ExecutionEngine(
        workspace.providers,
        workspace.state,
        functions=workspace.functions,
        max_workers=workspace.settings.parallelism,
        retry=workspace.settings.retry_policy(),
        cancel_event=cancel_event,
    )
    summary = engine.apply(plan)
    data = {
        "plan": plan,
        "summary": summary,
        "text": to_text(plan),
        "summary_text": summary_to_text(summary),
        "json": {"plan": to_json(plan), "summary": summary_to_json(summary)},
    }
    if summary.exit_code != 0:
        return OperationResult.fail(f"Apply {summary.status}: {len(summary.failed)} node(s) failed", data=data)
    return OperationResult.ok(data)


def handle_destroy(workspace: Workspace, **kwargs) -> OperationResult[Dict[str, Any]]:
    """Plan every recorded node for removal, then execute"""
    kwargs["destroy"] = True
    return handle_apply(workspace, **kwargs)


def handle_graph(
    workspace: Workspace,
    source: Optional[str] = None,
    content: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> OperationResult[Dict[str, Any]]:
    """Render the resource graph as DOT"""
    try:
        graph = build_graph(workspace, source, content, variables)
    except BuildError as e:
        return _build_failure(e)
    return OperationResult.ok({"dot": to_dot(graph), "nodes": graph.node_ids})


def handle_drift(
    workspace: Workspace,
    source: Optional[str] = None,
    content: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    **kwargs,
) -> OperationResult[Dict[str, Any]]:
    """Read every recorded resource and report divergences"""
    if source is not None or content is not None:
        try:
            build_graph(workspace, source, content, variables)
        except BuildError as e:
            return _build_failure(e)

    plan = DiffPlanner(workspace.providers, workspace.functions).refresh(workspace.state.load())
    data = {"drift": to_json(plan)["drift"], "text": to_text(plan) if plan.drift else "No drift."}
    if plan.errors:
        return OperationResult.fail(f"{len(plan.errors)} resource(s) could not be read", data=data)
    return OperationResult.ok(data)


def handle_state_list(workspace: Workspace, **kwargs) -> OperationResult[Dict[str, Any]]:
    snapshot = workspace.state.load()
    records = [
        {
            "node_id": node_id,
            "type": record.resource_type,
            "resource_id": record.resource_id,
            "tainted": record.tainted,
            "deposed": len(record.deposed),
        }
        for node_id, record in sorted(snapshot.records.items())
    ]
    return OperationResult.ok({"serial": snapshot.serial, "records": records})


def handle_state_show(workspace: Workspace, address: str, **kwargs) -> OperationResult[Dict[str, Any]]:
    record = workspace.state.load().get(address)
    if record is None:
        return OperationResult.fail(f"No state record for {address}")
    return OperationResult.ok(record.model_dump(mode="json"))


def handle_state_rm(workspace: Workspace, address: str, **kwargs) -> OperationResult[Dict[str, Any]]:
    with workspace.state.lock(address):
        removed = workspace.state.remove(address)
    if not removed:
        return OperationResult.fail(f"No state record for {address}")
    logger.info("Removed %s from state; the real resource is no longer tracked", address)
    return OperationResult.ok({"removed": address})


def handle_state_pull(workspace: Workspace, **kwargs) -> OperationResult[Dict[str, Any]]:
    return OperationResult.ok(workspace.state.export())


def handle_state_push(workspace: Workspace, path: str, **kwargs) -> OperationResult[Dict[str, Any]]:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        workspace.state.import_data(data)
    except (OSError, ValueError) as e:
        return OperationResult.fail(f"Cannot read {path}: {e}")
    except StratumException as e:
        return OperationResult.fail(str(e))
    return OperationResult.ok({"records": len(workspace.state.load())})


# Register all features
for _name, _description, _handler, _endpoint in [
    ("version", "Get the Stratum version", handle_version, {"path": "/version", "methods": ["GET"]}),
    ("list_functions", "List the functions available to expressions", handle_list_functions, None),
    ("plan", "Compute an execution plan", handle_plan, {"path": "/plan", "methods": ["POST"]}),
    ("apply", "Plan and execute", handle_apply, None),
    ("destroy", "Destroy every recorded resource", handle_destroy, None),
    ("graph", "Render the resource graph as DOT", handle_graph, None),
    ("drift", "Detect drift between state and real resources", handle_drift, None),
    ("state_list", "List state records", handle_state_list, None),
    ("state_show", "Show one state record", handle_state_show, None),
    ("state_rm", "Forget one state record", handle_state_rm, None),
    ("state_pull", "Export the state snapshot", handle_state_pull, {"path": "/state", "methods": ["GET"]}),
    ("state_push", "Replace the state snapshot", handle_state_push, None),
]:
    FeatureRegistry.register(Feature(_name, _description, _handler, _endpoint))
