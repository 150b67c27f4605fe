"""
Stratum Main module - CLI and HTTP API
"""

import contextlib
import json
import logging
import signal
import threading
from pathlib import Path
from typing import Any, Dict, Generic, Iterator, List, Optional, TypeVar

import typer
import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.routing import APIRouter
from pydantic import BaseModel

from stratum.config import EngineSettings, resolve_variables
from stratum.converters import PlanJSONEncoder
from stratum.error_msg import StratumException
from stratum.features import FeatureRegistry, OperationResult, Workspace, open_workspace
from stratum.log import setup_logging
from stratum.version import get_version

T = TypeVar("T")

logger = logging.getLogger("stratum.main")


class ErrorResponse(BaseModel):
    """Standard error response model"""

    detail: Any


class SuccessResponse(BaseModel, Generic[T]):
    """Standard success response model"""

    success: bool = True
    data: Optional[T] = None


app = typer.Typer(
    name="stratum",
    help="Stratum - declarative infrastructure reconciliation",
    add_completion=False,
)
state_app = typer.Typer(help="Inspect and edit recorded state", add_completion=False)
app.add_typer(state_app, name="state")

api_app = FastAPI(
    title="Stratum API",
    description="API for planning and inspecting Stratum deployments",
    version=get_version(),
)
api_router = APIRouter(prefix="/api/v1")


class PlanRequest(BaseModel):
    content: str
    filename: Optional[str] = None
    variables: Dict[str, Any] = {}
    targets: List[str] = []
    refresh: bool = False
    destroy: bool = False


# ----------------- Helper Functions -----------------


def _workspace(
    state: Optional[Path] = None,
    provider_root: Optional[Path] = None,
    parallelism: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> Workspace:
    settings = EngineSettings.from_env(
        state_path=state,
        provider_root=provider_root,
        parallelism=parallelism,
        max_attempts=max_attempts,
    )
    logger.debug("Settings: %s", settings.model_dump(mode="json"))
    return open_workspace(settings)


def handle_cli_feature(feature_name: str, workspace: Optional[Workspace] = None, **kwargs: Any) -> OperationResult:
    """Run a feature handler, logging failures and exiting non-zero on them"""
    feature = FeatureRegistry.get_feature(feature_name)
    if not feature:
        logger.error("Unknown feature: %s", feature_name)
        raise typer.Exit(code=1)

    try:
        result = feature.handler(workspace=workspace, **kwargs)
    except StratumException as e:
        logger.error("%s", e)
        raise typer.Exit(code=1) from e
    except Exception as e:
        logger.exception("Unexpected error")
        raise typer.Exit(code=1) from e

    if not result.success:
        for diagnostic in result.diagnostics:
            location = f" at {diagnostic['location']}" if diagnostic.get("location") else ""
            logger.error("%s%s: %s", diagnostic["code"], location, diagnostic["message"])
        if not result.diagnostics:
            logger.error("Operation failed: %s", result.error)
    return result


@contextlib.contextmanager
def _interruptible() -> Iterator[threading.Event]:
    """First Ctrl-C stops dispatching new actions, the second one aborts."""
    cancel_event = threading.Event()

    def on_interrupt(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupted: waiting for in-flight operations (Ctrl-C again to abort)")
        cancel_event.set()

    try:
        previous = signal.signal(signal.SIGINT, on_interrupt)
    except ValueError:
        # not in the main thread
        yield cancel_event
        return
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


def _variables(var: Optional[List[str]]) -> Dict[str, Any]:
    try:
        return resolve_variables(var or [])
    except StratumException as e:
        logger.error("%s", e)
        raise typer.Exit(code=1) from e


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, cls=PlanJSONEncoder))


# ----------------- CLI Commands -----------------

PathArgument = typer.Argument(..., help="Declaration file or directory of *.stm files")
VarOption = typer.Option(None, "--var", help="Set a variable: name=value (repeatable)")
TargetOption = typer.Option(None, "--target", help="Limit the run to ADDRESS and what it needs (repeatable)")
StateOption = typer.Option(None, "--state", help="State database path [env: STRATUM_STATE_PATH]")
ProviderRootOption = typer.Option(
    None, "--provider-root", help="Directory of the local provider [env: STRATUM_PROVIDER_ROOT]"
)
DebugOption = typer.Option(False, "--debug", help="Enable debug mode")
VerboseOption = typer.Option(False, "--verbose", help="Enable verbose logging (between info and debug)")


@app.command()
def version() -> None:
    """Show the Stratum version"""
    setup_logging(False)
    result = handle_cli_feature("version")
    logger.info("Stratum version: %s", result.data["version"])


@app.command("list-functions")
def list_functions(
    namespace: Optional[str] = typer.Argument(None, help="Namespace to filter functions (optional)")
) -> None:
    """List the functions available to expressions"""
    setup_logging(False)
    result = handle_cli_feature("list_functions", namespace=namespace)
    if not result.success:
        raise typer.Exit(code=1)

    data = result.data
    if data["namespace_filter"]:
        typer.echo(f"Functions in namespace '{data['namespace_filter']}':")
    else:
        typer.echo("All available functions:")
    for name, description in sorted(data["functions"].items()):
        typer.echo(f"  {name:<30} {description}")
    if not data["namespace_filter"]:
        typer.echo(f"\nAvailable namespaces: {', '.join(data['namespaces'])}")


@app.command()
def plan(
    path: Path = PathArgument,
    var: Optional[List[str]] = VarOption,
    target: Optional[List[str]] = TargetOption,
    refresh: bool = typer.Option(False, "--refresh", help="Read real resources before diffing"),
    destroy: bool = typer.Option(False, "--destroy", help="Plan removal of every recorded resource"),
    json_output: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
    state: Optional[Path] = StateOption,
    provider_root: Optional[Path] = ProviderRootOption,
    debug: bool = DebugOption,
    verbose: bool = VerboseOption,
) -> None:
    """Build the graph, evaluate and diff; prints the plan and changes nothing"""
    setup_logging(debug, verbose)
    workspace = _workspace(state, provider_root)
    try:
        result = handle_cli_feature(
            "plan",
            workspace,
            source=str(path),
            variables=_variables(var),
            targets=target or [],
            refresh=refresh,
            destroy=destroy,
        )
        if result.data:
            if json_output:
                _echo_json(result.data["json"])
            else:
                typer.echo(result.data["text"])
    finally:
        workspace.close()
    if not result.success:
        raise typer.Exit(code=1)


def _apply(
    path: Path,
    var: Optional[List[str]],
    target: Optional[List[str]],
    refresh: bool,
    destroy: bool,
    parallelism: Optional[int],
    max_attempts: Optional[int],
    json_output: bool,
    state: Optional[Path],
    provider_root: Optional[Path],
) -> None:
    workspace = _workspace(state, provider_root, parallelism, max_attempts)
    try:
        with _interruptible() as cancel_event:
            result = handle_cli_feature(
                "destroy" if destroy else "apply",
                workspace,
                source=str(path),
                variables=_variables(var),
                targets=target or [],
                refresh=refresh,
                cancel_event=cancel_event,
            )
        if result.data:
            if json_output:
                _echo_json(result.data["json"])
            else:
                typer.echo(result.data["text"])
                typer.echo("")
                typer.echo(result.data["summary_text"])
    finally:
        workspace.close()
    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def apply(
    path: Path = PathArgument,
    var: Optional[List[str]] = VarOption,
    target: Optional[List[str]] = TargetOption,
    refresh: bool = typer.Option(False, "--refresh", help="Read real resources before diffing"),
    parallelism: Optional[int] = typer.Option(None, help="Concurrent provider operations [env: STRATUM_PARALLELISM]"),
    max_attempts: Optional[int] = typer.Option(None, help="Attempts per transient failure [env: STRATUM_MAX_ATTEMPTS]"),
    json_output: bool = typer.Option(False, "--json", help="Print plan and summary as JSON"),
    state: Optional[Path] = StateOption,
    provider_root: Optional[Path] = ProviderRootOption,
    debug: bool = DebugOption,
    verbose: bool = VerboseOption,
) -> None:
    """Plan and execute"""
    setup_logging(debug, verbose)
    _apply(path, var, target, refresh, False, parallelism, max_attempts, json_output, state, provider_root)


@app.command()
def destroy(
    path: Path = PathArgument,
    var: Optional[List[str]] = VarOption,
    target: Optional[List[str]] = TargetOption,
    parallelism: Optional[int] = typer.Option(None, help="Concurrent provider operations [env: STRATUM_PARALLELISM]"),
    max_attempts: Optional[int] = typer.Option(None, help="Attempts per transient failure [env: STRATUM_MAX_ATTEMPTS]"),
    json_output: bool = typer.Option(False, "--json", help="Print plan and summary as JSON"),
    state: Optional[Path] = StateOption,
    provider_root: Optional[Path] = ProviderRootOption,
    debug: bool = DebugOption,
    verbose: bool = VerboseOption,
) -> None:
    """Destroy every recorded resource (or the targets and their dependents)"""
    setup_logging(debug, verbose)
    _apply(path, var, target, False, True, parallelism, max_attempts, json_output, state, provider_root)


@app.command()
def graph(
    path: Path = PathArgument,
    var: Optional[List[str]] = VarOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write DOT to this file"),
    debug: bool = DebugOption,
) -> None:
    """Render the resource graph in DOT format"""
    setup_logging(debug)
    workspace = _workspace()
    try:
        result = handle_cli_feature("graph", workspace, source=str(path), variables=_variables(var))
    finally:
        workspace.close()
    if not result.success:
        raise typer.Exit(code=1)
    if output:
        output.write_text(result.data["dot"], encoding="utf-8")
        logger.info("Resource graph saved as DOT to %s", output)
    else:
        typer.echo(result.data["dot"], nl=False)


@app.command()
def drift(
    path: Optional[Path] = typer.Argument(None, help="Declarations providing provider configuration"),
    var: Optional[List[str]] = VarOption,
    state: Optional[Path] = StateOption,
    provider_root: Optional[Path] = ProviderRootOption,
    debug: bool = DebugOption,
    verbose: bool = VerboseOption,
) -> None:
    """Compare recorded state with the real resources"""
    setup_logging(debug, verbose)
    workspace = _workspace(state, provider_root)
    try:
        result = handle_cli_feature(
            "drift", workspace, source=str(path) if path else None, variables=_variables(var)
        )
        if result.data:
            typer.echo(result.data["text"])
    finally:
        workspace.close()
    if not result.success:
        raise typer.Exit(code=1)


def _state_command(feature_name: str, state: Optional[Path], **kwargs: Any) -> Any:
    workspace = _workspace(state)
    try:
        result = handle_cli_feature(feature_name, workspace, **kwargs)
    finally:
        workspace.close()
    if not result.success:
        raise typer.Exit(code=1)
    return result.data


@state_app.command("list")
def state_list(state: Optional[Path] = StateOption) -> None:
    """List recorded nodes"""
    setup_logging(False)
    data = _state_command("state_list", state)
    for record in data["records"]:
        flags = " (tainted)" if record["tainted"] else ""
        if record["deposed"]:
            flags += f" ({record['deposed']} deposed)"
        typer.echo(f"{record['node_id']:<40} {record['resource_id']}{flags}")


@state_app.command("show")
def state_show(address: str = typer.Argument(..., help="Node address, e.g. sim_net.main"), state: Optional[Path] = StateOption) -> None:
    """Show one state record"""
    setup_logging(False)
    _echo_json(_state_command("state_show", state, address=address))


@state_app.command("rm")
def state_rm(address: str = typer.Argument(..., help="Node address to forget"), state: Optional[Path] = StateOption) -> None:
    """Forget a node without destroying its resource"""
    setup_logging(False)
    _state_command("state_rm", state, address=address)


@state_app.command("pull")
def state_pull(state: Optional[Path] = StateOption) -> None:
    """Print the versioned state snapshot as JSON"""
    setup_logging(False)
    _echo_json(_state_command("state_pull", state))


@state_app.command("push")
def state_push(path: Path = typer.Argument(..., help="Snapshot JSON file"), state: Optional[Path] = StateOption) -> None:
    """Replace the state with a snapshot produced by `state pull`"""
    setup_logging(False)
    _state_command("state_push", state, path=str(path))


# ----------------- API Endpoints -----------------


def _api_result(result: OperationResult) -> Any:
    if not result.success and not result.data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": result.error, "diagnostics": result.diagnostics},
        )
    return result.data


@api_router.get("/version")
def get_version_endpoint():
    """Get Stratum version"""
    return _api_result(FeatureRegistry.get_feature("version").handler())


@api_router.post("/plan", responses={400: {"model": ErrorResponse}})
def plan_endpoint(request: PlanRequest):
    """Plan declarations sent in the request body against the current state"""
    workspace = open_workspace()
    try:
        result = FeatureRegistry.get_feature("plan").handler(
            workspace=workspace,
            source=request.filename,
            content=request.content,
            variables=request.variables,
            targets=request.targets,
            refresh=request.refresh,
            destroy=request.destroy,
        )
        data = _api_result(result)
        return {"plan": data["json"], "text": data["text"]}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error in plan endpoint: %s", str(e), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from e
    finally:
        workspace.close()


@api_router.get("/state")
def state_endpoint():
    """Export the current state snapshot"""
    workspace = open_workspace()
    try:
        return _api_result(FeatureRegistry.get_feature("state_pull").handler(workspace=workspace))
    finally:
        workspace.close()


api_app.include_router(api_router)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host to bind the API server"),
    port: int = typer.Option(8000, help="Port to bind the API server"),
    debug: bool = DebugOption,
):
    """Start the Stratum API server"""
    setup_logging(debug)
    logger.info("Starting Stratum API server version %s on %s:%s", get_version(), host, port)
    logger.info("API documentation available at http://%s:%s/docs", host, port)
    uvicorn.run(api_app, host=host, port=port)


if __name__ == "__main__":
    app()
