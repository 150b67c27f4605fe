"""Shared pytest fixtures for Stratum tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from stratum.execution import ExecutionEngine, RetryPolicy
from stratum.functions import FunctionRegistry
from stratum.graph import GraphBuilder
from stratum.parser import parse_document_content
from stratum.planner import DiffPlanner
from stratum.providers import ProviderRegistry, SimulatedProvider
from stratum.storage import InMemoryStateStore, SQLiteStateStore

# Attributes the simulated provider cannot change in place
REPLACE_ATTRIBUTES = {"sim_net": ["cidr"], "sim_vm": ["image"]}

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, multiplier=1.0, max_delay=0.0)


def pytest_configure(config: pytest.Config) -> None:
    for marker in ("unit", "contract", "integration"):
        config.addinivalue_line("markers", f"{marker}: {marker} tests")


@pytest.fixture(scope="session")
def functions() -> FunctionRegistry:
    return FunctionRegistry()


@pytest.fixture
def sim() -> SimulatedProvider:
    return SimulatedProvider(config={"replace_attributes": REPLACE_ATTRIBUTES})


@pytest.fixture
def provider_registry(sim: SimulatedProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(sim)
    return registry


@pytest.fixture
def state_store():
    store = InMemoryStateStore()
    yield store
    store.close()


@pytest.fixture
def sqlite_store(tmp_path: Path):
    store = SQLiteStateStore(tmp_path / "state.db")
    yield store
    store.close()


@pytest.fixture
def build_from_text(provider_registry, functions):
    def _build(text: str, variables=None):
        document = parse_document_content(text)
        return GraphBuilder(provider_registry, functions).build(document, variables)

    return _build


@pytest.fixture
def planner(provider_registry, functions) -> DiffPlanner:
    return DiffPlanner(provider_registry, functions)


@pytest.fixture
def engine_factory(provider_registry, state_store, functions):
    def _engine(**kwargs) -> ExecutionEngine:
        kwargs.setdefault("retry", FAST_RETRY)
        return ExecutionEngine(provider_registry, state_store, functions=functions, **kwargs)

    return _engine


class Stack:
    """Plan/apply loop over one declaration text, provider and state store"""

    def __init__(self, build, planner, engine_factory, state):
        self.build = build
        self.planner = planner
        self.engine_factory = engine_factory
        self.state = state

    def plan(self, text: str, variables=None, **kwargs):
        graph = self.build(text, variables)
        return self.planner.plan(graph, self.state.load(), **kwargs)

    def apply(self, text: str, variables=None, engine_kwargs=None, **kwargs):
        plan = self.plan(text, variables, **kwargs)
        summary = self.engine_factory(**(engine_kwargs or {})).apply(plan)
        return plan, summary


@pytest.fixture
def stack(build_from_text, planner, engine_factory, state_store) -> Stack:
    return Stack(build_from_text, planner, engine_factory, state_store)


NET_VM = """
variable "cidr" { default = "10.0.0.0/16" }
variable "image" { default = "img-1" }

resource "sim_net" "main" {
  cidr = var.cidr
}

resource "sim_vm" "web" {
  net_id = sim_net.main.id
  image  = var.image
  name   = "web-${sim_net.main.cidr}"
}

output "vm_id" { value = sim_vm.web.id }
"""


@pytest.fixture
def net_vm_text() -> str:
    return NET_VM
