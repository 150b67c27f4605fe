from __future__ import annotations

import threading

import pytest

from stratum.execution import ExecutionEngine, NodeStatus, RetryPolicy
from stratum.planner import ActionKind
from stratum.providers import ProviderRegistry, SimulatedProvider


WIDE = """
resource "sim_net" "main" {}
resource "sim_vm" "a" { net_id = sim_net.main.id }
resource "sim_vm" "b" { net_id = sim_net.main.id }
resource "sim_vm" "c" { net_id = sim_net.main.id }
resource "sim_vm" "d" { net_id = sim_net.main.id }
resource "sim_disk" "a" { vm_id = sim_vm.a.id }
"""


@pytest.mark.integration
def test_worked_example_create_noop_update_remove(stack, sim, net_vm_text):
    plan, summary = stack.apply(net_vm_text)
    assert summary.status == "applied"
    assert summary.applied == ["sim_net.main", "sim_vm.web"]
    assert summary.outputs == {"vm_id": "sim_vm-0001"}

    vm = sim.resources()["sim_vm-0001"]
    assert vm == {"net_id": "sim_net-0001", "image": "img-1", "name": "web-10.0.0.0/16"}
    record = stack.state.load().get("sim_vm.web")
    assert record.dependencies == ["sim_net.main"]
    assert record.computed["arn"] == "arn:simulated:sim_vm/sim_vm-0001"

    _, summary = stack.apply(net_vm_text)
    assert summary.status == "no-changes"
    assert summary.unchanged == ["sim_net.main", "sim_vm.web"]
    assert summary.exit_code == 0
    assert len(sim.operations("create")) == 2

    sized = net_vm_text.replace("image  = var.image\n", "image  = var.image\n  size   = 2\n")
    plan, summary = stack.apply(sized)
    assert plan.kinds() == {"sim_net.main": ["noop"], "sim_vm.web": ["update"]}
    assert summary.applied == ["sim_vm.web"]
    assert sim.resources()["sim_vm-0001"]["size"] == 2

    net_only = net_vm_text.split('resource "sim_vm"')[0]
    plan, summary = stack.apply(net_only)
    assert plan.kinds() == {"sim_net.main": ["noop"], "sim_vm.web": ["destroy"]}
    assert summary.status == "applied"
    assert list(sim.resources()) == ["sim_net-0001"]
    assert "sim_vm.web" not in stack.state.load()


@pytest.mark.integration
def test_replacing_a_dependency_updates_dependents_with_new_id(stack, sim, net_vm_text):
    stack.apply(net_vm_text)
    plan, summary = stack.apply(net_vm_text, {"cidr": "10.1.0.0/16"})
    assert summary.status == "applied"
    assert [call[0] for call in sim.calls[2:]] == ["delete", "create", "update"]
    assert sim.resources()["sim_vm-0001"]["net_id"] == "sim_net-0002"
    assert sim.resources()["sim_vm-0001"]["name"] == "web-10.1.0.0/16"
    assert stack.state.load().get("sim_net.main").resource_id == "sim_net-0002"


@pytest.mark.integration
def test_transient_errors_are_retried(stack, sim, net_vm_text):
    sim.inject_failure("create", "sim_vm", transient=True, times=2)
    _, summary = stack.apply(net_vm_text)
    assert summary.status == "applied"
    outcome = next(o for o in summary.outcomes if o.node_id == "sim_vm.web")
    assert outcome.attempts == 3


@pytest.mark.integration
def test_exhausted_retries_skip_dependents_only(stack, sim):
    sim.inject_failure("create", "sim_vm", transient=True, times=None, resource_id=None)
    text = """
    resource "sim_net" "main" {}
    resource "sim_vm" "web" { net_id = sim_net.main.id }
    resource "sim_disk" "data" { vm_id = sim_vm.web.id }
    resource "sim_disk" "logs" { net_id = sim_net.main.id }
    """
    _, summary = stack.apply(text)
    assert summary.status == "partial"
    assert summary.exit_code == 1
    assert summary.applied == ["sim_disk.logs", "sim_net.main"]
    assert summary.failed == ["sim_vm.web"]
    assert summary.skipped == ["sim_disk.data"]
    (failure,) = summary.failures()
    assert failure[:2] == ("sim_vm.web", "transient")
    outcome = next(o for o in summary.outcomes if o.node_id == "sim_vm.web")
    assert outcome.attempts == 3
    assert "sim_vm.web" not in stack.state.load()


@pytest.mark.integration
def test_exhausted_update_retries_leave_independent_nodes_applied(stack, sim):
    text = """
    variable "size" { default = 1 }
    resource "sim_vm" "a" { size = var.size }
    resource "sim_vm" "b" { size = var.size }
    """
    stack.apply(text, engine_kwargs={"max_workers": 1})
    sim.inject_failure("update", "sim_vm", transient=True, times=None, resource_id="sim_vm-0001")
    _, summary = stack.apply(text, {"size": 2})
    assert summary.status == "partial"
    assert summary.failed == ["sim_vm.a"]
    assert summary.applied == ["sim_vm.b"]
    outcome = next(o for o in summary.outcomes if o.node_id == "sim_vm.a")
    assert outcome.attempts == 3
    assert outcome.classification == "transient"
    assert stack.state.load().get("sim_vm.a").attributes == {"size": 1}
    assert sim.resources()["sim_vm-0002"] == {"size": 2}


@pytest.mark.integration
def test_permanent_failure_is_not_retried(stack, sim):
    sim.inject_failure("create", "sim_vm")
    _, summary = stack.apply('resource "sim_vm" "web" {}')
    assert summary.status == "failed"
    assert summary.outcomes[0].attempts == 1
    assert summary.outcomes[0].classification == "permanent"


@pytest.mark.integration
def test_partial_create_is_tracked_as_tainted_then_replaced(stack, sim):
    text = 'resource "sim_vm" "web" { image = "img-1" }'
    sim.inject_failure("create", "sim_vm", partial=True)
    _, summary = stack.apply(text)
    assert summary.failed == ["sim_vm.web"]
    assert summary.status == "partial"
    assert summary.outcomes[0].partial
    assert summary.exit_code == 1
    record = stack.state.load().get("sim_vm.web")
    assert record.tainted and record.resource_id == "sim_vm-0001"

    plan, summary = stack.apply(text)
    assert plan.kinds()["sim_vm.web"] == ["destroy", "create"]
    assert summary.status == "applied"
    record = stack.state.load().get("sim_vm.web")
    assert not record.tainted and record.resource_id == "sim_vm-0002"
    assert list(sim.resources()) == ["sim_vm-0002"]


@pytest.mark.integration
def test_create_before_destroy_and_deposed_cleanup(stack, sim):
    text = """
    variable "image" { default = "img-1" }
    resource "sim_vm" "web" {
      image = var.image
      lifecycle { create_before_destroy = true }
    }
    """
    stack.apply(text)

    sim.inject_failure("delete", "sim_vm")
    _, summary = stack.apply(text, {"image": "img-2"})
    assert summary.status == "partial"
    record = stack.state.load().get("sim_vm.web")
    assert record.resource_id == "sim_vm-0002"
    assert [d.resource_id for d in record.deposed] == ["sim_vm-0001"]

    plan, summary = stack.apply(text, {"image": "img-2"})
    assert [a.key for a in plan.actions] == ["noop:sim_vm.web", "destroy:sim_vm.web#sim_vm-0001"]
    assert summary.status == "applied"
    assert stack.state.load().get("sim_vm.web").deposed == []
    assert list(sim.resources()) == ["sim_vm-0002"]


@pytest.mark.integration
def test_destroy_order_is_reverse_dependency_order(stack, sim, net_vm_text):
    stack.apply(net_vm_text)
    _, summary = stack.apply(net_vm_text, destroy=True)
    assert summary.status == "applied"
    assert sim.operations("delete") == [
        ("delete", "sim_vm", "sim_vm-0001"),
        ("delete", "sim_net", "sim_net-0001"),
    ]
    assert len(stack.state.load()) == 0
    assert summary.outputs == {}


@pytest.mark.integration
def test_parallelism_is_bounded(state_store, functions, build_from_text, planner):
    slow = SimulatedProvider(latency=0.05)
    registry = ProviderRegistry()
    registry.register(slow)
    plan = planner.plan(build_from_text(WIDE), state_store.load())
    engine = ExecutionEngine(registry, state_store, functions=functions, max_workers=2)
    summary = engine.apply(plan)
    assert summary.status == "applied"
    assert slow.max_in_flight == 2

    calls = [call[1:] for call in slow.calls]
    assert calls[0] == ("sim_net", None)
    assert calls[-1] == ("sim_disk", None)


@pytest.mark.integration
def test_cancellation_stops_dispatching(sim, state_store, planner, build_from_text, functions, provider_registry):
    cancel = threading.Event()
    cancel.set()
    plan = planner.plan(build_from_text(WIDE), state_store.load())
    engine = ExecutionEngine(provider_registry, state_store, functions=functions, cancel_event=cancel)
    summary = engine.apply(plan)
    assert summary.cancelled
    assert summary.status == "failed"
    assert {o.status for o in summary.outcomes} == {NodeStatus.CANCELLED}
    assert sim.calls == []


@pytest.mark.integration
def test_cancel_during_backoff(sim, state_store, planner, build_from_text, functions, provider_registry):
    sim.inject_failure("create", "sim_vm", transient=True, times=None)
    plan = planner.plan(build_from_text('resource "sim_vm" "web" {}'), state_store.load())
    engine = ExecutionEngine(
        provider_registry,
        state_store,
        functions=functions,
        retry=RetryPolicy(max_attempts=5, base_delay=5.0),
    )
    timer = threading.Timer(0.1, engine.cancel)
    timer.start()
    try:
        summary = engine.apply(plan)
    finally:
        timer.cancel()
    assert summary.outcomes[0].status == NodeStatus.CANCELLED
    assert summary.outcomes[0].attempts == 1


@pytest.mark.integration
def test_noop_actions_never_reach_the_provider(stack, sim, net_vm_text):
    stack.apply(net_vm_text)
    calls_before = list(sim.calls)
    plan, _ = stack.apply(net_vm_text)
    assert all(a.kind == ActionKind.NOOP for a in plan.actions)
    assert sim.calls == calls_before
