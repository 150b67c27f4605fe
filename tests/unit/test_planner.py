from __future__ import annotations

import pytest

from stratum.error_msg import PlanError
from stratum.evaluator import UNKNOWN
from stratum.graph import ResourceGraph
from stratum.planner import ActionKind, AttributeChange, DiffPlanner, apply_ignore_changes, diff_attributes
from stratum.providers import ProviderRegistry, ResourceSchema, SimulatedProvider
from stratum.storage import DeposedObject, StateRecord, StateSnapshot


def _keys(plan):
    return [action.key for action in plan.actions]


@pytest.mark.unit
def test_diff_attributes_skips_computed_and_flags_replacement():
    schema = ResourceSchema(replace_attributes=frozenset({"image"}), computed_attributes=frozenset({"id"}))
    changes = diff_attributes({"image": "a", "size": 1, "id": "x"}, {"image": "b", "size": 1, "extra": 2}, schema)
    assert changes == {
        "extra": AttributeChange(None, 2, False),
        "image": AttributeChange("a", "b", True),
    }


@pytest.mark.unit
def test_apply_ignore_changes_keeps_recorded_values():
    adjusted = apply_ignore_changes({"size": 2, "tags": {"a": 1}}, {"size": 1}, ["size", "tags"])
    assert adjusted == {"size": 1}


@pytest.mark.unit
def test_first_plan_creates_everything_in_dependency_order(stack, net_vm_text):
    plan = stack.plan(net_vm_text)
    assert _keys(plan) == ["create:sim_net.main", "create:sim_vm.web"]
    vm = plan.action("create:sim_vm.web")
    assert vm.requires == ("create:sim_net.main",)
    assert vm.desired["net_id"] is UNKNOWN
    assert vm.desired["name"] == "web-10.0.0.0/16"
    assert plan.outputs == {"vm_id": UNKNOWN}
    assert plan.summary()["create"] == 2
    assert plan.ok


@pytest.mark.unit
def test_planning_is_side_effect_free(stack, sim, net_vm_text):
    first = stack.plan(net_vm_text)
    second = stack.plan(net_vm_text)
    assert _keys(first) == _keys(second)
    assert first.config_digest == second.config_digest
    assert sim.calls == []
    assert stack.state.load().serial == first.state_serial


@pytest.mark.unit
def test_reapply_after_apply_is_all_noop(stack, net_vm_text):
    stack.apply(net_vm_text)
    plan = stack.plan(net_vm_text)
    assert [a.kind for a in plan.actions] == [ActionKind.NOOP, ActionKind.NOOP]
    assert not plan.has_changes
    assert plan.outputs == {"vm_id": "sim_vm-0001"}


@pytest.mark.unit
def test_in_place_update(stack):
    stack.apply('resource "sim_vm" "web" { size = 1 }')
    plan = stack.plan('resource "sim_vm" "web" { size = 2 }')
    (action,) = plan.actions
    assert action.kind == ActionKind.UPDATE
    assert action.changes == {"size": AttributeChange(1, 2, False)}
    assert action.resource_id == "sim_vm-0001"


@pytest.mark.unit
def test_ignore_changes_suppresses_diff(stack):
    stack.apply('resource "sim_vm" "web" { size = 1 }')
    plan = stack.plan('resource "sim_vm" "web" {\n size = 2\n lifecycle { ignore_changes = [size] }\n}')
    assert plan.actions[0].kind == ActionKind.NOOP


@pytest.mark.unit
def test_replacement_destroys_before_creating_by_default(stack, net_vm_text):
    stack.apply(net_vm_text)
    plan = stack.plan(net_vm_text, {"image": "img-2"})
    assert plan.kinds()["sim_vm.web"] == ["destroy", "create"]
    create = plan.action("create:sim_vm.web")
    assert create.replacement and not create.create_before_destroy
    assert "destroy:sim_vm.web" in create.requires
    assert create.changes["image"].requires_replacement
    assert plan.summary()["replace"] == 1


@pytest.mark.unit
def test_replacement_unknowns_flow_to_dependents(stack, net_vm_text):
    stack.apply(net_vm_text)
    plan = stack.plan(net_vm_text, {"cidr": "10.1.0.0/16"})
    assert plan.kinds() == {"sim_net.main": ["destroy", "create"], "sim_vm.web": ["update"]}
    update = plan.action("update:sim_vm.web")
    assert update.desired["net_id"] is UNKNOWN
    assert "create:sim_net.main" in update.requires


@pytest.mark.unit
def test_create_before_destroy_orders_create_first(stack):
    text = """
    variable "image" { default = "img-1" }
    resource "sim_vm" "web" {
      image = var.image
      lifecycle { create_before_destroy = true }
    }
    """
    stack.apply(text)
    plan = stack.plan(text, {"image": "img-2"})
    assert _keys(plan) == ["create:sim_vm.web", "destroy:sim_vm.web"]
    assert plan.action("destroy:sim_vm.web").requires == ("create:sim_vm.web",)


@pytest.mark.unit
def test_create_before_destroy_is_inherited_by_replaced_dependencies(stack):
    text = """
    variable "cidr" { default = "10.0.0.0/16" }
    variable "image" { default = "img-1" }
    resource "sim_net" "main" { cidr = var.cidr }
    resource "sim_vm" "web" {
      net_id = sim_net.main.id
      image = var.image
      lifecycle { create_before_destroy = true }
    }
    """
    stack.apply(text)
    plan = stack.plan(text, {"cidr": "10.1.0.0/16", "image": "img-2"})
    assert plan.action("destroy:sim_net.main").create_before_destroy
    assert plan.action("create:sim_net.main").requires == ()
    keys = _keys(plan)
    assert keys.index("create:sim_net.main") < keys.index("destroy:sim_net.main")
    assert keys.index("destroy:sim_vm.web") < keys.index("destroy:sim_net.main")


@pytest.mark.unit
def test_removed_nodes_destroy_dependents_first(stack, net_vm_text):
    stack.apply(net_vm_text)
    plan = stack.plan("")
    assert _keys(plan) == ["destroy:sim_vm.web", "destroy:sim_net.main"]
    assert plan.action("destroy:sim_net.main").requires == ("destroy:sim_vm.web",)
    assert plan.action("destroy:sim_vm.web").reason == "no longer declared"


@pytest.mark.unit
def test_destroy_mode_with_prevent_destroy(stack):
    text = """
    resource "sim_net" "main" {
      lifecycle { prevent_destroy = true }
    }
    resource "sim_vm" "web" { net_id = sim_net.main.id }
    """
    stack.apply(text)
    plan = stack.plan(text, destroy=True)
    assert _keys(plan) == ["destroy:sim_vm.web"]
    assert [e.node_id for e in plan.errors] == ["sim_net.main"]
    assert isinstance(plan.errors[0], PlanError)


@pytest.mark.unit
def test_prevent_destroy_blocks_replacement_and_its_dependents(stack, net_vm_text):
    text = net_vm_text.replace(
        "cidr = var.cidr\n", "cidr = var.cidr\n  lifecycle { prevent_destroy = true }\n"
    )
    stack.apply(text)
    plan = stack.plan(text, {"cidr": "10.9.0.0/16"})
    assert plan.actions == []
    assert [e.node_id for e in plan.errors] == ["sim_net.main"]
    assert plan.skipped == {"sim_vm.web": "sim_net.main"}


@pytest.mark.unit
def test_evaluation_errors_are_scoped(stack):
    plan = stack.plan(
        """
        resource "sim_net" "bad" { cidr = cidrsubnet("10.0.0.0/30", 8, 0) }
        resource "sim_vm" "child" { net_id = sim_net.bad.id }
        resource "sim_vm" "other" { image = "x" }
        """
    )
    assert _keys(plan) == ["create:sim_vm.other"]
    assert [e.node_id for e in plan.errors] == ["sim_net.bad"]
    assert plan.skipped == {"sim_vm.child": "sim_net.bad"}
    assert not plan.ok


@pytest.mark.unit
def test_targets_limit_scope_to_dependencies(stack):
    text = """
    resource "sim_net" "main" {}
    resource "sim_vm" "web" { net_id = sim_net.main.id }
    resource "sim_vm" "other" {}
    """
    plan = stack.plan(text, targets=["sim_vm.web"])
    assert _keys(plan) == ["create:sim_net.main", "create:sim_vm.web"]

    plan = stack.plan(text, targets=["sim_vm.nope"])
    assert plan.actions == []
    assert plan.errors[0].node_id == "sim_vm.nope"


@pytest.mark.unit
def test_targeted_destroy_includes_dependents(stack, net_vm_text):
    stack.apply(net_vm_text + '\nresource "sim_vm" "other" {}\n')
    plan = stack.plan(net_vm_text + '\nresource "sim_vm" "other" {}\n', destroy=True, targets=["sim_net.main"])
    assert _keys(plan) == ["destroy:sim_vm.web", "destroy:sim_net.main"]


@pytest.mark.unit
def test_tainted_and_deposed_records(planner, build_from_text, sim):
    graph = build_from_text('resource "sim_vm" "web" { image = "img-1" }')
    snapshot = StateSnapshot(
        serial=3,
        lineage="l-1",
        records={
            "sim_vm.web": StateRecord(
                node_id="sim_vm.web",
                resource_type="sim_vm",
                provider="simulated",
                resource_id="sim_vm-0002",
                attributes={"image": "img-1"},
                tainted=True,
                deposed=[DeposedObject(resource_id="sim_vm-0001", attributes={"image": "img-0"})],
            )
        },
    )
    plan = planner.plan(graph, snapshot)
    assert plan.state_serial == 3 and plan.state_lineage == "l-1"
    assert set(_keys(plan)) == {
        "destroy:sim_vm.web",
        "create:sim_vm.web",
        "destroy:sim_vm.web#sim_vm-0001",
    }
    assert plan.action("create:sim_vm.web").reason == "tainted"


@pytest.mark.unit
def test_record_without_provider_is_a_plan_error():
    registry = ProviderRegistry()
    registry.register(SimulatedProvider(resource_types=["sim_vm"]))
    snapshot = StateSnapshot(
        records={
            "gone_type.x": StateRecord(node_id="gone_type.x", resource_type="gone_type", resource_id="g-1"),
        }
    )
    plan = DiffPlanner(registry).plan(ResourceGraph(), snapshot)
    assert plan.actions == []
    assert plan.errors[0].node_id == "gone_type.x"


@pytest.mark.unit
def test_refresh_detects_drift_and_deletion(stack, sim, planner, net_vm_text):
    stack.apply(net_vm_text)
    sim.drift("sim_vm-0001", image="img-9")
    plan = stack.plan(net_vm_text, refresh=True)
    assert plan.drift["sim_vm.web"]["image"] == AttributeChange("img-1", "img-9")
    assert plan.kinds()["sim_vm.web"] == ["destroy", "create"]

    sim.forget("sim_vm-0001")
    report = planner.refresh(stack.state.load())
    assert report.drift == {"sim_vm.web": None}
    assert report.actions == []

    plan = stack.plan(net_vm_text, refresh=True)
    assert plan.kinds()["sim_vm.web"] == ["create"]


@pytest.mark.unit
def test_replacement_outside_target_scope_of_live_dependent_is_refused(stack, sim, net_vm_text):
    stack.apply(net_vm_text)
    plan = stack.plan(net_vm_text, {"cidr": "10.1.0.0/16"}, targets=["sim_net.main"])
    assert plan.actions == []
    (error,) = plan.errors
    assert isinstance(error, PlanError)
    assert error.node_id == "sim_net.main"
    assert "sim_vm.web" in error.msg

    _, summary = stack.apply(net_vm_text, {"cidr": "10.1.0.0/16"}, targets=["sim_net.main"])
    assert summary.status == "failed"
    assert sim.resources()["sim_vm-0001"]["net_id"] == "sim_net-0001"
    assert "sim_net-0001" in sim.resources()


@pytest.mark.unit
def test_replacement_is_refused_when_a_dependent_fails_evaluation(stack, sim, net_vm_text):
    stack.apply(net_vm_text)
    broken = net_vm_text.replace("image  = var.image\n", 'image  = var.image\n  size   = tonumber("zz")\n')
    plan = stack.plan(broken, {"cidr": "10.1.0.0/16"})
    assert plan.actions == []
    assert sorted(e.node_id for e in plan.errors) == ["sim_net.main", "sim_vm.web"]
    assert any(isinstance(e, PlanError) and e.node_id == "sim_net.main" for e in plan.errors)

    stack.apply(broken, {"cidr": "10.1.0.0/16"})
    assert sorted(sim.resources()) == ["sim_net-0001", "sim_vm-0001"]


@pytest.mark.unit
def test_externally_removed_record_plans_create_not_update(stack, net_vm_text):
    stack.apply(net_vm_text)
    assert stack.state.remove("sim_vm.web")
    plan = stack.plan(net_vm_text)
    assert plan.kinds() == {"sim_net.main": ["noop"], "sim_vm.web": ["create"]}
    assert plan.action("create:sim_vm.web").reason == "no state record"
