from __future__ import annotations

import json

import pytest

import stratum.features as features_mod
from stratum.config import EngineSettings
from stratum.features import FeatureRegistry, Workspace
from stratum.storage import StateRecord


@pytest.fixture
def workspace(provider_registry, state_store, functions) -> Workspace:
    settings = EngineSettings(parallelism=2, max_attempts=2, backoff_base=0.0)
    return Workspace(settings=settings, providers=provider_registry, state=state_store, functions=functions)


def _run(name: str, **kwargs):
    return FeatureRegistry.get_feature(name).handler(**kwargs)


@pytest.mark.integration
def test_every_feature_is_registered():
    names = set(FeatureRegistry.get_all_features())
    assert names == {
        "version",
        "list_functions",
        "plan",
        "apply",
        "destroy",
        "graph",
        "drift",
        "state_list",
        "state_show",
        "state_rm",
        "state_pull",
        "state_push",
    }
    assert FeatureRegistry.get_feature("plan").api_endpoint == {"path": "/plan", "methods": ["POST"]}


@pytest.mark.integration
def test_plan_apply_destroy_through_features(workspace, sim, net_vm_text):
    result = _run("plan", workspace=workspace, content=net_vm_text)
    assert result.success
    assert result.data["json"]["summary"]["create"] == 2

    result = _run("apply", workspace=workspace, content=net_vm_text)
    assert result.success
    assert result.data["summary"].status == "applied"
    assert "Apply applied" in result.data["summary_text"]
    json.dumps(result.data["json"])

    listed = _run("state_list", workspace=workspace).data
    assert [r["node_id"] for r in listed["records"]] == ["sim_net.main", "sim_vm.web"]

    result = _run("destroy", workspace=workspace, content=net_vm_text)
    assert result.success
    assert sim.resources() == {}


@pytest.mark.integration
def test_failed_apply_still_returns_summary(workspace, sim, net_vm_text):
    sim.inject_failure("create", "sim_vm")
    result = _run("apply", workspace=workspace, content=net_vm_text)
    assert not result.success
    assert result.data["summary"].status == "partial"
    assert result.data["json"]["summary"]["failures"][0]["node_id"] == "sim_vm.web"


@pytest.mark.integration
def test_plan_errors_fail_but_keep_the_plan(workspace):
    result = _run(
        "plan",
        workspace=workspace,
        content='resource "sim_vm" "a" { x = tonumber("zz") }\nresource "sim_vm" "b" {}',
    )
    assert not result.success
    assert [a["key"] for a in result.data["json"]["actions"]] == ["create:sim_vm.b"]


@pytest.mark.integration
def test_build_errors_carry_diagnostics(workspace):
    result = _run("plan", workspace=workspace, content='resource "sim_vm" "a" { x = var.nope }')
    assert not result.success
    assert result.data is None
    assert result.diagnostics[0]["code"] == "E_UNKNOWN_REFERENCE"


@pytest.mark.integration
def test_apply_refuses_a_stale_plan(workspace, sim, monkeypatch, net_vm_text):
    real_make_plan = features_mod.make_plan

    def make_plan_then_write(*args, **kwargs):
        plan = real_make_plan(*args, **kwargs)
        workspace.state.save(
            "sim_vm.other",
            StateRecord(node_id="sim_vm.other", resource_type="sim_vm", resource_id="sim_vm-0099"),
        )
        return plan

    monkeypatch.setattr(features_mod, "make_plan", make_plan_then_write)
    result = _run("apply", workspace=workspace, content=net_vm_text)
    assert not result.success
    assert "State changed" in result.error
    assert sim.calls == []


@pytest.mark.integration
def test_drift_and_state_edits(workspace, sim, net_vm_text, tmp_path):
    _run("apply", workspace=workspace, content=net_vm_text)
    sim.drift("sim_net-0001", cidr="192.168.0.0/16")

    result = _run("drift", workspace=workspace)
    assert result.success
    assert result.data["drift"]["sim_net.main"]["cidr"]["after"] == "192.168.0.0/16"

    shown = _run("state_show", workspace=workspace, address="sim_vm.web")
    assert shown.data["resource_id"] == "sim_vm-0001"
    assert not _run("state_show", workspace=workspace, address="sim_vm.nope").success

    pulled = _run("state_pull", workspace=workspace).data
    assert _run("state_rm", workspace=workspace, address="sim_vm.web").success
    assert not _run("state_rm", workspace=workspace, address="sim_vm.web").success

    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(pulled), encoding="utf-8")
    result = _run("state_push", workspace=workspace, path=str(path))
    assert result.success
    assert result.data == {"records": 2}

    path.write_text("not json", encoding="utf-8")
    assert not _run("state_push", workspace=workspace, path=str(path)).success


@pytest.mark.integration
def test_graph_feature(workspace, net_vm_text):
    result = _run("graph", workspace=workspace, content=net_vm_text)
    assert result.success
    assert result.data["nodes"] == ["sim_net.main", "sim_vm.web"]
    assert "->" in result.data["dot"]
