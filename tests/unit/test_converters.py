from __future__ import annotations

import json

import pytest

from stratum.converters import PlanJSONEncoder, summary_to_json, summary_to_text, to_dot, to_json, to_text


@pytest.mark.unit
def test_plan_json_renders_unknown_values(stack, net_vm_text):
    plan = stack.plan(net_vm_text)
    payload = to_json(plan)
    assert payload["summary"]["create"] == 2
    vm = payload["actions"][1]
    assert vm["key"] == "create:sim_vm.web"
    assert vm["desired"]["net_id"] == {"unknown": True}
    assert vm["requires"] == ["create:sim_net.main"]
    assert payload["outputs"] == {"vm_id": {"unknown": True}}
    json.dumps(payload, cls=PlanJSONEncoder)


@pytest.mark.unit
def test_plan_text(stack, net_vm_text):
    text = to_text(stack.plan(net_vm_text))
    assert "+ sim_net.main: create" in text
    assert "net_id = (known after apply)" in text
    assert text.endswith("Plan: 2 to add, 0 to change, 0 to destroy (0 replacements).")

    stack.apply(net_vm_text)
    assert to_text(stack.plan(net_vm_text)).endswith("No changes.")

    replaced = to_text(stack.plan(net_vm_text, {"image": "img-2"}))
    assert "create (replace)" in replaced
    assert "(forces replacement)" in replaced


@pytest.mark.unit
def test_summary_rendering(stack, net_vm_text):
    _, summary = stack.apply(net_vm_text)
    payload = summary_to_json(summary)
    assert payload["status"] == "applied"
    assert payload["exit_code"] == 0
    assert payload["nodes"] == {"sim_net.main": "applied", "sim_vm.web": "applied"}
    assert payload["outputs"] == {"vm_id": "sim_vm-0001"}
    json.dumps(payload, cls=PlanJSONEncoder)

    text = summary_to_text(summary)
    assert text.startswith("Apply applied: 2 applied")
    assert "vm_id = \"sim_vm-0001\"" in text


@pytest.mark.unit
def test_dot_edges_point_from_dependency_to_dependent(build_from_text, stack, net_vm_text):
    graph = build_from_text(net_vm_text)
    dot = to_dot(graph, stack.plan(net_vm_text))
    assert dot.startswith("digraph {")
    assert '"sim_net.main" -> "sim_vm.web";' in dot
    assert 'color="green"' in dot
