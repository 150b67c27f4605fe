from __future__ import annotations

import pytest

from stratum.error_msg import (
    BuildErrors,
    CyclicDependency,
    DuplicateIdentifier,
    MalformedExpression,
    MissingVariable,
    UnknownProviderType,
    UnknownReference,
)
from stratum.graph import GraphBuilder, find_cycle, hash_graph
from stratum.parser import parse_document_content
from stratum.providers import ProviderRegistry, SimulatedProvider


@pytest.mark.unit
def test_graph_nodes_edges_and_order(build_from_text, net_vm_text):
    graph = build_from_text(net_vm_text)
    assert graph.node_ids == ["sim_net.main", "sim_vm.web"]
    assert graph.dependencies_of("sim_vm.web") == ["sim_net.main"]
    assert graph.dependents_of("sim_net.main") == ["sim_vm.web"]
    assert graph.topological_order() == ["sim_net.main", "sim_vm.web"]
    assert graph.variables == {"cidr": "10.0.0.0/16", "image": "img-1"}
    assert graph.node("sim_vm.web").provider == "simulated"


@pytest.mark.unit
def test_topological_order_ties_follow_declaration_order(build_from_text):
    graph = build_from_text(
        """
        resource "sim_vm" "c" { net = sim_net.a.id }
        resource "sim_vm" "b" {}
        resource "sim_net" "a" {}
        """
    )
    assert graph.topological_order() == ["sim_vm.b", "sim_net.a", "sim_vm.c"]


@pytest.mark.unit
def test_explicit_depends_on_adds_edge(build_from_text):
    graph = build_from_text(
        """
        resource "sim_net" "main" {}
        resource "sim_vm" "web" { depends_on = [sim_net.main] }
        """
    )
    assert graph.node("sim_vm.web").dependencies == ("sim_net.main",)
    assert graph.transitive_dependents(["sim_net.main"]) == {"sim_vm.web"}


@pytest.mark.unit
def test_variable_overrides_win_over_defaults(build_from_text, net_vm_text):
    graph = build_from_text(net_vm_text, {"image": "img-2", "unused": 1})
    assert graph.variables["image"] == "img-2"
    assert "unused" not in graph.variables


@pytest.mark.unit
def test_lifecycle_policy(build_from_text):
    graph = build_from_text(
        """
        resource "sim_vm" "web" {
          size = 1
          lifecycle {
            create_before_destroy = true
            prevent_destroy = true
            ignore_changes = ["size"]
          }
        }
        """
    )
    lifecycle = graph.node("sim_vm.web").lifecycle
    assert lifecycle.create_before_destroy
    assert lifecycle.prevent_destroy
    assert lifecycle.ignore_changes == frozenset({"size"})


@pytest.mark.unit
@pytest.mark.parametrize(
    "text, error",
    [
        ('resource "sim_vm" "a" { x = sim_net.nope.id }', UnknownReference),
        ('resource "sim_vm" "a" { x = var.nope }', UnknownReference),
        ('variable "v" {}\nresource "sim_vm" "a" { x = var.v }', MissingVariable),
        ('resource "sim_vm" "a" {}\nresource "sim_vm" "a" {}', DuplicateIdentifier),
        ('resource "sim_vm" "a" { x = nosuchfn(1) }', MalformedExpression),
        ('resource "sim_vm" "a" { x = upper("a", "b") }', MalformedExpression),
        ('resource "sim_vm" "a" { x = sim_vm }', MalformedExpression),
        ('resource "sim_vm" "a" { lifecycle { prevent_destroy = var.x } }', MalformedExpression),
        ('resource "sim_vm" "a" { x = sim_vm.a.id }', CyclicDependency),
        ('output "o" { value = sim_vm.nope.id }', UnknownReference),
        ('provider "nope" { x = 1 }', UnknownProviderType),
    ],
)
def test_build_errors(build_from_text, text, error):
    with pytest.raises(error):
        build_from_text(text)


@pytest.mark.unit
def test_unknown_resource_type_without_provider():
    registry = ProviderRegistry()
    registry.register(SimulatedProvider(resource_types=["sim_vm"]))
    document = parse_document_content('resource "aws_vpc" "main" {}')
    with pytest.raises(UnknownProviderType):
        GraphBuilder(registry).build(document)


@pytest.mark.unit
def test_several_errors_are_collected(build_from_text):
    with pytest.raises(BuildErrors) as excinfo:
        build_from_text(
            """
            resource "sim_vm" "a" { x = var.missing }
            resource "sim_vm" "b" { y = sim_net.nope.id }
            """
        )
    codes = [d.code for d in excinfo.value.diagnostics]
    assert codes == ["E_UNKNOWN_REFERENCE", "E_UNKNOWN_REFERENCE"]


@pytest.mark.unit
def test_cycle_reports_closed_path(build_from_text):
    with pytest.raises(CyclicDependency) as excinfo:
        build_from_text(
            """
            resource "sim_vm" "a" { x = sim_vm.c.id }
            resource "sim_vm" "b" { x = sim_vm.a.id }
            resource "sim_vm" "c" { x = sim_vm.b.id }
            """
        )
    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"sim_vm.a", "sim_vm.b", "sim_vm.c"}


@pytest.mark.unit
def test_find_cycle_on_acyclic_input():
    assert find_cycle({"a": ["b"], "b": ["c"], "c": []}) == []
    assert find_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]


@pytest.mark.unit
def test_provider_config_may_use_variables(build_from_text):
    graph = build_from_text(
        """
        variable "region" { default = "eu" }
        provider "simulated" { region = upper(var.region) }
        """
    )
    assert graph.provider_configs == {"simulated": {"region": "EU"}}

    with pytest.raises(MalformedExpression):
        build_from_text(
            """
            resource "sim_net" "main" {}
            provider "simulated" { net = sim_net.main.id }
            """
        )


@pytest.mark.unit
def test_config_digest_is_stable_and_sensitive(build_from_text, net_vm_text):
    first = hash_graph(build_from_text(net_vm_text))
    assert first == hash_graph(build_from_text(net_vm_text))
    assert first != hash_graph(build_from_text(net_vm_text, {"image": "img-2"}))
