"""
DOT (Graphviz) converter for resource graphs
"""

from typing import Optional

from stratum.graph.ir import ResourceGraph
from stratum.planner import ActionKind, Plan

_COLOURS = {
    ActionKind.CREATE: "green",
    ActionKind.UPDATE: "orange",
    ActionKind.DESTROY: "red",
    ActionKind.NOOP: "grey",
}


def to_dot(graph: ResourceGraph, plan: Optional[Plan] = None) -> str:
    """Convert a ResourceGraph to DOT format

    Edges point from a dependency to its dependent. With a plan, nodes are
    coloured by their (last) action kind.
    """
    colours = {}
    if plan is not None:
        for action in plan.actions:
            colours[action.node_id] = _COLOURS[action.kind]

    dot_str = "digraph {\n  rankdir=LR;\n"
    for node in graph.nodes:
        label = f"{node.resource_type}\\n{node.name}"
        attributes = f'label="{label}", shape=box'
        if node.node_id in colours:
            attributes += f', color="{colours[node.node_id]}"'
        dot_str += f'  "{node.node_id}" [{attributes}]\n'
    for dependent, dependency in graph.edges:
        dot_str += f'  "{graph.nodes[dependency].node_id}" -> "{graph.nodes[dependent].node_id}";\n'
    dot_str += "}\n"
    return dot_str
