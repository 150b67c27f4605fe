"""Resource graph construction and IR."""

from stratum.graph.builder import GraphBuilder, find_cycle
from stratum.graph.hash import hash_graph, hash_node
from stratum.graph.ir import LifecyclePolicy, ResourceGraph, ResourceNode

__all__ = [
    "GraphBuilder",
    "LifecyclePolicy",
    "ResourceGraph",
    "ResourceNode",
    "find_cycle",
    "hash_graph",
    "hash_node",
]
