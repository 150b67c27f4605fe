"""Resource graph IR: flat node table plus index-pair edges."""

from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Any, Iterable

from stratum.parser import Expression, OutputDeclaration

NodeId = str
Edge = tuple[int, int]


@dataclass(frozen=True)
class LifecyclePolicy:
    """Per-node lifecycle flags."""

    create_before_destroy: bool = False
    prevent_destroy: bool = False
    ignore_changes: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ResourceNode:
    """One declared resource with unresolved attribute expressions."""

    node_id: NodeId
    resource_type: str
    name: str
    attributes: dict[str, Expression] = field(default_factory=dict)
    dependencies: tuple[NodeId, ...] = ()
    lifecycle: LifecyclePolicy = LifecyclePolicy()
    provider: str = ""
    position: str = ""


@dataclass
class ResourceGraph:
    """Arena graph. An edge ``(a, b)`` means node ``a`` depends on node ``b``."""

    nodes: list[ResourceNode] = field(default_factory=list)
    index: dict[NodeId, int] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    outputs: list[OutputDeclaration] = field(default_factory=list)
    provider_configs: dict[str, dict[str, Any]] = field(default_factory=dict)

    def add_node(self, node: ResourceNode) -> int:
        if node.node_id in self.index:
            raise ValueError(f"Node already present: {node.node_id}")
        self.index[node.node_id] = len(self.nodes)
        self.nodes.append(node)
        return self.index[node.node_id]

    def add_edge(self, dependent: NodeId, dependency: NodeId) -> None:
        edge = (self.index[dependent], self.index[dependency])
        if edge not in self.edges:
            self.edges.append(edge)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.index

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def node_ids(self) -> list[NodeId]:
        return [node.node_id for node in self.nodes]

    def node(self, node_id: NodeId) -> ResourceNode:
        return self.nodes[self.index[node_id]]

    def dependencies_of(self, node_id: NodeId) -> list[NodeId]:
        position = self.index[node_id]
        return [self.nodes[b].node_id for a, b in self.edges if a == position]

    def dependents_of(self, node_id: NodeId) -> list[NodeId]:
        position = self.index[node_id]
        return [self.nodes[a].node_id for a, b in self.edges if b == position]

    def transitive_dependencies(self, roots: Iterable[NodeId]) -> set[NodeId]:
        return self._closure(roots, self.dependencies_of)

    def transitive_dependents(self, roots: Iterable[NodeId]) -> set[NodeId]:
        return self._closure(roots, self.dependents_of)

    @staticmethod
    def _closure(roots: Iterable[NodeId], step) -> set[NodeId]:
        seen: set[NodeId] = set()
        stack = list(roots)
        while stack:
            current = stack.pop()
            for neighbour in step(current):
                if neighbour not in seen:
                    seen.add(neighbour)
                    stack.append(neighbour)
        return seen

    def topological_order(self) -> list[NodeId]:
        """Dependencies first; ties broken by declaration order."""
        remaining = [0] * len(self.nodes)
        dependents: dict[int, list[int]] = {}
        for a, b in self.edges:
            remaining[a] += 1
            dependents.setdefault(b, []).append(a)

        ready = [i for i, count in enumerate(remaining) if count == 0]
        heapq.heapify(ready)
        order: list[NodeId] = []
        while ready:
            current = heapq.heappop(ready)
            order.append(self.nodes[current].node_id)
            for dependent in dependents.get(current, []):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self.nodes):
            raise ValueError("Resource graph contains a cycle")
        return order
