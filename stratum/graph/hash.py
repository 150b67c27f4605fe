"""Deterministic digests of resource declarations."""

from __future__ import annotations

from dataclasses import fields, is_dataclass
from typing import Any
import hashlib

import canonicaljson

from stratum.graph.ir import ResourceGraph, ResourceNode


def _normalize_value(value: Any) -> Any:
    if hasattr(value, "to_syntax") and callable(value.to_syntax):
        return value.to_syntax()

    if is_dataclass(value) and not isinstance(value, type):
        return {field.name: _normalize_value(getattr(value, field.name)) for field in fields(value)}

    if isinstance(value, dict):
        return {str(k): _normalize_value(v) for k, v in sorted(value.items(), key=lambda item: str(item[0]))}

    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_normalize_value(item) for item in value]
        if isinstance(value, (set, frozenset)):
            return sorted(items, key=str)
        return items

    if isinstance(value, float):
        # canonicaljson rejects floats
        return repr(value)

    return value


def node_payload(node: ResourceNode) -> dict[str, Any]:
    return {
        "node_id": node.node_id,
        "type": node.resource_type,
        "attributes": _normalize_value(node.attributes),
        "dependencies": sorted(node.dependencies),
        "lifecycle": _normalize_value(node.lifecycle),
        "provider": node.provider,
    }


def hash_node(node: ResourceNode) -> str:
    canonical = canonicaljson.encode_canonical_json(node_payload(node))
    return hashlib.sha256(canonical).hexdigest()


def hash_graph(graph: ResourceGraph) -> str:
    """Digest of the whole configuration: node digests plus resolved variables."""
    payload = {
        "nodes": {node.node_id: hash_node(node) for node in graph.nodes},
        "variables": _normalize_value(graph.variables),
        "outputs": {output.name: output.value.to_syntax() for output in graph.outputs},
    }
    canonical = canonicaljson.encode_canonical_json(payload)
    return hashlib.sha256(canonical).hexdigest()
