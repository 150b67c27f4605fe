"""Shared converter helpers for plan rendering."""

from __future__ import annotations

import dataclasses
from enum import Enum
from typing import Any

from pydantic import BaseModel

from stratum.evaluator import UNKNOWN

# JSON rendering of a value only known after apply
UNKNOWN_JSON = {"unknown": True}


def plain(value: Any) -> Any:
    """Recursively unwrap dataclasses, enums, models and UNKNOWN into JSON values."""
    if value is UNKNOWN:
        return dict(UNKNOWN_JSON)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [plain(item) for item in value]
        return sorted(items, key=str) if isinstance(value, (set, frozenset)) else items
    return value


def render_value(value: Any) -> str:
    """Short human form of an attribute value."""
    if value is UNKNOWN:
        return "(known after apply)"
    if isinstance(value, str):
        return f'"{value}"'
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return "[" + ", ".join(render_value(item) for item in value) + "]"
    if isinstance(value, dict):
        return "{" + ", ".join(f"{k} = {render_value(v)}" for k, v in value.items()) + "}"
    return str(value)
