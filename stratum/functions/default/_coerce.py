"""Shared argument coercion helpers for default functions."""

from __future__ import annotations

import json
from typing import Any


def require_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{name} expects a string, got {type(value).__name__}")
    return value


def require_number(name: str, value: Any) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{name} expects a number, got {type(value).__name__}")
    return value


def render(value: Any) -> str:
    """String form used by interpolation and join."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    return str(value)
