"""
Encoding and type conversion functions
"""

import json
from typing import Any

from stratum.functions.api import AritySpec, function
from stratum.functions.default._coerce import render, require_str


@function("jsonencode", AritySpec.fixed(1))
def jsonencode(value: Any) -> str:
    """Encode a value as compact JSON with sorted keys"""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@function("jsondecode", AritySpec.fixed(1))
def jsondecode(value: str) -> Any:
    """Decode a JSON string"""
    return json.loads(require_str("jsondecode", value))


@function("tostring", AritySpec.fixed(1))
def tostring(value: Any) -> str:
    """Convert a primitive value to a string"""
    if isinstance(value, (list, dict)):
        raise TypeError("tostring cannot convert collections")
    return render(value)


@function("tonumber", AritySpec.fixed(1))
def tonumber(value: Any) -> int | float:
    """Convert a string or number to a number"""
    if isinstance(value, bool):
        raise TypeError("tonumber cannot convert booleans")
    if isinstance(value, (int, float)):
        return value
    text = require_str("tonumber", value).strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


@function("tobool", AritySpec.fixed(1))
def tobool(value: Any) -> bool:
    """Convert "true"/"false" or a boolean to a boolean"""
    if isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    raise ValueError(f"tobool cannot convert {value!r}")
