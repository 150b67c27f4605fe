"""
Collection functions
"""

from typing import Any

from stratum.functions.api import AritySpec, function
from stratum.functions.default._coerce import require_number


@function("length", AritySpec.fixed(1))
def length(value: Any) -> int:
    """Number of elements of a list or map, or characters of a string"""
    if isinstance(value, (list, dict, str)):
        return len(value)
    raise TypeError(f"length expects a list, map or string, got {type(value).__name__}")


@function("concat", AritySpec.variadic(min_args=1))
def concat(*lists: list) -> list:
    """Concatenate lists"""
    result: list = []
    for item in lists:
        if not isinstance(item, list):
            raise TypeError("concat expects only lists")
        result.extend(item)
    return result


@function("element", AritySpec.fixed(2))
def element(items: list, index: int) -> Any:
    """List element with wrap-around indexing"""
    if not isinstance(items, list) or not items:
        raise ValueError("element expects a non-empty list")
    return items[int(require_number("element", index)) % len(items)]


@function("lookup", AritySpec(min_args=2, max_args=3))
def lookup(mapping: dict, key: str, *default: Any) -> Any:
    """Map value by key, with an optional default"""
    if not isinstance(mapping, dict):
        raise TypeError("lookup expects a map")
    if key in mapping:
        return mapping[key]
    if default:
        return default[0]
    raise KeyError(f"lookup: key '{key}' not found and no default given")


@function("merge", AritySpec.variadic(min_args=1))
def merge(*mappings: dict) -> dict:
    """Merge maps, later keys win"""
    result: dict = {}
    for mapping in mappings:
        if not isinstance(mapping, dict):
            raise TypeError("merge expects only maps")
        result.update(mapping)
    return result


@function("keys", AritySpec.fixed(1))
def keys(mapping: dict) -> list:
    """Sorted keys of a map"""
    if not isinstance(mapping, dict):
        raise TypeError("keys expects a map")
    return sorted(mapping)


@function("values", AritySpec.fixed(1))
def values(mapping: dict) -> list:
    """Map values in key order"""
    if not isinstance(mapping, dict):
        raise TypeError("values expects a map")
    return [mapping[key] for key in sorted(mapping)]


@function("contains", AritySpec.fixed(2))
def contains(items: list, value: Any) -> bool:
    """Whether a list contains a value"""
    if not isinstance(items, list):
        raise TypeError("contains expects a list")
    return value in items


@function("coalesce", AritySpec.variadic(min_args=1))
def coalesce(*candidates: Any) -> Any:
    """First argument that is neither null nor an empty string"""
    for candidate in candidates:
        if candidate is not None and candidate != "":
            return candidate
    raise ValueError("coalesce: no non-null argument")


@function("flatten", AritySpec.fixed(1))
def flatten(items: list) -> list:
    """Flatten nested lists"""
    if not isinstance(items, list):
        raise TypeError("flatten expects a list")
    result: list = []
    for item in items:
        if isinstance(item, list):
            result.extend(flatten(item))
        else:
            result.append(item)
    return result


@function("distinct", AritySpec.fixed(1))
def distinct(items: list) -> list:
    """Remove duplicates, keeping first occurrences"""
    if not isinstance(items, list):
        raise TypeError("distinct expects a list")
    result: list = []
    for item in items:
        if item not in result:
            result.append(item)
    return result


@function("range", AritySpec(min_args=1, max_args=3))
def range_(*bounds: int) -> list:
    """range(stop), range(start, stop) or range(start, stop, step)"""
    numbers = [int(require_number("range", bound)) for bound in bounds]
    if len(numbers) == 3 and numbers[2] == 0:
        raise ValueError("range step cannot be zero")
    return list(range(*numbers))
