"""
String functions
"""

from typing import Any

from stratum.functions.api import AritySpec, function
from stratum.functions.default._coerce import render, require_str


@function("lower", AritySpec.fixed(1))
def lower(value: str) -> str:
    """Lowercase a string"""
    return require_str("lower", value).lower()


@function("upper", AritySpec.fixed(1))
def upper(value: str) -> str:
    """Uppercase a string"""
    return require_str("upper", value).upper()


@function("trim", AritySpec(min_args=1, max_args=2))
def trim(value: str, characters: str | None = None) -> str:
    """Strip whitespace (or the given characters) from both ends"""
    return require_str("trim", value).strip(characters)


@function("format", AritySpec.variadic(min_args=1))
def format_(spec: str, *args: Any) -> str:
    """printf-style formatting, e.g. format("%s-%02d", name, 3)"""
    require_str("format", spec)
    return spec % tuple(args)


@function("join", AritySpec.fixed(2))
def join(separator: str, items: list) -> str:
    """Join list items with a separator"""
    require_str("join", separator)
    if not isinstance(items, list):
        raise TypeError("join expects a list as second argument")
    return separator.join(render(item) for item in items)


@function("split", AritySpec.fixed(2))
def split(separator: str, value: str) -> list:
    """Split a string on a separator"""
    return require_str("split", value).split(require_str("split", separator))


@function("replace", AritySpec.fixed(3))
def replace(value: str, old: str, new: str) -> str:
    """Replace every occurrence of a substring"""
    return require_str("replace", value).replace(require_str("replace", old), render(new))


@function("substr", AritySpec.fixed(3))
def substr(value: str, offset: int, length: int) -> str:
    """Substring by offset and length; a negative length runs to the end"""
    text = require_str("substr", value)
    start = int(offset)
    if int(length) < 0:
        return text[start:]
    return text[start : start + int(length)]


@function("interpolate", AritySpec.variadic(min_args=1))
def interpolate(*segments: Any) -> str:
    """Concatenate template segments into one string"""
    return "".join(render(segment) for segment in segments)
