"""
Operator functions targeted by infix and prefix operators
"""

from typing import Any

from stratum.functions.api import AritySpec, function
from stratum.functions.default._coerce import require_number


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"{name} expects a boolean, got {type(value).__name__}")
    return value


@function("add", AritySpec.fixed(2))
def add(left, right):
    """Sum of two numbers"""
    return require_number("+", left) + require_number("+", right)


@function("subtract", AritySpec.fixed(2))
def subtract(left, right):
    """Difference of two numbers"""
    return require_number("-", left) - require_number("-", right)


@function("multiply", AritySpec.fixed(2))
def multiply(left, right):
    """Product of two numbers"""
    return require_number("*", left) * require_number("*", right)


@function("divide", AritySpec.fixed(2))
def divide(left, right):
    """Quotient; integral when exact"""
    quotient = require_number("/", left) / require_number("/", right)
    if isinstance(quotient, float) and quotient.is_integer():
        return int(quotient)
    return quotient


@function("modulo", AritySpec.fixed(2))
def modulo(left, right):
    """Remainder of integer division"""
    return require_number("%", left) % require_number("%", right)


@function("negate", AritySpec.fixed(1))
def negate(value):
    """Arithmetic negation"""
    return -require_number("-", value)


@function("equal", AritySpec.fixed(2))
def equal(left, right) -> bool:
    """Equality"""
    return left == right


@function("not_equal", AritySpec.fixed(2))
def not_equal(left, right) -> bool:
    """Inequality"""
    return left != right


@function("less", AritySpec.fixed(2))
def less(left, right) -> bool:
    """Numeric less-than"""
    return require_number("<", left) < require_number("<", right)


@function("less_equal", AritySpec.fixed(2))
def less_equal(left, right) -> bool:
    """Numeric less-or-equal"""
    return require_number("<=", left) <= require_number("<=", right)


@function("greater", AritySpec.fixed(2))
def greater(left, right) -> bool:
    """Numeric greater-than"""
    return require_number(">", left) > require_number(">", right)


@function("greater_equal", AritySpec.fixed(2))
def greater_equal(left, right) -> bool:
    """Numeric greater-or-equal"""
    return require_number(">=", left) >= require_number(">=", right)


@function("and", AritySpec.fixed(2))
def and_(left, right) -> bool:
    """Boolean conjunction"""
    return _require_bool("&&", left) and _require_bool("&&", right)


@function("or", AritySpec.fixed(2))
def or_(left, right) -> bool:
    """Boolean disjunction"""
    return _require_bool("||", left) or _require_bool("||", right)


@function("not", AritySpec.fixed(1))
def not_(value) -> bool:
    """Boolean negation"""
    return not _require_bool("!", value)
