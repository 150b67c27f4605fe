from __future__ import annotations

import pytest

from stratum.functions import AritySpec, FunctionRegistry, FunctionSpec


@pytest.mark.unit
def test_default_namespace_is_loaded(functions: FunctionRegistry):
    assert functions.list_namespaces() == ["default"]
    listed = functions.list_functions("default")
    for name in ("cidrsubnet", "interpolate", "jsonencode", "merge", "add", "and"):
        assert name in listed
    assert functions.resolve("default.upper") is functions.resolve("upper")


@pytest.mark.unit
def test_unknown_function_and_arity(functions: FunctionRegistry):
    assert not functions.has("nope")
    with pytest.raises(KeyError):
        functions.resolve("nope")
    with pytest.raises(ValueError):
        functions.call("upper", ["a", "b"])


@pytest.mark.unit
def test_duplicate_registration_is_rejected():
    registry = FunctionRegistry()
    spec = FunctionSpec(name="upper", arity=AritySpec.fixed(1))
    with pytest.raises(ValueError):
        registry.register(spec, str.upper)


@pytest.mark.unit
@pytest.mark.parametrize(
    "name, args, expected",
    [
        ("cidrsubnet", ["10.0.0.0/16", 8, 2], "10.0.2.0/24"),
        ("cidrsubnet", ["10.0.0.0/16", 4, 15], "10.0.240.0/20"),
        ("cidrhost", ["10.0.1.0/24", 5], "10.0.1.5"),
        ("cidrhost", ["10.0.1.0/24", -1], "10.0.1.255"),
        ("cidrnetmask", ["172.16.0.0/12"], "255.240.0.0"),
        ("jsonencode", [{"b": 1, "a": [True, None]}], '{"a":[true,null],"b":1}'),
        ("jsondecode", ['{"a": 1}'], {"a": 1}),
        ("tonumber", ["42"], 42),
        ("tonumber", ["1.5"], 1.5),
        ("tobool", ["true"], True),
        ("tostring", [3], "3"),
        ("length", [[1, 2, 3]], 3),
        ("concat", [[1], [2, 3]], [1, 2, 3]),
        ("element", [["a", "b"], 3], "b"),
        ("lookup", [{"a": 1}, "b", 0], 0),
        ("merge", [{"a": 1, "b": 1}, {"b": 2}], {"a": 1, "b": 2}),
        ("keys", [{"b": 1, "a": 2}], ["a", "b"]),
        ("values", [{"b": 1, "a": 2}], [2, 1]),
        ("contains", [["x", "y"], "y"], True),
        ("coalesce", [None, "", "z"], "z"),
        ("flatten", [[1, [2, [3]]]], [1, 2, 3]),
        ("distinct", [[1, 2, 1, 3]], [1, 2, 3]),
        ("range", [1, 4], [1, 2, 3]),
        ("format", ["%s-%02d", "web", 3], "web-03"),
        ("join", [",", ["a", 1, True]], "a,1,true"),
        ("split", [",", "a,b"], ["a", "b"]),
        ("substr", ["abcdef", 1, 3], "bcd"),
        ("interpolate", ["n-", 2.0, "-", None], "n-2-"),
        ("divide", [6, 3], 2),
        ("modulo", [7, 3], 1),
    ],
)
def test_default_functions(functions: FunctionRegistry, name, args, expected):
    assert functions.call(name, args) == expected


@pytest.mark.unit
@pytest.mark.parametrize(
    "name, args",
    [
        ("cidrsubnet", ["10.0.0.0/30", 8, 0]),
        ("cidrsubnet", ["10.0.0.0/16", 2, 4]),
        ("cidrhost", ["10.0.0.0/30", 4]),
        ("cidrnetmask", ["fd00::/8"]),
        ("lookup", [{"a": 1}, "b"]),
        ("coalesce", [None, ""]),
        ("tobool", ["yes"]),
        ("and", [1, True]),
        ("element", [[], 0]),
        ("range", [0, 3, 0]),
    ],
)
def test_default_function_failures(functions: FunctionRegistry, name, args):
    with pytest.raises((TypeError, ValueError, KeyError)):
        functions.call(name, args)
