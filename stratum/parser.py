"""
Stratum Parser module - declaration language parsed with Lark

The grammar is a small HCL-like block language::

    variable "cidr" { default = "10.0.0.0/16" }

    resource "aws_vpc" "main" {
      cidr_block = var.cidr
      tags       = { Name = "lab-${var.env}" }
      lifecycle { prevent_destroy = true }
    }

    output "vpc_id" { value = aws_vpc.main.id }

Blocks are parsed generically and then interpreted into declarations.
Operators are desugared to function calls, string interpolation to
``interpolate(...)``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from lark import Lark, Token, Transformer, v_args
from lark.exceptions import UnexpectedInput, VisitError

from stratum.error_msg import BuildError, DeclarationSyntaxError, DuplicateIdentifier

Position = str
PathStep = Union[str, int]

VARIABLE_ROOT = "var"

# Infix/prefix operators and the functions they desugar to
BINARY_OPERATORS = {
    "+": "add",
    "-": "subtract",
    "*": "multiply",
    "/": "divide",
    "%": "modulo",
    "==": "equal",
    "!=": "not_equal",
    "<": "less",
    "<=": "less_equal",
    ">": "greater",
    ">=": "greater_equal",
    "&&": "and",
    "||": "or",
}
UNARY_OPERATORS = {"!": "not", "-": "negate"}


# ----------------- Expressions -----------------


@dataclass
class Expression:
    """Base class for expressions in the declaration language"""

    def to_syntax(self) -> str:
        """Convert the expression to syntax form"""
        raise NotImplementedError("Must be implemented by subclasses")

    def children(self) -> Tuple["Expression", ...]:
        return ()

    def walk(self) -> Iterator["Expression"]:
        """Depth-first iteration over this expression and its sub-expressions"""
        yield self
        for child in self.children():
            yield from child.walk()

    def references(self) -> List["EReference"]:
        return [expr for expr in self.walk() if isinstance(expr, EReference)]


@dataclass
class ELiteral(Expression):
    """String, number, boolean or null literal"""

    value: Any

    def __str__(self) -> str:
        return self.to_syntax()

    def to_syntax(self) -> str:
        if self.value is None:
            return "null"
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        if isinstance(self.value, str):
            return json.dumps(self.value)
        return f"{self.value}"


@dataclass
class EReference(Expression):
    """Reference to a resource attribute (``type.name.attr``) or variable (``var.name``)"""

    parts: Tuple[PathStep, ...]
    position: Position = ""

    @property
    def is_variable(self) -> bool:
        return self.parts[0] == VARIABLE_ROOT

    @property
    def variable_name(self) -> str:
        return str(self.parts[1])

    @property
    def node_id(self) -> str:
        return f"{self.parts[0]}.{self.parts[1]}"

    @property
    def path(self) -> Tuple[PathStep, ...]:
        return tuple(self.parts[2:])

    @property
    def is_well_formed(self) -> bool:
        return len(self.parts) >= 2 and all(isinstance(p, str) for p in self.parts[:2])

    def __str__(self) -> str:
        return self.to_syntax()

    def to_syntax(self) -> str:
        rendered = str(self.parts[0])
        for step in self.parts[1:]:
            if isinstance(step, int):
                rendered += f"[{step}]"
            else:
                rendered += f".{step}"
        return rendered


@dataclass
class ECall(Expression):
    """Function call expression"""

    identifier: str
    arguments: List[Expression]
    position: Position = ""
    operator: Optional[str] = None

    def children(self) -> Tuple[Expression, ...]:
        return tuple(self.arguments)

    def __str__(self) -> str:
        return self.to_syntax()

    def to_syntax(self) -> str:
        if self.operator is not None and len(self.arguments) == 2:
            left, right = self.arguments
            return f"({left.to_syntax()} {self.operator} {right.to_syntax()})"
        if self.operator is not None and len(self.arguments) == 1:
            return f"{self.operator}{self.arguments[0].to_syntax()}"
        arg_str = ", ".join(arg.to_syntax() for arg in self.arguments)
        return f"{self.identifier}({arg_str})"


@dataclass
class EConditional(Expression):
    """``predicate ? when_true : when_false``"""

    predicate: Expression
    when_true: Expression
    when_false: Expression

    def children(self) -> Tuple[Expression, ...]:
        return (self.predicate, self.when_true, self.when_false)

    def to_syntax(self) -> str:
        return (
            f"{self.predicate.to_syntax()} ? {self.when_true.to_syntax()}"
            f" : {self.when_false.to_syntax()}"
        )


@dataclass
class EList(Expression):
    """List constructor"""

    items: List[Expression]

    def children(self) -> Tuple[Expression, ...]:
        return tuple(self.items)

    def to_syntax(self) -> str:
        return "[" + ", ".join(item.to_syntax() for item in self.items) + "]"


@dataclass
class EMap(Expression):
    """Map constructor with ordered entries"""

    entries: List[Tuple[str, Expression]]

    def children(self) -> Tuple[Expression, ...]:
        return tuple(value for _, value in self.entries)

    def to_syntax(self) -> str:
        inner = ", ".join(f"{json.dumps(key)} = {value.to_syntax()}" for key, value in self.entries)
        return "{" + inner + "}"


# ----------------- Declarations -----------------


@dataclass
class Attribute:
    name: str
    expression: Expression
    position: Position = ""


@dataclass
class Block:
    """Generic block as produced by the grammar, before interpretation"""

    block_type: str
    labels: List[str]
    attributes: List[Attribute] = field(default_factory=list)
    blocks: List["Block"] = field(default_factory=list)
    position: Position = ""


@dataclass
class ResourceDeclaration:
    resource_type: str
    name: str
    attributes: Dict[str, Expression]
    depends_on: List[Expression] = field(default_factory=list)
    lifecycle: Dict[str, Expression] = field(default_factory=dict)
    position: Position = ""

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def to_syntax(self) -> str:
        lines = [f'resource "{self.resource_type}" "{self.name}" {{']
        for key, value in self.attributes.items():
            lines.append(f"  {key} = {value.to_syntax()}")
        if self.depends_on:
            deps = ", ".join(dep.to_syntax() for dep in self.depends_on)
            lines.append(f"  depends_on = [{deps}]")
        if self.lifecycle:
            lines.append("  lifecycle {")
            for key, value in self.lifecycle.items():
                lines.append(f"    {key} = {value.to_syntax()}")
            lines.append("  }")
        lines.append("}")
        return "\n".join(lines)


@dataclass
class VariableDeclaration:
    name: str
    default: Optional[Expression] = None
    description: str = ""
    position: Position = ""

    def to_syntax(self) -> str:
        if self.default is None:
            return f'variable "{self.name}" {{}}'
        return f'variable "{self.name}" {{ default = {self.default.to_syntax()} }}'


@dataclass
class OutputDeclaration:
    name: str
    value: Expression
    description: str = ""
    position: Position = ""

    def to_syntax(self) -> str:
        return f'output "{self.name}" {{ value = {self.value.to_syntax()} }}'


@dataclass
class ProviderDeclaration:
    name: str
    attributes: Dict[str, Expression]
    position: Position = ""

    def to_syntax(self) -> str:
        inner = " ".join(f"{key} = {value.to_syntax()}" for key, value in self.attributes.items())
        return f'provider "{self.name}" {{ {inner} }}'


@dataclass
class Document:
    """A parsed declaration document"""

    resources: List[ResourceDeclaration] = field(default_factory=list)
    variables: List[VariableDeclaration] = field(default_factory=list)
    outputs: List[OutputDeclaration] = field(default_factory=list)
    providers: List[ProviderDeclaration] = field(default_factory=list)
    source: str = "<string>"

    def to_syntax(self) -> str:
        chunks = [decl.to_syntax() for decl in self.variables]
        chunks += [decl.to_syntax() for decl in self.providers]
        chunks += [decl.to_syntax() for decl in self.resources]
        chunks += [decl.to_syntax() for decl in self.outputs]
        return "\n\n".join(chunks)

    def __str__(self) -> str:
        return self.to_syntax()


# Lark grammar for the declaration language
grammar = r"""
    document: block*

    block: IDENTIFIER label* "{" body "}"
    label: ESCAPED_STRING
    body: (attribute | block)*
    attribute: IDENTIFIER "=" expression

    ?expression: conditional

    ?conditional: or_expr
        | or_expr "?" expression ":" expression -> conditional_expr

    ?or_expr: and_expr
        | or_expr OR and_expr -> binary_expr
    ?and_expr: equality
        | and_expr AND equality -> binary_expr
    ?equality: comparison
        | equality EQ comparison -> binary_expr
        | equality NEQ comparison -> binary_expr
    ?comparison: sum
        | comparison LT sum -> binary_expr
        | comparison LE sum -> binary_expr
        | comparison GT sum -> binary_expr
        | comparison GE sum -> binary_expr
    ?sum: product
        | sum PLUS product -> binary_expr
        | sum MINUS product -> binary_expr
    ?product: unary
        | product STAR unary -> binary_expr
        | product SLASH unary -> binary_expr
        | product PERCENT unary -> binary_expr
    ?unary: primary
        | NOT unary -> unary_expr
        | MINUS unary -> unary_expr

    ?primary: NUMBER -> number
        | "true" -> true
        | "false" -> false
        | "null" -> null
        | ESCAPED_STRING -> template
        | call
        | reference
        | list
        | map
        | "(" expression ")"

    call: IDENTIFIER "(" arguments? ")"
    arguments: expression ("," expression)* ","?

    reference: IDENTIFIER accessor*
    accessor: "." IDENTIFIER -> attr_accessor
        | "[" INT "]" -> index_accessor
        | "[" ESCAPED_STRING "]" -> key_accessor

    list: "[" list_items? "]"
    list_items: expression ("," expression)* ","?

    map: "{" map_items? "}"
    map_items: map_item (","? map_item)* ","?
    map_item: (IDENTIFIER | ESCAPED_STRING) "=" expression

    IDENTIFIER: /[a-zA-Z_][a-zA-Z0-9_\-]*/

    OR: "||"
    AND: "&&"
    EQ: "=="
    NEQ: "!="
    LE: "<="
    GE: ">="
    LT: "<"
    GT: ">"
    PLUS: "+"
    MINUS: "-"
    STAR: "*"
    SLASH: "/"
    PERCENT: "%"
    NOT: "!"

    LINE_COMMENT: /(#|\/\/)[^\n]*/
    BLOCK_COMMENT: /\/\*(.|\n)*?\*\//

    %import common.ESCAPED_STRING
    %import common.NUMBER
    %import common.INT
    %import common.WS
    %ignore WS
    %ignore LINE_COMMENT
    %ignore BLOCK_COMMENT
"""


def _position(token: Any) -> Position:
    line = getattr(token, "line", None)
    column = getattr(token, "column", None)
    if line is None:
        return ""
    return f"{line}:{column}"


def _decode_string(token: str) -> str:
    try:
        return json.loads(token)
    except json.JSONDecodeError:
        return token[1:-1]


@v_args(inline=True)
class DeclarationTransformer(Transformer):
    """Transform the parse tree into generic blocks and expressions"""

    def document(self, *blocks):
        return list(blocks)

    def block(self, identifier, *rest):
        *labels, body = rest
        attributes = [item for item in body if isinstance(item, Attribute)]
        blocks = [item for item in body if isinstance(item, Block)]
        return Block(str(identifier), list(labels), attributes, blocks, _position(identifier))

    def label(self, token):
        return _decode_string(str(token))

    def body(self, *items):
        return list(items)

    def attribute(self, identifier, expression):
        return Attribute(str(identifier), expression, _position(identifier))

    def conditional_expr(self, predicate, when_true, when_false):
        return EConditional(predicate, when_true, when_false)

    def binary_expr(self, left, operator, right):
        op = str(operator)
        return ECall(BINARY_OPERATORS[op], [left, right], _position(operator), operator=op)

    def unary_expr(self, operator, operand):
        op = str(operator)
        return ECall(UNARY_OPERATORS[op], [operand], _position(operator), operator=op)

    def number(self, token):
        text = str(token)
        if any(ch in text for ch in ".eE"):
            return ELiteral(float(text))
        return ELiteral(int(text))

    def true(self):
        return ELiteral(True)

    def false(self):
        return ELiteral(False)

    def null(self):
        return ELiteral(None)

    def template(self, token):
        return parse_template(_decode_string(str(token)), _position(token))

    def call(self, identifier, arguments=None):
        return ECall(str(identifier), list(arguments or []), _position(identifier))

    def arguments(self, *expressions):
        return list(expressions)

    def reference(self, identifier, *accessors):
        return EReference((str(identifier), *accessors), _position(identifier))

    def attr_accessor(self, token):
        return str(token)

    def index_accessor(self, token):
        return int(token)

    def key_accessor(self, token):
        return _decode_string(str(token))

    def list(self, items=None):
        return EList(list(items or []))

    def list_items(self, *expressions):
        return list(expressions)

    def map(self, items=None):
        return EMap(list(items or []))

    def map_items(self, *pairs):
        seen: set[str] = set()
        for key, _ in pairs:
            if key in seen:
                raise DuplicateIdentifier(f"Duplicate map key '{key}'", symbol=key)
            seen.add(key)
        return list(pairs)

    def map_item(self, key, value):
        if isinstance(key, Token) and key.type == "ESCAPED_STRING":
            return (_decode_string(str(key)), value)
        return (str(key), value)


# Create the parser
parser = Lark(
    grammar,
    start=["document", "expression"],
    parser="lalr",
    maybe_placeholders=False,
)


def _parse(content: str, start: str, source: str) -> Any:
    try:
        tree = parser.parse(content, start=start)
    except UnexpectedInput as exc:
        location = f"{source}:{exc.line}:{exc.column}"
        context = exc.get_context(content).rstrip() if content else ""
        raise DeclarationSyntaxError(
            f"Syntax error at {location}\n{context}", location=location
        ) from exc

    try:
        return DeclarationTransformer().transform(tree)
    except VisitError as exc:
        if isinstance(exc.orig_exc, BuildError):
            raise exc.orig_exc from None
        raise


def parse_expression_content(content: str, source: str = "<expression>") -> Expression:
    """Parse a single expression from a string"""
    result = _parse(content, "expression", source)
    if not isinstance(result, Expression):
        raise DeclarationSyntaxError(f"Expected expression, got {type(result).__name__}")
    return result


def parse_template(text: str, position: Position = "") -> Expression:
    """Split ``${...}`` interpolations out of a string literal.

    A string that is exactly one interpolation keeps the type of the inner
    expression; ``$${`` escapes a literal ``${``.
    """
    parts: List[Expression] = []
    buffer = ""
    index = 0
    while index < len(text):
        if text.startswith("$${", index):
            buffer += "${"
            index += 3
            continue
        if text.startswith("${", index):
            end = _matching_brace(text, index + 2)
            if end < 0:
                raise DeclarationSyntaxError(
                    f"Unterminated interpolation in string at {position}", location=position
                )
            if buffer:
                parts.append(ELiteral(buffer))
                buffer = ""
            parts.append(parse_expression_content(text[index + 2 : end], source=position or "<template>"))
            index = end + 1
            continue
        buffer += text[index]
        index += 1

    if buffer or not parts:
        parts.append(ELiteral(buffer))

    if len(parts) == 1:
        return parts[0]
    return ECall("interpolate", parts, position)


def _matching_brace(text: str, start: int) -> int:
    depth = 0
    quoted = False
    index = start
    while index < len(text):
        char = text[index]
        if quoted:
            if char == "\\":
                index += 2
                continue
            if char == '"':
                quoted = False
        elif char == '"':
            quoted = True
        elif char == "{":
            depth += 1
        elif char == "}":
            if depth == 0:
                return index
            depth -= 1
        index += 1
    return -1


# ----------------- Block interpretation -----------------


_META_ARGUMENTS = {"depends_on"}
_LIFECYCLE_KEYS = {"create_before_destroy", "prevent_destroy", "ignore_changes"}


def _attributes_dict(block: Block) -> Dict[str, Expression]:
    attributes: Dict[str, Expression] = {}
    for attribute in block.attributes:
        if attribute.name in attributes:
            raise DuplicateIdentifier(
                f"Attribute '{attribute.name}' set twice in {block.block_type} block",
                location=attribute.position,
                symbol=attribute.name,
            )
        attributes[attribute.name] = attribute.expression
    return attributes


def _nested_block_map(block: Block) -> EMap:
    """Nested blocks become maps; repeated nested blocks become lists of maps."""
    entries: List[Tuple[str, Expression]] = list(_attributes_dict(block).items())
    for name, items in _group_nested(block.blocks).items():
        if any(key == name for key, _ in entries):
            raise DuplicateIdentifier(
                f"'{name}' is both an attribute and a nested block", location=block.position, symbol=name
            )
        entries.append((name, EList(items)))
    return EMap(entries)


def _group_nested(blocks: List[Block]) -> Dict[str, List[Expression]]:
    grouped: Dict[str, List[Expression]] = {}
    for nested in blocks:
        if nested.labels:
            raise DeclarationSyntaxError(
                f"Nested block '{nested.block_type}' cannot have labels", location=nested.position
            )
        grouped.setdefault(nested.block_type, []).append(_nested_block_map(nested))
    return grouped


def _expect_labels(block: Block, count: int) -> None:
    if len(block.labels) != count:
        raise DeclarationSyntaxError(
            f"Block '{block.block_type}' expects {count} label(s), got {len(block.labels)}",
            location=block.position,
        )


def _literal_string(attributes: Dict[str, Expression], key: str) -> str:
    expression = attributes.get(key)
    if isinstance(expression, ELiteral) and isinstance(expression.value, str):
        return expression.value
    return ""


def _interpret_resource(block: Block) -> ResourceDeclaration:
    _expect_labels(block, 2)
    resource_type, name = block.labels
    attributes = _attributes_dict(block)

    depends_on: List[Expression] = []
    if "depends_on" in attributes:
        dependency_list = attributes.pop("depends_on")
        if not isinstance(dependency_list, EList):
            raise DeclarationSyntaxError(
                f"depends_on of {resource_type}.{name} must be a list", location=block.position
            )
        depends_on = list(dependency_list.items)

    lifecycle: Dict[str, Expression] = {}
    nested_blocks: List[Block] = []
    for nested in block.blocks:
        if nested.block_type == "lifecycle":
            if lifecycle:
                raise DuplicateIdentifier(
                    f"{resource_type}.{name} declares more than one lifecycle block",
                    location=nested.position,
                )
            lifecycle = _attributes_dict(nested)
            unknown = set(lifecycle) - _LIFECYCLE_KEYS
            if unknown:
                raise DeclarationSyntaxError(
                    f"Unsupported lifecycle setting(s): {', '.join(sorted(unknown))}",
                    location=nested.position,
                )
        else:
            nested_blocks.append(nested)

    for nested_name, items in _group_nested(nested_blocks).items():
        if nested_name in attributes or nested_name in _META_ARGUMENTS:
            raise DuplicateIdentifier(
                f"'{nested_name}' is both an attribute and a nested block of {resource_type}.{name}",
                location=block.position,
                symbol=nested_name,
            )
        attributes[nested_name] = EList(items)

    return ResourceDeclaration(
        resource_type=resource_type,
        name=name,
        attributes=attributes,
        depends_on=depends_on,
        lifecycle=lifecycle,
        position=block.position,
    )


def _interpret_blocks(blocks: List[Block], source: str) -> Document:
    document = Document(source=source)
    for block in blocks:
        kind = block.block_type
        if kind == "resource":
            document.resources.append(_interpret_resource(block))
        elif kind == "variable":
            _expect_labels(block, 1)
            attributes = _attributes_dict(block)
            document.variables.append(
                VariableDeclaration(
                    name=block.labels[0],
                    default=attributes.get("default"),
                    description=_literal_string(attributes, "description"),
                    position=block.position,
                )
            )
        elif kind == "output":
            _expect_labels(block, 1)
            attributes = _attributes_dict(block)
            if "value" not in attributes:
                raise DeclarationSyntaxError(
                    f"Output '{block.labels[0]}' has no value", location=block.position
                )
            document.outputs.append(
                OutputDeclaration(
                    name=block.labels[0],
                    value=attributes["value"],
                    description=_literal_string(attributes, "description"),
                    position=block.position,
                )
            )
        elif kind == "provider":
            _expect_labels(block, 1)
            document.providers.append(
                ProviderDeclaration(
                    name=block.labels[0],
                    attributes=_attributes_dict(block),
                    position=block.position,
                )
            )
        else:
            raise DeclarationSyntaxError(
                f"Unsupported block type '{kind}'", location=block.position, symbol=kind
            )
    return document


def parse_document_content(content: str, source: str = "<string>") -> Document:
    """
    Parse a declaration document from content string

    Args:
        content: String containing the declarations
        source: Name used in error locations

    Returns:
        A Document with resources, variables, outputs and providers
    """
    blocks = _parse(content, "document", source)
    return _interpret_blocks(blocks, source)


def parse_document(filename: Union[str, Path]) -> Document:
    """
    Parse a declaration document from a file, or from every ``*.stm`` file
    of a directory in name order.
    """
    path = Path(filename)
    if path.is_dir():
        merged = Document(source=str(path))
        for child in sorted(path.glob("*.stm")):
            part = parse_document(child)
            merged.resources.extend(part.resources)
            merged.variables.extend(part.variables)
            merged.outputs.extend(part.outputs)
            merged.providers.extend(part.providers)
        return merged

    with open(path, "r", encoding="utf-8") as f:
        content = f.read()
    return parse_document_content(content, source=str(path))
