"""Restricted expressions used by filter predicates and computed map fields.

Expressions are a whitelisted subset of Python syntax parsed with ``ast``.
Bare names read record fields (a missing field reads as null); ``field("x-y")``
reads fields whose names are not identifiers. Nothing is ever passed to
``eval``.

Construction rejects anything outside the whitelist with ``ConfigError``.
Evaluation failures (ordering null against a number, dividing by zero, ...)
raise ``RecordError`` so the pipeline can drop just the offending record.
"""

import ast
import operator
from typing import Any

from pipekit.errors import ConfigError, ParseError, RecordError
from pipekit.records import MISSING, Record, Tag, compare_values, freeze_value, identity_key, value_tag


_ORDERING_OPS: dict[type[ast.cmpop], Any] = {
    ast.Lt: lambda result: result < 0,
    ast.LtE: lambda result: result <= 0,
    ast.Gt: lambda result: result > 0,
    ast.GtE: lambda result: result >= 0,
}

MAX_REPEAT_LENGTH = 1_000_000


def _multiply(left: object, right: object) -> object:
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, (str, tuple)) and isinstance(count, int):
            if len(sequence) * max(count, 0) > MAX_REPEAT_LENGTH:
                raise ValueError(f"repetition longer than {MAX_REPEAT_LENGTH} items")
    return operator.mul(left, right)


_BINARY_OPS: dict[type[ast.operator], Any] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: dict[type[ast.unaryop], Any] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_HELPERS = ("len", "lower", "upper", "exists", "field")

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.BinOp,
    ast.Compare,
    ast.Eq,
    ast.NotEq,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.Tuple,
    ast.List,
    ast.Call,
    *_ORDERING_OPS,
    *_BINARY_OPS,
    *_UNARY_OPS,
)


class _Validator(ast.NodeVisitor):
    def __init__(self) -> None:
        self.errors: list[str] = []
        self.fields: set[str] = set()

    def generic_visit(self, node: ast.AST) -> None:
        if not isinstance(node, _ALLOWED_NODES):
            self.errors.append(f"forbidden syntax: {type(node).__name__}")
            return
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        self.fields.add(node.id)

    def visit_Constant(self, node: ast.Constant) -> None:
        if node.value is not None and not isinstance(node.value, (bool, int, float, str)):
            self.errors.append(f"forbidden literal: {node.value!r}")

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in _HELPERS:
            self.errors.append(f"forbidden function call: {ast.unparse(node.func)}")
            return
        if node.keywords or len(node.args) != 1:
            self.errors.append(f"{node.func.id}() takes exactly one positional argument")
            return
        if node.func.id in ("exists", "field"):
            argument = node.args[0]
            if not (isinstance(argument, ast.Constant) and isinstance(argument.value, str)):
                self.errors.append(f"{node.func.id}() needs a string literal field name")
                return
            self.fields.add(argument.value)
            return
        self.visit(node.args[0])

    def visit_Compare(self, node: ast.Compare) -> None:
        operands = [node.left, *node.comparators]
        for index, op in enumerate(node.ops):
            if isinstance(op, (ast.Is, ast.IsNot)):
                pair = operands[index : index + 2]
                if not any(isinstance(item, ast.Constant) and item.value is None for item in pair):
                    self.errors.append("'is' and 'is not' are only allowed against None")
        self.generic_visit(node)


def _is_number(value: object) -> bool:
    return value_tag(value) in (Tag.INTEGER, Tag.FLOAT)


def _equals(left: object, right: object) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return identity_key(left) == identity_key(right)


def _contains(container: object, item: object) -> bool:
    if isinstance(container, str):
        if not isinstance(item, str):
            raise TypeError(f"'in <string>' requires a string, got {value_tag(item).name.lower()}")
        return item in container
    if isinstance(container, tuple):
        return any(_equals(item, candidate) for candidate in container)
    if isinstance(container, Record):
        return isinstance(item, str) and item in container
    raise TypeError(f"'in' needs a string, list or record, got {value_tag(container).name.lower()}")


class _Evaluator(ast.NodeVisitor):
    def __init__(self, record: Record) -> None:
        self.record = record

    def _field(self, name: str) -> object:
        value = self.record.field(name)
        return None if value is MISSING else value

    def visit_Expression(self, node: ast.Expression) -> object:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> object:
        return node.value

    def visit_Name(self, node: ast.Name) -> object:
        return self._field(node.id)

    def visit_Tuple(self, node: ast.Tuple) -> object:
        return tuple(self.visit(item) for item in node.elts)

    visit_List = visit_Tuple

    def visit_BoolOp(self, node: ast.BoolOp) -> object:
        value: object = None
        for operand in node.values:
            value = self.visit(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def visit_UnaryOp(self, node: ast.UnaryOp) -> object:
        return _UNARY_OPS[type(node.op)](self.visit(node.operand))

    def visit_BinOp(self, node: ast.BinOp) -> object:
        return _BINARY_OPS[type(node.op)](self.visit(node.left), self.visit(node.right))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _compare(self, op: ast.cmpop, left: object, right: object) -> bool:
        if isinstance(op, ast.Eq):
            return _equals(left, right)
        if isinstance(op, ast.NotEq):
            return not _equals(left, right)
        if isinstance(op, ast.Is):
            return left is right
        if isinstance(op, ast.IsNot):
            return left is not right
        if isinstance(op, ast.In):
            return _contains(right, left)
        if isinstance(op, ast.NotIn):
            return not _contains(right, left)

        left_tag, right_tag = value_tag(left), value_tag(right)
        comparable = (_is_number(left) and _is_number(right)) or (left_tag == right_tag and left_tag is not Tag.NULL)
        if not comparable:
            raise TypeError(f"cannot order {left_tag.name.lower()} against {right_tag.name.lower()}")
        return _ORDERING_OPS[type(op)](compare_values(left, right))

    def visit_Call(self, node: ast.Call) -> object:
        name = node.func.id
        if name == "exists":
            return self.record.field(node.args[0].value) is not MISSING
        if name == "field":
            return self._field(node.args[0].value)

        argument = self.visit(node.args[0])
        if name == "len":
            if not isinstance(argument, (str, tuple, Record)):
                raise TypeError(f"len() of {value_tag(argument).name.lower()}")
            return len(argument)
        if not isinstance(argument, str):
            raise TypeError(f"{name}() needs a string, got {value_tag(argument).name.lower()}")
        return argument.lower() if name == "lower" else argument.upper()


class Expression:
    def __init__(self, source: str) -> None:
        if not isinstance(source, str) or not source.strip():
            raise ConfigError("expression must be a non-empty string")
        self.source = source
        try:
            tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as exc:
            raise ConfigError(f"invalid expression {source!r}: {exc.msg}") from exc

        validator = _Validator()
        validator.visit(tree)
        if validator.errors:
            raise ConfigError(f"invalid expression {source!r}: {'; '.join(validator.errors)}")
        self.fields = frozenset(validator.fields)
        self._tree = tree

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    def evaluate(self, record: Record) -> object:
        try:
            result = _Evaluator(record).visit(self._tree)
        except (TypeError, ValueError, ZeroDivisionError, OverflowError, MemoryError) as exc:
            raise RecordError(f"expression {self.source!r} failed: {exc}", record=record) from exc

        try:
            return freeze_value(result)
        except ParseError as exc:
            raise RecordError(f"expression {self.source!r} produced an unsupported value", record=record) from exc
