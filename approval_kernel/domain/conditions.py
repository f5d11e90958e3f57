"""
Restricted step-condition expressions.

A step's condition decides whether the step applies to an activity at all.
Expressions are parsed into a Python AST, checked against a fixed grammar,
and interpreted node by node; nothing is ever passed to ``eval``.

Allowed:
  - Comparisons: <, <=, >, >=, ==, !=, is, is not, in, not in
  - Logical: and, or, not
  - Field access: activity.field_name (one level)
  - Literals: numbers, strings, booleans, None, list/tuple literals
  - Arithmetic: +, -, *, / (multiplication on numbers only)
  - Functions: abs(), len(), lower(), upper()

Rejected:
  - imports, arbitrary calls, deep attribute chains, subscripts,
    lambda, comprehensions, arbitrary names

Evaluation is pure: the same expression over the same attribute bag always
yields the same answer.  Missing attributes resolve to ``None``; ordering
comparisons involving ``None`` (or other incomparable values) are false.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Mapping
from dataclasses import dataclass
from numbers import Number
from typing import Any, Callable

from approval_kernel.exceptions import InvalidConditionError

CONTEXT_ROOT = "activity"

ALLOWED_FUNCTIONS: dict[str, Callable[[Any], Any]] = {
    "abs": abs,
    "len": len,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
}

ALLOWED_NAMES: frozenset[str] = frozenset({"True", "False", "None", CONTEXT_ROOT})

_COMPARATORS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


def _multiply(left: Any, right: Any) -> Any:
    # Sequence repetition would let an expression allocate without bound.
    if not isinstance(left, Number) or not isinstance(right, Number):
        raise TypeError("multiplication requires numeric operands")
    return left * right


_ARITHMETIC: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
}


@dataclass(frozen=True)
class ConditionError:
    """A validation error found in a condition expression."""

    expression: str
    message: str
    node_type: str = ""


def validate_condition(expression: str) -> list[ConditionError]:
    """Validate a condition against the restricted grammar.

    Returns a list of errors.  Empty list means the expression is valid.
    """
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        return [ConditionError(expression=expression, message=f"Syntax error: {e.msg}")]

    errors: list[ConditionError] = []
    _validate_node(tree.body, expression, errors)
    return errors


def ensure_valid_condition(expression: str | None) -> str | None:
    """Normalise and validate a condition; blank means "always applies".

    Raises:
        InvalidConditionError: if the expression is outside the grammar.
    """
    if expression is None or not expression.strip():
        return None
    expression = expression.strip()
    errors = validate_condition(expression)
    if errors:
        raise InvalidConditionError(expression, [e.message for e in errors])
    return expression


def evaluate_condition(expression: str | None, attributes: Mapping[str, Any]) -> bool:
    """Evaluate a condition against an activity's attribute bag.

    ``None``/blank conditions always apply.

    Raises:
        InvalidConditionError: if the expression is outside the grammar.
    """
    expression = ensure_valid_condition(expression)
    if expression is None:
        return True
    tree = ast.parse(expression, mode="eval")
    return bool(_evaluate(tree.body, attributes))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_node(node: ast.AST, expression: str, errors: list[ConditionError]) -> None:
    def reject(message: str) -> None:
        errors.append(
            ConditionError(expression=expression, message=message, node_type=type(node).__name__)
        )

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub)):
            reject(f"Disallowed unary operator: {type(node.op).__name__}")
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if type(op) not in _COMPARATORS:
                reject(f"Disallowed comparison: {type(op).__name__}")

    elif isinstance(node, ast.BinOp):
        if type(node.op) in _ARITHMETIC:
            _validate_node(node.left, expression, errors)
            _validate_node(node.right, expression, errors)
        else:
            reject(f"Disallowed binary operator: {type(node.op).__name__}")

    elif isinstance(node, ast.Call):
        if (
            isinstance(node.func, ast.Name)
            and node.func.id in ALLOWED_FUNCTIONS
            and not node.keywords
            and len(node.args) == 1
        ):
            _validate_node(node.args[0], expression, errors)
        else:
            reject(f"Disallowed function call: {_get_name(node.func)}")

    elif isinstance(node, ast.Attribute):
        if not (isinstance(node.value, ast.Name) and node.value.id == CONTEXT_ROOT):
            reject(
                f"Disallowed attribute access: {_get_name(node)}. "
                f"Only {CONTEXT_ROOT}.field_name is allowed."
            )

    elif isinstance(node, ast.Name):
        if node.id not in ALLOWED_NAMES:
            reject(f"Disallowed name: {node.id}")

    elif isinstance(node, ast.Constant):
        if not isinstance(node.value, (int, float, str, bool, type(None))):
            reject(f"Disallowed constant type: {type(node.value).__name__}")

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            _validate_node(elt, expression, errors)

    else:
        reject(f"Disallowed expression: {type(node).__name__}")


def _get_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_get_name(node.value)}.{node.attr}"
    return type(node).__name__


# ---------------------------------------------------------------------------
# Interpretation (only reached for validated trees)
# ---------------------------------------------------------------------------


def _evaluate(node: ast.AST, attributes: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_evaluate(v, attributes) for v in node.values)
        return any(_evaluate(v, attributes) for v in node.values)

    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, attributes)
        if isinstance(node.op, ast.Not):
            return not operand
        try:
            return -operand
        except TypeError:
            return None

    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, attributes)
        for op, comparator in zip(node.ops, node.comparators):
            right = _evaluate(comparator, attributes)
            try:
                if not _COMPARATORS[type(op)](left, right):
                    return False
            except TypeError:
                return False
            left = right
        return True

    if isinstance(node, ast.BinOp):
        try:
            return _ARITHMETIC[type(node.op)](
                _evaluate(node.left, attributes), _evaluate(node.right, attributes),
            )
        except (TypeError, ZeroDivisionError):
            return None

    if isinstance(node, ast.Call):
        arg = _evaluate(node.args[0], attributes)
        if arg is None:
            return None
        try:
            return ALLOWED_FUNCTIONS[node.func.id](arg)
        except TypeError:
            return None

    if isinstance(node, ast.Attribute):
        return attributes.get(node.attr)

    if isinstance(node, ast.Name):
        if node.id == CONTEXT_ROOT:
            return attributes
        return {"True": True, "False": False, "None": None}[node.id]

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.List):
        return [_evaluate(e, attributes) for e in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_evaluate(e, attributes) for e in node.elts)

    raise InvalidConditionError(ast.dump(node), ["unsupported node"])
