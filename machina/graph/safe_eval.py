"""
Safe evaluation of edge condition expressions.

Conditions are parsed with :mod:`ast` and walked by a whitelisting visitor.
Only these constructs are allowed:
- Attribute references (``Config.retries``) and bare names (``retries``)
- Comparisons (==, !=, <, >, <=, >=, in, not in)
- Boolean operations (and, or, not)
- Constants and basic arithmetic, with bounded powers and repetition

Everything else (calls, subscripts of arbitrary objects, lambdas, imports) is
rejected. JavaScript-style operators used in the DSL (``&&``, ``||``, ``!``,
``===``, ``!==``, ``true``, ``false``, ``null``) are normalized first.

References are resolved through a caller-supplied function. A reference the
resolver cannot answer raises :class:`MissingContextError`, so the condition is
reported as undecidable instead of being coerced to false.
"""

import ast
import operator
import re
from collections.abc import Callable
from typing import Any

from machina.errors import MissingContextError

_STRING_LITERAL_RE = re.compile(r"\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'")

_TOKEN_REWRITES = [
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
]

_LITERAL_NAMES = {"True": True, "False": False, "None": None}

# Bounds on arithmetic results. Conditions can be rewritten at runtime.
MAX_EXPONENT = 64
MAX_INT_BITS = 4096
MAX_SEQUENCE_LENGTH = 10_000


def normalize_expression(expression: str) -> str:
    """Rewrite DSL operators into Python syntax, leaving string literals alone."""
    parts = []
    last = 0
    for match in _STRING_LITERAL_RE.finditer(expression):
        parts.append(_rewrite(expression[last : match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(_rewrite(expression[last:]))
    return "".join(parts).strip()


def _rewrite(chunk: str) -> str:
    for pattern, replacement in _TOKEN_REWRITES:
        chunk = pattern.sub(replacement, chunk)
    return chunk


def _parse(expression: str) -> ast.expr:
    try:
        return ast.parse(normalize_expression(expression), mode="eval").body
    except SyntaxError as exc:
        raise ValueError(f"Invalid condition expression: {expression}") from exc


def _reference_of(node: ast.AST) -> str | None:
    """``Name`` -> 'name', ``Name.attr`` -> 'Name.attr', else None."""
    if isinstance(node, ast.Name):
        if node.id in _LITERAL_NAMES:
            return None
        return node.id
    if isinstance(node, ast.Attribute) and isinstance(node.value, ast.Name):
        return f"{node.value.id}.{node.attr}"
    return None


def extract_references(expression: str) -> list[str]:
    """
    List the attribute references in an expression, in first-seen order.

    ``Config.retries > 2 and done`` yields ``["Config.retries", "done"]``.
    """
    tree = _parse(expression)
    refs: list[str] = []

    def walk(node: ast.AST) -> None:
        ref = _reference_of(node)
        if ref is not None:
            if ref not in refs:
                refs.append(ref)
            return
        for child in ast.iter_child_nodes(node):
            walk(child)

    walk(tree)
    return refs


def _bounded_pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, int | float) and abs(exponent) > MAX_EXPONENT:
        raise ValueError(f"Exponent {exponent} exceeds {MAX_EXPONENT}")
    if isinstance(base, int) and isinstance(exponent, int):
        if base.bit_length() * exponent > MAX_INT_BITS:
            raise ValueError(f"Power result exceeds {MAX_INT_BITS} bits")
    return operator.pow(base, exponent)


def _bounded_mul(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if not isinstance(seq, str | list | tuple) or not isinstance(count, int):
            continue
        if len(seq) * count > MAX_SEQUENCE_LENGTH:
            raise ValueError(f"Repetition result exceeds {MAX_SEQUENCE_LENGTH} items")
    return operator.mul(left, right)


class SafeConditionEvaluator(ast.NodeVisitor):
    """AST visitor that evaluates a whitelisted expression subset."""

    _COMPARISON_OPS = {
        ast.Eq: operator.eq,
        ast.NotEq: operator.ne,
        ast.Lt: operator.lt,
        ast.LtE: operator.le,
        ast.Gt: operator.gt,
        ast.GtE: operator.ge,
        ast.In: lambda a, b: a in b,
        ast.NotIn: lambda a, b: a not in b,
    }

    _BINARY_OPS = {
        ast.Add: operator.add,
        ast.Sub: operator.sub,
        ast.Mult: _bounded_mul,
        ast.Div: operator.truediv,
        ast.FloorDiv: operator.floordiv,
        ast.Mod: operator.mod,
        ast.Pow: _bounded_pow,
    }

    _UNARY_OPS = {
        ast.Not: operator.not_,
        ast.UAdd: operator.pos,
        ast.USub: operator.neg,
    }

    def __init__(self, resolve: Callable[[str], Any]):
        """
        Args:
            resolve: Maps a reference ('Ctx.attr' or 'attr') to its value.
                Raises KeyError when the reference is unknown.
        """
        self.resolve = resolve

    def evaluate(self, expression: str) -> bool:
        tree = _parse(expression)

        missing = []
        for ref in extract_references(expression):
            try:
                self.resolve(ref)
            except KeyError:
                missing.append(ref)
        if missing:
            raise MissingContextError(missing, expression)

        try:
            return bool(self.visit(tree))
        except (KeyError, AttributeError, TypeError, ArithmeticError, RecursionError) as exc:
            raise ValueError(f"Invalid condition expression: {expression}") from exc

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        return self.resolve(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        ref = _reference_of(node)
        if ref is not None:
            return self.resolve(ref)
        obj = self.visit(node.value)
        if isinstance(obj, dict):
            return obj[node.attr]
        return getattr(obj, node.attr)

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.visit(comparator)
            op_func = self._COMPARISON_OPS.get(type(op))
            if op_func is None:
                raise ValueError(f"Unsupported comparison operator: {type(op).__name__}")
            if not op_func(left, right):
                return False
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result
        raise ValueError(f"Unsupported boolean operator: {type(node.op).__name__}")

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op_func = self._UNARY_OPS.get(type(node.op))
        if op_func is None:
            raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")
        return op_func(self.visit(node.operand))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op_func = self._BINARY_OPS.get(type(node.op))
        if op_func is None:
            raise ValueError(f"Unsupported binary operator: {type(node.op).__name__}")
        return op_func(self.visit(node.left), self.visit(node.right))

    def generic_visit(self, node: ast.AST) -> None:
        raise ValueError(
            f"Unsupported expression type: {type(node).__name__}. "
            f"Only comparisons, boolean operations, and attribute access are allowed."
        )


def safe_eval_condition(expression: str, resolve: Callable[[str], Any]) -> bool:
    """
    Evaluate ``expression`` to a boolean.

    Raises:
        MissingContextError: A referenced attribute is not known.
        ValueError: The expression is malformed or uses a blocked construct.
    """
    return SafeConditionEvaluator(resolve).evaluate(expression)
