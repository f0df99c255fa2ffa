"""
Instance context management and guard expression evaluation

Expressions are a restricted subset of Python parsed with the ``ast`` module
and evaluated by walking a whitelisted tree; ``eval`` is never used.

Supported:
- variables: ``amount``, dotted paths ``order.total``, JSONPath style ``$.order.total``,
  subscripts ``items[0]`` / ``order['total']``
- literals: numbers, quoted strings, ``true/false/null`` (and ``True/False/None``),
  list/tuple/dict literals
- comparisons ``== != < <= > >= in not in``, boolean ``and or not``,
  arithmetic ``+ - * / // %``
"""
import ast
import copy
import logging
import operator
import re
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

from ..exceptions import EvaluationError, UnresolvedVariableError


logger = logging.getLogger(__name__)


_COMPARISON_OPS = {
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

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}

_ALLOWED_NODES = (
    ast.Expression, ast.Name, ast.Load, ast.Constant, ast.Attribute, ast.Subscript,
    ast.Compare, ast.BoolOp, ast.And, ast.Or, ast.BinOp, ast.UnaryOp,
    ast.List, ast.Tuple, ast.Dict,
) + tuple(_COMPARISON_OPS) + tuple(_BINARY_OPS) + tuple(_UNARY_OPS)

# "$." prefixes outside of string literals
_JSONPATH_PREFIX = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")|\$\.""")


def _strip_jsonpath(source: str) -> str:
    return _JSONPATH_PREFIX.sub(lambda m: m.group(1) or "", source)


class _MissingVariable(Exception):
    def __init__(self, path: str):
        self.path = path
        super().__init__(path)


def _path_of(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_path_of(node.value)}.{node.attr}"
    if isinstance(node, ast.Subscript):
        index = node.slice
        if isinstance(index, ast.Constant):
            return f"{_path_of(node.value)}[{index.value!r}]"
        return f"{_path_of(node.value)}[...]"
    return "<expression>"


class _Evaluator(ast.NodeVisitor):
    """Walks a validated tree against a context mapping"""

    def __init__(self, context: Mapping[str, Any]):
        self._context = context

    def generic_visit(self, node):
        raise EvaluationError(f"Unsupported expression element: {type(node).__name__}")

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self._context:
            return self._context[node.id]
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        raise _MissingVariable(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, Mapping) and node.attr in value:
            return value[node.attr]
        raise _MissingVariable(_path_of(node))

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            return value[key]
        except (KeyError, IndexError) as e:
            raise _MissingVariable(_path_of(node)) from e
        except TypeError as e:
            raise EvaluationError(f"Cannot access {key!r} on {type(value).__name__}") from e

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                if not _COMPARISON_OPS[type(op)](left, right):
                    return False
            except TypeError as e:
                raise EvaluationError(
                    f"Cannot compare {type(left).__name__} and {type(right).__name__}"
                ) from e
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return _BINARY_OPS[type(node.op)](left, right)
        except ZeroDivisionError as e:
            raise EvaluationError("Division by zero") from e
        except TypeError as e:
            raise EvaluationError(
                f"Cannot apply {type(node.op).__name__} to {type(left).__name__} and {type(right).__name__}"
            ) from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        try:
            return _UNARY_OPS[type(node.op)](operand)
        except TypeError as e:
            raise EvaluationError(f"Cannot apply {type(node.op).__name__} to {type(operand).__name__}") from e

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> Any:
        return tuple(self.visit(element) for element in node.elts)

    def visit_Dict(self, node: ast.Dict) -> Any:
        try:
            return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values) if k is not None}
        except TypeError as e:
            raise EvaluationError(f"Cannot build mapping literal: {e}") from e


class Expression:
    """Parsed, validated expression"""

    def __init__(self, source: str):
        if not isinstance(source, str) or not source.strip():
            raise EvaluationError("Expression must be a non-empty string")
        self.source = source
        try:
            self._tree = ast.parse(_strip_jsonpath(source.strip()), mode="eval")
        except SyntaxError as e:
            raise EvaluationError(f"Malformed expression '{source}': {e.msg}") from e

        for node in ast.walk(self._tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise EvaluationError(f"Forbidden construct {type(node).__name__} in expression '{source}'")

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        try:
            return _Evaluator(context).visit(self._tree)
        except _MissingVariable as e:
            raise UnresolvedVariableError(e.path, self.source) from None
        except EvaluationError as e:
            if self.source in e.message:
                raise
            raise EvaluationError(f"{e.message} (in expression '{self.source}')") from e


@lru_cache(maxsize=512)
def compile_expression(source: str) -> Expression:
    """Parse an expression once; raises EvaluationError when malformed"""
    return Expression(source)


class ContextManager:
    """Reads and merges per-instance context

    The instance context is the global scope. A task additionally sees its
    own inputs (the token's mapped input) and, on completion, its result,
    each layer shadowing the keys of the ones below it.
    """

    def merge(self, context: Mapping[str, Any], updates: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Return a new context with updates applied; keys are added or overwritten whole, never removed"""
        merged = copy.deepcopy(dict(context))
        if not updates:
            return merged
        if not isinstance(updates, Mapping):
            raise EvaluationError(f"Context updates must be a mapping, got {type(updates).__name__}")
        for key, value in updates.items():
            merged[key] = copy.deepcopy(value)
        return merged

    def effective(self, context: Mapping[str, Any], *task_local: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Global context with task-local layers on top; later layers win"""
        view = dict(context)
        for layer in task_local:
            if layer:
                view.update(layer)
        return view

    def changes(self, before: Mapping[str, Any], after: Mapping[str, Any]) -> Dict[str, Any]:
        """Top-level keys whose value differs between two contexts"""
        return {key: value for key, value in after.items() if key not in before or before[key] != value}

    def resolve(self, expression: str, context: Mapping[str, Any]) -> Any:
        """Evaluate an expression against the context"""
        return compile_expression(expression).evaluate(context)

    def evaluate(self, guard: Optional[str], context: Mapping[str, Any]) -> bool:
        """Evaluate a guard; an empty guard is always satisfied"""
        if guard is None or not str(guard).strip():
            return True
        result = bool(self.resolve(guard, context))
        logger.debug(f"Guard '{guard}' evaluated to {result}")
        return result

    def extract(self, mapping: Optional[Mapping[str, str]], source: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply a target -> expression mapping to a source mapping"""
        if not mapping:
            return {}
        return {target: self.resolve(expression, source) for target, expression in mapping.items()}

    def validate(self, expression: str):
        """Raise EvaluationError when the expression is malformed"""
        compile_expression(expression)
