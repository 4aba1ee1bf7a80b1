"""Restricted boolean expressions used by condition-mode states and probes.

The grammar is a small subset of Python expressions:

* literals (numbers, strings, ``True``/``False``/``None``)
* names, resolved through the caller supplied namespace
* ``alias.point`` and ``alias.get("point")`` reads on device handles
* ``system.<attr>`` reads
* comparisons ``== != > >= < <=`` (a single ``=`` means equality)
* ``and``, ``or``, ``not`` and unary minus

A comparison involving a missing value (``None``) is false instead of an
error, so a device that has not been polled yet never trips a rule.
"""

from __future__ import annotations

import ast
import io
import operator
import tokenize
from typing import Any, Callable, Dict, Mapping

from burnin.errors import ScriptError
from burnin.runtime.script_engine.bindings import DeviceHandle, SystemNamespace

_COMPARATORS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Call,
    ast.Constant,
) + tuple(_COMPARATORS)

_MISSING = object()


def _normalise_equals(expression: str) -> str:
    """Rewrite lone ``=`` operators to ``==`` without touching string literals."""

    try:
        tokens = list(tokenize.generate_tokens(io.StringIO(expression).readline))
    except (tokenize.TokenError, IndentationError, SyntaxError) as exc:
        raise ScriptError(f"cannot tokenize condition: {exc}", source=expression) from exc

    rewritten = []
    for token in tokens:
        if token.type == tokenize.OP and token.string == "=":
            token = token._replace(string="==")
        rewritten.append((token.type, token.string))
    return tokenize.untokenize(rewritten).strip()


class ConditionProgram:
    """A parsed and validated condition, ready to be evaluated many times."""

    def __init__(self, expression: str):
        self.source = expression
        text = _normalise_equals(expression.strip())
        if not text:
            raise ScriptError("empty condition", source=expression)
        try:
            self.tree = ast.parse(text, mode="eval")
        except SyntaxError as exc:
            raise ScriptError(f"invalid condition syntax: {exc.msg}", source=expression) from exc
        self._validate(self.tree)

    def _validate(self, tree: ast.AST) -> None:
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise ScriptError(
                    f"{type(node).__name__} is not allowed in conditions", source=self.source
                )
            if isinstance(node, ast.Name) and node.id.startswith("_"):
                raise ScriptError(f"name {node.id!r} is not allowed", source=self.source)
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ScriptError(f"attribute {node.attr!r} is not allowed", source=self.source)
            if isinstance(node, ast.Call):
                func = node.func
                if (
                    not isinstance(func, ast.Attribute)
                    or func.attr != "get"
                    or not isinstance(func.value, ast.Name)
                    or len(node.args) != 1
                    or node.keywords
                    or not isinstance(node.args[0], ast.Constant)
                    or not isinstance(node.args[0].value, str)
                ):
                    raise ScriptError(
                        'only alias.get("point") calls are allowed in conditions',
                        source=self.source,
                    )

    def names(self) -> set:
        """Bare names referenced by the expression."""
        return {node.id for node in ast.walk(self.tree) if isinstance(node, ast.Name)}

    def evaluate(self, namespace: Mapping[str, Any]) -> bool:
        try:
            return bool(self._eval(self.tree.body, namespace))
        except ScriptError as exc:
            if exc.source is None:
                exc.source = self.source
            raise
        except Exception as exc:
            raise ScriptError(f"{type(exc).__name__}: {exc}", source=self.source) from exc

    # ------------------------------------------------------------------
    def _eval(self, node: ast.AST, namespace: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            value = namespace.get(node.id, _MISSING)
            if value is _MISSING:
                raise ScriptError(f"unknown name {node.id!r}")
            return value

        if isinstance(node, ast.Attribute):
            target = self._eval(node.value, namespace)
            return _read_attribute(target, node.attr)

        if isinstance(node, ast.Call):
            target = self._eval(node.func.value, namespace)
            if not isinstance(target, DeviceHandle):
                raise ScriptError(f"{node.func.value.id!r} is not a device alias")
            return target.get(node.args[0].value)

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval(value, namespace)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, namespace)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, namespace)
            if isinstance(node.op, ast.Not):
                return not operand
            if operand is None:
                return None
            if not isinstance(operand, (int, float)):
                raise ScriptError(f"unary operator on non-numeric value {operand!r}")
            return -operand if isinstance(node.op, ast.USub) else +operand

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, namespace)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, namespace)
                if left is None or right is None:
                    return False
                if not _COMPARATORS[type(op)](left, right):
                    return False
                left = right
            return True

        raise ScriptError(f"unsupported expression {type(node).__name__}")


def _read_attribute(target: Any, attr: str) -> Any:
    if isinstance(target, DeviceHandle):
        return target.read_point(attr)
    if isinstance(target, SystemNamespace) and attr in SystemNamespace.SCRIPT_ATTRIBUTES:
        value = getattr(target, attr)
        if callable(value):
            raise ScriptError(f"system.{attr} cannot be used in a condition")
        return value
    raise ScriptError(f"attribute {attr!r} is not readable here")


def evaluate_condition(expression: str, namespace: Mapping[str, Any]) -> bool:
    """One-shot helper: parse, validate and evaluate ``expression``."""
    return ConditionProgram(expression).evaluate(namespace)


__all__ = ["ConditionProgram", "evaluate_condition"]
