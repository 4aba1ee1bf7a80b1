"""Tree-walking interpreter for process scripts.

Scripts are written in a Python subset and executed by walking their AST,
never by handing them to ``exec``.  The interpreter only sees the binding
table it was given plus a short list of pure builtins; names and attributes
starting with ``_`` are rejected when the script is compiled, and attribute
reads are limited to a per-type allow list.

Every statement, loop iteration and function call checks a wall-clock
deadline, so a runaway script stops with :class:`ScriptTimeout` shortly after
its budget expires.  ``ScriptTimeout`` is not an ``Exception`` subclass and
cannot be swallowed by a ``try``/``except`` in the script.  Integer ``*`` and
``**`` results are capped in size so that no single operation can run far
past the deadline between two checks.
"""

from __future__ import annotations

import ast
import operator
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from burnin.errors import ScriptError
from burnin.runtime.script_engine.bindings import (
    DeviceHandle,
    HttpClient,
    HttpResponse,
    SystemNamespace,
)

MAX_SEQUENCE = 100_000
MAX_EXPONENT = 1_000
# size cap for integer results of * and **
MAX_INT_BITS = 100_000
MAX_CALL_DEPTH = 64


class ScriptTimeout(BaseException):
    """The script exceeded its time budget."""


class _Break(BaseException):
    pass


class _Continue(BaseException):
    pass


class _Return(BaseException):
    def __init__(self, value: Any):
        super().__init__()
        self.value = value


_STATEMENTS = (
    ast.Module,
    ast.Expr,
    ast.Assign,
    ast.AugAssign,
    ast.If,
    ast.While,
    ast.For,
    ast.Break,
    ast.Continue,
    ast.Pass,
    ast.FunctionDef,
    ast.Return,
    ast.Try,
    ast.ExceptHandler,
    ast.Raise,
    ast.arguments,
    ast.arg,
)

_EXPRESSIONS = (
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Store,
    ast.Attribute,
    ast.Subscript,
    ast.Slice,
    ast.Call,
    ast.keyword,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Set,
    ast.JoinedStr,
    ast.FormattedValue,
    ast.ListComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.comprehension,
)

_BINARY: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

_COMPARE: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_OPERATORS = (ast.And, ast.Or) + tuple(_BINARY) + tuple(_UNARY) + tuple(_COMPARE)

_ALLOWED_NODES = _STATEMENTS + _EXPRESSIONS + _OPERATORS

# attribute allow list for plain values handled by scripts
_VALUE_METHODS: Dict[type, frozenset] = {
    str: frozenset(
        {
            "lower", "upper", "strip", "lstrip", "rstrip", "split", "join",
            "replace", "startswith", "endswith", "find", "count", "isdigit",
            "zfill", "title",
        }
    ),
    list: frozenset(
        {"append", "extend", "pop", "insert", "index", "count", "sort", "reverse", "copy", "clear", "remove"}
    ),
    dict: frozenset({"get", "keys", "values", "items", "update", "pop", "setdefault", "copy", "clear"}),
    tuple: frozenset({"index", "count"}),
    set: frozenset({"add", "discard", "remove", "union", "intersection", "difference"}),
    int: frozenset({"bit_length", "real", "imag"}),
    float: frozenset({"is_integer", "real", "imag"}),
}

_BOUND_TYPES = (DeviceHandle, SystemNamespace, HttpClient, HttpResponse)

SCRIPT_EXCEPTIONS: Dict[str, type] = {
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
    "IndexError": IndexError,
    "ZeroDivisionError": ZeroDivisionError,
    "RuntimeError": RuntimeError,
    "NameError": NameError,
    "AttributeError": AttributeError,
}


def _int_operands(left: Any, right: Any) -> bool:
    return isinstance(left, int) and isinstance(right, int)


def _safe_range(*args: Any) -> range:
    result = range(*args)
    if len(result) > MAX_SEQUENCE:
        raise ValueError(f"range() longer than {MAX_SEQUENCE} items")
    return result


def _builtins() -> Dict[str, Any]:
    table: Dict[str, Any] = {
        "abs": abs,
        "all": all,
        "any": any,
        "bool": bool,
        "dict": dict,
        "enumerate": enumerate,
        "float": float,
        "int": int,
        "len": len,
        "list": list,
        "max": max,
        "min": min,
        "range": _safe_range,
        "reversed": reversed,
        "round": round,
        "set": set,
        "sorted": sorted,
        "str": str,
        "sum": sum,
        "tuple": tuple,
        "zip": zip,
    }
    table.update(SCRIPT_EXCEPTIONS)
    return table


BUILTINS = _builtins()


class ScriptProgram:
    """A parsed and validated script."""

    def __init__(self, source: str):
        self.source = source
        try:
            self.tree = ast.parse(source or "", mode="exec")
        except SyntaxError as exc:
            raise ScriptError(
                f"syntax error at line {exc.lineno}: {exc.msg}", source=source
            ) from exc
        self._validate()

    def _reject(self, node: ast.AST, reason: str) -> None:
        line = getattr(node, "lineno", None)
        where = f" (line {line})" if line else ""
        raise ScriptError(f"{reason}{where}", source=self.source)

    def _validate(self) -> None:
        for node in ast.walk(self.tree):
            if not isinstance(node, _ALLOWED_NODES):
                self._reject(node, f"{type(node).__name__} is not allowed in scripts")
            if isinstance(node, ast.Name) and node.id.startswith("_"):
                self._reject(node, f"name {node.id!r} is not allowed")
            elif isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                self._reject(node, f"attribute {node.attr!r} is not allowed")
            elif isinstance(node, ast.FunctionDef):
                if node.decorator_list:
                    self._reject(node, "decorators are not allowed")
                if node.name.startswith("_"):
                    self._reject(node, f"function name {node.name!r} is not allowed")
                args = node.args
                if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs:
                    self._reject(node, "only plain positional parameters are allowed")
            elif isinstance(node, ast.arg) and node.arg.startswith("_"):
                self._reject(node, f"parameter {node.arg!r} is not allowed")
            elif isinstance(node, ast.keyword) and node.arg is None:
                self._reject(node, "**kwargs unpacking is not allowed")
            elif isinstance(node, ast.ExceptHandler) and node.name and node.name.startswith("_"):
                self._reject(node, f"name {node.name!r} is not allowed")


class ScriptFunction:
    """A ``def`` statement evaluated inside the sandbox."""

    def __init__(self, interpreter: "Interpreter", node: ast.FunctionDef, defaults: List[Any]):
        self._interpreter = interpreter
        self._node = node
        self._params = [arg.arg for arg in node.args.args]
        self._defaults = defaults
        self.name = node.name

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        params = self._params
        if len(args) > len(params):
            raise TypeError(f"{self.name}() takes {len(params)} arguments, got {len(args)}")
        scope: Dict[str, Any] = dict(zip(params, args))
        for key, value in kwargs.items():
            if key not in params:
                raise TypeError(f"{self.name}() got an unexpected argument {key!r}")
            if key in scope:
                raise TypeError(f"{self.name}() got multiple values for {key!r}")
            scope[key] = value
        first_default = len(params) - len(self._defaults)
        for index, name in enumerate(params):
            if name in scope:
                continue
            if index >= first_default:
                scope[name] = self._defaults[index - first_default]
            else:
                raise TypeError(f"{self.name}() missing argument {name!r}")
        return self._interpreter.call_function(self._node, scope)

    def __repr__(self) -> str:
        return f"<script function {self.name}>"


class Interpreter:
    """Execute one :class:`ScriptProgram` against a binding table."""

    def __init__(
        self,
        program: ScriptProgram,
        bindings: Mapping[str, Any],
        *,
        timeout_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.program = program
        self._clock = clock
        self._deadline = clock() + max(timeout_s, 0.0)
        self._globals: Dict[str, Any] = {}
        self._bindings = dict(bindings)
        self._frames: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def run(self) -> Dict[str, Any]:
        """Execute the script; returns the names it assigned at top level."""

        self._exec_block(self.program.tree.body)
        self._check_deadline()
        return dict(self._globals)

    def remaining(self) -> float:
        return max(self._deadline - self._clock(), 0.0)

    def call_function(self, node: ast.FunctionDef, scope: Dict[str, Any]) -> Any:
        if len(self._frames) >= MAX_CALL_DEPTH:
            raise RecursionError("maximum script call depth exceeded")
        self._check_deadline()
        self._frames.append(scope)
        try:
            self._exec_block(node.body)
        except _Return as ret:
            return ret.value
        finally:
            self._frames.pop()
        return None

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------
    def _check_deadline(self) -> None:
        if self._clock() > self._deadline:
            raise ScriptTimeout()

    def _lookup(self, name: str) -> Any:
        if self._frames and name in self._frames[-1]:
            return self._frames[-1][name]
        if name in self._globals:
            return self._globals[name]
        if name in self._bindings:
            return self._bindings[name]
        if name in BUILTINS:
            return BUILTINS[name]
        raise NameError(f"name {name!r} is not defined")

    def _store(self, name: str, value: Any) -> None:
        if name in self._bindings:
            raise ScriptError(f"cannot rebind {name!r}")
        scope = self._frames[-1] if self._frames else self._globals
        scope[name] = value

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------
    def _exec_block(self, body: Iterable[ast.stmt]) -> None:
        for statement in body:
            self._check_deadline()
            self._exec(statement)

    def _exec(self, node: ast.stmt) -> None:
        if isinstance(node, ast.Expr):
            self._eval(node.value)
        elif isinstance(node, ast.Assign):
            value = self._eval(node.value)
            for target in node.targets:
                self._assign(target, value)
        elif isinstance(node, ast.AugAssign):
            current = self._eval(_as_load(node.target))
            self._assign(node.target, self._binary(node.op, current, self._eval(node.value)))
        elif isinstance(node, ast.If):
            self._exec_block(node.body if self._eval(node.test) else node.orelse)
        elif isinstance(node, ast.While):
            self._exec_while(node)
        elif isinstance(node, ast.For):
            self._exec_for(node)
        elif isinstance(node, ast.Break):
            raise _Break()
        elif isinstance(node, ast.Continue):
            raise _Continue()
        elif isinstance(node, ast.Pass):
            return
        elif isinstance(node, ast.FunctionDef):
            defaults = [self._eval(default) for default in node.args.defaults]
            self._store(node.name, ScriptFunction(self, node, defaults))
        elif isinstance(node, ast.Return):
            if not self._frames:
                raise ScriptError("'return' outside function", source=self.program.source)
            raise _Return(self._eval(node.value) if node.value is not None else None)
        elif isinstance(node, ast.Try):
            self._exec_try(node)
        elif isinstance(node, ast.Raise):
            self._exec_raise(node)
        else:  # pragma: no cover - rejected at compile time
            raise ScriptError(f"unsupported statement {type(node).__name__}")

    def _exec_while(self, node: ast.While) -> None:
        while True:
            self._check_deadline()
            if not self._eval(node.test):
                self._exec_block(node.orelse)
                return
            try:
                self._exec_block(node.body)
            except _Break:
                return
            except _Continue:
                continue

    def _exec_for(self, node: ast.For) -> None:
        for item in self._eval(node.iter):
            self._check_deadline()
            self._assign(node.target, item)
            try:
                self._exec_block(node.body)
            except _Break:
                return
            except _Continue:
                continue
        self._exec_block(node.orelse)

    def _exec_try(self, node: ast.Try) -> None:
        try:
            try:
                self._exec_block(node.body)
            except Exception as exc:
                if isinstance(exc, ScriptError):
                    raise
                handler = self._match_handler(node.handlers, exc)
                if handler is None:
                    raise
                if handler.name:
                    self._store(handler.name, exc)
                self._exec_block(handler.body)
            else:
                self._exec_block(node.orelse)
        finally:
            if node.finalbody:
                self._exec_block(node.finalbody)

    def _match_handler(self, handlers: List[ast.ExceptHandler], exc: Exception) -> Optional[ast.ExceptHandler]:
        for handler in handlers:
            if handler.type is None:
                return handler
            wanted = self._eval(handler.type)
            classes = wanted if isinstance(wanted, tuple) else (wanted,)
            for cls in classes:
                if cls not in SCRIPT_EXCEPTIONS.values():
                    raise ScriptError(f"cannot catch {cls!r}")
            if isinstance(exc, classes):
                return handler
        return None

    def _exec_raise(self, node: ast.Raise) -> None:
        if node.exc is None:
            raise RuntimeError("re-raise without an active exception")
        exc = self._eval(node.exc)
        if isinstance(exc, type) and exc in SCRIPT_EXCEPTIONS.values():
            exc = exc()
        if not isinstance(exc, Exception) or isinstance(exc, ScriptError):
            raise TypeError("exceptions must be one of the script exception types")
        raise exc

    def _assign(self, target: ast.expr, value: Any) -> None:
        if isinstance(target, ast.Name):
            self._store(target.id, value)
        elif isinstance(target, (ast.Tuple, ast.List)):
            items = list(value)
            if len(items) != len(target.elts):
                raise ValueError(f"expected {len(target.elts)} values to unpack, got {len(items)}")
            for element, item in zip(target.elts, items):
                self._assign(element, item)
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value)
            if not isinstance(container, (list, dict)):
                raise TypeError(f"{type(container).__name__} does not support item assignment")
            container[self._eval(target.slice)] = value
        else:
            raise ScriptError(f"cannot assign to {type(target).__name__}", source=self.program.source)

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------
    def _eval(self, node: ast.expr) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return self._lookup(node.id)
        if isinstance(node, ast.Attribute):
            return self._attribute(self._eval(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return self._eval(node.value)[self._eval(node.slice)]
        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower) if node.lower else None,
                self._eval(node.upper) if node.upper else None,
                self._eval(node.step) if node.step else None,
            )
        if isinstance(node, ast.Call):
            return self._call(node)
        if isinstance(node, ast.BinOp):
            return self._binary(node.op, self._eval(node.left), self._eval(node.right))
        if isinstance(node, ast.UnaryOp):
            return _UNARY[type(node.op)](self._eval(node.operand))
        if isinstance(node, ast.BoolOp):
            return self._bool_op(node)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator)
                if not _COMPARE[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.IfExp):
            return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)
        if isinstance(node, ast.List):
            return [self._eval(element) for element in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self._eval(element) for element in node.elts)
        if isinstance(node, ast.Set):
            return {self._eval(element) for element in node.elts}
        if isinstance(node, ast.Dict):
            if any(key is None for key in node.keys):
                raise ScriptError("dict unpacking is not allowed", source=self.program.source)
            return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values)}
        if isinstance(node, ast.JoinedStr):
            return "".join(self._format_part(part) for part in node.values)
        if isinstance(node, ast.FormattedValue):
            return self._format_part(node)
        if isinstance(node, (ast.ListComp, ast.GeneratorExp)):
            return self._comprehension(node.generators, lambda: self._eval(node.elt))
        if isinstance(node, ast.DictComp):
            pairs = self._comprehension(
                node.generators, lambda: (self._eval(node.key), self._eval(node.value))
            )
            return dict(pairs)
        raise ScriptError(f"unsupported expression {type(node).__name__}", source=self.program.source)

    def _bool_op(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for value in node.values:
            result = self._eval(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def _binary(self, op: ast.operator, left: Any, right: Any) -> Any:
        if isinstance(op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            raise ValueError(f"exponent larger than {MAX_EXPONENT}")
        if _int_operands(left, right):
            if isinstance(op, ast.Pow) and right > 0 and left.bit_length() * right > MAX_INT_BITS:
                raise ValueError(f"integer power larger than {MAX_INT_BITS} bits")
            if isinstance(op, ast.Mult) and left.bit_length() + right.bit_length() > MAX_INT_BITS:
                raise ValueError(f"integer product larger than {MAX_INT_BITS} bits")
        if isinstance(op, ast.Mult):
            for seq, times in ((left, right), (right, left)):
                if isinstance(seq, (str, list, tuple)) and isinstance(times, int):
                    if len(seq) * times > MAX_SEQUENCE:
                        raise ValueError(f"sequence longer than {MAX_SEQUENCE} items")
        return _BINARY[type(op)](left, right)

    def _format_part(self, node: ast.expr) -> str:
        if isinstance(node, ast.Constant):
            return str(node.value)
        if not isinstance(node, ast.FormattedValue):
            raise ScriptError("unsupported f-string part", source=self.program.source)
        value = self._eval(node.value)
        if node.conversion == ord("r"):
            value = repr(value)
        elif node.conversion == ord("s"):
            value = str(value)
        spec = self._eval(node.format_spec) if node.format_spec is not None else ""
        return format(value, spec)

    def _comprehension(self, generators: List[ast.comprehension], produce: Callable[[], Any]) -> List[Any]:
        results: List[Any] = []
        scope = dict(self._frames[-1]) if self._frames else {}
        self._frames.append(scope)
        try:
            self._generate(generators, 0, produce, results)
        finally:
            self._frames.pop()
        return results

    def _generate(self, generators: List[ast.comprehension], index: int, produce: Callable[[], Any], out: List[Any]) -> None:
        if index == len(generators):
            if len(out) >= MAX_SEQUENCE:
                raise ValueError(f"comprehension longer than {MAX_SEQUENCE} items")
            out.append(produce())
            return
        generator = generators[index]
        if generator.is_async:
            raise ScriptError("async comprehensions are not allowed", source=self.program.source)
        for item in self._eval(generator.iter):
            self._check_deadline()
            self._assign(generator.target, item)
            if all(self._eval(condition) for condition in generator.ifs):
                self._generate(generators, index + 1, produce, out)

    def _call(self, node: ast.Call) -> Any:
        func = self._eval(node.func)
        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):  # pragma: no cover - rejected at compile time
                raise ScriptError("*args unpacking is not allowed", source=self.program.source)
            args.append(self._eval(arg))
        kwargs = {keyword.arg: self._eval(keyword.value) for keyword in node.keywords}
        if not callable(func):
            raise TypeError(f"{type(func).__name__!r} object is not callable")
        self._check_deadline()
        return func(*args, **kwargs)

    def _attribute(self, target: Any, attr: str) -> Any:
        if isinstance(target, _BOUND_TYPES):
            if attr in type(target).SCRIPT_ATTRIBUTES:
                return getattr(target, attr)
            if isinstance(target, DeviceHandle):
                return target.read_point(attr)
            raise AttributeError(f"{type(target).__name__} has no script attribute {attr!r}")
        if isinstance(target, Exception) and attr == "args":
            return target.args
        for value_type, allowed in _VALUE_METHODS.items():
            if type(target) is value_type and attr in allowed:
                return getattr(target, attr)
        raise AttributeError(f"attribute {attr!r} of {type(target).__name__} is not available")


def _as_load(target: ast.expr) -> ast.expr:
    """Copy of an assignment target usable as an expression."""
    if isinstance(target, ast.Name):
        return ast.Name(id=target.id, ctx=ast.Load())
    if isinstance(target, ast.Subscript):
        return ast.Subscript(value=target.value, slice=target.slice, ctx=ast.Load())
    raise ScriptError(f"cannot augment-assign to {type(target).__name__}")


def run_program(
    program: ScriptProgram,
    bindings: Mapping[str, Any],
    *,
    timeout_s: float,
) -> Dict[str, Any]:
    """Run ``program`` and translate failures into :class:`ScriptError`."""

    interpreter = Interpreter(program, bindings, timeout_s=timeout_s)
    try:
        return interpreter.run()
    except ScriptTimeout:
        raise ScriptError(
            f"script exceeded its {timeout_s * 1000:.0f}ms budget", source=program.source
        ) from None
    except ScriptError as exc:
        if exc.source is None:
            exc.source = program.source
        raise
    except (_Break, _Continue):
        raise ScriptError("'break' or 'continue' outside loop", source=program.source) from None
    except RecursionError as exc:
        raise ScriptError(f"RecursionError: {exc}", source=program.source) from exc
    except Exception as exc:
        raise ScriptError(f"{type(exc).__name__}: {exc}", source=program.source) from exc


__all__ = [
    "BUILTINS",
    "Interpreter",
    "ScriptFunction",
    "ScriptProgram",
    "ScriptTimeout",
    "run_program",
]
