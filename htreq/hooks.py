"""htreq hooks - the capabilities exposed to pre/post hooks and the hook language.

Hooks are written in a small subset of Python syntax. The source is parsed
with the ast module and walked by HookInterpreter, which only knows the
whitelisted node types below. Nothing is ever passed to exec/eval: the
only things a hook can touch are the four bindings (api, output, request,
response), its own local names, a fixed set of builtins and a fixed set
of str/list/dict methods.
"""

from __future__ import annotations

import ast
import json
import operator
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from htreq.errors import HookError, HtreqError, JsonDecodeError
from htreq.resolver import Scope, render_value

# ── Capabilities ─────────────────────────────────────────────────────────


class HookObject:
    """Base for objects reachable from hook code.

    exposed:  attribute names hooks may read (or call)
    writable: attribute names hooks may assign
    """

    exposed: frozenset[str] = frozenset()

    def writable(self) -> frozenset[str]:
        return frozenset()


class Output(HookObject):
    """Collects write/append text for the rendered body."""

    exposed = frozenset({"write", "append"})

    def __init__(self):
        self.written: str | None = None
        self.appended: list[str] = []

    def write(self, text: Any) -> None:
        """Replace the rendered body. The last write wins."""
        self.written = render_value(text)

    def append(self, text: Any) -> None:
        """Add text after the rendered body. Appends accumulate."""
        self.appended.append(render_value(text))

    @property
    def touched(self) -> bool:
        return self.written is not None or bool(self.appended)

    @property
    def text(self) -> str:
        """Hook-produced text alone: written text followed by appended text."""
        return (self.written or "") + "".join(self.appended)

    def render(self, body: str) -> str:
        """Final body: write replaces, append always follows."""
        base = body if self.written is None else self.written
        return base + "".join(self.appended)


class HookRequest(HookObject):
    """Outgoing request. Mutable until the network call is issued."""

    FIELDS = ("method", "url", "headers", "body", "query")
    exposed = frozenset(FIELDS)

    def __init__(
        self,
        method: str = "GET",
        url: str = "",
        headers: dict[str, str] | None = None,
        body: str = "",
        query: dict[str, str] | None = None,
    ):
        self.method = method
        self.url = url
        self.headers = dict(headers or {})
        self.body = body
        self.query = dict(query or {})
        self.frozen = False

    def writable(self) -> frozenset[str]:
        return frozenset() if self.frozen else frozenset(self.FIELDS)

    def freeze(self) -> None:
        self.headers = MappingProxyType(dict(self.headers))
        self.query = MappingProxyType(dict(self.query))
        self.frozen = True

    def __repr__(self) -> str:
        return f"<Request {self.method} {self.url}>"


class HookResponse(HookObject):
    """Received response. Read-only; json() decodes once and caches."""

    exposed = frozenset({"status_code", "headers", "body", "json"})

    _UNSET = object()

    def __init__(self, status_code: int, headers: Mapping[str, str], body: str):
        self._status_code = status_code
        self._headers = MappingProxyType(dict(headers))
        self._body = body
        self._json: Any = self._UNSET

    @property
    def status_code(self) -> int:
        return self._status_code

    @property
    def headers(self) -> Mapping[str, str]:
        return self._headers

    @property
    def body(self) -> str:
        return self._body

    def json(self) -> Any:
        if self._json is self._UNSET:
            try:
                self._json = json.loads(self._body)
            except (json.JSONDecodeError, ValueError) as e:
                raise JsonDecodeError(f"Response body is not valid JSON: {e}") from e
        return self._json

    def __repr__(self) -> str:
        return f"<Response {self._status_code}>"


class Api(HookObject):
    """Variable store access and chaining."""

    exposed = frozenset({"set", "get", "send"})

    def __init__(
        self,
        scope: Scope,
        send: Callable[[str], HookResponse | None],
    ):
        self._scope = scope
        self._send = send

    def set(self, key: str, value: Any) -> None:
        self._scope.global_store[str(key)] = value

    def get(self, key: str, default: Any = None) -> Any:
        key = str(key)
        if not self._scope.has(key):
            return default
        return self._scope.lookup(key)

    def send(self, name: str) -> HookResponse | None:
        return self._send(str(name))


# ── Hook language ────────────────────────────────────────────────────────

BUILTINS: dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "range": range,
    "sum": sum,
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "sorted": sorted,
    "list": list,
    "dict": dict,
    "enumerate": enumerate,
    "zip": zip,
    "any": any,
    "all": all,
}

STR_METHODS = frozenset(
    {
        "split", "rsplit", "splitlines", "strip", "lstrip", "rstrip", "lower",
        "upper", "title", "replace", "startswith", "endswith", "join", "find",
        "count", "isdigit", "zfill",
    }
)
LIST_METHODS = frozenset(
    {"append", "extend", "pop", "insert", "index", "count", "reverse", "sort", "remove", "copy"}
)
DICT_METHODS = frozenset({"get", "keys", "values", "items", "update", "pop", "setdefault", "copy"})

BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}
COMPARE_OPS: dict[type, Callable[[Any, Any], Any]] = {
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

ALLOWED_NODES: tuple[type, ...] = (
    ast.Module, ast.Expr, ast.Assign, ast.AugAssign, ast.If, ast.While,
    ast.For, ast.Break, ast.Continue, ast.Pass,
    ast.Name, ast.Load, ast.Store, ast.Constant, ast.List, ast.Tuple,
    ast.Dict, ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
    ast.Subscript, ast.Slice, ast.Call, ast.keyword, ast.Attribute,
    ast.JoinedStr, ast.FormattedValue, ast.ListComp, ast.comprehension,
    ast.And, ast.Or,
    *BIN_OPS, *UNARY_OPS, *COMPARE_OPS,
)

BINDINGS = ("api", "output", "request", "response")


class _LoopControl(Exception):
    pass


class _Break(_LoopControl):
    pass


class _Continue(_LoopControl):
    pass


def compile_hook(source: str, label: str = "hook") -> ast.Module | None:
    """Parse and validate hook source. Returns None for an empty hook.

    Raises HookError on syntax errors and on constructs outside the
    hook language.
    """
    if not source.strip():
        return None
    try:
        tree = ast.parse(source, filename=label, mode="exec")
    except SyntaxError as e:
        raise HookError(f"{label} line {e.lineno}: invalid syntax: {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, ALLOWED_NODES):
            line = getattr(node, "lineno", "?")
            raise HookError(f"{label} line {line}: '{type(node).__name__}' is not allowed in hooks")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise HookError(f"{label} line {node.lineno}: access to '{node.attr}' is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise HookError(f"{label} line {node.lineno}: name '{node.id}' is not allowed")
        if isinstance(node, ast.keyword) and node.arg is None:
            raise HookError(f"{label} line {node.lineno}: '**' arguments are not allowed")
        if isinstance(node, ast.Dict) and None in node.keys:
            raise HookError(f"{label} line {node.lineno}: '**' unpacking is not allowed")
        if isinstance(node, ast.For | ast.While) and node.orelse:
            raise HookError(f"{label} line {node.lineno}: loop 'else' is not supported")
    return tree


class HookInterpreter:
    """Tree-walking evaluator for one hook run."""

    def __init__(self, bindings: dict[str, Any], label: str = "hook"):
        self.bindings = bindings
        self.label = label
        self.names: dict[str, Any] = {}
        self.lineno = 0

    def run(self, tree: ast.Module | None) -> None:
        if tree is None:
            return
        try:
            self._exec_block(tree.body)
        except _LoopControl as e:
            raise HookError(f"{self.label} line {self.lineno}: 'break'/'continue' outside loop") from e
        except (HtreqError, RecursionError):
            raise
        except Exception as e:
            raise HookError(f"{self.label} line {self.lineno}: {type(e).__name__}: {e}") from e

    # ── statements ───────────────────────────────────────────────────────

    def _exec_block(self, statements: list[ast.stmt]) -> None:
        for stmt in statements:
            self._exec(stmt)

    def _exec(self, node: ast.stmt) -> None:
        self.lineno = node.lineno
        if isinstance(node, ast.Expr):
            self._eval(node.value)
        elif isinstance(node, ast.Assign):
            value = self._eval(node.value)
            for target in node.targets:
                self._assign(target, value)
        elif isinstance(node, ast.AugAssign):
            current = self._eval(node.target)
            value = BIN_OPS[type(node.op)](current, self._eval(node.value))
            self._assign(node.target, value)
        elif isinstance(node, ast.If):
            self._exec_block(node.body if self._eval(node.test) else node.orelse)
        elif isinstance(node, ast.While):
            while self._eval(node.test):
                try:
                    self._exec_block(node.body)
                except _Break:
                    break
                except _Continue:
                    continue
        elif isinstance(node, ast.For):
            for item in self._eval(node.iter):
                self._assign(node.target, item)
                try:
                    self._exec_block(node.body)
                except _Break:
                    break
                except _Continue:
                    continue
        elif isinstance(node, ast.Break):
            raise _Break()
        elif isinstance(node, ast.Continue):
            raise _Continue()
        # ast.Pass: nothing to do

    def _assign(self, target: ast.expr, value: Any) -> None:
        if isinstance(target, ast.Name):
            if target.id in self.bindings or target.id in BUILTINS:
                raise HookError(f"{self.label} line {self.lineno}: cannot assign to '{target.id}'")
            self.names[target.id] = value
        elif isinstance(target, ast.Tuple | ast.List):
            values = list(value)
            if len(values) != len(target.elts):
                raise HookError(
                    f"{self.label} line {self.lineno}: expected {len(target.elts)} values to unpack, "
                    f"got {len(values)}"
                )
            for elt, item in zip(target.elts, values):
                self._assign(elt, item)
        elif isinstance(target, ast.Subscript):
            container = self._eval(target.value)
            container[self._eval(target.slice)] = value
        elif isinstance(target, ast.Attribute):
            obj = self._eval(target.value)
            if not isinstance(obj, HookObject) or target.attr not in obj.writable():
                raise HookError(f"{self.label} line {self.lineno}: '{target.attr}' is read-only")
            setattr(obj, target.attr, value)
        else:
            raise HookError(f"{self.label} line {self.lineno}: unsupported assignment target")

    # ── expressions ──────────────────────────────────────────────────────

    def _eval(self, node: ast.expr) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            return self._lookup(node.id)
        if isinstance(node, ast.List):
            return [self._eval(e) for e in node.elts]
        if isinstance(node, ast.Tuple):
            return tuple(self._eval(e) for e in node.elts)
        if isinstance(node, ast.Dict):
            return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values)}
        if isinstance(node, ast.BinOp):
            return BIN_OPS[type(node.op)](self._eval(node.left), self._eval(node.right))
        if isinstance(node, ast.UnaryOp):
            return UNARY_OPS[type(node.op)](self._eval(node.operand))
        if isinstance(node, ast.BoolOp):
            return self._eval_boolop(node)
        if isinstance(node, ast.Compare):
            return self._eval_compare(node)
        if isinstance(node, ast.IfExp):
            return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)
        if isinstance(node, ast.Subscript):
            return self._eval(node.value)[self._eval(node.slice)]
        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower) if node.lower else None,
                self._eval(node.upper) if node.upper else None,
                self._eval(node.step) if node.step else None,
            )
        if isinstance(node, ast.Attribute):
            return self._attribute(self._eval(node.value), node.attr)
        if isinstance(node, ast.Call):
            return self._call(node)
        if isinstance(node, ast.JoinedStr):
            return "".join(self._eval(v) for v in node.values)
        if isinstance(node, ast.FormattedValue):
            return self._eval_formatted(node)
        if isinstance(node, ast.ListComp):
            return self._eval_listcomp(node)
        raise HookError(f"{self.label} line {self.lineno}: unsupported expression")

    def _lookup(self, name: str) -> Any:
        if name in self.names:
            return self.names[name]
        if name in self.bindings:
            return self.bindings[name]
        if name in BUILTINS:
            return BUILTINS[name]
        raise HookError(f"{self.label} line {self.lineno}: name '{name}' is not defined")

    def _attribute(self, obj: Any, attr: str) -> Any:
        if isinstance(obj, HookObject):
            allowed = attr in obj.exposed
        elif isinstance(obj, str):
            allowed = attr in STR_METHODS
        elif isinstance(obj, list):
            allowed = attr in LIST_METHODS
        elif isinstance(obj, dict | MappingProxyType):
            allowed = attr in DICT_METHODS
        else:
            allowed = False
        if not allowed or not hasattr(obj, attr):
            raise HookError(
                f"{self.label} line {self.lineno}: '{type(obj).__name__}' has no attribute '{attr}'"
            )
        return getattr(obj, attr)

    def _call(self, node: ast.Call) -> Any:
        func = self._eval(node.func)
        if not callable(func):
            raise HookError(f"{self.label} line {self.lineno}: object is not callable")
        args = [self._eval(a) for a in node.args]
        kwargs = {kw.arg: self._eval(kw.value) for kw in node.keywords}
        return func(*args, **kwargs)

    def _eval_boolop(self, node: ast.BoolOp) -> Any:
        value: Any = None
        for operand in node.values:
            value = self._eval(operand)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value

    def _eval_compare(self, node: ast.Compare) -> bool:
        left = self._eval(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self._eval(comparator)
            if not COMPARE_OPS[type(op)](left, right):
                return False
            left = right
        return True

    def _eval_formatted(self, node: ast.FormattedValue) -> str:
        value = self._eval(node.value)
        if node.conversion == ord("r"):
            value = repr(value)
        elif node.conversion in (ord("s"), ord("a")):
            value = str(value)
        spec = self._eval(node.format_spec) if node.format_spec else ""
        if isinstance(value, str) and not spec:
            return value
        return format(value, spec)

    def _eval_listcomp(self, node: ast.ListComp) -> list[Any]:
        saved = dict(self.names)
        result: list[Any] = []

        def _generate(index: int) -> None:
            if index == len(node.generators):
                result.append(self._eval(node.elt))
                return
            gen = node.generators[index]
            for item in self._eval(gen.iter):
                self._assign(gen.target, item)
                if all(self._eval(cond) for cond in gen.ifs):
                    _generate(index + 1)

        try:
            _generate(0)
        finally:
            self.names = saved
        return result


def run_hook(tree: ast.Module | None, bindings: dict[str, Any], label: str = "hook") -> None:
    """Run a compiled hook with the given capability bindings."""
    HookInterpreter(bindings, label).run(tree)

