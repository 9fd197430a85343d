from __future__ import annotations

import ast
import builtins
import importlib
import inspect
import types
from typing import Any, Callable, Protocol

from run_worker.outcome import FailureKind, PhaseResult, RunPhase, describe_exception


SCRIPT_FILENAME = "<script>"

# Pure-stdlib helpers a page script may import under the restricted engine.
# None exports every public, non-module attribute; a tuple is an explicit list.
ALLOWED_IMPORTS: dict[str, tuple[str, ...] | None] = {
    # No event-loop, subprocess or network entry points.
    "asyncio": ("sleep", "gather", "wait_for", "TimeoutError", "CancelledError"),
    "base64": None,
    "collections": None,
    "datetime": None,
    "decimal": None,
    "fractions": None,
    "functools": ("reduce", "partial", "lru_cache", "cache", "cmp_to_key"),
    "hashlib": None,
    "itertools": None,
    "json": ("dumps", "loads", "JSONDecodeError"),
    "math": None,
    "random": None,
    "re": None,
    "statistics": None,
    # string.Formatter resolves attribute paths from plain strings.
    "string": (
        "ascii_letters",
        "ascii_lowercase",
        "ascii_uppercase",
        "capwords",
        "digits",
        "hexdigits",
        "octdigits",
        "printable",
        "punctuation",
        "whitespace",
    ),
    "time": ("time", "monotonic", "perf_counter", "sleep", "strftime", "gmtime", "localtime"),
    "urllib.parse": None,
}

# Public attribute names that still lead from a value back to interpreter
# internals (frames, globals, the running event loop).
BLOCKED_ATTRIBUTES = frozenset(
    {
        "ag_await",
        "ag_code",
        "ag_frame",
        "cr_await",
        "cr_code",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "get_loop",
        "tb_frame",
        "tb_next",
    }
)

_SAFE_BUILTIN_NAMES = (
    "abs",
    "all",
    "any",
    "ascii",
    "bin",
    "bool",
    "bytearray",
    "bytes",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "hasattr",
    "hash",
    "hex",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "object",
    "oct",
    "ord",
    "pow",
    "print",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "ArithmeticError",
    "AssertionError",
    "AttributeError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "NotImplementedError",
    "RuntimeError",
    "StopAsyncIteration",
    "StopIteration",
    "TimeoutError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


class ScriptConstructionError(Exception):
    pass


class ScriptPolicyError(ScriptConstructionError):
    pass


class ScriptEngine(Protocol):
    name: str

    async def run(self, source: str, capability: Any) -> PhaseResult: ...


def _is_forbidden_name(name: str) -> bool:
    return name != "_" and (name.startswith("_") or name in BLOCKED_ATTRIBUTES)


def check_restricted_tree(tree: ast.AST) -> None:
    """
    Reject private/dunder names and the attributes in BLOCKED_ATTRIBUTES,
    wherever they appear: attribute access, plain names, imports and
    class patterns in `match` statements.
    """
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and _is_forbidden_name(node.attr):
            raise ScriptPolicyError(f"forbidden_attribute: {node.attr} (line {node.lineno})")
        if isinstance(node, ast.Name) and _is_forbidden_name(node.id):
            raise ScriptPolicyError(f"forbidden_name: {node.id} (line {node.lineno})")
        if isinstance(node, ast.alias) and any(_is_forbidden_name(p) for p in node.name.split(".")):
            raise ScriptPolicyError(f"forbidden_import_name: {node.name}")
        if isinstance(node, ast.MatchClass):
            for attr in node.kwd_attrs:
                if _is_forbidden_name(attr):
                    raise ScriptPolicyError(f"forbidden_attribute: {attr} (line {node.lineno})")


def module_facade(name: str) -> types.SimpleNamespace:
    """
    A namespace holding the exported attributes of an allowed module. Module
    objects never pass through, so `json.decoder` or `random._os` do not exist.
    """
    mod = importlib.import_module(name)
    exports = ALLOWED_IMPORTS[name]
    if exports is None:
        exports = tuple(getattr(mod, "__all__", None) or (n for n in dir(mod) if not n.startswith("_")))
    attrs: dict[str, Any] = {}
    for attr in exports:
        if attr.startswith("_") or not hasattr(mod, attr):
            continue
        value = getattr(mod, attr)
        if isinstance(value, types.ModuleType):
            continue
        attrs[attr] = value
    return types.SimpleNamespace(**attrs)


def _package_facade(prefix: str) -> types.SimpleNamespace:
    """Parent package view exposing only its allowed submodules (`urllib` -> `parse`)."""
    children: dict[str, Any] = {}
    for name in ALLOWED_IMPORTS:
        if name.startswith(prefix + "."):
            child = name[len(prefix) + 1 :]
            if "." not in child:
                children[child] = module_facade(name)
    return types.SimpleNamespace(**children)


def _guarded_import(name: str, globals=None, locals=None, fromlist=(), level: int = 0):  # noqa: A002
    if level != 0:
        raise ImportError("relative imports are not allowed in scripts")
    if name in ALLOWED_IMPORTS:
        facade = module_facade(name)
        if fromlist or "." not in name:
            return facade
        # `import urllib.parse` binds the top-level name.
        head, _, tail = name.partition(".")
        return types.SimpleNamespace(**{tail: facade}) if "." not in tail else _package_facade(head)
    if fromlist and any(n.startswith(name + ".") for n in ALLOWED_IMPORTS):
        # `from urllib import parse`
        return _package_facade(name)
    raise ImportError(f"import of {name!r} is not allowed in scripts")


def restricted_builtins() -> dict[str, Any]:
    table = {n: getattr(builtins, n) for n in _SAFE_BUILTIN_NAMES if hasattr(builtins, n)}
    # Needed for `class` statements inside a script.
    table["__build_class__"] = builtins.__build_class__
    table["__import__"] = _guarded_import
    return table


def build_entrypoint(
    source: str,
    namespace: dict[str, Any],
    *,
    check: Callable[[ast.AST], None] | None = None,
) -> Callable[..., Any]:
    """
    Turn submitted source text into the single callable to invoke.

    Accepted forms:
      - a module defining `run(page)` (sync or async), `main(page)` as fallback
      - one expression evaluating to a callable, e.g. `lambda page: page.title()`
    `check` sees the parsed tree before anything is compiled.
    SyntaxError is left to propagate; it is reported like any script failure.
    """
    text = str(source or "")
    if not text.strip():
        raise ScriptConstructionError("empty_script")

    try:
        expr_tree = ast.parse(text.strip(), SCRIPT_FILENAME, mode="eval")
    except SyntaxError:
        expr_tree = None

    if expr_tree is not None:
        if check is not None:
            check(expr_tree)
        fn = eval(compile(expr_tree, SCRIPT_FILENAME, "eval"), namespace)  # noqa: S307
        if not callable(fn):
            raise ScriptConstructionError("script_expression_is_not_callable")
        return fn

    tree = ast.parse(text, SCRIPT_FILENAME, mode="exec")
    if check is not None:
        check(tree)
    exec(compile(tree, SCRIPT_FILENAME, "exec"), namespace)  # noqa: S102
    for name in ("run", "main"):
        fn = namespace.get(name)
        if callable(fn):
            return fn
    raise ScriptConstructionError("script_must_define_run_or_main")


class _NamespaceEngine:
    name = "base"

    def _namespace(self) -> dict[str, Any]:
        raise NotImplementedError

    def _check(self, tree: ast.AST) -> None:
        return None

    async def run(self, source: str, capability: Any) -> PhaseResult:
        try:
            entry = build_entrypoint(source, self._namespace(), check=self._check)
            res = entry(capability)
            if inspect.isawaitable(res):
                res = await res
        except BaseException as exc:  # noqa: BLE001
            # Whatever the script throws (CancelledError, SystemExit, ...) ends up in the log.
            return PhaseResult.failed(RunPhase.EXECUTING, FailureKind.SCRIPT, describe_exception(exc))
        return PhaseResult.success(RunPhase.EXECUTING, res)


class RestrictedEngine(_NamespaceEngine):
    """
    Runs the script in a fresh namespace with a curated builtins table: no file
    access, no eval/exec/compile/getattr. Imports return facades over an
    allowlist of stdlib modules, and the source may not touch private/dunder
    names or frame/loop attributes. The page is the only object handed in.

    This keeps Python-level host access away from the script. It does not
    confine what the page itself can do (Playwright accepts file paths for
    screenshots, uploads and downloads); the filesystem a worker can see is
    bounded by the launcher (DockerLauncher mounts only the run's own
    artifact directory).
    """

    name = "restricted"

    def _namespace(self) -> dict[str, Any]:
        return {"__builtins__": restricted_builtins(), "__name__": "submitted_script"}

    def _check(self, tree: ast.AST) -> None:
        check_restricted_tree(tree)


class TrustedEngine(_NamespaceEngine):
    """Full builtins, real modules. Only for running your own scripts locally."""

    name = "trusted"

    def _namespace(self) -> dict[str, Any]:
        return {"__builtins__": builtins, "__name__": "submitted_script"}


ENGINES: dict[str, Callable[[], ScriptEngine]] = {
    RestrictedEngine.name: RestrictedEngine,
    TrustedEngine.name: TrustedEngine,
}


def get_engine(name: str) -> ScriptEngine:
    key = str(name or "").strip().lower() or RestrictedEngine.name
    factory = ENGINES.get(key)
    if factory is None:
        raise ValueError(f"unknown_script_engine: {name}")
    return factory()
