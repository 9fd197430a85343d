from __future__ import annotations

import ast
import types

import pytest

from run_worker.engine import (
    ALLOWED_IMPORTS,
    RestrictedEngine,
    ScriptConstructionError,
    ScriptPolicyError,
    TrustedEngine,
    build_entrypoint,
    check_restricted_tree,
    get_engine,
    module_facade,
    restricted_builtins,
)
from run_worker.outcome import FailureKind, RunPhase, describe_exception


class _Page:
    def __init__(self, title: str = "Example Domain") -> None:
        self._title = title
        self.visited: list[str] = []

    async def goto(self, url: str, **_kwargs) -> None:
        self.visited.append(url)

    async def title(self) -> str:
        return self._title


@pytest.mark.asyncio
async def test_async_run_function_receives_the_page() -> None:
    src = "\n".join(
        [
            "async def run(page):",
            "    await page.goto('https://example.com')",
            "    return {'title': await page.title()}",
        ]
    )
    page = _Page()
    res = await RestrictedEngine().run(src, page)
    assert res.ok
    assert res.phase is RunPhase.EXECUTING
    assert res.value == {"title": "Example Domain"}
    assert page.visited == ["https://example.com"]


@pytest.mark.asyncio
async def test_sync_lambda_expression() -> None:
    res = await RestrictedEngine().run("lambda page: {'n': len([1, 2, 3])}", _Page())
    assert res.ok
    assert res.value == {"n": 3}


@pytest.mark.asyncio
async def test_main_is_accepted_when_run_is_missing() -> None:
    res = await RestrictedEngine().run("def main(page):\n    return [1, 2]\n", _Page())
    assert res.ok
    assert res.value == [1, 2]


@pytest.mark.asyncio
async def test_raised_error_becomes_failure_reason() -> None:
    src = "def run(page):\n    raise ValueError('boom')\n"
    res = await RestrictedEngine().run(src, _Page())
    assert not res.ok
    assert res.kind is FailureKind.SCRIPT
    assert res.failure == "ValueError: boom"
    assert res.value is None


@pytest.mark.asyncio
async def test_syntax_error_is_reported_not_raised() -> None:
    res = await RestrictedEngine().run("def run(page) return 1", _Page())
    assert not res.ok
    assert res.failure.startswith("SyntaxError")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "src, expected",
    [
        ("import os\ndef run(page):\n    return 1\n", "ImportError"),
        ("def run(page):\n    import subprocess\n    return 1\n", "ImportError"),
        ("def run(page):\n    return open('/etc/passwd').read()\n", "NameError"),
        ("def run(page):\n    return eval('1 + 1')\n", "NameError"),
        ("def run(page):\n    return __import__('os').getcwd()\n", "ScriptPolicyError"),
        ("import typing\ndef run(page):\n    return typing.sys.modules['os']\n", "ImportError"),
        (
            "import asyncio\nasync def run(page):\n    return await asyncio.create_subprocess_exec('id')\n",
            "AttributeError",
        ),
        ("import random\ndef run(page):\n    return random._os.listdir('/')\n", "ScriptPolicyError"),
        ("from collections import _sys\ndef run(page):\n    return 1\n", "ScriptPolicyError"),
        ("import json\ndef run(page):\n    return json.decoder\n", "AttributeError"),
        ("import string\ndef run(page):\n    return string.Formatter()\n", "AttributeError"),
        ("def run(page):\n    return page.title().cr_frame.f_globals\n", "ScriptPolicyError"),
        ("def run(page):\n    return page._title\n", "ScriptPolicyError"),
        ("lambda page: page.__class__", "ScriptPolicyError"),
        (
            "def run(page):\n    match page:\n        case object(__class__=c):\n            return c\n",
            "ScriptPolicyError",
        ),
    ],
)
async def test_restricted_engine_denies_host_access(src: str, expected: str) -> None:
    res = await RestrictedEngine().run(src, _Page())
    assert not res.ok
    assert res.failure.startswith(expected)


@pytest.mark.asyncio
async def test_restricted_engine_allows_listed_imports_and_classes() -> None:
    src = "\n".join(
        [
            "import json",
            "from collections import Counter",
            "class Box:",
            "    def __init__(self, v):",
            "        self.v = v",
            "def run(page):",
            "    c = Counter('aab')",
            "    return json.loads(json.dumps({'a': c['a'], 'box': Box(3).v}))",
        ]
    )
    res = await RestrictedEngine().run(src, _Page())
    assert res.ok, res.failure
    assert res.value == {"a": 2, "box": 3}


@pytest.mark.asyncio
async def test_restricted_imports_are_module_free_facades() -> None:
    src = "\n".join(
        [
            "import asyncio",
            "import urllib.parse",
            "from urllib import parse",
            "from urllib.parse import quote",
            "async def run(page):",
            "    await asyncio.sleep(0)",
            "    return [urllib.parse.quote('a b'), parse.quote('a b'), quote('a b')]",
        ]
    )
    res = await RestrictedEngine().run(src, _Page())
    assert res.ok, res.failure
    assert res.value == ["a%20b", "a%20b", "a%20b"]

    for name in ALLOWED_IMPORTS:
        facade = module_facade(name)
        assert not any(isinstance(v, types.ModuleType) for v in vars(facade).values()), name
        assert not any(k.startswith("_") for k in vars(facade)), name


def test_restricted_tree_check_allows_plain_underscore() -> None:
    check_restricted_tree(ast.parse("for _ in range(3):\n    pass\n"))
    with pytest.raises(ScriptPolicyError):
        check_restricted_tree(ast.parse("x = (lambda: 0).__globals__\n"))
    with pytest.raises(ScriptPolicyError):
        check_restricted_tree(ast.parse("import asyncio\nasyncio.get_loop()\n"))


@pytest.mark.asyncio
async def test_cancelled_error_raised_by_script_is_contained() -> None:
    src = "import asyncio\ndef run(page):\n    raise asyncio.CancelledError('x')\n"
    res = await RestrictedEngine().run(src, _Page())
    assert not res.ok
    assert res.failure == "CancelledError: x"


@pytest.mark.asyncio
@pytest.mark.parametrize("exc_name", ["KeyboardInterrupt", "GeneratorExit"])
async def test_base_exceptions_inside_script_are_contained(exc_name: str) -> None:
    res = await TrustedEngine().run(f"def run(page):\n    raise {exc_name}('stop')\n", _Page())
    assert not res.ok
    assert res.kind is FailureKind.SCRIPT
    assert res.failure == f"{exc_name}: stop"


@pytest.mark.asyncio
async def test_sys_exit_inside_script_is_contained() -> None:
    src = "def run(page):\n    raise SystemExit(3)\n"
    res = await TrustedEngine().run(src, _Page())
    assert not res.ok
    assert res.failure.startswith("SystemExit")


@pytest.mark.asyncio
async def test_trusted_engine_has_full_builtins() -> None:
    res = await TrustedEngine().run("import os\ndef run(page):\n    return os.sep\n", _Page())
    assert res.ok
    assert res.value == "/" or res.value == "\\"


def test_build_entrypoint_rejects_unusable_sources() -> None:
    with pytest.raises(ScriptConstructionError):
        build_entrypoint("   ", {"__builtins__": restricted_builtins()})
    with pytest.raises(ScriptConstructionError):
        build_entrypoint("42", {"__builtins__": restricted_builtins()})
    with pytest.raises(ScriptConstructionError):
        build_entrypoint("x = 1\n", {"__builtins__": restricted_builtins()})


def test_restricted_builtins_exclude_dangerous_names() -> None:
    table = restricted_builtins()
    for name in ("open", "eval", "exec", "compile", "input", "breakpoint", "globals", "vars", "getattr"):
        assert name not in table
    assert "len" in table and "print" in table


def test_get_engine() -> None:
    assert get_engine("").name == "restricted"
    assert get_engine("Trusted").name == "trusted"
    with pytest.raises(ValueError):
        get_engine("nodejs")


def test_describe_exception() -> None:
    assert describe_exception(KeyError("k")) == "KeyError: 'k'"
    assert describe_exception(RuntimeError()) == "RuntimeError"
