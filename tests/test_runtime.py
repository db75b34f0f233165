import importlib
import sys
import pytest

from loom.loom_compiler import ScriptCompiler
from loom.loom_redirect import RedirectingFinder, ReferenceFinder
from loom.loom_runtime import ExecutionResult, ScriptRunner


@pytest.fixture
def runner():
    return ScriptRunner()


@pytest.fixture
def forget_modules():
    names = []
    yield names
    for name in names:
        sys.modules.pop(name, None)
    importlib.invalidate_caches()


def write(folder, name, text):
    path = folder / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return str(path)


def no_redirecting_finders():
    return not any(isinstance(f, (RedirectingFinder, ReferenceFinder)) for f in sys.meta_path)


@pytest.mark.asyncio
async def test_trailing_expression_is_the_value(runner, tmp_path):
    result = await runner.run_code("x = 20\nx + 22\n", str(tmp_path))
    assert result.status == "success"
    assert result.value == 42


@pytest.mark.asyncio
async def test_statement_only_script_has_no_value(runner, tmp_path):
    result = await runner.run_code("x = 1\n", str(tmp_path))
    assert result.status == "success"
    assert result.value is None


@pytest.mark.asyncio
async def test_loaded_scripts_run_first_in_shared_namespace(runner, tmp_path):
    root = write(tmp_path, "main.pys", '#load "a.pys"\n#load "lib/b.pys"\norder.append("root")\norder\n')
    write(tmp_path, "a.pys", "order = ['a']\n")
    write(tmp_path, "lib/b.pys", '#load "../a.pys"\norder.append("b")\n')

    result = await runner.run_file(root)

    assert result.status == "success", result.format_error()
    assert result.value == ["a", "b", "root"]
    assert no_redirecting_finders()


@pytest.mark.asyncio
async def test_top_level_await(runner, tmp_path):
    result = await runner.run_code("await asyncio.sleep(0)\nawait asyncio.sleep(0, result='done')\n", str(tmp_path))
    assert result.status == "success", result.format_error()
    assert result.value == "done"


@pytest.mark.asyncio
async def test_args_and_implicit_imports(runner, tmp_path):
    root = write(tmp_path, "main.pys", "(Args, os.path.basename(__file__), json.dumps(1))\n")

    result = await runner.run_file(root, args=["one", "two"])

    assert result.value == (["one", "two"], "main.pys", "1")


@pytest.mark.asyncio
async def test_syntax_error_result(runner, tmp_path):
    root = write(tmp_path, "main.pys", "x = 1\ny = (\n")

    result = await runner.run_file(root)

    assert result.status == "error"
    assert result.error_token["line"] == 2
    assert result.error_token["path"] == root
    assert "Script compilation failed" in result.error_message
    assert result.format_error().startswith("Error on line 2")
    assert "> 2 | y = (" in result.error_message
    assert no_redirecting_finders()


@pytest.mark.asyncio
async def test_runtime_error_points_at_the_failing_script(runner, tmp_path):
    root = write(tmp_path, "main.pys", '#load "lib.pys"\nfail()\n')
    lib = write(tmp_path, "lib.pys", "def fail():\n    x = 1\n    return x / 0\n")

    result = await runner.run_file(root)

    assert result.status == "error"
    assert result.error_message.startswith("ZeroDivisionError: division by zero")
    assert result.error_token["path"] == lib
    assert result.error_token["line"] == 3
    assert "return x / 0" in result.error_message
    assert no_redirecting_finders()


@pytest.mark.asyncio
async def test_missing_script_and_missing_load(runner, tmp_path):
    result = await runner.run_file(str(tmp_path / "absent.pys"))
    assert result.status == "error"
    assert result.error_message.startswith("MissingIncludedFile")

    root = write(tmp_path, "main.pys", '#load "absent.pys"\n')
    result = await runner.run_file(root)
    assert result.status == "error"
    assert "absent.pys" in result.error_message


@pytest.mark.asyncio
async def test_unresolvable_package_reference(runner, tmp_path):
    root = write(tmp_path, "main.pys", '#r "pkg:Nothing"\n1\n')
    result = await runner.run_file(root)
    assert result.status == "error"
    assert result.error_message.startswith("DependencyResolutionError")


@pytest.mark.asyncio
async def test_release_optimization_drops_asserts(runner, tmp_path):
    root = write(tmp_path, "main.pys", "assert False, 'debug only'\n'reached'\n")

    debug = await runner.run_file(root)
    release = await runner.run_file(root, optimization="release")

    assert debug.status == "error"
    assert "AssertionError" in debug.error_message
    assert release.status == "success"
    assert release.value == "reached"


@pytest.mark.asyncio
async def test_manifest_module_is_bound_when_imported(runner, tmp_path, forget_modules):
    name = "loom_e2e_greeter"
    forget_modules.append(name)
    write(tmp_path, "deps/greeter/impl.py", "def greet(who):\n    return f'hello {who}'\n")
    write(tmp_path, "loom.deps.yaml", (
        "packages:\n"
        "  Greeter:\n"
        "    version: '1.2'\n"
        "    modules:\n"
        f"      - name: {name}\n"
        "        path: deps/greeter/impl.py\n"
    ))
    root = write(tmp_path, "main.pys", f'#r "pkg:Greeter"\nimport {name}\n{name}.greet("loom")\n')

    result = await runner.run_file(root)

    assert result.status == "success", result.format_error()
    assert result.value == "hello loom"
    assert no_redirecting_finders()


@pytest.mark.asyncio
async def test_package_scripts_run_before_root(runner, tmp_path):
    write(tmp_path, "deps/tools/tools.pys", "def shout(s):\n    return s.upper()\n")
    write(tmp_path, "loom.deps.yaml", (
        "packages:\n"
        "  Tools:\n"
        "    version: '1.0'\n"
        "    scripts: [deps/tools/tools.pys]\n"
    ))
    root = write(tmp_path, "main.pys", '#r "pkg:Tools"\n#load "pkg:Tools"\nshout("hi")\n')

    result = await runner.run_file(root)

    assert result.status == "success", result.format_error()
    assert result.value == "HI"


@pytest.mark.asyncio
async def test_compiler_warnings_travel_with_the_result(tmp_path):
    runner = ScriptRunner(ScriptCompiler())
    result = await runner.run_code('assert (1, "always true")\n"ok"\n', str(tmp_path))
    assert result.status == "success"
    assert [d.category for d in result.diagnostics] == ["SyntaxWarning"]


def test_format_error():
    assert ExecutionResult(status="success").format_error() == ""
    err = ExecutionResult(status="error", error_message="boom", error_token={"line": 3, "col": 2})
    assert err.format_error() == "Error on line 3, col 2: boom"
    assert ExecutionResult(status="error", error_message="boom").format_error() == "boom"


def test_source_context_marks_line_and_column():
    text = ScriptRunner()._source_context("a\nbb\nccc\n", 2, 2)
    assert text.splitlines() == [
        "  1 | a",
        "> 2 | bb",
        "    |  ^",
        "  3 | ccc",
    ]


@pytest.mark.asyncio
async def test_manifest_module_wins_over_same_named_module_on_sys_path(runner, tmp_path, forget_modules, monkeypatch):
    name = "loom_e2e_palette"
    forget_modules.append(name)
    write(tmp_path, f"site/{name}.py", "MARK = 'from-sys-path'\n")
    monkeypatch.syspath_prepend(str(tmp_path / "site"))
    write(tmp_path, f"deps/lib/{name}.py", "MARK = 'from-disk'\n")
    write(tmp_path, "loom.deps.yaml", (
        "packages:\n"
        "  P:\n"
        "    version: '9.0'\n"
        "    modules:\n"
        f"      - name: {name}\n"
        f"        path: deps/lib/{name}.py\n"
    ))
    root = write(tmp_path, "main.pys", f'#r "pkg:P"\nimport {name}\n{name}.MARK\n')

    result = await runner.run_file(root)

    assert result.status == "success", result.format_error()
    assert result.value == "from-disk"
    assert no_redirecting_finders()
