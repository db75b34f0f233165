import builtins
import importlib
import inspect
import os
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from loom.loom_compiler import RESULT_NAME, CompilationContext, ScriptCompiler, ScriptContext
from loom.loom_datatypes import (
    DependencyResolutionError, Diagnostic, MissingIncludedFile, ScriptCompilationError,
)

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Compiles and executes scripts, reporting failures as ExecutionResults."""

    def __init__(self, compiler: Optional[ScriptCompiler] = None):
        self.compiler = compiler or ScriptCompiler()
        self.namespace: Dict[str, Any] = {}

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_compilation_error(self, e: ScriptCompilationError, context: ScriptContext) -> ExecutionResult:
        errors = [d for d in e.diagnostics if d.severity == "error"]
        parts = [str(e)] + [str(d) for d in e.diagnostics]
        token = None
        if errors:
            first = errors[0]
            token = {'line': first.line, 'col': first.col, 'path': first.path}
            source = self._read_source(first.path, context)
            if source and first.line:
                parts.append(self._source_context(source, first.line, first.col))
        return ExecutionResult(status='error', error_message="\n".join(parts), error_token=token,
                               diagnostics=list(e.diagnostics))

    def _format_runtime_error(self, e: BaseException, comp: CompilationContext) -> ExecutionResult:
        msg = f"{type(e).__name__}: {e}"
        token = None
        filenames = {unit.filename for unit in comp.units}
        # Innermost frame that belongs to one of the script files
        for frame in reversed(traceback.extract_tb(e.__traceback__)):
            if frame.filename in filenames:
                col = (frame.colno + 1) if getattr(frame, "colno", None) is not None else None
                token = {'line': frame.lineno, 'col': col, 'path': frame.filename}
                source = comp.source_for(frame.filename)
                if source and frame.lineno:
                    msg = f"{msg}\n  File {frame.filename}\n{self._source_context(source, frame.lineno, col)}"
                break
        return ExecutionResult(status='error', error_message=msg, error_token=token,
                               diagnostics=list(comp.diagnostics))

    def _read_source(self, path: Optional[str], context: ScriptContext) -> Optional[str]:
        if not path or path == context.file_path or path == "<script>":
            return context.code
        try:
            with open(path, "r", encoding=self.compiler.config.encoding) as f:
                return f.read()
        except OSError:
            return None

    def _prepare_namespace(self, comp: CompilationContext) -> Dict[str, Any]:
        namespace: Dict[str, Any] = {
            "__name__": "__main__",
            "__file__": comp.options.file_path or "<script>",
            "__builtins__": builtins,
            "Args": list(comp.args),
        }
        # Implicit imports resolve after registration so they may be redirected too
        for module_name in comp.options.imports:
            namespace[module_name.split(".")[0]] = importlib.import_module(module_name.split(".")[0])
            if "." in module_name:
                importlib.import_module(module_name)
        return namespace

    async def handle_script(self, context: ScriptContext) -> ExecutionResult:
        """The main entry point to compile and execute a script."""
        try:
            comp = self.compiler.create_compilation_context(context)
        except ScriptCompilationError as e:
            return self._format_compilation_error(e, context)
        except MissingIncludedFile as e:
            return ExecutionResult(status='error', error_message=f"MissingIncludedFile: {e}")
        except DependencyResolutionError as e:
            return ExecutionResult(status='error', error_message=f"DependencyResolutionError: {e}")

        with comp:
            try:
                self.namespace = self._prepare_namespace(comp)
                for unit in comp.units:
                    self.namespace["__file__"] = unit.filename
                    outcome = eval(unit.code, self.namespace)
                    if inspect.iscoroutine(outcome):
                        await outcome
                value = self.namespace.pop(RESULT_NAME, None)
            except Exception as e:
                return self._format_runtime_error(e, comp)
        return ExecutionResult(status='success', value=value, diagnostics=list(comp.diagnostics))

    async def run_file(self, path: str, args: Sequence[str] = (), optimization: Optional[str] = None) -> ExecutionResult:
        try:
            context = ScriptContext.from_file(
                path, args=args, encoding=self.compiler.config.encoding, optimization=optimization,
            )
        except MissingIncludedFile as e:
            return ExecutionResult(status='error', error_message=f"MissingIncludedFile: {e}")
        return await self.handle_script(context)

    async def run_code(self, code: str, working_dir: Optional[str] = None, args: Sequence[str] = ()) -> ExecutionResult:
        context = ScriptContext(code=code, working_dir=os.path.abspath(working_dir or os.getcwd()), args=tuple(args))
        return await self.handle_script(context)
