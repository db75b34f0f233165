from __future__ import annotations
import ast
import dataclasses
import logging
import os
import platform
import sysconfig
import warnings
from dataclasses import dataclass, field
from types import CodeType
from typing import Dict, List, Optional, Sequence, Tuple

from loom.loom_binding import build_binding_table
from loom.loom_config import HostConfig
from loom.loom_datatypes import (
    BindingTable, DependencyDescriptor, DependencyResolutionError, Diagnostic, MissingIncludedFile,
    ScriptCompilationError, Version,
)
from loom.loom_discovery import DependencyDiscovery, ManifestDependencyDiscovery, PackageReference
from loom.loom_host import PythonRuntimeHost, Registration, RuntimeHost
from loom.loom_includes import (
    LOAD_MARKER, REFERENCE_MARKER, IncludeGraphResolver, is_package_reference, package_name, parse_directives,
    resolve_include,
)
from loom.loom_merge import merge_active, merge_modules
from loom.loom_native import NativeAssetLoader, load_native_assets, native_loader_for
from loom.loom_redirect import LateBindingRedirector

logger = logging.getLogger(__name__)

RESULT_NAME = "__loom_result__"
COMPILE_FLAGS = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT


def platform_identifier() -> str:
    return f"{platform.python_implementation().lower()}-{sysconfig.get_python_version()}-{sysconfig.get_platform()}"


@dataclass
class ScriptContext:
    """A compilation request: the script text and where it came from."""
    code: str
    working_dir: str
    file_path: Optional[str] = None
    args: Tuple[str, ...] = ()
    optimization: Optional[str] = None

    @classmethod
    def from_file(cls, path: str, args: Sequence[str] = (), encoding: str = "utf-8-sig",
                  optimization: Optional[str] = None) -> 'ScriptContext':
        path = os.path.abspath(path)
        if not os.path.isfile(path):
            raise MissingIncludedFile(path)
        with open(path, "r", encoding=encoding) as f:
            code = f.read()
        return cls(code=code, working_dir=os.path.dirname(path), file_path=path,
                   args=tuple(args), optimization=optimization)


@dataclass(frozen=True)
class ScriptOptions:
    imports: Tuple[str, ...]
    optimize: int
    encoding: str
    file_path: Optional[str]
    # package name (casefolded) -> script files reachable with `#load "pkg:Name"`
    script_map: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    references: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CompilationUnit:
    filename: str
    source: str = field(repr=False)
    code: CodeType = field(repr=False)
    is_root: bool = False


@dataclass
class CompilationContext:
    """Everything needed to run a compiled script; closing it ends late binding."""
    units: List[CompilationUnit]
    options: ScriptOptions
    binding_table: BindingTable
    registration: Registration
    descriptors: List[DependencyDescriptor]
    args: Tuple[str, ...] = ()
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def source_for(self, filename: str) -> Optional[str]:
        for unit in self.units:
            if unit.filename == filename:
                return unit.source
        return None

    def close(self):
        self.registration.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class SourceReferenceResolver:
    """Maps a `#load` literal to files: a package's scripts or a path."""

    def __init__(self, script_map: Dict[str, Tuple[str, ...]]):
        self.script_map = script_map

    def resolve(self, literal: str, base_dir: str) -> List[str]:
        if is_package_reference(literal):
            name = package_name(literal)
            scripts = self.script_map.get(name.casefold())
            if scripts is None:
                raise DependencyResolutionError(name, "#load names a package the script does not reference")
            return list(scripts)
        return [resolve_include(literal, base_dir)]


class ScriptCompiler:
    """Turns a ScriptContext into compiled units with late binding in place."""

    def __init__(self,
                 discovery: Optional[DependencyDiscovery] = None,
                 host: Optional[RuntimeHost] = None,
                 config: Optional[HostConfig] = None,
                 native_loader: Optional[NativeAssetLoader] = None):
        self.config = config or HostConfig()
        self.discovery = discovery or ManifestDependencyDiscovery(self.config.manifest)
        self.host = host or PythonRuntimeHost()
        self.native_loader = native_loader or native_loader_for(self.config.native_preload)

    def create_script_options(self, context: ScriptContext,
                              descriptors: Sequence[DependencyDescriptor]) -> ScriptOptions:
        config = self.config.with_overrides(optimization=context.optimization)
        script_map = {d.name.casefold(): d.scripts for d in descriptors}
        return ScriptOptions(
            imports=tuple(config.imports),
            optimize=config.optimize_level,
            encoding=self.config.encoding,
            file_path=context.file_path,
            script_map=script_map,
        )

    def create_compilation_context(self, context: ScriptContext) -> CompilationContext:
        if context is None:
            raise ValueError("context is required")
        logger.debug("Current runtime is '%s'.", platform_identifier())

        descriptors = self.discovery.discover(context.working_dir, context.code)
        options = self.create_script_options(context, descriptors)

        # Single snapshot for the whole compilation
        active_pool = merge_active(self.host.active_modules())
        disk_pool = merge_modules(descriptors)
        table = build_binding_table(disk_pool, active_pool)
        options = dataclasses.replace(options, references=tuple(e.path for e in table.references()))

        load_native_assets(descriptors, self.native_loader)

        # The table is complete and frozen; only now may the loader see it
        registration = self.host.register(
            LateBindingRedirector(table), requested_versions(context.code, descriptors)
        )
        try:
            units, diagnostics = self._compile_units(context, options)
        except BaseException:
            registration.close()
            raise
        return CompilationContext(
            units=units,
            options=options,
            binding_table=table,
            registration=registration,
            descriptors=list(descriptors),
            args=tuple(context.args),
            diagnostics=diagnostics,
        )

    # --------------------------
    # Compilation
    # --------------------------

    def _collect_sources(self, context: ScriptContext, options: ScriptOptions) -> List[Tuple[str, str]]:
        """Loaded scripts first (each once, dependencies before dependents), root last."""
        resolver = SourceReferenceResolver(options.script_map)
        files = IncludeGraphResolver(encoding=options.encoding)
        root_name = context.file_path or "<script>"
        seen = {os.path.normcase(context.file_path)} if context.file_path else set()
        out: List[Tuple[str, str]] = []

        def _visit(directives: Sequence[str], filename: str, base_dir: str):
            for literal in directives:
                for path in resolver.resolve(literal, base_dir):
                    key = os.path.normcase(path)
                    if key in seen:
                        continue
                    script = files.load(path, filename)
                    seen.add(key)
                    _visit(script.directives, path, os.path.dirname(path))
                    out.append((path, script.text))

        _visit(parse_directives(context.code, LOAD_MARKER), root_name, context.working_dir)
        out.append((root_name, context.code))
        return out

    def _compile_units(self, context: ScriptContext,
                       options: ScriptOptions) -> Tuple[List[CompilationUnit], List[Diagnostic]]:
        sources = self._collect_sources(context, options)
        units: List[CompilationUnit] = []
        diagnostics: List[Diagnostic] = []
        for index, (filename, source) in enumerate(sources):
            is_root = index == len(sources) - 1
            code = self._compile_one(filename, source, options.optimize, is_root, diagnostics)
            if code is not None:
                units.append(CompilationUnit(filename=filename, source=source, code=code, is_root=is_root))
        self._evaluate_diagnostics(diagnostics)
        return units, [d for d in diagnostics if d.severity != "suppressed"]

    def _compile_one(self, filename: str, source: str, optimize: int, is_root: bool,
                     diagnostics: List[Diagnostic]) -> Optional[CodeType]:
        suppressed = set(self.config.suppressed_warnings)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                tree = ast.parse(source, filename, "exec")
                if is_root:
                    tree = _capture_trailing_expression(tree)
                code = compile(tree, filename, "exec", flags=COMPILE_FLAGS, dont_inherit=True, optimize=optimize)
            except SyntaxError as e:
                diagnostics.append(Diagnostic(
                    severity="error", message=e.msg, path=e.filename or filename,
                    line=e.lineno, col=e.offset, category=type(e).__name__,
                ))
                code = None
        for w in caught:
            category = w.category.__name__
            diag = Diagnostic(severity="warning", message=str(w.message), path=w.filename or filename,
                              line=w.lineno, category=category)
            if category in suppressed:
                logger.debug("Suppressed diagnostic %s", diag)
                diagnostics.append(dataclasses.replace(diag, severity="suppressed"))
            else:
                logger.warning("%s", diag)
                diagnostics.append(diag)
        return code

    def _evaluate_diagnostics(self, diagnostics: List[Diagnostic]):
        if any(d.severity == "error" for d in diagnostics):
            raise ScriptCompilationError(
                "Script compilation failed due to one or more errors.",
                [d for d in diagnostics if d.severity != "suppressed"],
            )


def requested_versions(code: str, descriptors: Sequence[DependencyDescriptor]) -> Dict[str, Version]:
    """Module name -> version the script asked for with `#r "pkg:Name, version"`."""
    by_package = {d.name.casefold(): d for d in descriptors}
    out: Dict[str, Version] = {}
    for literal in parse_directives(code, REFERENCE_MARKER):
        if not is_package_reference(literal):
            continue
        ref = PackageReference.parse(literal)
        descriptor = by_package.get(ref.name.casefold())
        if ref.version is None or descriptor is None:
            continue
        for module in descriptor.modules:
            out[module.name] = ref.version
    return out


def _capture_trailing_expression(tree: ast.Module) -> ast.Module:
    """Bind the value of a final expression statement so the runner can report it."""
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body[-1]
        assign = ast.Assign(targets=[ast.Name(id=RESULT_NAME, ctx=ast.Store())], value=last.value)
        tree.body[-1] = ast.copy_location(assign, last)
        ast.fix_missing_locations(tree)
    return tree
