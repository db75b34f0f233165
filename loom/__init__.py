from loom.loom_datatypes import (
    ActiveModule, BindingTable, DependencyDescriptor, DependencyResolutionError, LoadFromPath,
    MissingIncludedFile, ModuleCandidate, NoOpinion, ScriptCompilationError, ScriptGraph, UseActive, Version,
)
from loom.loom_includes import IncludeGraphResolver, build_script_graph, resolve_script_files
from loom.loom_merge import CandidatePool, merge, merge_active, merge_modules
from loom.loom_binding import build_binding_table
from loom.loom_redirect import BindingRequest, LateBindingRedirector, RedirectingFinder, ReferenceFinder
from loom.loom_host import PythonRuntimeHost, RuntimeHost
from loom.loom_compiler import ScriptCompiler, ScriptContext
from loom.loom_runtime import ExecutionResult, ScriptRunner

__all__ = [
    "ActiveModule",
    "BindingRequest",
    "BindingTable",
    "CandidatePool",
    "DependencyDescriptor",
    "DependencyResolutionError",
    "ExecutionResult",
    "IncludeGraphResolver",
    "LateBindingRedirector",
    "LoadFromPath",
    "MissingIncludedFile",
    "ModuleCandidate",
    "NoOpinion",
    "PythonRuntimeHost",
    "RedirectingFinder",
    "ReferenceFinder",
    "RuntimeHost",
    "ScriptCompilationError",
    "ScriptCompiler",
    "ScriptContext",
    "ScriptGraph",
    "ScriptRunner",
    "UseActive",
    "Version",
    "build_binding_table",
    "build_script_graph",
    "merge",
    "merge_active",
    "merge_modules",
    "resolve_script_files",
]
