"""
Defines the core data types shared by the loom script host.

This module provides the version model, the dependency and module
descriptors handed over by discovery and by the running host, the binding
outcomes produced for late binding, and the script-file graph types.
"""

import re
import types
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
import collections.abc


class MissingIncludedFile(FileNotFoundError):
    """An inclusion directive names a file that does not exist."""
    def __init__(self, path: str, referenced_from: Optional[str] = None):
        if referenced_from:
            message = f"Included file not found: {path} (referenced from {referenced_from})"
        else:
            message = f"Script file not found: {path}"
        super().__init__(message)
        self.path = path
        self.referenced_from = referenced_from


class DependencyResolutionError(LookupError):
    """A dependency reference cannot be satisfied by the restored packages."""
    def __init__(self, name: str, reason: str):
        super().__init__(f"{name}: {reason}")
        self.name = name
        self.reason = reason


class ScriptCompilationError(RuntimeError):
    """Script compilation failed; `diagnostics` holds every reported problem."""
    def __init__(self, message: str, diagnostics: List['Diagnostic']):
        super().__init__(message)
        self.diagnostics = list(diagnostics)


# =================================================================
# Versions
# =================================================================

_VERSION_RE = re.compile(r"^\s*[vV]?(\d+(?:\.\d+)*)(?:[-+][0-9A-Za-z.\-+]*)?\s*$")


@dataclass(frozen=True, order=True)
class Version:
    """A dotted numeric version ordered component by component.

    Trailing zero components are dropped on parse so that `1.0` and `1.0.0`
    are equal. A pre-release or local suffix (`-beta`, `+build`) is kept in
    `text` but does not take part in ordering.
    """
    parts: Tuple[int, ...]
    text: str = field(default="", compare=False)

    @classmethod
    def parse(cls, value: Union['Version', str, int]) -> 'Version':
        if isinstance(value, Version):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            raise ValueError(f"Invalid version: {value!r}")
        m = _VERSION_RE.match(value)
        if not m:
            raise ValueError(f"Invalid version: {value!r}")
        parts = [int(p) for p in m.group(1).split(".")]
        while parts and parts[-1] == 0:
            parts.pop()
        return cls(tuple(parts), value.strip())

    def __str__(self) -> str:
        return self.text or ".".join(str(p) for p in self.parts) or "0"


ZERO_VERSION = Version(())


# =================================================================
# Dependencies and modules
# =================================================================

@dataclass(frozen=True)
class ModuleCandidate:
    """A module found on disk for a dependency package."""
    name: str
    version: Version
    path: str


@dataclass(frozen=True)
class DependencyDescriptor:
    """One restored dependency package, as reported by discovery."""
    name: str
    modules: Tuple[ModuleCandidate, ...] = ()
    native_assets: Tuple[str, ...] = ()
    scripts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ActiveModule:
    """A module already loaded into the running process."""
    name: str
    version: Version
    handle: Any = field(compare=False, repr=False)


# =================================================================
# Binding outcomes
# =================================================================

@dataclass(frozen=True)
class UseActive:
    """Reuse the in-process instance instead of loading from disk."""
    name: str
    version: Version
    handle: Any = field(compare=False, repr=False)
    active_version: Version = ZERO_VERSION


@dataclass(frozen=True)
class LoadFromPath:
    """Load the module freshly from the resolved file path."""
    name: str
    version: Version
    path: str


class _NoOpinion:
    """The binding table has nothing to say; default resolution proceeds."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NoOpinion"

    def __reduce__(self):
        return (_NoOpinion, ())


NoOpinion = _NoOpinion()

BindingEntry = Union[UseActive, LoadFromPath]


class BindingTable(collections.abc.Mapping):
    """Read-only, case-insensitive mapping of logical name to BindingEntry.

    The backing dict is wrapped in a MappingProxyType once construction is
    complete, so concurrent readers only ever observe the frozen table.
    """
    __slots__ = ("_entries",)

    def __init__(self, entries: Dict[str, BindingEntry]):
        frozen = {name.casefold(): entry for name, entry in entries.items()}
        self._entries = types.MappingProxyType(frozen)

    def __getitem__(self, name: str) -> BindingEntry:
        return self._entries[name.casefold()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.casefold() in self._entries

    def __iter__(self) -> Iterator[str]:
        for entry in self._entries.values():
            yield entry.name

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, name: str) -> Union[BindingEntry, _NoOpinion]:
        return self._entries.get(name.casefold(), NoOpinion)

    def references(self) -> List[LoadFromPath]:
        """Entries that need an explicit path reference in the compilation unit."""
        return [e for e in self._entries.values() if isinstance(e, LoadFromPath)]

    def reused(self) -> List[UseActive]:
        return [e for e in self._entries.values() if isinstance(e, UseActive)]

    def __repr__(self):
        return f"BindingTable({list(self._entries.values())!r})"


# =================================================================
# Script files
# =================================================================

@dataclass(frozen=True)
class ScriptFile:
    """A script on disk together with the directive literals it declares."""
    path: str
    text: str = field(repr=False)
    directives: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ScriptGraph:
    """The root script and every script reachable from it, in discovery order."""
    root: ScriptFile
    files: Tuple[ScriptFile, ...]

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self):
        return iter(self.files)


@dataclass(frozen=True)
class Diagnostic:
    """A compiler message attached to a script location."""
    severity: str
    message: str
    path: Optional[str] = None
    line: Optional[int] = None
    col: Optional[int] = None
    category: Optional[str] = None

    def __str__(self) -> str:
        where = self.path or "<script>"
        if self.line is not None:
            where += f"({self.line}"
            if self.col is not None:
                where += f",{self.col}"
            where += ")"
        label = f" {self.category}" if self.category else ""
        return f"{where}: {self.severity}{label}: {self.message}"
