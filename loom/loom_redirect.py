"""
Late binding: answers import requests the default finders could not satisfy.

`LateBindingRedirector` is the decision function over a frozen BindingTable.
`RedirectingFinder` adapts it to the import system as the last entry of
`sys.meta_path`, so it is only consulted after every default finder failed.
`ReferenceFinder` does the opposite for the explicit references: it goes
first, so LoadFromPath names bind to their resolved path.
"""

from __future__ import annotations
import importlib.abc
import importlib.util
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from loom.loom_datatypes import BindingEntry, BindingTable, LoadFromPath, NoOpinion, UseActive, Version, _NoOpinion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BindingRequest:
    """A failed lookup: the logical name plus the version the requester asked for."""
    name: str
    version: Optional[Version] = None

    @classmethod
    def of(cls, name: str, version: Union[Version, str, None] = None) -> 'BindingRequest':
        return cls(name, Version.parse(version) if version is not None else None)

    def __str__(self) -> str:
        return f"{self.name} {self.version}" if self.version is not None else self.name


class LateBindingRedirector:
    """Redirects a failed binding request to an active instance or a resolved path.

    A redirect only happens as an upgrade: the table's version must be
    strictly higher than the requested one. A request without a version is
    lower than anything the table resolved. Equal or newer requests get
    NoOpinion and fall back to the host's own failure behaviour.
    """

    def __init__(self, table: BindingTable):
        self._table = table

    @property
    def table(self) -> BindingTable:
        return self._table

    def __call__(self, request: BindingRequest) -> Union[BindingEntry, _NoOpinion]:
        entry = self._table.lookup(request.name)
        if not entry:
            return NoOpinion
        if request.version is not None and not entry.version > request.version:
            return NoOpinion
        if isinstance(entry, UseActive):
            logger.info("Redirecting %s to already loaded %s %s", request, entry.name, entry.active_version)
        else:
            logger.info("Redirecting %s to %s %s (%s)", request, entry.name, entry.version, entry.path)
        return entry

    def load(self, request: BindingRequest) -> Any:
        """Like calling the redirector, but hands back the module object itself."""
        decision = self(request)
        if not decision:
            return NoOpinion
        if isinstance(decision, UseActive):
            return decision.handle
        return load_module_from_path(decision.name, decision.path)


def spec_for_path(name: str, path: str):
    if os.path.isdir(path):
        # Package directory: load through its __init__ and let submodules resolve under it
        return importlib.util.spec_from_file_location(
            name, os.path.join(path, "__init__.py"), submodule_search_locations=[path]
        )
    return importlib.util.spec_from_file_location(name, path)


def load_module_from_path(name: str, path: str) -> Any:
    existing = sys.modules.get(name)
    if existing is not None and _same_origin(existing, path):
        return existing
    spec = spec_for_path(name, path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {name} from {path}", name=name, path=path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(name, None)
        raise
    return module


def _same_origin(module: Any, path: str) -> bool:
    origin = getattr(getattr(module, "__spec__", None), "origin", None) or getattr(module, "__file__", None)
    if not origin:
        return False
    target = os.path.join(path, "__init__.py") if os.path.isdir(path) else path
    return os.path.normcase(os.path.abspath(origin)) == os.path.normcase(os.path.abspath(target))


class _ActiveModuleLoader(importlib.abc.Loader):
    """Hands an already-loaded module object back to the import system."""

    def __init__(self, handle: Any):
        self._handle = handle
        self._original_spec = getattr(handle, "__spec__", None)

    def create_module(self, spec):
        return self._handle

    def exec_module(self, module):
        # The import machinery stamps its own spec onto the module; keep the original
        if self._original_spec is not None:
            module.__spec__ = self._original_spec


class RedirectingFinder(importlib.abc.MetaPathFinder):
    """Meta-path adapter for a LateBindingRedirector.

    The import system carries no version, so the requested version for a name
    comes from `requested_versions`, when the caller supplied one.
    """

    def __init__(self, redirector: LateBindingRedirector,
                 requested_versions: Optional[Mapping[str, Union[Version, str]]] = None):
        self.redirector = redirector
        self._requested: Dict[str, Version] = {
            name.casefold(): Version.parse(v) for name, v in (requested_versions or {}).items()
        }

    def find_spec(self, fullname, path=None, target=None):
        # Submodules resolve through their parent package's __path__
        if path is not None or "." in fullname:
            return None
        request = BindingRequest(fullname, self._requested.get(fullname.casefold()))
        decision = self.redirector(request)
        if not decision:
            return None
        if isinstance(decision, UseActive):
            return importlib.util.spec_from_loader(fullname, _ActiveModuleLoader(decision.handle))
        return spec_for_path(fullname, decision.path)

    @property
    def requested_versions(self) -> Mapping[str, Version]:
        return dict(self._requested)

    def invalidate_caches(self):
        pass

    def __repr__(self):
        return f"RedirectingFinder({len(self.redirector.table)} bindings)"


class ReferenceFinder(importlib.abc.MetaPathFinder):
    """Explicit references: binds LoadFromPath names to their resolved path.

    Sits at the front of `sys.meta_path`, so a same-named module elsewhere on
    `sys.path` cannot shadow the binding table's decision.
    """

    def __init__(self, references: Iterable[LoadFromPath]):
        self._references: Dict[str, LoadFromPath] = {e.name.casefold(): e for e in references}

    def __len__(self) -> int:
        return len(self._references)

    def find_spec(self, fullname, path=None, target=None):
        if path is not None or "." in fullname:
            return None
        entry = self._references.get(fullname.casefold())
        if entry is None:
            return None
        logger.debug("Binding %s to referenced %s (%s)", fullname, entry.version, entry.path)
        return spec_for_path(fullname, entry.path)

    def invalidate_caches(self):
        pass

    def __repr__(self):
        return f"ReferenceFinder({len(self._references)} references)"
