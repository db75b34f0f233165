from __future__ import annotations
import importlib.metadata
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from loom.loom_datatypes import ActiveModule, Version, ZERO_VERSION
from loom.loom_redirect import LateBindingRedirector, RedirectingFinder, ReferenceFinder

logger = logging.getLogger(__name__)


class Registration:
    """Handle for a registered redirector; closing it unregisters its finders."""

    def __init__(self, finder: RedirectingFinder, unregister: Callable[[], None],
                 reference_finder: Optional[ReferenceFinder] = None):
        self.finder = finder
        self.reference_finder = reference_finder
        self._unregister = unregister
        self.active = True

    def close(self):
        if self.active:
            self.active = False
            self._unregister()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class RuntimeHost(ABC):
    """What the compiler needs from the process it runs scripts in."""

    @abstractmethod
    def active_modules(self) -> List[ActiveModule]:
        """Point-in-time snapshot of every module loaded into the process."""
        raise NotImplementedError

    @abstractmethod
    def register(self, redirector: LateBindingRedirector,
                 requested_versions: Optional[Mapping[str, Union[Version, str]]] = None) -> Registration:
        raise NotImplementedError


def module_version(name: str, module: Any, distributions: Mapping[str, List[str]]) -> Version:
    """Best version we can attribute to a loaded top-level module, or 0."""
    raw = getattr(module, "__version__", None)
    if isinstance(raw, str):
        try:
            return Version.parse(raw)
        except ValueError:
            pass
    for dist in distributions.get(name, ()):
        try:
            return Version.parse(importlib.metadata.version(dist))
        except (importlib.metadata.PackageNotFoundError, ValueError):
            continue
    return ZERO_VERSION


def snapshot_active_modules(modules: Optional[Mapping[str, Any]] = None,
                            distributions: Optional[Mapping[str, List[str]]] = None) -> List[ActiveModule]:
    # Copy first: other threads may import while we walk the table
    table = dict(sys.modules if modules is None else modules)
    if distributions is None:
        distributions = importlib.metadata.packages_distributions()
    snapshot = []
    for name, module in table.items():
        if module is None or "." in name:
            continue
        snapshot.append(ActiveModule(name=name, version=module_version(name, module, distributions), handle=module))
    return snapshot


class PythonRuntimeHost(RuntimeHost):
    """The running interpreter: `sys.modules` for the snapshot, `sys.meta_path` for late binding."""

    def __init__(self, modules: Optional[Dict[str, Any]] = None, meta_path: Optional[List[Any]] = None):
        self._modules = modules
        self._meta_path = meta_path

    def active_modules(self) -> List[ActiveModule]:
        return snapshot_active_modules(self._modules)

    def register(self, redirector, requested_versions=None) -> Registration:
        meta_path = sys.meta_path if self._meta_path is None else self._meta_path
        finder = RedirectingFinder(redirector, requested_versions)
        references = ReferenceFinder(redirector.table.references())
        installed = [finder]
        if len(references):
            # Explicit references win over anything on sys.path
            meta_path.insert(0, references)
            installed.append(references)
        # Last in line: consulted only after every default finder gave up
        meta_path.append(finder)
        logger.debug("Registered %r", installed)

        def _unregister():
            for f in installed:
                try:
                    meta_path.remove(f)
                except ValueError:
                    logger.debug("%r was already removed from the meta path", f)

        return Registration(finder, _unregister, references if len(references) else None)
