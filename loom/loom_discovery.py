"""
Dependency discovery.

Scripts name their dependencies with reference directives:

    #r "pkg:requests"            a package from the dependency manifest
    #r "pkg:requests, 2.31"      ... at least this version
    #r "lib/helpers.py"          a module file or package directory

Packages are looked up in a restored-dependency manifest (`loom.deps.yaml` by
default) that records, per package, its modules, native assets, scripts and
the packages it depends on. Restoring packages into that manifest happens
elsewhere; discovery only reads it.
"""

from __future__ import annotations
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from loom.loom_datatypes import (
    DependencyDescriptor, DependencyResolutionError, ModuleCandidate, Version, ZERO_VERSION,
)
from loom.loom_includes import REFERENCE_MARKER, is_package_reference, package_name, parse_directives
from loom.loom_serialize import format_from_path, load_file

logger = logging.getLogger(__name__)


class DependencyDiscovery(ABC):
    @abstractmethod
    def discover(self, working_dir: str, script_text: str) -> List[DependencyDescriptor]:
        raise NotImplementedError


class NoDependencies(DependencyDiscovery):
    def discover(self, working_dir, script_text):
        return []


@dataclass(frozen=True)
class PackageReference:
    name: str
    version: Optional[Version] = None

    @classmethod
    def parse(cls, literal: str) -> 'PackageReference':
        name = package_name(literal)
        if not name:
            raise DependencyResolutionError(literal, "package reference without a name")
        _, _, version = literal.partition(",")
        version = version.strip()
        try:
            return cls(name, Version.parse(version) if version else None)
        except ValueError as e:
            raise DependencyResolutionError(name, str(e)) from e


@dataclass(frozen=True)
class ManifestPackage:
    name: str
    version: Version
    dependencies: Tuple[str, ...]
    descriptor: DependencyDescriptor


# --------------------------
# Manifest parsing
# --------------------------

def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _xml_packages(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Reshape the xmltodict form of a manifest into the yaml/json shape.

    <manifest><packages>
      <package name="x" version="1.0">
        <dependency>y</dependency>
        <module name="x" version="1.0" path="lib/x"/>
        <native>native/libx.so</native>
        <script>scripts/x.pys</script>
      </package>
    </packages></manifest>
    """
    root = doc.get("manifest", doc)
    packages = (root.get("packages") or {}).get("package")
    out: Dict[str, Any] = {}
    for pkg in _as_list(packages):
        name = pkg.get("@name")
        out[name] = {
            "version": pkg.get("@version"),
            "dependencies": _as_list(pkg.get("dependency")),
            "modules": [
                {"name": m.get("@name"), "version": m.get("@version"), "path": m.get("@path")}
                for m in _as_list(pkg.get("module"))
            ],
            "native": _as_list(pkg.get("native")),
            "scripts": _as_list(pkg.get("script")),
        }
    return {"packages": out}


def parse_manifest(data: Any, base_dir: str) -> Dict[str, ManifestPackage]:
    """Build the case-insensitive package index; relative paths resolve against `base_dir`."""
    if not isinstance(data, dict) or not isinstance(data.get("packages"), dict):
        raise DependencyResolutionError("<manifest>", "expected a 'packages' mapping")

    def _abs(p: str) -> str:
        return os.path.normpath(os.path.join(base_dir, os.path.expanduser(str(p))))

    index: Dict[str, ManifestPackage] = {}
    for name, spec in data["packages"].items():
        spec = spec or {}
        try:
            version = Version.parse(str(spec["version"])) if spec.get("version") is not None else ZERO_VERSION
            modules = []
            for m in _as_list(spec.get("modules")):
                if isinstance(m, str):
                    m = {"path": m}
                if not m.get("path"):
                    raise DependencyResolutionError(name, "module entry without a path")
                mod_version = m.get("version")
                modules.append(ModuleCandidate(
                    name=m.get("name") or name,
                    version=Version.parse(str(mod_version)) if mod_version is not None else version,
                    path=_abs(m["path"]),
                ))
        except ValueError as e:
            raise DependencyResolutionError(name, str(e)) from e
        descriptor = DependencyDescriptor(
            name=name,
            modules=tuple(modules),
            native_assets=tuple(_abs(p) for p in _as_list(spec.get("native"))),
            scripts=tuple(_abs(p) for p in _as_list(spec.get("scripts"))),
        )
        index[name.casefold()] = ManifestPackage(
            name=name,
            version=version,
            dependencies=tuple(str(d) for d in _as_list(spec.get("dependencies"))),
            descriptor=descriptor,
        )
    return index


def load_manifest(path: str) -> Dict[str, ManifestPackage]:
    try:
        data = load_file(path)
    except ValueError as e:
        raise DependencyResolutionError(os.path.basename(path), str(e)) from e
    if format_from_path(path) == "xml":
        data = _xml_packages(data)
    return parse_manifest(data, os.path.dirname(os.path.abspath(path)))


# --------------------------
# Discovery
# --------------------------

class ManifestDependencyDiscovery(DependencyDiscovery):
    """Resolves `#r` directives against a restored-dependency manifest."""

    def __init__(self, manifest_name: str = "loom.deps.yaml"):
        self.manifest_name = manifest_name

    def discover(self, working_dir: str, script_text: str) -> List[DependencyDescriptor]:
        literals = parse_directives(script_text, REFERENCE_MARKER)
        descriptors: List[DependencyDescriptor] = []
        packages: List[PackageReference] = []
        for literal in literals:
            if is_package_reference(literal):
                packages.append(PackageReference.parse(literal))
            else:
                descriptors.append(self._file_reference(working_dir, literal))
        if packages:
            manifest_path = os.path.join(working_dir, self.manifest_name)
            if not os.path.isfile(manifest_path):
                raise DependencyResolutionError(packages[0].name, f"no dependency manifest at {manifest_path}")
            descriptors.extend(self._closure(load_manifest(manifest_path), packages))
        logger.debug("Discovered %d dependency descriptor(s) in %s", len(descriptors), working_dir)
        return descriptors

    def _file_reference(self, working_dir: str, literal: str) -> DependencyDescriptor:
        path = os.path.normpath(os.path.join(working_dir, literal))
        if not os.path.exists(path):
            raise DependencyResolutionError(literal, f"referenced module not found: {path}")
        stem = os.path.basename(path.rstrip(os.sep))
        name = os.path.splitext(stem)[0] if os.path.isfile(path) else stem
        return DependencyDescriptor(name=name, modules=(ModuleCandidate(name, ZERO_VERSION, path),))

    def _closure(self, index: Dict[str, ManifestPackage],
                 references: List[PackageReference]) -> List[DependencyDescriptor]:
        seen = set()
        out: List[DependencyDescriptor] = []
        queue = deque(references)
        while queue:
            ref = queue.popleft()
            key = ref.name.casefold()
            package = index.get(key)
            if package is None:
                raise DependencyResolutionError(ref.name, "not found in the dependency manifest")
            if ref.version is not None and ref.version > package.version:
                raise DependencyResolutionError(
                    ref.name, f"version {ref.version} requested but the manifest has {package.version}"
                )
            if key in seen:
                continue
            seen.add(key)
            out.append(package.descriptor)
            queue.extend(PackageReference(dep) for dep in package.dependencies)
        return out
