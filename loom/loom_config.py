"""
Host configuration.

Settings come from an optional `loom.toml`, `loom.yaml` or `loom.json` next to
the script. All fields have defaults, so a missing file means default
behaviour. A `[loom]` table (or top-level `loom:` key) is accepted as well as a
flat document.
"""

from __future__ import annotations
import dataclasses
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from loom.loom_serialize import load_file

CONFIG_FILE_NAMES = ("loom.toml", "loom.yaml", "loom.yml", "loom.json")

DEFAULT_IMPORTS = (
    "os",
    "sys",
    "io",
    "re",
    "json",
    "asyncio",
    "collections",
    "itertools",
    "functools",
    "pathlib",
)


@dataclass(frozen=True)
class HostConfig:
    """
    Attributes:
        optimization: 'debug' compiles with asserts and docstrings kept,
            'release' strips both (compile optimize=2).
        imports: Modules imported into every script namespace before it runs.
        suppressed_warnings: Warning category names dropped from diagnostics.
        encoding: Encoding used to read script files.
        manifest: Dependency manifest file name, relative to the working directory.
        native_preload: 'auto' (Windows only), 'always' or 'never'.
        log_level: Level name applied by the command line front end.
    """
    optimization: str = "debug"
    imports: Tuple[str, ...] = DEFAULT_IMPORTS
    suppressed_warnings: Tuple[str, ...] = ("DeprecationWarning",)
    encoding: str = "utf-8-sig"
    manifest: str = "loom.deps.yaml"
    native_preload: str = "auto"
    log_level: str = "WARNING"

    def __post_init__(self):
        if self.optimization not in ("debug", "release"):
            raise ValueError(f"optimization must be 'debug' or 'release', not {self.optimization!r}")
        if self.native_preload not in ("auto", "always", "never"):
            raise ValueError(f"native_preload must be 'auto', 'always' or 'never', not {self.native_preload!r}")

    @property
    def optimize_level(self) -> int:
        return 2 if self.optimization == "release" else 0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'HostConfig':
        if not isinstance(data, Mapping):
            raise ValueError("Configuration must be a mapping")
        data = dict(data.get("loom", data))
        known = {f.name for f in dataclasses.fields(cls)}
        values = {}
        for key, value in data.items():
            name = key.replace("-", "_")
            if name not in known:
                raise ValueError(f"Unknown configuration key: {key!r}")
            if isinstance(value, list):
                value = tuple(value)
            values[name] = value
        return cls(**values)

    def with_overrides(self, **changes) -> 'HostConfig':
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})


def load_config(path: str) -> HostConfig:
    data = load_file(path)
    return HostConfig.from_mapping(data or {})


def find_config(directory: str) -> Optional[str]:
    for name in CONFIG_FILE_NAMES:
        candidate = os.path.join(directory, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def config_for(directory: str, explicit_path: Optional[str] = None) -> HostConfig:
    """The explicit config file, else the first one found in `directory`, else defaults."""
    path = explicit_path or find_config(directory)
    return load_config(path) if path else HostConfig()
