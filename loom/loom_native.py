"""
Native asset preloading.

Some dependency packages ship shared libraries that their modules expect to
find already loaded. Preloading is best effort: each asset is attempted once
and a failure is logged without stopping the remaining assets.
"""

from __future__ import annotations
import ctypes
import logging
import sys
from abc import ABC, abstractmethod
from typing import Iterable, List

from loom.loom_datatypes import DependencyDescriptor

logger = logging.getLogger(__name__)


class NativeAssetLoader(ABC):
    """Capability interface for preloading a shared library by path."""

    @abstractmethod
    def load(self, path: str) -> None:
        raise NotImplementedError


class NullNativeLoader(NativeAssetLoader):
    """For platforms where the dynamic linker finds dependency libraries on its own."""

    def load(self, path: str) -> None:
        logger.debug("Skipping native asset %s (no preloading on %s)", path, sys.platform)


class CtypesNativeLoader(NativeAssetLoader):
    def __init__(self, mode: int = ctypes.DEFAULT_MODE):
        self.mode = mode
        self.loaded: List[ctypes.CDLL] = []

    def load(self, path: str) -> None:
        self.loaded.append(ctypes.CDLL(path, mode=self.mode))
        logger.debug("Loaded native asset %s", path)


def native_loader_for(preload: str = "auto", platform: str = sys.platform) -> NativeAssetLoader:
    """Pick a loader for the `native_preload` setting ('auto', 'always' or 'never')."""
    if preload == "never":
        return NullNativeLoader()
    if preload == "always":
        # Symbols must be visible to extension modules loaded afterwards
        return CtypesNativeLoader(getattr(ctypes, "RTLD_GLOBAL", ctypes.DEFAULT_MODE))
    if preload != "auto":
        raise ValueError(f"native_preload must be 'auto', 'always' or 'never', not {preload!r}")
    if platform == "win32":
        return CtypesNativeLoader()
    return NullNativeLoader()


def load_native_assets(descriptors: Iterable[DependencyDescriptor], loader: NativeAssetLoader) -> List[str]:
    """Preload every distinct native asset; returns the paths that failed."""
    seen = set()
    failed = []
    for descriptor in descriptors:
        for path in descriptor.native_assets:
            if path in seen:
                continue
            seen.add(path)
            try:
                loader.load(path)
            except OSError as e:
                logger.warning("Failed to load native asset %s: %s", path, e)
                failed.append(path)
    return failed
