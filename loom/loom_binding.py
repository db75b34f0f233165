from __future__ import annotations
import logging
from typing import Dict

from loom.loom_datatypes import ActiveModule, BindingEntry, BindingTable, LoadFromPath, ModuleCandidate, UseActive
from loom.loom_merge import CandidatePool

logger = logging.getLogger(__name__)


def build_binding_table(disk_pool: CandidatePool[ModuleCandidate],
                        active_pool: CandidatePool[ActiveModule]) -> BindingTable:
    """Decide, per required module, whether to reuse the active instance or load from disk.

    Only names present in `disk_pool` get an entry. Names that are active but
    not required are left to default resolution.
    """
    entries: Dict[str, BindingEntry] = {}
    for name in disk_pool:
        candidate = disk_pool[name]
        if name in active_pool:
            active = active_pool[name]
            entries[name] = UseActive(
                name=candidate.name,
                version=candidate.version,
                handle=active.handle,
                active_version=active.version,
            )
            logger.debug("Already loaded => %s %s (required %s)", active.name, active.version, candidate.version)
        else:
            entries[name] = LoadFromPath(name=candidate.name, version=candidate.version, path=candidate.path)
            logger.debug("Adding reference to a runtime dependency => %s %s (%s)",
                         candidate.name, candidate.version, candidate.path)
    return BindingTable(entries)
