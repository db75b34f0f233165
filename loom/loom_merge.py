"""
Reduces pools of versioned candidates to one winner per logical name.

Highest version wins. Candidates with equal versions keep whichever was seen
first, which for the active pool means the instance the process loaded
first wins the tie.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, Generic, Iterable, Iterator, Tuple, TypeVar
import collections.abc

from loom.loom_datatypes import ActiveModule, DependencyDescriptor, ModuleCandidate, Version

logger = logging.getLogger(__name__)

P = TypeVar("P")


class CandidatePool(collections.abc.Mapping, Generic[P]):
    """Case-insensitive, read-only mapping from logical name to the winning payload."""

    def __init__(self, winners: Dict[str, Tuple[str, Version, P]]):
        self._winners = dict(winners)

    def __getitem__(self, name: str) -> P:
        return self._winners[name.casefold()][2]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.casefold() in self._winners

    def __iter__(self) -> Iterator[str]:
        for name, _, _ in self._winners.values():
            yield name

    def __len__(self) -> int:
        return len(self._winners)

    def version_of(self, name: str) -> Version:
        return self._winners[name.casefold()][1]

    def __repr__(self):
        body = ", ".join(f"{n}={v}" for n, v, _ in self._winners.values())
        return f"CandidatePool({body})"


def merge(candidates: Iterable[Tuple[str, Any, P]]) -> CandidatePool[P]:
    """Group `(name, version, payload)` triples by name and keep the highest version."""
    winners: Dict[str, Tuple[str, Version, P]] = {}
    for name, version, payload in candidates:
        version = Version.parse(version)
        key = name.casefold()
        current = winners.get(key)
        if current is None:
            winners[key] = (name, version, payload)
            continue
        _, best_version, best_payload = current
        if version > best_version:
            winners[key] = (name, version, payload)
        elif version == best_version and payload != best_payload:
            logger.warning(
                "Ambiguous version tie for %s %s: keeping %r, ignoring %r",
                name, version, best_payload, payload,
            )
    return CandidatePool(winners)


def merge_modules(descriptors: Iterable[DependencyDescriptor]) -> CandidatePool[ModuleCandidate]:
    """The disk pool: every descriptor's module candidates, flattened in order."""
    return merge(
        (module.name, module.version, module)
        for descriptor in descriptors
        for module in descriptor.modules
    )


def merge_active(active_modules: Iterable[ActiveModule]) -> CandidatePool[ActiveModule]:
    return merge((m.name, m.version, m) for m in active_modules)
