from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Hashable


@dataclass(frozen=True)
class Mutation:
    """Tag for one optimistic mutation of a single keyed record.

    ``prior`` is whatever the owning store needs to put the record back;
    ``version`` is the record's version right after the mutation was applied.
    """

    key: Hashable
    version: int
    prior: Any = None


class VersionClock:
    """Per-key monotonic versions used to recognise stale confirms and rollbacks."""

    def __init__(self) -> None:
        self._versions: Dict[Hashable, int] = {}

    def bump(self, key: Hashable) -> int:
        version = self._versions.get(key, 0) + 1
        self._versions[key] = version
        return version

    def current(self, key: Hashable) -> int:
        return self._versions.get(key, 0)

    def is_current(self, mutation: Mutation) -> bool:
        return self._versions.get(mutation.key, 0) == mutation.version
