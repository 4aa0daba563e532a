from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, List

from .models import Group
from .tokens import Mutation, VersionClock

logger = logging.getLogger(__name__)


class GroupDirectory:
    """Group metadata the user belongs to. Mutators return whether anything changed."""

    def __init__(self, self_identity: str) -> None:
        self.self_identity = self_identity
        self._groups: Dict[str, Group] = {}
        self._versions = VersionClock()

    def load(self, groups: Iterable[Group]) -> None:
        previous = set(self._groups)
        self._groups = {group.group_id: group for group in groups}
        for group_id in previous | set(self._groups):
            self._versions.bump(group_id)
        logger.info("group snapshot: %d groups", len(self._groups))

    def get(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def all(self) -> List[Group]:
        return list(self._groups.values())

    def apply_created(self, group: Group) -> bool:
        if self._groups.get(group.group_id) == group:
            return False
        self._set(group)
        return True

    def apply_member_left(self, group_id: str, member: str) -> bool:
        group = self._groups.get(group_id)
        if group is None:
            return False
        if member == self.self_identity:
            return self.remove(group_id)
        if member not in group.members:
            return False
        self._set(
            replace(
                group,
                members=tuple(m for m in group.members if m != member),
                admins=tuple(a for a in group.admins if a != member),
            )
        )
        return True

    def apply_members(self, group_id: str, members: Iterable[str], admins: Iterable[str] = ()) -> bool:
        group = self._groups.get(group_id)
        if group is None:
            return False
        updated = replace(group, members=tuple(members), admins=tuple(admins))
        if updated == group:
            return False
        self._set(updated)
        return True

    def apply_renamed(self, group_id: str, name: str) -> bool:
        group = self._groups.get(group_id)
        if group is None or group.name == name:
            return False
        self._set(replace(group, name=name))
        return True

    def apply_avatar(self, group_id: str, avatar: str) -> bool:
        group = self._groups.get(group_id)
        if group is None or group.avatar == avatar:
            return False
        self._set(replace(group, avatar=avatar))
        return True

    def remove(self, group_id: str) -> bool:
        if self._groups.pop(group_id, None) is None:
            return False
        self._versions.bump(group_id)
        return True

    def tag(self, group_id: str, prior: Group | None) -> Mutation:
        """Token for an optimistic change just made to ``group_id``."""

        return Mutation(key=group_id, version=self._versions.current(group_id), prior=prior)

    def rollback(self, mutation: Mutation) -> bool:
        if not self._versions.is_current(mutation):
            logger.debug("stale group rollback for %s ignored", mutation.key)
            return False
        group_id = str(mutation.key)
        if mutation.prior is None:
            self._groups.pop(group_id, None)
        else:
            self._groups[group_id] = mutation.prior
        self._versions.bump(group_id)
        return True

    def clear(self) -> None:
        for group_id in list(self._groups):
            self._versions.bump(group_id)
        self._groups.clear()

    def _set(self, group: Group) -> None:
        self._groups[group.group_id] = group
        self._versions.bump(group.group_id)
