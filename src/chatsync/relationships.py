"""Friend requests, friendships and presence flags, merged from snapshots and socket deltas."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from .models import REQUEST_RECEIVED, REQUEST_SENT, FriendRequest, Friendship
from .tokens import Mutation, VersionClock

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]


@dataclass(frozen=True)
class CounterpartState:
    """Everything the state machine holds about one counterpart."""

    friendship: Friendship | None = None
    sent: FriendRequest | None = None
    received: FriendRequest | None = None


class RelationshipStateMachine:
    """Owns friendship and friend-request state.

    Local transitions are optimistic: they mutate immediately and return a
    ``Mutation`` whose ``prior`` is the counterpart's full state before the
    call. ``confirm`` and ``rollback`` only act while that mutation is still
    the latest one for the counterpart; anything that changed the counterpart
    since then (a later action, a socket delta, a snapshot) makes it stale.
    """

    def __init__(self) -> None:
        self._friends: Dict[str, Friendship] = {}
        self._sent: Dict[str, FriendRequest] = {}
        self._received: Dict[str, FriendRequest] = {}
        self._versions = VersionClock()
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def friends(self) -> List[Friendship]:
        return list(self._friends.values())

    def friend(self, counterpart: str) -> Friendship | None:
        return self._friends.get(counterpart)

    def sent_requests(self) -> List[FriendRequest]:
        return list(self._sent.values())

    def received_requests(self) -> List[FriendRequest]:
        return list(self._received.values())

    def state_of(self, counterpart: str) -> CounterpartState:
        return CounterpartState(
            friendship=self._friends.get(counterpart),
            sent=self._sent.get(counterpart),
            received=self._received.get(counterpart),
        )

    def load_snapshot(
        self,
        friends: Iterable[Friendship],
        sent_requests: Iterable[FriendRequest],
        received_requests: Iterable[FriendRequest],
    ) -> None:
        """Replace all state with an authoritative REST snapshot."""

        previous = set(self._friends) | set(self._sent) | set(self._received)
        self._friends = {friend.counterpart: friend for friend in friends}
        self._sent = {req.counterpart: replace(req, direction=REQUEST_SENT) for req in sent_requests}
        self._received = {req.counterpart: replace(req, direction=REQUEST_RECEIVED) for req in received_requests}
        touched = previous | set(self._friends) | set(self._sent) | set(self._received)
        for counterpart in touched:
            self._versions.bump(counterpart)
        logger.info(
            "relationship snapshot: %d friends, %d sent, %d received",
            len(self._friends),
            len(self._sent),
            len(self._received),
        )
        for counterpart in sorted(touched):
            self._notify(counterpart)

    def send_request(self, counterpart: str, display_name: str = "", avatar: str = "") -> Mutation | None:
        if counterpart in self._sent or counterpart in self._friends:
            logger.debug("send_request to %s rejected: already pending or friends", counterpart)
            return None
        prior = self.state_of(counterpart)
        self._sent[counterpart] = FriendRequest(
            direction=REQUEST_SENT,
            counterpart=counterpart,
            display_name=display_name or counterpart,
            avatar=avatar,
        )
        return self._tag(counterpart, prior)

    def confirm_request_sent(self, mutation: Mutation) -> bool:
        return self.confirm(mutation)

    def rollback_request_sent(self, mutation: Mutation) -> bool:
        return self.rollback(mutation)

    def withdraw_request(self, counterpart: str) -> Mutation | None:
        if counterpart not in self._sent:
            return None
        prior = self.state_of(counterpart)
        del self._sent[counterpart]
        return self._tag(counterpart, prior)

    def respond_to_request(self, counterpart: str, accept: bool) -> Mutation | None:
        request = self._received.get(counterpart)
        if request is None:
            return None
        prior = self.state_of(counterpart)
        del self._received[counterpart]
        if accept:
            self._friends[counterpart] = Friendship(
                counterpart=counterpart,
                display_name=request.display_name,
                avatar=request.avatar,
            )
        return self._tag(counterpart, prior)

    def unfriend(self, counterpart: str) -> Mutation | None:
        if counterpart not in self._friends:
            return None
        prior = self.state_of(counterpart)
        del self._friends[counterpart]
        return self._tag(counterpart, prior)

    def confirm(self, mutation: Mutation) -> bool:
        if not self._versions.is_current(mutation):
            logger.debug("stale confirmation for %s ignored", mutation.key)
            return False
        return True

    def rollback(self, mutation: Mutation) -> bool:
        if not self._versions.is_current(mutation):
            logger.debug("stale rollback for %s ignored", mutation.key)
            return False
        counterpart = str(mutation.key)
        prior: CounterpartState = mutation.prior
        self._restore(counterpart, prior)
        self._versions.bump(counterpart)
        self._notify(counterpart)
        return True

    def apply_presence(self, counterpart: str, online: bool) -> bool:
        friendship = self._friends.get(counterpart)
        if friendship is None or friendship.online == online:
            return False
        self._friends[counterpart] = replace(friendship, online=online)
        self._notify(counterpart)
        return True

    def apply_friend_added(self, friend: Friendship) -> bool:
        counterpart = friend.counterpart
        changed = counterpart not in self._friends
        if changed:
            self._friends[counterpart] = friend
        changed = self._sent.pop(counterpart, None) is not None or changed
        changed = self._received.pop(counterpart, None) is not None or changed
        if changed:
            self._versions.bump(counterpart)
            self._notify(counterpart)
        return changed

    def apply_unfriended(self, counterpart: str) -> bool:
        if self._friends.pop(counterpart, None) is None:
            return False
        self._versions.bump(counterpart)
        self._notify(counterpart)
        return True

    def apply_request_received(self, request: FriendRequest) -> bool:
        counterpart = request.counterpart
        if counterpart in self._friends or counterpart in self._received:
            return False
        self._received[counterpart] = replace(request, direction=REQUEST_RECEIVED)
        self._versions.bump(counterpart)
        self._notify(counterpart)
        return True

    def apply_request_withdrawn(self, counterpart: str) -> bool:
        if self._received.pop(counterpart, None) is None:
            return False
        self._versions.bump(counterpart)
        self._notify(counterpart)
        return True

    def apply_request_responded(self, counterpart: str, accepted: bool, friend: Optional[Friendship] = None) -> bool:
        request = self._sent.pop(counterpart, None)
        changed = request is not None
        if accepted and counterpart not in self._friends:
            if friend is None:
                friend = Friendship(
                    counterpart=counterpart,
                    display_name=request.display_name if request else counterpart,
                    avatar=request.avatar if request else "",
                )
            self._friends[counterpart] = friend
            changed = True
        if changed:
            self._versions.bump(counterpart)
            self._notify(counterpart)
        return changed

    def clear(self) -> None:
        touched = set(self._friends) | set(self._sent) | set(self._received)
        self._friends.clear()
        self._sent.clear()
        self._received.clear()
        for counterpart in touched:
            self._versions.bump(counterpart)

    def _restore(self, counterpart: str, prior: CounterpartState) -> None:
        for table, value in (
            (self._friends, prior.friendship),
            (self._sent, prior.sent),
            (self._received, prior.received),
        ):
            if value is None:
                table.pop(counterpart, None)
                continue
            current = table.get(counterpart)
            if isinstance(value, Friendship) and isinstance(current, Friendship):
                # Presence is never rolled back.
                value = replace(value, online=current.online)
            table[counterpart] = value

    def _tag(self, counterpart: str, prior: CounterpartState) -> Mutation:
        version = self._versions.bump(counterpart)
        self._notify(counterpart)
        return Mutation(key=counterpart, version=version, prior=prior)

    def _notify(self, counterpart: str) -> None:
        for listener in list(self._listeners):
            listener(counterpart)
