"""Top-level conversation list derived from message logs, friendships and groups."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping

from .messages import MessageReconciler
from .models import (
    CONV_GROUP,
    CONV_PERSONAL,
    KIND_FILE,
    KIND_IMAGE,
    RECALLED_PLACEHOLDER,
    STATUS_READ,
    Friendship,
    Group,
    MalformedPayload,
    Message,
    normalize_identity,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

IMAGE_PREVIEW = "[Image]"
FILE_PREVIEW = "[File]"


@dataclass(frozen=True)
class ConversationSummary:
    conversation_id: str
    kind: str
    display_name: str
    avatar: str = ""
    last_message_id: str | None = None
    last_preview: str = ""
    last_sender: str | None = None
    last_message_ms: int | None = None
    unread: int = 0
    online: bool = False


def preview_for(message: Message) -> str:
    if message.recalled:
        return RECALLED_PLACEHOLDER
    if message.kind == KIND_IMAGE:
        return IMAGE_PREVIEW
    if message.kind == KIND_FILE:
        name = message.metadata.file_name if message.metadata is not None else None
        return f"{FILE_PREVIEW} {name}" if name else FILE_PREVIEW
    return message.content


def parse_summary(raw: Any, self_identity: str) -> ConversationSummary:
    """Parse one entry of ``GET /messages/conversations``."""

    if not isinstance(raw, dict):
        raise MalformedPayload("conversation summary must be an object")
    peer = normalize_identity(raw.get("email"))
    if not peer:
        raise MalformedPayload("conversation summary email missing")
    last = raw.get("lastMessage")
    summary = ConversationSummary(
        conversation_id=peer,
        kind=CONV_PERSONAL,
        display_name=str(raw.get("fullName") or peer),
        avatar=str(raw.get("avatar") or ""),
    )
    if not isinstance(last, dict):
        return summary
    sender = normalize_identity(last.get("senderEmail"))
    timestamp = last.get("timestamp") or last.get("createdAt")
    unread = 1 if sender and sender != self_identity and last.get("status") != STATUS_READ else 0
    return replace(
        summary,
        last_preview=str(last.get("content") or ""),
        last_sender=sender or None,
        last_message_ms=parse_timestamp(timestamp) if timestamp else None,
        unread=unread,
    )


class ConversationAggregator:
    """Derives the ordered conversation list; never mutates the logs it reads.

    Order is descending by last message time, conversations without messages
    last, ties and the empty tail in their original relative order (friends,
    then groups, then any other counterpart that has a log). Unread counts are
    cached and only recomputed from ``on_new_message``, ``on_read`` and removals.
    """

    def __init__(self, self_identity: str) -> None:
        self.self_identity = self_identity
        self._friends: Dict[str, Friendship] = {}
        self._groups: Dict[str, Group] = {}
        self._logs: Mapping[str, MessageReconciler] = {}
        self._seeded: Dict[str, ConversationSummary] = {}
        self._unread: Dict[str, int] = {}
        self._base_order: List[str] = []
        self._summaries: Dict[str, ConversationSummary] = {}
        self._ordered: List[ConversationSummary] = []

    def rebuild(
        self,
        friendships: Iterable[Friendship],
        groups: Iterable[Group],
        message_logs: Mapping[str, MessageReconciler],
    ) -> List[ConversationSummary]:
        self._friends = {friend.counterpart: friend for friend in friendships}
        self._groups = {group.group_id: group for group in groups}
        self._logs = message_logs
        self._unread = {conv_id: self._count_unread(conv_id) for conv_id in self._logs}
        self._refresh_all()
        return self.conversations()

    def seed_summaries(self, summaries: Iterable[ConversationSummary]) -> None:
        """Server-side summaries used until a conversation's own log is loaded."""

        self._seeded = {summary.conversation_id: summary for summary in summaries}
        logger.debug("seeded %d conversation summaries", len(self._seeded))
        self._refresh_all()

    def conversations(self) -> List[ConversationSummary]:
        return list(self._ordered)

    def get(self, conversation_id: str) -> ConversationSummary | None:
        return self._summaries.get(conversation_id)

    def unread(self, conversation_id: str) -> int:
        return self._unread_for(conversation_id)

    def on_new_message(self, conversation_id: str) -> None:
        self._unread[conversation_id] = self._count_unread(conversation_id)
        self._refresh(conversation_id)

    def on_read(self, conversation_id: str) -> None:
        self._unread[conversation_id] = self._count_unread(conversation_id)
        self._refresh(conversation_id)

    def on_message_changed(self, conversation_id: str, *, removed: bool = False) -> None:
        """A recall, delete or failed send changed the last-message summary.

        Unread stays cached unless a message was removed from the log.
        """

        if removed:
            self._unread[conversation_id] = self._count_unread(conversation_id)
        self._refresh(conversation_id)

    def on_friendship_changed(self, friendships: Iterable[Friendship]) -> None:
        self._friends = {friend.counterpart: friend for friend in friendships}
        self._refresh_all()

    def on_group_changed(self, group_id: str, group: Group | None) -> None:
        if group is None:
            self._groups.pop(group_id, None)
        else:
            self._groups[group_id] = group
        self._refresh_all()

    def clear(self) -> None:
        self._friends.clear()
        self._groups.clear()
        self._logs = {}
        self._seeded.clear()
        self._unread.clear()
        self._base_order = []
        self._summaries.clear()
        self._ordered = []

    def _count_unread(self, conversation_id: str) -> int:
        log = self._logs.get(conversation_id)
        return log.unread_count() if log is not None else 0

    def _unread_for(self, conversation_id: str) -> int:
        if conversation_id in self._unread:
            return self._unread[conversation_id]
        seeded = self._seeded.get(conversation_id)
        return seeded.unread if seeded is not None else 0

    def _refresh_all(self) -> None:
        order: List[str] = []
        seen = set()
        for conv_id in [*self._friends, *self._groups, *self._seeded, *self._logs]:
            if conv_id in seen or conv_id == self.self_identity:
                continue
            seen.add(conv_id)
            order.append(conv_id)
        self._base_order = order
        self._summaries = {conv_id: self._summarize(conv_id) for conv_id in order}
        self._sort()

    def _refresh(self, conversation_id: str) -> None:
        if conversation_id not in self._summaries:
            self._refresh_all()
            return
        self._summaries[conversation_id] = self._summarize(conversation_id)
        self._sort()

    def _sort(self) -> None:
        def sort_key(conv_id: str) -> tuple[int, int]:
            last_ms = self._summaries[conv_id].last_message_ms
            if last_ms is None:
                return (1, 0)
            return (0, -last_ms)

        # sorted() is stable, so equal keys keep the base order.
        self._ordered = [self._summaries[conv_id] for conv_id in sorted(self._base_order, key=sort_key)]

    def _summarize(self, conversation_id: str) -> ConversationSummary:
        group = self._groups.get(conversation_id)
        friend = self._friends.get(conversation_id)
        seeded = self._seeded.get(conversation_id)
        if group is not None:
            summary = ConversationSummary(
                conversation_id=conversation_id,
                kind=CONV_GROUP,
                display_name=group.name or conversation_id,
                avatar=group.avatar,
            )
        elif friend is not None:
            summary = ConversationSummary(
                conversation_id=conversation_id,
                kind=CONV_PERSONAL,
                display_name=friend.display_name or conversation_id,
                avatar=friend.avatar,
                online=friend.online,
            )
        elif seeded is not None:
            summary = replace(seeded, unread=0)
        else:
            summary = ConversationSummary(
                conversation_id=conversation_id,
                kind=CONV_PERSONAL,
                display_name=conversation_id,
            )

        log = self._logs.get(conversation_id)
        last = log.last_message() if log is not None else None
        if last is not None:
            summary = replace(
                summary,
                last_message_id=last.message_id,
                last_preview=preview_for(last),
                last_sender=last.sender,
                last_message_ms=last.created_ms,
            )
        elif log is None and seeded is not None and seeded.last_message_ms is not None:
            summary = replace(
                summary,
                last_preview=seeded.last_preview,
                last_sender=seeded.last_sender,
                last_message_ms=seeded.last_message_ms,
            )
        return replace(summary, unread=self._unread_for(conversation_id))
