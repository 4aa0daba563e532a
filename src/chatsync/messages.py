"""Per-conversation message logs merged from REST history, socket pushes and local sends."""

from __future__ import annotations

import itertools
import logging
import secrets
import time
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .models import (
    LOCAL_FAILED,
    LOCAL_PENDING,
    RECALLED_PLACEHOLDER,
    STATUS_READ,
    Draft,
    Message,
    Reaction,
)
from .tokens import Mutation, VersionClock

logger = logging.getLogger(__name__)

MERGE_INSERTED = "inserted"
MERGE_UPDATED = "updated"
MERGE_PROMOTED = "promoted"
MERGE_UNCHANGED = "unchanged"

DEFAULT_ECHO_WINDOW_MS = 10_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageReconciler:
    """Ordered, id-unique message log for a single conversation.

    Entries are kept ascending by ``created_ms``; an optimistic entry keeps
    its slot when the server acknowledges it, even if the server timestamp
    differs slightly from the local one.
    """

    def __init__(
        self,
        conversation_id: str,
        self_identity: str,
        *,
        echo_window_ms: int = DEFAULT_ECHO_WINDOW_MS,
        versions: VersionClock | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.self_identity = self_identity
        self.echo_window_ms = echo_window_ms
        self._entries: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self._aliases: Dict[str, str] = {}
        self._versions = versions or VersionClock()

    def __len__(self) -> int:
        return len(self._entries)

    def messages(self) -> List[Message]:
        return list(self._entries)

    def ids(self) -> List[str]:
        return [entry.message_id for entry in self._entries]

    def resolve(self, message_id: str) -> str:
        """Map a promoted local id to its server id."""

        return self._aliases.get(message_id, message_id)

    def get(self, message_id: str) -> Message | None:
        return self._by_id.get(self.resolve(message_id))

    def last_message(self) -> Message | None:
        return self._entries[-1] if self._entries else None

    def unread_count(self) -> int:
        return sum(
            1
            for entry in self._entries
            if entry.sender != self.self_identity and entry.status != STATUS_READ and not entry.is_local
        )

    def append_optimistic(self, local_id: str, draft: Draft, created_ms: int) -> Message:
        entry = Message(
            message_id=local_id,
            conversation_id=self.conversation_id,
            sender=self.self_identity,
            content=draft.content,
            kind=draft.kind,
            created_ms=created_ms,
            metadata=draft.metadata,
            local_state=LOCAL_PENDING,
            client_id=local_id,
        )
        self._entries.append(entry)
        self._by_id[local_id] = entry
        self._versions.bump((self.conversation_id, local_id))
        return entry

    def merge(self, message: Message) -> str:
        """Merge an authoritative message; repeated merges are no-ops."""

        existing = self._by_id.get(message.message_id)
        if existing is not None:
            return MERGE_UPDATED if self._update_in_place(existing, message) else MERGE_UNCHANGED

        local = self._match_local_echo(message)
        if local is not None:
            logger.debug(
                "echo %s matched local entry %s in %s", message.message_id, local.message_id, self.conversation_id
            )
            self._replace_local(local, message)
            return MERGE_PROMOTED

        self._insert_ordered(message.copy())
        return MERGE_INSERTED

    def promote(self, local_id: str, message: Message) -> str:
        """Replace the local entry ``local_id`` with the acknowledged server message."""

        local = self._by_id.get(local_id)
        if local is None or not local.is_local:
            # The echo got here first (or the entry was discarded): merge by server id.
            self._aliases[local_id] = message.message_id
            return self.merge(message)

        existing = self._by_id.get(message.message_id)
        if existing is not None:
            # Echo was inserted separately because the heuristic missed it.
            self._remove(local)
            self._aliases[local_id] = message.message_id
            self._update_in_place(existing, message)
            return MERGE_PROMOTED

        self._replace_local(local, message)
        return MERGE_PROMOTED

    def fail(self, local_id: str) -> bool:
        entry = self._by_id.get(local_id)
        if entry is None or entry.local_state != LOCAL_PENDING:
            return False
        entry.local_state = LOCAL_FAILED
        self._versions.bump((self.conversation_id, local_id))
        return True

    def discard(self, local_id: str) -> bool:
        entry = self._by_id.get(local_id)
        if entry is None or not entry.is_local:
            return False
        self._remove(entry)
        return True

    def expire_pending(self, cutoff_ms: int) -> List[str]:
        expired = [
            entry.message_id
            for entry in self._entries
            if entry.local_state == LOCAL_PENDING and entry.created_ms <= cutoff_ms
        ]
        for local_id in expired:
            self.fail(local_id)
        return expired

    def apply_reaction(self, message_id: str, reaction: Reaction) -> bool:
        entry = self.get(message_id)
        if entry is None or reaction in entry.reactions:
            return False
        entry.reactions.append(reaction)
        self._versions.bump((self.conversation_id, entry.message_id))
        return True

    def apply_recall(self, message_id: str) -> bool:
        entry = self.get(message_id)
        if entry is None or entry.recalled:
            return False
        self._tombstone(entry)
        self._versions.bump((self.conversation_id, entry.message_id))
        return True

    def apply_delete(self, message_id: str) -> bool:
        entry = self.get(message_id)
        if entry is None:
            return False
        self._remove(entry)
        self._versions.bump((self.conversation_id, entry.message_id))
        return True

    def mark_read(self, message_id: str) -> bool:
        entry = self.get(message_id)
        if entry is None or entry.status == STATUS_READ:
            return False
        entry.status = STATUS_READ
        self._versions.bump((self.conversation_id, entry.message_id))
        return True

    def capture(self, message_id: str) -> tuple[int, Message] | None:
        """Position and copy of an entry, for restoring after a failed action."""

        entry = self.get(message_id)
        if entry is None:
            return None
        return self._entries.index(entry), entry.copy()

    def tag(self, message_id: str, prior: tuple[int, Message]) -> Mutation:
        key = (self.conversation_id, prior[1].message_id)
        return Mutation(key=key, version=self._versions.current(key), prior=prior)

    def restore(self, mutation: Mutation) -> bool:
        if not self._versions.is_current(mutation):
            logger.debug("ignoring stale rollback for %s", mutation.key)
            return False
        index, snapshot = mutation.prior
        current = self._by_id.get(snapshot.message_id)
        if current is not None:
            self._entries.remove(current)
        restored = snapshot.copy()
        self._entries.insert(min(index, len(self._entries)), restored)
        self._by_id[restored.message_id] = restored
        self._versions.bump(mutation.key)
        return True

    def _match_local_echo(self, message: Message) -> Message | None:
        if message.client_id:
            local = self._by_id.get(message.client_id)
            if local is not None and local.is_local:
                return local
            # With a client id the heuristic is never needed.
            return None
        if message.sender != self.self_identity:
            return None
        for entry in reversed(self._entries):
            if not entry.is_local:
                continue
            if entry.content != message.content or entry.kind != message.kind:
                continue
            if abs(entry.created_ms - message.created_ms) <= self.echo_window_ms:
                return entry
        return None

    def _replace_local(self, local: Message, message: Message) -> None:
        index = self._entries.index(local)
        promoted = message.copy()
        promoted.local_state = None
        for reaction in local.reactions:
            if reaction not in promoted.reactions:
                promoted.reactions.append(reaction)
        self._entries[index] = promoted
        self._by_id.pop(local.message_id, None)
        self._by_id[promoted.message_id] = promoted
        self._aliases[local.message_id] = promoted.message_id
        self._reposition(promoted)
        self._versions.bump((self.conversation_id, promoted.message_id))

    def _update_in_place(self, existing: Message, incoming: Message) -> bool:
        before = existing.copy()
        if existing.recalled or incoming.recalled:
            self._tombstone(existing)
        else:
            existing.content = incoming.content
            existing.kind = incoming.kind
            existing.metadata = incoming.metadata
        existing.created_ms = incoming.created_ms
        if incoming.status == STATUS_READ:
            existing.status = STATUS_READ
        for reaction in incoming.reactions:
            if reaction not in existing.reactions:
                existing.reactions.append(reaction)
        existing.local_state = None
        changed = existing != before
        if existing.created_ms != before.created_ms:
            self._reposition(existing)
        if changed:
            self._versions.bump((self.conversation_id, existing.message_id))
        return changed

    def _reposition(self, entry: Message) -> None:
        """Move ``entry`` only if its current slot breaks timestamp order among confirmed entries."""

        index = self._entries.index(entry)
        before = next((e for e in reversed(self._entries[:index]) if not e.is_local), None)
        after = next((e for e in self._entries[index + 1 :] if not e.is_local), None)
        if (before is None or before.created_ms <= entry.created_ms) and (
            after is None or after.created_ms >= entry.created_ms
        ):
            return
        del self._entries[index]
        index = len(self._entries)
        while index > 0 and self._entries[index - 1].created_ms > entry.created_ms:
            index -= 1
        self._entries.insert(index, entry)

    def _insert_ordered(self, message: Message) -> None:
        index = len(self._entries)
        while index > 0 and self._entries[index - 1].created_ms > message.created_ms:
            index -= 1
        self._entries.insert(index, message)
        self._by_id[message.message_id] = message
        self._versions.bump((self.conversation_id, message.message_id))

    def _remove(self, entry: Message) -> None:
        self._entries.remove(entry)
        self._by_id.pop(entry.message_id, None)

    @staticmethod
    def _tombstone(entry: Message) -> None:
        entry.recalled = True
        entry.content = RECALLED_PLACEHOLDER
        entry.metadata = None


class MessageStore:
    """Owns every conversation's reconciler and routes id-only events to them."""

    def __init__(
        self,
        self_identity: str,
        *,
        echo_window_ms: int = DEFAULT_ECHO_WINDOW_MS,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.self_identity = self_identity
        self.echo_window_ms = echo_window_ms
        self._now = now_func
        self._conversations: Dict[str, MessageReconciler] = {}
        self._locate: Dict[str, str] = {}
        self._versions = VersionClock()
        self._local_ids = itertools.count(1)
        self._id_salt = secrets.token_hex(3)

    def conversation(self, conversation_id: str) -> MessageReconciler:
        reconciler = self._conversations.get(conversation_id)
        if reconciler is None:
            reconciler = MessageReconciler(
                conversation_id,
                self.self_identity,
                echo_window_ms=self.echo_window_ms,
                versions=self._versions,
            )
            self._conversations[conversation_id] = reconciler
        return reconciler

    def logs(self) -> Mapping[str, MessageReconciler]:
        """Live read-only view of every conversation log."""

        return MappingProxyType(self._conversations)

    def conversation_ids(self) -> List[str]:
        return list(self._conversations.keys())

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def conversation_of(self, message_id: str) -> Optional[str]:
        return self._locate.get(message_id)

    def get(self, message_id: str) -> Message | None:
        reconciler = self._reconciler_for(message_id)
        return reconciler.get(message_id) if reconciler is not None else None

    def append_optimistic(self, conversation_id: str, draft: Draft) -> str:
        local_id = f"tmp_{self._id_salt}_{next(self._local_ids)}"
        self.conversation(conversation_id).append_optimistic(local_id, draft, self._now())
        self._locate[local_id] = conversation_id
        return local_id

    def merge_server_message(self, message: Message) -> str:
        reconciler = self.conversation(message.conversation_id)
        result = reconciler.merge(message)
        self._locate[message.message_id] = message.conversation_id
        if message.client_id:
            self._locate.setdefault(message.client_id, message.conversation_id)
        return result

    def merge_history(self, conversation_id: str, messages: Iterable[Message]) -> int:
        reconciler = self.conversation(conversation_id)
        changed = 0
        for message in messages:
            if reconciler.merge(message) != MERGE_UNCHANGED:
                changed += 1
            self._locate[message.message_id] = conversation_id
        return changed

    def promote(self, local_id: str, message: Message) -> str:
        conversation_id = self._locate.get(local_id, message.conversation_id)
        result = self.conversation(conversation_id).promote(local_id, message)
        self._locate[message.message_id] = conversation_id
        return result

    def fail_optimistic(self, local_id: str) -> bool:
        reconciler = self._reconciler_for(local_id)
        return reconciler.fail(local_id) if reconciler is not None else False

    def discard(self, local_id: str) -> bool:
        reconciler = self._reconciler_for(local_id)
        if reconciler is None or not reconciler.discard(local_id):
            return False
        self._locate.pop(local_id, None)
        return True

    def expire_pending(self, timeout_ms: int) -> List[str]:
        cutoff = self._now() - timeout_ms
        expired: List[str] = []
        for reconciler in self._conversations.values():
            expired.extend(reconciler.expire_pending(cutoff))
        for local_id in expired:
            logger.warning("send %s timed out without acknowledgment", local_id)
        return expired

    def apply_reaction(self, message_id: str, reaction: str, sender: str) -> bool:
        reconciler = self._reconciler_for(message_id)
        if reconciler is None:
            logger.debug("reaction for unknown message %s skipped", message_id)
            return False
        return reconciler.apply_reaction(message_id, Reaction(sender=sender, reaction=reaction))

    def apply_recall(self, message_id: str) -> bool:
        reconciler = self._reconciler_for(message_id)
        if reconciler is None:
            logger.debug("recall for unknown message %s skipped", message_id)
            return False
        return reconciler.apply_recall(message_id)

    def apply_delete(self, message_id: str) -> bool:
        reconciler = self._reconciler_for(message_id)
        if reconciler is None:
            logger.debug("delete for unknown message %s skipped", message_id)
            return False
        resolved = reconciler.resolve(message_id)
        if not reconciler.apply_delete(message_id):
            return False
        self._locate.pop(resolved, None)
        return True

    def mark_read(self, message_id: str) -> bool:
        reconciler = self._reconciler_for(message_id)
        if reconciler is None:
            return False
        return reconciler.mark_read(message_id)

    def begin(self, message_id: str) -> Optional[tuple[MessageReconciler, tuple[int, Message]]]:
        """Capture a message before an optimistic recall, delete or reaction."""

        reconciler = self._reconciler_for(message_id)
        if reconciler is None:
            return None
        prior = reconciler.capture(message_id)
        if prior is None:
            return None
        return reconciler, prior

    def commit(self, message_id: str, begun: tuple[MessageReconciler, tuple[int, Message]]) -> Mutation:
        reconciler, prior = begun
        return reconciler.tag(message_id, prior)

    def rollback(self, mutation: Mutation) -> bool:
        conversation_id, message_id = mutation.key
        reconciler = self._conversations.get(conversation_id)
        if reconciler is None:
            return False
        if not reconciler.restore(mutation):
            return False
        self._locate[message_id] = conversation_id
        return True

    def clear(self) -> None:
        self._conversations.clear()
        self._locate.clear()

    def _reconciler_for(self, message_id: str) -> MessageReconciler | None:
        conversation_id = self._locate.get(message_id)
        if conversation_id is None:
            return None
        return self._conversations.get(conversation_id)
