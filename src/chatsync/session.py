"""A signed-in user's live chat state and the actions that change it.

``ChatSession`` owns every store for one login: created on sign-in, cleared
by ``close()``. Screens read from its stores and register their own socket
listeners through a ``ListenerScope`` on ``session.hub``.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .actions import Action, ActionOutcome, ActionQueue, Notice
from .config import ClientConfig
from .conversations import ConversationAggregator, ConversationSummary, parse_summary
from .events import SESSION_OWNER, register_reducers
from .groups import GroupDirectory
from .hub import SubscriptionHub
from .identity import Identity, TokenStore, resolve_identity
from .messages import MessageStore
from .models import (
    KIND_FILE,
    KIND_IMAGE,
    KIND_TEXT,
    LOCAL_FAILED,
    REQUEST_RECEIVED,
    REQUEST_SENT,
    STATUS_READ,
    Draft,
    MalformedPayload,
    Message,
    MessageMetadata,
    normalize_identity,
    parse_friend_request,
    parse_friendship,
    parse_group,
    parse_message,
)
from .presence import TypingCoordinator
from .relationships import RelationshipStateMachine
from .rest import ApiError, RestClient
from .tokens import Mutation
from .transport import TransportChannel

logger = logging.getLogger(__name__)

T = TypeVar("T")

HOUSEKEEPING_INTERVAL_S = 1.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_all(items: Any, parser: Callable[[Any], T], what: str) -> List[T]:
    """Parse a REST list, dropping (and logging) entries that do not parse."""

    if items is None:
        return []
    if not isinstance(items, list):
        raise MalformedPayload(f"{what} must be a list")
    parsed: List[T] = []
    for item in items:
        try:
            parsed.append(parser(item))
        except MalformedPayload as exc:
            logger.warning("discarded malformed %s entry: %s", what, exc)
    return parsed


class ChatSession:
    def __init__(
        self,
        identity: Identity,
        config: ClientConfig | None = None,
        *,
        rest: RestClient | None = None,
        transport: TransportChannel | None = None,
        hub: SubscriptionHub | None = None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.identity = identity
        self.config = config or ClientConfig()
        self.hub = hub or SubscriptionHub()
        self.rest = rest or RestClient(self.config.api_base_url, lambda: self.identity.token, self.config)
        self.transport = transport or TransportChannel(
            self.config.socket_url, lambda: self.identity.token, self.hub, self.config
        )
        self.messages = MessageStore(
            identity.email, echo_window_ms=self.config.echo_match_window_ms, now_func=now_func
        )
        self.relationships = RelationshipStateMachine()
        self.groups = GroupDirectory(identity.email)
        self.conversations = ConversationAggregator(identity.email)
        self.conversations.rebuild([], [], self.messages.logs())
        self.typing = TypingCoordinator(self._emit_typing, self.config.typing_config(), now_func=now_func)
        self.actions = ActionQueue(self.config.request_timeout_s)
        self._opened: set[str] = set()
        self._housekeeping: asyncio.Task | None = None
        self._member_refreshes: set[asyncio.Task] = set()
        self._started = False
        self.relationships.add_listener(self._on_relationship_changed)
        self.transport.on_reconnect(self._on_reconnect)

    @classmethod
    def from_token(cls, token: str, config: ClientConfig | None = None, **kwargs: Any) -> "ChatSession":
        return cls(resolve_identity(token), config, **kwargs)

    @classmethod
    def from_token_store(cls, store: TokenStore, config: ClientConfig | None = None, **kwargs: Any) -> "ChatSession":
        return cls(store.load_identity(), config, **kwargs)

    @property
    def self_identity(self) -> str:
        return self.identity.email

    def on_notice(self, listener: Callable[[Notice], None]) -> None:
        self.actions.on_notice(listener)

    # Lifecycle

    def attach(self) -> None:
        """Register the store reducers on the hub without touching the network."""

        if not self._started:
            register_reducers(self.hub, self)
            self._started = True

    async def start(self) -> bool:
        self.attach()
        connected = await self.transport.connect()
        if not connected:
            logger.warning("starting offline: socket did not connect")
        await self.resync()
        self.typing.start_sweeper()
        if self._housekeeping is None:
            self._housekeeping = asyncio.create_task(self._housekeep())
        return connected

    async def close(self) -> None:
        """Log out: drop listeners, stop timers, close connections and clear every store."""

        self.hub.unsubscribe_owner(SESSION_OWNER)
        self._started = False
        await self.typing.stop_sweeper()
        if self._housekeeping is not None:
            self._housekeeping.cancel()
            try:
                await self._housekeeping
            except asyncio.CancelledError:
                pass
            self._housekeeping = None
        for task in list(self._member_refreshes):
            task.cancel()
        await asyncio.gather(*self._member_refreshes, return_exceptions=True)
        self._member_refreshes.clear()
        await self.actions.close()
        await self.transport.close()
        await self.rest.close()
        self.messages.clear()
        self.relationships.clear()
        self.groups.clear()
        self.conversations.clear()
        self.typing.clear()
        self._opened.clear()
        logger.info("session for %s closed", self.self_identity)

    async def resync(self) -> bool:
        """Replace relationship and group state with fresh snapshots and re-fetch opened logs."""

        try:
            friends_raw, requests_raw, groups_raw, summaries_raw = await asyncio.gather(
                self.rest.get_friends(),
                self.rest.get_friend_requests(),
                self.rest.get_groups(),
                self.rest.get_conversations(),
            )
            requests_raw = requests_raw if isinstance(requests_raw, dict) else {}
            friends = parse_all(friends_raw, parse_friendship, "friend")
            received = parse_all(
                requests_raw.get("received"), lambda raw: parse_friend_request(raw, REQUEST_RECEIVED), "request"
            )
            sent = parse_all(requests_raw.get("sent"), lambda raw: parse_friend_request(raw, REQUEST_SENT), "request")
            groups = parse_all(groups_raw, parse_group, "group")
            summaries = parse_all(summaries_raw, lambda raw: parse_summary(raw, self.self_identity), "conversation")
        except (ApiError, MalformedPayload) as exc:
            logger.warning("resync failed: %s", exc)
            return False

        self.relationships.load_snapshot(friends, sent, received)
        self.groups.load(groups)
        self.conversations.seed_summaries(summaries)
        for conversation_id in sorted(self._opened):
            await self._load_history(conversation_id)
        self.conversations.rebuild(self.relationships.friends(), self.groups.all(), self.messages.logs())
        logger.info("resync complete: %d conversations", len(self.conversations.conversations()))
        return True

    async def _on_reconnect(self) -> None:
        await self.resync()

    async def _housekeep(self) -> None:
        timeout_ms = int(self.config.pending_send_timeout_s * 1000)
        while True:
            await asyncio.sleep(HOUSEKEEPING_INTERVAL_S)
            self.expire_pending(timeout_ms)

    def expire_pending(self, timeout_ms: int) -> List[str]:
        expired = self.messages.expire_pending(timeout_ms)
        for conversation_id in {self.messages.conversation_of(local_id) for local_id in expired}:
            if conversation_id is not None:
                self.conversations.on_message_changed(conversation_id)
        return expired

    def _on_relationship_changed(self, counterpart: str) -> None:
        self.conversations.on_friendship_changed(self.relationships.friends())

    def is_group(self, conversation_id: str) -> bool:
        return self.groups.get(conversation_id) is not None

    # Conversations

    async def open_conversation(self, conversation_id: str) -> List[Message]:
        """Load a conversation's history and keep it refreshed on every resync."""

        self._opened.add(conversation_id)
        await self._load_history(conversation_id)
        return self.messages.conversation(conversation_id).messages()

    def close_conversation(self, conversation_id: str) -> None:
        self._opened.discard(conversation_id)

    async def _load_history(self, conversation_id: str) -> None:
        try:
            if self.is_group(conversation_id):
                raw = await self.rest.get_group_messages(conversation_id)
            else:
                raw = await self.rest.get_conversation(conversation_id)
            history = parse_all(
                raw, lambda item: parse_message(item, self.self_identity, conversation_id), "message"
            )
        except (ApiError, MalformedPayload) as exc:
            logger.warning("history for %s not loaded: %s", conversation_id, exc)
            return
        changed = self.messages.merge_history(conversation_id, history)
        logger.debug("history for %s merged, %d entries changed", conversation_id, changed)
        self.conversations.on_new_message(conversation_id)

    # Messages

    def send_message(
        self,
        conversation_id: str,
        content: str,
        kind: str = KIND_TEXT,
        metadata: MessageMetadata | None = None,
    ) -> "asyncio.Future[ActionOutcome]":
        draft = Draft(content=content, kind=kind, metadata=metadata)

        async def call(local_id: str) -> Any:
            return await self._post_message(conversation_id, draft, local_id)

        return self.actions.submit(self._send_action("send_message", conversation_id, draft, call))

    def send_file(
        self, conversation_id: str, path: Path | str, mime_type: str | None = None
    ) -> "asyncio.Future[ActionOutcome]":
        """Send a file: shown at once as pending, uploaded, then sent as a message."""

        file_path = Path(path)
        mime_type = mime_type or mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        kind = KIND_IMAGE if mime_type.startswith("image/") else KIND_FILE
        placeholder = Draft(
            content=file_path.name,
            kind=kind,
            metadata=MessageMetadata(file_name=file_path.name, mime_type=mime_type),
        )

        async def call(local_id: str) -> Any:
            uploaded = await self.rest.upload_file(file_path, mime_type)
            draft = Draft(
                content=uploaded["url"],
                kind=kind,
                metadata=MessageMetadata(
                    file_name=uploaded["fileName"],
                    file_size=uploaded["fileSize"],
                    mime_type=uploaded["fileType"],
                ),
            )
            return await self._post_message(conversation_id, draft, local_id)

        return self.actions.submit(self._send_action("send_file", conversation_id, placeholder, call))

    def retry_message(self, local_id: str) -> "asyncio.Future[ActionOutcome] | None":
        """Resend a failed text message; returns ``None`` if ``local_id`` is not a failed send."""

        entry = self.messages.get(local_id)
        if entry is None or entry.local_state != LOCAL_FAILED:
            return None
        conversation_id = entry.conversation_id
        self.messages.discard(local_id)
        return self.send_message(conversation_id, entry.content, entry.kind, entry.metadata)

    def discard_failed(self, local_id: str) -> bool:
        entry = self.messages.get(local_id)
        if entry is None or entry.local_state != LOCAL_FAILED:
            return False
        self.messages.discard(local_id)
        self.conversations.on_message_changed(entry.conversation_id, removed=True)
        return True

    def forward_message(self, message_id: str, receiver: str) -> "asyncio.Future[ActionOutcome]":
        """Forward a loaded message to a personal conversation."""

        receiver = normalize_identity(receiver)

        def apply() -> Optional[str]:
            source = self.messages.get(message_id)
            if source is None or source.is_local or source.recalled:
                return None
            draft = Draft(content=source.content, kind=source.kind, metadata=source.metadata)
            local_id = self.messages.append_optimistic(receiver, draft)
            self.conversations.on_new_message(receiver)
            return local_id

        async def call(local_id: str) -> Any:
            source = self.messages.get(message_id)
            server_id = source.message_id if source is not None else message_id
            return await self.rest.forward_message(server_id, receiver)

        action = Action(
            name="forward_message",
            apply=apply,
            call=call,
            reconcile=lambda local_id, data: self._confirm_send(receiver, local_id, data),
            rollback=lambda local_id, error: self._fail_send(receiver, local_id),
            notice="Message could not be forwarded",
        )
        return self.actions.submit(action)

    def _send_action(
        self,
        name: str,
        conversation_id: str,
        draft: Draft,
        call: Callable[[str], Awaitable[Any]],
    ) -> Action:
        def apply() -> str:
            local_id = self.messages.append_optimistic(conversation_id, draft)
            self.conversations.on_new_message(conversation_id)
            return local_id

        return Action(
            name=name,
            apply=apply,
            call=call,
            reconcile=lambda local_id, data: self._confirm_send(conversation_id, local_id, data),
            rollback=lambda local_id, error: self._fail_send(conversation_id, local_id),
            notice="Message could not be sent",
        )

    async def _post_message(self, conversation_id: str, draft: Draft, local_id: str) -> Any:
        metadata = draft.metadata.to_payload() if draft.metadata is not None else None
        if self.is_group(conversation_id):
            return await self.rest.send_group_message(
                conversation_id, draft.content, draft.kind, metadata, client_id=local_id
            )
        return await self.rest.send_message(conversation_id, draft.content, draft.kind, metadata, client_id=local_id)

    def _confirm_send(self, conversation_id: str, local_id: str, data: Any) -> None:
        message = parse_message(data, self.self_identity, conversation_id)
        self.messages.promote(local_id, message)
        self.conversations.on_new_message(conversation_id)
        if self.is_group(conversation_id):
            self.transport.emit("newGroupMessage", {"groupId": conversation_id, "message": data})
        else:
            self.transport.emit("newMessage", {"receiverEmail": conversation_id, "message": data})

    def _fail_send(self, conversation_id: str, local_id: str) -> None:
        self.messages.fail_optimistic(local_id)
        self.conversations.on_message_changed(conversation_id)

    def react(self, message_id: str, reaction: str) -> "asyncio.Future[ActionOutcome]":
        def apply() -> Optional[Mutation]:
            begun = self.messages.begin(message_id)
            if begun is None or begun[1][1].is_local:
                return None
            if not self.messages.apply_reaction(message_id, reaction, self.self_identity):
                return None
            return self.messages.commit(message_id, begun)

        async def call(mutation: Mutation) -> Any:
            conversation_id, server_id = mutation.key
            if self.is_group(conversation_id):
                return await self.rest.add_group_reaction(conversation_id, server_id, reaction)
            return await self.rest.add_reaction(server_id, reaction)

        def reconcile(mutation: Mutation, data: Any) -> None:
            conversation_id, server_id = mutation.key
            body: Dict[str, Any] = {"messageId": server_id, "reaction": reaction, "senderEmail": self.self_identity}
            if self.is_group(conversation_id):
                body["groupId"] = conversation_id
                self.transport.emit("groupMessageReaction", body)
            else:
                body["receiverEmail"] = conversation_id
                self.transport.emit("messageReaction", body)

        return self.actions.submit(
            Action(
                name="react",
                apply=apply,
                call=call,
                reconcile=reconcile,
                rollback=lambda mutation, error: self.messages.rollback(mutation),
                notice="Reaction could not be added",
            )
        )

    def recall(self, message_id: str) -> "asyncio.Future[ActionOutcome]":
        def apply() -> Optional[Mutation]:
            begun = self.messages.begin(message_id)
            if begun is None:
                return None
            snapshot = begun[1][1]
            if snapshot.is_local or snapshot.sender != self.self_identity:
                return None
            if not self.messages.apply_recall(message_id):
                return None
            self.conversations.on_message_changed(snapshot.conversation_id)
            return self.messages.commit(message_id, begun)

        async def call(mutation: Mutation) -> Any:
            conversation_id, server_id = mutation.key
            if self.is_group(conversation_id):
                return await self.rest.recall_group_message(conversation_id, server_id)
            return await self.rest.recall_message(server_id)

        return self.actions.submit(
            Action(
                name="recall",
                apply=apply,
                call=call,
                reconcile=lambda mutation, data: self._mirror_message_event("Recalled", mutation),
                rollback=self._undo_message_change,
                notice="Message could not be recalled",
            )
        )

    def delete(self, message_id: str) -> "asyncio.Future[ActionOutcome]":
        def apply() -> Optional[Mutation]:
            begun = self.messages.begin(message_id)
            if begun is None or begun[1][1].is_local:
                return None
            conversation_id = begun[1][1].conversation_id
            if not self.messages.apply_delete(message_id):
                return None
            self.conversations.on_message_changed(conversation_id, removed=True)
            return self.messages.commit(message_id, begun)

        async def call(mutation: Mutation) -> Any:
            conversation_id, server_id = mutation.key
            if self.is_group(conversation_id):
                return await self.rest.delete_group_message(conversation_id, server_id)
            return await self.rest.delete_message(server_id)

        return self.actions.submit(
            Action(
                name="delete",
                apply=apply,
                call=call,
                reconcile=lambda mutation, data: self._mirror_message_event("Deleted", mutation),
                rollback=self._undo_message_change,
                notice="Message could not be deleted",
            )
        )

    def _mirror_message_event(self, suffix: str, mutation: Mutation) -> None:
        conversation_id, server_id = mutation.key
        if self.is_group(conversation_id):
            self.transport.emit(f"groupMessage{suffix}", {"groupId": conversation_id, "messageId": server_id})
        else:
            self.transport.emit(f"message{suffix}", {"receiverEmail": conversation_id, "messageId": server_id})

    def _undo_message_change(self, mutation: Mutation, error: Exception) -> None:
        if self.messages.rollback(mutation):
            self.conversations.on_message_changed(mutation.key[0], removed=True)

    def mark_read(self, message_id: str) -> "asyncio.Future[ActionOutcome]":
        def apply() -> Optional[Mutation]:
            begun = self.messages.begin(message_id)
            if begun is None:
                return None
            snapshot = begun[1][1]
            if snapshot.is_local or snapshot.sender == self.self_identity or snapshot.status == STATUS_READ:
                return None
            self.messages.mark_read(message_id)
            self.conversations.on_read(snapshot.conversation_id)
            return self.messages.commit(message_id, begun)

        async def call(mutation: Mutation) -> Any:
            conversation_id, server_id = mutation.key
            if self.is_group(conversation_id):
                # Group read receipts are local only.
                return None
            return await self.rest.mark_read(server_id)

        def reconcile(mutation: Mutation, data: Any) -> None:
            conversation_id, server_id = mutation.key
            if not self.is_group(conversation_id):
                self.transport.emit("messageRead", {"messageId": server_id, "senderEmail": conversation_id})

        def rollback(mutation: Mutation, error: Exception) -> None:
            if self.messages.rollback(mutation):
                self.conversations.on_read(mutation.key[0])

        return self.actions.submit(
            Action(
                name="mark_read",
                apply=apply,
                call=call,
                reconcile=reconcile,
                rollback=rollback,
                notice="Could not mark message as read",
            )
        )

    def mark_conversation_read(self, conversation_id: str) -> List["asyncio.Future[ActionOutcome]"]:
        unread = [
            entry.message_id
            for entry in self.message_log(conversation_id)
            if entry.sender != self.self_identity and entry.status != STATUS_READ and not entry.is_local
        ]
        return [self.mark_read(message_id) for message_id in unread]

    # Typing

    def keystroke(self, conversation_id: str) -> None:
        self.typing.start_typing(conversation_id, conversation_id)

    def stop_typing(self, conversation_id: str) -> None:
        self.typing.stop_typing(conversation_id, conversation_id)

    def _emit_typing(self, event: str, body: Dict[str, Any]) -> bool:
        conversation_id = body["conversationId"]
        payload: Dict[str, Any] = {"senderEmail": self.self_identity}
        if self.is_group(conversation_id):
            payload["groupId"] = conversation_id
        else:
            payload["receiverEmail"] = conversation_id
        return self.transport.emit(event, payload)

    # Friends

    def send_friend_request(
        self, counterpart: str, display_name: str = "", avatar: str = ""
    ) -> "asyncio.Future[ActionOutcome]":
        counterpart = normalize_identity(counterpart)
        return self._relationship_action(
            "send_friend_request",
            lambda: self.relationships.send_request(counterpart, display_name, avatar),
            lambda: self.rest.send_friend_request(counterpart),
            "friendRequestUpdate",
            {"senderEmail": self.self_identity, "receiverEmail": counterpart},
            "Friend request could not be sent",
        )

    def withdraw_friend_request(self, counterpart: str) -> "asyncio.Future[ActionOutcome]":
        counterpart = normalize_identity(counterpart)
        return self._relationship_action(
            "withdraw_friend_request",
            lambda: self.relationships.withdraw_request(counterpart),
            lambda: self.rest.withdraw_friend_request(counterpart),
            "friendRequestWithdrawn",
            {"senderEmail": self.self_identity, "receiverEmail": counterpart},
            "Friend request could not be withdrawn",
        )

    def respond_to_friend_request(self, counterpart: str, accept: bool) -> "asyncio.Future[ActionOutcome]":
        counterpart = normalize_identity(counterpart)
        return self._relationship_action(
            "respond_to_friend_request",
            lambda: self.relationships.respond_to_request(counterpart, accept),
            lambda: self.rest.respond_to_friend_request(counterpart, accept),
            "friendRequestResponded",
            {"senderEmail": counterpart, "receiverEmail": self.self_identity, "accepted": accept},
            "Could not answer the friend request",
        )

    def unfriend(self, counterpart: str) -> "asyncio.Future[ActionOutcome]":
        counterpart = normalize_identity(counterpart)
        return self._relationship_action(
            "unfriend",
            lambda: self.relationships.unfriend(counterpart),
            lambda: self.rest.unfriend(counterpart),
            "unfriended",
            {"email": self.self_identity, "friendEmail": counterpart},
            "Could not remove friend",
        )

    def _relationship_action(
        self,
        name: str,
        apply: Callable[[], Optional[Mutation]],
        call: Callable[[], Awaitable[Any]],
        mirror_event: str,
        mirror_body: Dict[str, Any],
        notice: str,
    ) -> "asyncio.Future[ActionOutcome]":
        def reconcile(mutation: Mutation, data: Any) -> None:
            if self.relationships.confirm(mutation):
                self.transport.emit(mirror_event, mirror_body)

        return self.actions.submit(
            Action(
                name=name,
                apply=apply,
                call=lambda mutation: call(),
                reconcile=reconcile,
                rollback=lambda mutation, error: self.relationships.rollback(mutation),
                notice=notice,
            )
        )

    # Groups

    def rename_group(self, group_id: str, name: str) -> "asyncio.Future[ActionOutcome]":
        name = name.strip()

        def apply() -> Optional[Mutation]:
            prior = self.groups.get(group_id)
            if not name or prior is None or not self.groups.apply_renamed(group_id, name):
                return None
            self.conversations.on_group_changed(group_id, self.groups.get(group_id))
            return self.groups.tag(group_id, prior)

        return self._group_action(
            "rename_group",
            apply,
            lambda: self.rest.update_group(group_id, name=name),
            "groupNameChanged",
            {"groupId": group_id, "newName": name},
            "Group could not be renamed",
        )

    def change_group_avatar(self, group_id: str, avatar: str) -> "asyncio.Future[ActionOutcome]":
        def apply() -> Optional[Mutation]:
            prior = self.groups.get(group_id)
            if not avatar or prior is None or not self.groups.apply_avatar(group_id, avatar):
                return None
            self.conversations.on_group_changed(group_id, self.groups.get(group_id))
            return self.groups.tag(group_id, prior)

        return self._group_action(
            "change_group_avatar",
            apply,
            lambda: self.rest.update_group(group_id, avatar=avatar),
            "groupAvatarChanged",
            {"groupId": group_id, "newAvatar": avatar},
            "Group picture could not be changed",
        )

    def leave_group(self, group_id: str) -> "asyncio.Future[ActionOutcome]":
        """Leave ``group_id``; the group and its conversation disappear at once."""

        return self._group_action(
            "leave_group",
            lambda: self._drop_group(group_id),
            lambda: self.rest.leave_group(group_id),
            "memberLeft",
            {"groupId": group_id, "userId": self.self_identity},
            "Could not leave the group",
        )

    def delete_group(self, group_id: str) -> "asyncio.Future[ActionOutcome]":
        def apply() -> Optional[Mutation]:
            group = self.groups.get(group_id)
            if group is None or self.self_identity not in group.admins:
                return None
            return self._drop_group(group_id)

        return self._group_action(
            "delete_group",
            apply,
            lambda: self.rest.delete_group(group_id),
            "groupDeleted",
            {"groupId": group_id},
            "Group could not be deleted",
        )

    def _drop_group(self, group_id: str) -> Optional[Mutation]:
        prior = self.groups.get(group_id)
        if prior is None:
            return None
        self.groups.remove(group_id)
        self.conversations.on_group_changed(group_id, None)
        return self.groups.tag(group_id, prior)

    async def refresh_group_members(self, group_id: str) -> bool:
        """Replace the member list of ``group_id`` with the server's."""

        try:
            data = await self.rest.get_group_members(group_id)
            raw = data.get("members") if isinstance(data, dict) else data
            fetched = parse_group({"groupId": group_id, "members": raw if isinstance(raw, list) else []})
        except (ApiError, MalformedPayload) as exc:
            logger.warning("member refresh for %s failed: %s", group_id, exc)
            return False
        if not self.groups.apply_members(group_id, fetched.members, fetched.admins):
            return False
        self.conversations.on_group_changed(group_id, self.groups.get(group_id))
        return True

    def schedule_member_refresh(self, group_id: str) -> None:
        if not self._started:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Reducers driven without a loop (replay) keep the pushed membership.
            return
        task = loop.create_task(self.refresh_group_members(group_id))
        self._member_refreshes.add(task)
        task.add_done_callback(self._member_refreshes.discard)

    def _group_action(
        self,
        name: str,
        apply: Callable[[], Optional[Mutation]],
        call: Callable[[], Awaitable[Any]],
        mirror_event: str,
        mirror_body: Dict[str, Any],
        notice: str,
    ) -> "asyncio.Future[ActionOutcome]":
        def rollback(mutation: Mutation, error: Exception) -> None:
            if self.groups.rollback(mutation):
                group_id = str(mutation.key)
                self.conversations.on_group_changed(group_id, self.groups.get(group_id))

        return self.actions.submit(
            Action(
                name=name,
                apply=apply,
                call=lambda mutation: call(),
                reconcile=lambda mutation, data: self.transport.emit(mirror_event, mirror_body),
                rollback=rollback,
                notice=notice,
            )
        )

    # Read models

    def conversation_list(self) -> List[ConversationSummary]:
        return self.conversations.conversations()

    def message_log(self, conversation_id: str) -> List[Message]:
        if not self.messages.has_conversation(conversation_id):
            return []
        return self.messages.conversation(conversation_id).messages()
