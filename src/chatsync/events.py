"""Inbound socket events and the reducers that merge them into a session's stores.

Each reducer handles one event name. Reducers parse first and mutate second,
so a malformed payload raises before touching any store and the hub discards
just that update.
"""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, List

from .hub import Subscription, SubscriptionHub
from .messages import MERGE_UNCHANGED
from .models import (
    REQUEST_RECEIVED,
    Friendship,
    Group,
    MalformedPayload,
    Message,
    normalize_identity,
    optional_str,
    parse_friend_request,
    parse_friendship,
    parse_group,
    parse_message,
    parse_reaction,
)

if TYPE_CHECKING:
    from .session import ChatSession

logger = logging.getLogger(__name__)

NEW_MESSAGE = "newMessage"
NEW_GROUP_MESSAGE = "newGroupMessage"
MESSAGE_REACTION = "messageReaction"
GROUP_MESSAGE_REACTION = "groupMessageReaction"
MESSAGE_RECALLED = "messageRecalled"
GROUP_MESSAGE_RECALLED = "groupMessageRecalled"
MESSAGE_DELETED = "messageDeleted"
GROUP_MESSAGE_DELETED = "groupMessageDeleted"
MESSAGE_READ = "messageRead"
TYPING_START = "typingStart"
TYPING_STOP = "typingStop"
FRIEND_REQUEST_UPDATE = "friendRequestUpdate"
FRIEND_REQUEST_WITHDRAWN = "friendRequestWithdrawn"
FRIEND_REQUEST_RESPONDED = "friendRequestResponded"
FRIEND_ADDED = "friendAdded"
UNFRIENDED = "unfriended"
USER_STATUS = "userStatus"
GROUP_CREATED = "groupCreated"
ADDED_TO_GROUP = "addedToGroup"
MEMBER_LEFT = "memberLeft"
GROUP_DELETED = "groupDeleted"
GROUP_NAME_CHANGED = "groupNameChanged"
GROUP_AVATAR_CHANGED = "groupAvatarChanged"

SESSION_OWNER = "chatsync.session"

Reducer = Callable[["ChatSession", Any], None]


def _object(payload: Any, event: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedPayload(f"{event} payload must be an object")
    return payload


def _message_id(payload: Any) -> str:
    # Group recall/delete events carry the bare id.
    if isinstance(payload, str) and payload:
        return payload
    if isinstance(payload, dict):
        message_id = optional_str(payload, "messageId", "_id")
        if message_id:
            return message_id
    raise MalformedPayload("message id missing")


def _counterpart(payload: Dict[str, Any], self_identity: str, *keys: str) -> str:
    for key in keys:
        value = normalize_identity(payload.get(key))
        if value and value != self_identity:
            return value
    raise MalformedPayload(f"none of {', '.join(keys)} names a counterpart")


def _group_id(payload: Dict[str, Any]) -> str:
    group_id = optional_str(payload, "groupId")
    if not group_id:
        raise MalformedPayload("groupId missing")
    return group_id


def on_new_message(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, NEW_MESSAGE)
    raw = body.get("message") if isinstance(body.get("message"), dict) else body
    message = parse_message(raw, session.self_identity)
    _merge(session, message)


def on_new_group_message(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, NEW_GROUP_MESSAGE)
    raw = body.get("message") if isinstance(body.get("message"), dict) else body
    group_id = optional_str(raw, "groupId") or _group_id(body)
    message = parse_message(raw, session.self_identity, conversation_id=group_id)
    _merge(session, message)


def _merge(session: "ChatSession", message: Message) -> None:
    if session.messages.merge_server_message(message) == MERGE_UNCHANGED:
        logger.debug("duplicate push for %s skipped", message.message_id)
        return
    # A message from someone ends their typing indicator.
    session.typing.observe_remote_stop(message.conversation_id, message.sender)
    session.conversations.on_new_message(message.conversation_id)


def on_reaction(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, MESSAGE_REACTION)
    message_id = _message_id(body)
    reaction = parse_reaction(body)
    session.messages.apply_reaction(message_id, reaction.reaction, reaction.sender)


def on_recalled(session: "ChatSession", payload: Any) -> None:
    message_id = _message_id(payload)
    if session.messages.apply_recall(message_id):
        session.conversations.on_message_changed(session.messages.conversation_of(message_id))


def on_deleted(session: "ChatSession", payload: Any) -> None:
    message_id = _message_id(payload)
    conversation_id = session.messages.conversation_of(message_id)
    if session.messages.apply_delete(message_id) and conversation_id is not None:
        session.conversations.on_message_changed(conversation_id, removed=True)


def on_read(session: "ChatSession", payload: Any) -> None:
    message_id = _message_id(payload)
    if session.messages.mark_read(message_id):
        session.conversations.on_read(session.messages.conversation_of(message_id))


def _typing_scope(session: "ChatSession", payload: Any, event: str) -> tuple[str, str]:
    body = _object(payload, event)
    sender = normalize_identity(body.get("senderEmail") or body.get("userId"))
    if not sender:
        raise MalformedPayload(f"{event} sender missing")
    return optional_str(body, "groupId") or sender, sender


def on_typing_start(session: "ChatSession", payload: Any) -> None:
    session.typing.observe_remote_start(*_typing_scope(session, payload, TYPING_START))


def on_typing_stop(session: "ChatSession", payload: Any) -> None:
    session.typing.observe_remote_stop(*_typing_scope(session, payload, TYPING_STOP))


def on_friend_request(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, FRIEND_REQUEST_UPDATE)
    request = parse_friend_request(
        {**body, "email": _counterpart(body, session.self_identity, "senderEmail", "email")},
        REQUEST_RECEIVED,
    )
    session.relationships.apply_request_received(request)


def on_friend_request_withdrawn(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, FRIEND_REQUEST_WITHDRAWN)
    session.relationships.apply_request_withdrawn(_counterpart(body, session.self_identity, "senderEmail", "email"))


def on_friend_request_responded(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, FRIEND_REQUEST_RESPONDED)
    counterpart = _counterpart(body, session.self_identity, "receiverEmail", "email", "senderEmail")
    accepted = body.get("accepted", body.get("accept"))
    if not isinstance(accepted, bool):
        raise MalformedPayload("friendRequestResponded needs a boolean accepted flag")
    friend = None
    if accepted and body.get("fullName"):
        friend = Friendship(
            counterpart=counterpart,
            display_name=str(body["fullName"]),
            avatar=str(body.get("avatar") or ""),
        )
    session.relationships.apply_request_responded(counterpart, accepted, friend)


def on_friend_added(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, FRIEND_ADDED)
    raw = body.get("friend") if isinstance(body.get("friend"), dict) else body
    session.relationships.apply_friend_added(parse_friendship(raw))


def on_unfriended(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, UNFRIENDED)
    session.relationships.apply_unfriended(_counterpart(body, session.self_identity, "friendEmail", "email"))


def on_user_status(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, USER_STATUS)
    counterpart = _counterpart(body, session.self_identity, "email", "userId")
    online = body.get("online")
    if not isinstance(online, bool):
        online = body.get("status") == "online"
    session.relationships.apply_presence(counterpart, online)


def _apply_group(session: "ChatSession", payload: Any, event: str) -> Group:
    body = _object(payload, event)
    group = parse_group(body.get("group") if isinstance(body.get("group"), dict) else body)
    if session.groups.apply_created(group):
        session.conversations.on_group_changed(group.group_id, group)
    return group


def on_group_created(session: "ChatSession", payload: Any) -> None:
    _apply_group(session, payload, GROUP_CREATED)


def on_added_to_group(session: "ChatSession", payload: Any) -> None:
    group = _apply_group(session, payload, ADDED_TO_GROUP)
    if not group.members:
        session.schedule_member_refresh(group.group_id)


def on_member_left(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, MEMBER_LEFT)
    group_id = _group_id(body)
    member = normalize_identity(body.get("userId") or body.get("email"))
    if not member:
        raise MalformedPayload("memberLeft member missing")
    if session.groups.apply_member_left(group_id, member):
        session.conversations.on_group_changed(group_id, session.groups.get(group_id))
    if member != session.self_identity and session.groups.get(group_id) is not None:
        session.schedule_member_refresh(group_id)


def on_group_deleted(session: "ChatSession", payload: Any) -> None:
    group_id = _group_id(_object(payload, GROUP_DELETED))
    if session.groups.remove(group_id):
        session.conversations.on_group_changed(group_id, None)


def on_group_renamed(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, GROUP_NAME_CHANGED)
    group_id = _group_id(body)
    name = optional_str(body, "newName", "name")
    if name is None:
        raise MalformedPayload("groupNameChanged name missing")
    if session.groups.apply_renamed(group_id, name):
        session.conversations.on_group_changed(group_id, session.groups.get(group_id))


def on_group_avatar(session: "ChatSession", payload: Any) -> None:
    body = _object(payload, GROUP_AVATAR_CHANGED)
    group_id = _group_id(body)
    avatar = optional_str(body, "newAvatar", "avatar")
    if avatar is None:
        raise MalformedPayload("groupAvatarChanged avatar missing")
    if session.groups.apply_avatar(group_id, avatar):
        session.conversations.on_group_changed(group_id, session.groups.get(group_id))


REDUCERS: Dict[str, Reducer] = {
    NEW_MESSAGE: on_new_message,
    NEW_GROUP_MESSAGE: on_new_group_message,
    MESSAGE_REACTION: on_reaction,
    GROUP_MESSAGE_REACTION: on_reaction,
    MESSAGE_RECALLED: on_recalled,
    GROUP_MESSAGE_RECALLED: on_recalled,
    MESSAGE_DELETED: on_deleted,
    GROUP_MESSAGE_DELETED: on_deleted,
    MESSAGE_READ: on_read,
    TYPING_START: on_typing_start,
    TYPING_STOP: on_typing_stop,
    FRIEND_REQUEST_UPDATE: on_friend_request,
    FRIEND_REQUEST_WITHDRAWN: on_friend_request_withdrawn,
    FRIEND_REQUEST_RESPONDED: on_friend_request_responded,
    FRIEND_ADDED: on_friend_added,
    UNFRIENDED: on_unfriended,
    USER_STATUS: on_user_status,
    GROUP_CREATED: on_group_created,
    ADDED_TO_GROUP: on_added_to_group,
    MEMBER_LEFT: on_member_left,
    GROUP_DELETED: on_group_deleted,
    GROUP_NAME_CHANGED: on_group_renamed,
    GROUP_AVATAR_CHANGED: on_group_avatar,
}


def register_reducers(hub: SubscriptionHub, session: "ChatSession") -> List[Subscription]:
    return [
        hub.subscribe(event, functools.partial(reducer, session), owner=SESSION_OWNER)
        for event, reducer in REDUCERS.items()
    ]
