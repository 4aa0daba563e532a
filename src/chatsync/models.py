"""Entity shapes shared by the stores, plus payload parsers for REST and socket bodies."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

KIND_TEXT = "text"
KIND_IMAGE = "image"
KIND_FILE = "file"
CONTENT_KINDS = {KIND_TEXT, KIND_IMAGE, KIND_FILE}

STATUS_SENT = "sent"
STATUS_READ = "read"

LOCAL_PENDING = "pending"
LOCAL_FAILED = "failed"

CONV_PERSONAL = "personal"
CONV_GROUP = "group"

REQUEST_SENT = "sent-pending"
REQUEST_RECEIVED = "received-pending"

RECALLED_PLACEHOLDER = "Message recalled"

_IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "heic"}


class MalformedPayload(ValueError):
    """Raised when a REST or socket body cannot be turned into an entity."""


@dataclass(frozen=True)
class Reaction:
    sender: str
    reaction: str


@dataclass(frozen=True)
class MessageMetadata:
    file_name: str | None = None
    file_size: int | None = None
    mime_type: str | None = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.file_name is not None:
            payload["fileName"] = self.file_name
        if self.file_size is not None:
            payload["fileSize"] = self.file_size
        if self.mime_type is not None:
            payload["fileType"] = self.mime_type
        return payload


@dataclass
class Message:
    """One entry of a conversation log.

    ``message_id`` is either the server id or, while ``local_state`` is set,
    the temporary id handed out by ``append_optimistic``.
    """

    message_id: str
    conversation_id: str
    sender: str
    content: str
    kind: str = KIND_TEXT
    created_ms: int = 0
    status: str = STATUS_SENT
    recalled: bool = False
    metadata: MessageMetadata | None = None
    reactions: List[Reaction] = field(default_factory=list)
    local_state: str | None = None
    client_id: str | None = None

    @property
    def is_local(self) -> bool:
        return self.local_state is not None

    def copy(self) -> "Message":
        return replace(self, reactions=list(self.reactions))


@dataclass(frozen=True)
class Draft:
    """Content of a message about to be sent from this client."""

    content: str
    kind: str = KIND_TEXT
    metadata: MessageMetadata | None = None


@dataclass(frozen=True)
class Friendship:
    counterpart: str
    display_name: str = ""
    avatar: str = ""
    online: bool = False


@dataclass(frozen=True)
class FriendRequest:
    direction: str
    counterpart: str
    display_name: str = ""
    avatar: str = ""
    created_ms: int = 0


@dataclass(frozen=True)
class Group:
    group_id: str
    name: str = ""
    avatar: str = ""
    members: tuple[str, ...] = ()
    admins: tuple[str, ...] = ()


def normalize_identity(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def parse_timestamp(value: Any) -> int:
    """Return epoch milliseconds for an ISO-8601 string or a numeric timestamp."""

    if isinstance(value, bool):
        raise MalformedPayload("timestamp must not be a boolean")
    if isinstance(value, float) and not math.isfinite(value):
        raise MalformedPayload(f"timestamp {value!r} is not finite")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value:
        text = value.strip()
        if text.isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedPayload(f"unparseable timestamp {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    raise MalformedPayload("timestamp missing")


def infer_content_kind(content: str, metadata: MessageMetadata | None) -> str:
    """Best-effort content kind for payloads that omit ``type``."""

    mime_type = metadata.mime_type if metadata is not None else None
    if mime_type:
        return KIND_IMAGE if mime_type.lower().startswith("image/") else KIND_FILE
    lowered = content.lower()
    if lowered.startswith(("http://", "https://")):
        extension = lowered.rsplit("?", 1)[0].rsplit(".", 1)[-1]
        if extension in _IMAGE_EXTENSIONS:
            return KIND_IMAGE
        if metadata is not None and metadata.file_name:
            return KIND_FILE
    return KIND_TEXT


def parse_metadata(raw: Any) -> MessageMetadata | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise MalformedPayload("metadata must be an object")
    file_size = raw.get("fileSize")
    if file_size is not None and not isinstance(file_size, int):
        try:
            file_size = int(file_size)
        except (TypeError, ValueError, OverflowError):
            file_size = None
    file_name = raw.get("fileName")
    mime_type = raw.get("fileType")
    return MessageMetadata(
        file_name=str(file_name) if file_name is not None else None,
        file_size=file_size,
        mime_type=str(mime_type) if mime_type is not None else None,
    )


def parse_reaction(raw: Any) -> Reaction:
    if not isinstance(raw, dict):
        raise MalformedPayload("reaction must be an object")
    sender = normalize_identity(raw.get("senderEmail") or raw.get("senderId"))
    reaction = raw.get("reaction")
    if not sender or not isinstance(reaction, str) or not reaction:
        raise MalformedPayload("reaction requires sender and reaction")
    return Reaction(sender=sender, reaction=reaction)


def conversation_id_for(raw: Dict[str, Any], self_identity: str) -> str:
    """Group id for group messages, otherwise the peer that is not us."""

    group_id = raw.get("groupId")
    if isinstance(group_id, str) and group_id:
        return group_id
    sender = normalize_identity(raw.get("senderEmail"))
    receiver = normalize_identity(raw.get("receiverEmail"))
    if sender and sender != self_identity:
        return sender
    if receiver:
        return receiver
    raise MalformedPayload("cannot determine conversation for message")


def parse_message(raw: Any, self_identity: str, conversation_id: str | None = None) -> Message:
    if not isinstance(raw, dict):
        raise MalformedPayload("message must be an object")
    message_id = raw.get("messageId") or raw.get("_id")
    if not isinstance(message_id, str) or not message_id:
        raise MalformedPayload("messageId missing")
    sender = normalize_identity(raw.get("senderEmail"))
    if not sender:
        raise MalformedPayload("senderEmail missing")
    content = raw.get("content", "")
    if not isinstance(content, str):
        raise MalformedPayload("content must be a string")
    metadata = parse_metadata(raw.get("metadata"))
    kind = raw.get("type")
    if kind == "video":
        kind = KIND_FILE
    if kind not in CONTENT_KINDS:
        kind = infer_content_kind(content, metadata)
    status = STATUS_READ if raw.get("status") == STATUS_READ else STATUS_SENT
    reactions: List[Reaction] = []
    for item in raw.get("reactions") or []:
        reaction = parse_reaction(item)
        if reaction not in reactions:
            reactions.append(reaction)
    client_id = raw.get("clientId")
    recalled = bool(raw.get("isRecalled", False))
    return Message(
        message_id=message_id,
        conversation_id=conversation_id or conversation_id_for(raw, self_identity),
        sender=sender,
        content=RECALLED_PLACEHOLDER if recalled else content,
        kind=kind,
        created_ms=parse_timestamp(raw.get("createdAt")),
        status=status,
        recalled=recalled,
        metadata=None if recalled else metadata,
        reactions=reactions,
        client_id=client_id if isinstance(client_id, str) and client_id else None,
    )


def parse_friendship(raw: Any) -> Friendship:
    if not isinstance(raw, dict):
        raise MalformedPayload("friend must be an object")
    counterpart = normalize_identity(raw.get("email"))
    if not counterpart:
        raise MalformedPayload("friend email missing")
    return Friendship(
        counterpart=counterpart,
        display_name=str(raw.get("fullName") or counterpart),
        avatar=str(raw.get("avatar") or ""),
        online=bool(raw.get("online", False)),
    )


def parse_friend_request(raw: Any, direction: str) -> FriendRequest:
    if not isinstance(raw, dict):
        raise MalformedPayload("friend request must be an object")
    counterpart = normalize_identity(raw.get("email") or raw.get("senderEmail") or raw.get("receiverEmail"))
    if not counterpart:
        raise MalformedPayload("friend request counterpart missing")
    timestamp = raw.get("timestamp")
    return FriendRequest(
        direction=direction,
        counterpart=counterpart,
        display_name=str(raw.get("fullName") or counterpart),
        avatar=str(raw.get("avatar") or ""),
        created_ms=parse_timestamp(timestamp) if timestamp else 0,
    )


def parse_group(raw: Any) -> Group:
    if not isinstance(raw, dict):
        raise MalformedPayload("group must be an object")
    group_id = raw.get("groupId") or raw.get("_id")
    if not isinstance(group_id, str) or not group_id:
        raise MalformedPayload("groupId missing")
    members: List[str] = []
    admins: List[str] = []
    for entry in raw.get("members") or []:
        if isinstance(entry, str):
            email = normalize_identity(entry)
            role = "member"
        elif isinstance(entry, dict):
            email = normalize_identity(entry.get("email") or entry.get("userId"))
            role = entry.get("role", "member")
        else:
            continue
        if not email or email in members:
            continue
        members.append(email)
        if role == "admin":
            admins.append(email)
    return Group(
        group_id=group_id,
        name=str(raw.get("name") or ""),
        avatar=str(raw.get("avatar") or ""),
        members=tuple(members),
        admins=tuple(admins),
    )


def optional_str(raw: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value:
            return value
    return None
