"""In-memory data model shared by the tracker, store and coordinators."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

PROVISIONAL_PREFIX = "temp_"
MEDIA_DELETED_PLACEHOLDER = "[Media deleted]"
DELETED_PLACEHOLDER = "This message was deleted"


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageStatus:
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    ALL = (SENDING, SENT, DELIVERED, READ, FAILED)
    PENDING = (SENDING, SENT)


class DeletionScope:
    FOR_ME = "forMe"
    FOR_EVERYONE = "forEveryone"
    ADMIN = "admin"
    HARD = "hard"
    SOFT = "soft"
    AUTO_EXPIRY = "autoExpiry"
    UNSENT = "unsent"
    MEDIA = "media"

    ALL = (FOR_ME, FOR_EVERYONE, ADMIN, HARD, SOFT, AUTO_EXPIRY, UNSENT)


@dataclass
class MediaRef:
    kind: str
    url: str
    name: str | None = None
    size: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "url": self.url, "name": self.name, "size": self.size}


@dataclass
class Message:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at_ms: int
    media: MediaRef | None = None
    status: str | None = None
    read_by: Dict[str, int] = field(default_factory=dict)
    expires_at_ms: int | None = None
    client_id: str | None = None
    deleted: bool = False

    @property
    def is_provisional(self) -> bool:
        return self.id.startswith(PROVISIONAL_PREFIX)

    def summary(self) -> str:
        if self.content:
            return self.content
        if self.media is not None:
            return f"[{self.media.kind}]"
        return ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "media": self.media.to_dict() if self.media is not None else None,
            "created_at": self.created_at_ms,
            "status": self.status,
            "read_by": dict(self.read_by),
            "expires_at": self.expires_at_ms,
            "client_id": self.client_id,
        }


@dataclass
class GroupInfo:
    name: str
    description: str = ""
    admin_id: str = ""
    admins: Set[str] = field(default_factory=set)

    def is_admin(self, user_id: str) -> bool:
        return user_id == self.admin_id or user_id in self.admins

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "admin_id": self.admin_id,
            "admins": sorted(self.admins),
        }


@dataclass
class Conversation:
    id: str
    participants: List[str]
    group: GroupInfo | None = None
    last_message: Message | None = None
    last_activity_ms: int = 0
    unread: int = 0

    @property
    def is_group(self) -> bool:
        return self.group is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participants": list(self.participants),
            "group": self.group.to_dict() if self.group is not None else None,
            "last_message": self.last_message.to_dict() if self.last_message is not None else None,
            "last_activity": self.last_activity_ms,
            "unread": self.unread,
        }


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("expected a numeric timestamp")
    return int(value)


def media_from_dict(raw: Any) -> MediaRef | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError("media must be an object")
    kind = raw.get("kind")
    url = raw.get("url")
    if not isinstance(kind, str) or not isinstance(url, str):
        raise ValueError("media requires kind and url")
    size = raw.get("size")
    return MediaRef(kind=kind, url=url, name=raw.get("name"), size=int(size) if size is not None else None)


def message_from_dict(raw: Any, *, conversation_id: Optional[str] = None) -> Message:
    if not isinstance(raw, dict):
        raise ValueError("message must be an object")
    message_id = raw.get("id")
    sender_id = raw.get("sender_id")
    conv_id = raw.get("conversation_id") or conversation_id
    if not isinstance(message_id, str) or not message_id:
        raise ValueError("message id is required")
    if not isinstance(sender_id, str) or not sender_id:
        raise ValueError("message sender_id is required")
    if not isinstance(conv_id, str) or not conv_id:
        raise ValueError("message conversation_id is required")
    read_by_raw = raw.get("read_by") or {}
    if not isinstance(read_by_raw, dict):
        raise ValueError("read_by must be an object")
    status = raw.get("status")
    if status is not None and status not in MessageStatus.ALL:
        raise ValueError(f"unknown message status: {status}")
    return Message(
        id=message_id,
        conversation_id=conv_id,
        sender_id=sender_id,
        content=raw.get("content") or "",
        created_at_ms=_optional_int(raw.get("created_at")) or 0,
        media=media_from_dict(raw.get("media")),
        status=status,
        read_by={str(user_id): int(ts) for user_id, ts in read_by_raw.items()},
        expires_at_ms=_optional_int(raw.get("expires_at")),
        client_id=raw.get("client_id"),
    )


def group_from_dict(raw: Any) -> GroupInfo | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError("group must be an object")
    return GroupInfo(
        name=raw.get("name") or "",
        description=raw.get("description") or "",
        admin_id=raw.get("admin_id") or "",
        admins=set(raw.get("admins") or []),
    )


def conversation_from_dict(raw: Any) -> Conversation:
    if not isinstance(raw, dict):
        raise ValueError("conversation must be an object")
    conv_id = raw.get("id")
    if not isinstance(conv_id, str) or not conv_id:
        raise ValueError("conversation id is required")
    participants = raw.get("participants") or []
    if not isinstance(participants, list):
        raise ValueError("participants must be a list")
    last_raw = raw.get("last_message")
    last_message = message_from_dict(last_raw, conversation_id=conv_id) if last_raw else None
    unread = raw.get("unread") or 0
    return Conversation(
        id=conv_id,
        participants=[str(user_id) for user_id in participants],
        group=group_from_dict(raw.get("group")),
        last_message=last_message,
        last_activity_ms=_optional_int(raw.get("last_activity")) or 0,
        unread=max(0, int(unread)),
    )
