"""Typed inbound events and outbound intent frames for the event channel.

Inbound frames are ``{"v": 1, "t": <name>, "body": {...}}``. ``parse_event``
maps each name onto exactly one frozen dataclass so a single dispatcher can
decide which state each event touches.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .models import Conversation, DeletionScope, Message, conversation_from_dict, message_from_dict

FRAME_VERSION = 1


@dataclass(frozen=True)
class MessageReceived:
    conversation_id: str
    message: Message


@dataclass(frozen=True)
class TypingChanged:
    conversation_id: str
    user_id: str
    active: bool


@dataclass(frozen=True)
class ReadReceipt:
    conversation_id: str
    message_ids: Tuple[str, ...]
    reader_id: str
    read_at_ms: int


@dataclass(frozen=True)
class MessagesDeleted:
    conversation_id: str
    message_ids: Tuple[str, ...]
    scope: Optional[str] = None
    deleted_by: Optional[str] = None


@dataclass(frozen=True)
class MediaDeleted:
    conversation_id: str
    message_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ChatCleared:
    conversation_id: str
    cleared_by: str


@dataclass(frozen=True)
class ConversationDeleted:
    conversation_id: str


@dataclass(frozen=True)
class GroupCreated:
    conversation: Conversation


@dataclass(frozen=True)
class GroupUpdated:
    conversation: Conversation


@dataclass(frozen=True)
class RemovedFromGroup:
    conversation_id: str
    removed_by: Optional[str] = None


@dataclass(frozen=True)
class StatusUpdate:
    conversation_id: str
    message_id: str
    status: str


@dataclass(frozen=True)
class UnknownEvent:
    name: str
    body: Dict[str, Any]


InboundEvent = Union[
    MessageReceived,
    TypingChanged,
    ReadReceipt,
    MessagesDeleted,
    MediaDeleted,
    ChatCleared,
    ConversationDeleted,
    GroupCreated,
    GroupUpdated,
    RemovedFromGroup,
    StatusUpdate,
    UnknownEvent,
]

DELETION_EVENT_SCOPES: Dict[str, Optional[str]] = {
    "messages_deleted": None,
    "messages_deleted_for_me": DeletionScope.FOR_ME,
    "messages_deleted_for_everyone": DeletionScope.FOR_EVERYONE,
    "messages_hard_deleted": DeletionScope.HARD,
    "messages_soft_deleted": DeletionScope.SOFT,
    "messages_admin_deleted": DeletionScope.ADMIN,
    "messages_auto_deleted": DeletionScope.AUTO_EXPIRY,
    "unsent_messages_deleted": DeletionScope.UNSENT,
}


def _require_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} is required")
    return value


def _id_tuple(body: Dict[str, Any], key: str = "message_ids") -> Tuple[str, ...]:
    value = body.get(key)
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return tuple(str(item) for item in value)


def parse_event(frame: Any) -> InboundEvent:
    """Convert a decoded frame into its typed event.

    Raises ``ValueError`` for frames that are structurally broken. Frames
    with an unrecognised name become ``UnknownEvent``.
    """

    if not isinstance(frame, dict):
        raise ValueError("frame must be an object")
    name = frame.get("t")
    if not isinstance(name, str) or not name:
        raise ValueError("frame type is required")
    body = frame.get("body")
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ValueError("frame body must be an object")

    if name == "new_message":
        conv_id = _require_str(body, "conversation_id")
        return MessageReceived(conversation_id=conv_id, message=message_from_dict(body.get("message"), conversation_id=conv_id))
    if name in ("typing", "stop_typing"):
        return TypingChanged(
            conversation_id=_require_str(body, "conversation_id"),
            user_id=_require_str(body, "user_id"),
            active=name == "typing",
        )
    if name == "message_read":
        read_at = body.get("read_at")
        return ReadReceipt(
            conversation_id=_require_str(body, "conversation_id"),
            message_ids=_id_tuple(body),
            reader_id=_require_str(body, "reader_id"),
            read_at_ms=int(read_at) if isinstance(read_at, (int, float)) else 0,
        )
    if name in DELETION_EVENT_SCOPES:
        return MessagesDeleted(
            conversation_id=_require_str(body, "conversation_id"),
            message_ids=_id_tuple(body),
            scope=DELETION_EVENT_SCOPES[name],
            deleted_by=body.get("deleted_by"),
        )
    if name == "media_deleted":
        return MediaDeleted(conversation_id=_require_str(body, "conversation_id"), message_ids=_id_tuple(body))
    if name == "chat_cleared_for_me":
        return ChatCleared(
            conversation_id=_require_str(body, "conversation_id"),
            cleared_by=_require_str(body, "cleared_by"),
        )
    if name == "conversation_deleted":
        return ConversationDeleted(conversation_id=_require_str(body, "conversation_id"))
    if name in ("group_created", "added_to_group"):
        return GroupCreated(conversation=conversation_from_dict(body.get("conversation")))
    if name == "group_updated":
        return GroupUpdated(conversation=conversation_from_dict(body.get("conversation")))
    if name == "removed_from_group":
        return RemovedFromGroup(
            conversation_id=_require_str(body, "conversation_id"),
            removed_by=body.get("removed_by"),
        )
    if name == "message_status_update":
        return StatusUpdate(
            conversation_id=_require_str(body, "conversation_id"),
            message_id=_require_str(body, "message_id"),
            status=_require_str(body, "status"),
        )
    return UnknownEvent(name=name, body=body)


def _frame(name: str, body: Dict[str, Any]) -> Dict[str, Any]:
    return {"v": FRAME_VERSION, "t": name, "body": body}


def join_conversations_frame(conversation_ids: Iterable[str]) -> Dict[str, Any]:
    return _frame("join_conversations", {"conversation_ids": list(conversation_ids)})


def leave_conversations_frame(conversation_ids: Iterable[str]) -> Dict[str, Any]:
    return _frame("leave_conversations", {"conversation_ids": list(conversation_ids)})


def start_typing_frame(conversation_id: str) -> Dict[str, Any]:
    return _frame("start_typing", {"conversation_id": conversation_id})


def stop_typing_frame(conversation_id: str) -> Dict[str, Any]:
    return _frame("stop_typing", {"conversation_id": conversation_id})


def mark_read_frame(conversation_id: str, message_ids: Iterable[str]) -> Dict[str, Any]:
    return _frame("mark_messages_read", {"conversation_id": conversation_id, "message_ids": list(message_ids)})
