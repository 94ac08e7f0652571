"""Thin view layer: flattens store and tracker state into plain rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .models import Conversation, Message
from .store import ConversationStore
from .tracker import DeliveryTracker

STATUS_MARKERS = {
    "sending": "…",
    "sent": "✓",
    "delivered": "✓✓",
    "read": "✓✓ read",
    "failed": "! failed",
}


@dataclass
class RenderState:
    conversations: List[Dict[str, Any]]
    open_conversation_id: str | None
    thread: List[Dict[str, Any]]
    typing: List[str] = field(default_factory=list)
    notices: List[str] = field(default_factory=list)


def conversation_title(conversation: Conversation, local_user_id: str) -> str:
    if conversation.group is not None and conversation.group.name:
        return conversation.group.name
    others = [user_id for user_id in conversation.participants if user_id != local_user_id]
    return ", ".join(others) or conversation.id


def _conversation_row(conversation: Conversation, local_user_id: str) -> Dict[str, Any]:
    preview = conversation.last_message.summary() if conversation.last_message is not None else ""
    return {
        "id": conversation.id,
        "title": conversation_title(conversation, local_user_id),
        "preview": preview,
        "unread": conversation.unread,
        "last_activity": conversation.last_activity_ms,
        "is_group": conversation.is_group,
    }


def _message_row(message: Message, local_user_id: str) -> Dict[str, Any]:
    mine = message.sender_id == local_user_id
    return {
        "id": message.id,
        "sender": message.sender_id,
        "mine": mine,
        "text": message.summary(),
        "status": STATUS_MARKERS.get(message.status or "", "") if mine else "",
        "read_by": sorted(user_id for user_id in message.read_by if user_id != message.sender_id),
        "deleted": message.deleted,
        "expires_at": message.expires_at_ms,
    }


def render(
    store: ConversationStore,
    tracker: DeliveryTracker,
    *,
    typing: Iterable[str] = (),
    notices: Iterable[str] = (),
) -> RenderState:
    local_user_id = store.local_user_id
    open_id = store.open_conversation_id
    thread = tracker.thread(open_id) if open_id is not None else []
    return RenderState(
        conversations=[_conversation_row(conv, local_user_id) for conv in store.list_ordered()],
        open_conversation_id=open_id,
        thread=[_message_row(message, local_user_id) for message in thread],
        typing=sorted(typing),
        notices=list(notices),
    )
