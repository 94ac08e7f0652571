from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from .channel import EventChannel
from .models import Conversation, Message, _now_ms

logger = logging.getLogger(__name__)


class ConversationStore:
    """Single writer for the in-memory conversation list.

    Previews, unread counters and list ordering change only through
    ``upsert_preview``; the conversation currently open always reads 0 unread.
    """

    def __init__(self, local_user_id: str, channel: EventChannel | None = None, *, now_func=_now_ms) -> None:
        self.local_user_id = local_user_id
        self.channel = channel
        self._now = now_func
        self._conversations: Dict[str, Conversation] = {}
        self._open_id: str | None = None

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    @property
    def open_conversation_id(self) -> str | None:
        return self._open_id

    def is_open(self, conversation_id: str) -> bool:
        return self._open_id is not None and self._open_id == conversation_id

    def set_open(self, conversation_id: str | None) -> None:
        if conversation_id is not None and conversation_id not in self._conversations:
            raise KeyError(conversation_id)
        self._open_id = conversation_id
        if conversation_id is not None:
            self._conversations[conversation_id].unread = 0

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def load(self, conversations: Iterable[Conversation]) -> None:
        for conversation in conversations:
            self._conversations[conversation.id] = conversation
        if self._open_id is not None and self._open_id not in self._conversations:
            self._open_id = None
        self._join(self._conversations.keys())

    def upsert_conversation(self, conversation: Conversation) -> bool:
        """Insert or refresh membership/group metadata; returns True when new."""

        existing = self._conversations.get(conversation.id)
        if existing is None:
            if self.is_open(conversation.id):
                conversation.unread = 0
            self._conversations[conversation.id] = conversation
            self._join([conversation.id])
            return True
        existing.participants = list(conversation.participants)
        existing.group = conversation.group
        if conversation.last_activity_ms > existing.last_activity_ms and conversation.last_message is not None:
            existing.last_message = conversation.last_message
            existing.last_activity_ms = conversation.last_activity_ms
        return False

    def upsert_preview(
        self,
        conversation_id: str,
        message: Message | None,
        *,
        reset_unread: bool = False,
        increment_unread: bool = False,
        move_to_top: bool = True,
    ) -> bool:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.debug("preview update for unknown conversation %s ignored", conversation_id)
            return False
        conversation.last_message = message
        if move_to_top and message is not None:
            conversation.last_activity_ms = max(conversation.last_activity_ms, message.created_at_ms)
        if reset_unread or self.is_open(conversation_id):
            conversation.unread = 0
        elif increment_unread:
            conversation.unread += 1
        return True

    def reset_unread(self, conversation_id: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            conversation.unread = 0

    def list_ordered(self) -> List[Conversation]:
        return sorted(self._conversations.values(), key=lambda conv: (-conv.last_activity_ms, conv.id))

    def apply_membership_change(
        self,
        conversation_id: str,
        *,
        added: Iterable[str] = (),
        removed: Iterable[str] = (),
        promoted: Iterable[str] = (),
        demoted: Iterable[str] = (),
    ) -> bool:
        """Alter participants/admins in place.

        Removing the local user drops the conversation. Returns True when
        that conversation was open and the caller must close the thread.
        """

        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return False
        removed_set = set(removed)
        if self.local_user_id in removed_set:
            return self.apply_deletion_of_conversation(conversation_id)
        for user_id in added:
            if user_id not in conversation.participants:
                conversation.participants.append(user_id)
        conversation.participants = [user_id for user_id in conversation.participants if user_id not in removed_set]
        if conversation.group is not None:
            conversation.group.admins.difference_update(removed_set)
            conversation.group.admins.update(promoted)
            conversation.group.admins.difference_update(demoted)
        return False

    def apply_deletion_of_conversation(self, conversation_id: str) -> bool:
        """Remove the conversation; True means it was the open one."""

        if self._conversations.pop(conversation_id, None) is None:
            return False
        if self.channel is not None:
            self.channel.leave_rooms([conversation_id])
        if self.is_open(conversation_id):
            self._open_id = None
            return True
        return False

    def _join(self, conversation_ids: Iterable[str]) -> None:
        if self.channel is not None:
            self.channel.join_rooms(conversation_ids)
