"""Per-message delivery state and optimistic-send reconciliation.

A locally sent message starts life as a provisional entry (``temp_`` id,
status ``sending``). The HTTP answer to the send and the channel echo of the
same message can arrive in either order; both are resolved against the
pending entries with the same matching cascade so the thread ends up with one
canonical entry:

1. identity: the entry already carries the server id, or the provisional id
   the server response refers to;
2. a provisional entry with identical content still in ``sending``/``sent``;
3. identical content, still pending, created within the reconcile window.

The earliest pending entry wins. A confirmed message that matches nothing is
appended instead of dropped. When a server copy and its provisional twin
both sit in the thread, the server copy is kept.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from .channel import EventChannel
from .config import SyncConfig
from .models import (
    DELETED_PLACEHOLDER,
    MEDIA_DELETED_PLACEHOLDER,
    PROVISIONAL_PREFIX,
    MediaRef,
    Message,
    MessageStatus,
    _now_ms,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    MessageStatus.SENDING: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
    MessageStatus.FAILED: frozenset(),
}

_HAPPY_PATH_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


class InvalidTransition(Exception):
    def __init__(self, message_id: str, current: str | None, target: str) -> None:
        self.message_id = message_id
        self.current = current
        self.target = target
        super().__init__(f"message {message_id}: {current} -> {target} is not allowed")


def advance(message: Message, target: str) -> bool:
    """Move ``message`` to ``target`` if the edge is allowed.

    Returns False for repeats and for late events that would move a message
    backwards along the happy path; raises ``InvalidTransition`` otherwise.
    """

    current = message.status
    if current == target:
        return False
    if target in ALLOWED_TRANSITIONS.get(current, frozenset()):
        message.status = target
        return True
    if current in _HAPPY_PATH_RANK and target in _HAPPY_PATH_RANK:
        if _HAPPY_PATH_RANK[target] < _HAPPY_PATH_RANK[current]:
            return False
    raise InvalidTransition(message.id, current, target)


class DeliveryTracker:
    def __init__(
        self,
        local_user_id: str,
        store: ConversationStore,
        channel: EventChannel | None = None,
        *,
        config: SyncConfig | None = None,
        now_func=_now_ms,
    ) -> None:
        self.local_user_id = local_user_id
        self.store = store
        self.channel = channel
        self.config = config or SyncConfig()
        self._now = now_func
        self._threads: Dict[str, List[Message]] = {}
        self._counter = 0

    def thread(self, conversation_id: str) -> List[Message]:
        return list(self._threads.get(conversation_id, []))

    def find(self, conversation_id: str, message_id: str) -> Message | None:
        for message in self._threads.get(conversation_id, []):
            if message.id == message_id:
                return message
        return None

    def _allocate_provisional_id(self) -> str:
        self._counter += 1
        return f"{PROVISIONAL_PREFIX}{self._now()}_{self._counter}"

    def create_provisional(
        self,
        conversation_id: str,
        content: str,
        *,
        media: MediaRef | None = None,
        expires_at_ms: int | None = None,
    ) -> Message:
        provisional_id = self._allocate_provisional_id()
        message = Message(
            id=provisional_id,
            conversation_id=conversation_id,
            sender_id=self.local_user_id,
            content=content,
            created_at_ms=self._now(),
            media=media,
            status=MessageStatus.SENDING,
            expires_at_ms=expires_at_ms,
            client_id=provisional_id,
        )
        self._threads.setdefault(conversation_id, []).append(message)
        self.store.upsert_preview(conversation_id, message, reset_unread=True, move_to_top=True)
        return message

    @staticmethod
    def _identities(confirmed: Message, provisional_id: str | None) -> Set[str]:
        identities = {confirmed.id}
        if confirmed.client_id:
            identities.add(confirmed.client_id)
        if provisional_id:
            identities.add(provisional_id)
        return identities

    def _match_pending(self, thread: List[Message], confirmed: Message, identities: Set[str]) -> int | None:
        own = [
            index
            for index, entry in enumerate(thread)
            if entry.sender_id == self.local_user_id and entry.status != MessageStatus.FAILED and not entry.deleted
        ]
        # a copy already bound to the server id wins over its provisional twin
        for index in own:
            if thread[index].id == confirmed.id:
                return index
        for index in own:
            if thread[index].id in identities:
                return index
        for index in own:
            entry = thread[index]
            if entry.is_provisional and entry.content == confirmed.content and entry.status in MessageStatus.PENDING:
                return index
        window_ms = self.config.reconcile_window_ms
        for index in own:
            entry = thread[index]
            if (
                entry.content == confirmed.content
                and entry.status in MessageStatus.PENDING
                and abs(entry.created_at_ms - confirmed.created_at_ms) < window_ms
            ):
                return index
        return None

    @staticmethod
    def _bind(entry: Message, confirmed: Message) -> None:
        if entry.is_provisional and entry.client_id is None:
            entry.client_id = entry.id
        entry.id = confirmed.id
        if confirmed.created_at_ms:
            entry.created_at_ms = confirmed.created_at_ms
        if confirmed.media is not None:
            entry.media = confirmed.media
        if confirmed.expires_at_ms is not None:
            entry.expires_at_ms = confirmed.expires_at_ms
        for user_id, read_at in confirmed.read_by.items():
            entry.read_by.setdefault(user_id, read_at)

    def _reconcile(self, confirmed: Message, provisional_id: str | None, target: str) -> Message:
        conversation_id = confirmed.conversation_id
        thread = self._threads.setdefault(conversation_id, [])
        identities = self._identities(confirmed, provisional_id)
        index = self._match_pending(thread, confirmed, identities)
        if index is None:
            existing = self.find(conversation_id, confirmed.id)
            if existing is not None:
                return existing
            logger.warning(
                "reconciliation miss in %s: appending confirmed message %s", conversation_id, confirmed.id
            )
            confirmed.status = target
            thread.append(confirmed)
            self.store.upsert_preview(conversation_id, confirmed, move_to_top=True)
            return confirmed
        entry = thread[index]
        self._bind(entry, confirmed)
        advance(entry, target)
        twins = [other for other in thread if other is not entry and other.is_provisional and other.id in identities]
        if twins:
            logger.debug("merging %d provisional copies into %s", len(twins), entry.id)
            thread[:] = [other for other in thread if not any(other is twin for twin in twins)]
        if thread[-1] is entry:
            self.store.upsert_preview(conversation_id, entry, move_to_top=True)
        elif twins:
            self._refresh_preview(conversation_id)
        return entry

    def confirm_sent(self, provisional_id: str | None, confirmed: Message) -> Message:
        """Resolve the HTTP answer of a send; the entry ends at least ``sent``."""

        return self._reconcile(confirmed, provisional_id, MessageStatus.SENT)

    def on_channel_echo(self, message: Message) -> Message:
        """Resolve the fan-out echo of a locally authored message to ``delivered``."""

        return self._reconcile(message, message.client_id, MessageStatus.DELIVERED)

    def on_inbound(self, message: Message) -> Message:
        conversation_id = message.conversation_id
        existing = self.find(conversation_id, message.id)
        if existing is not None:
            logger.debug("duplicate inbound message %s ignored", message.id)
            return existing
        message.status = None
        thread = self._threads.setdefault(conversation_id, [])
        thread.append(message)
        if self.store.is_open(conversation_id):
            message.read_by.setdefault(self.local_user_id, self._now())
            if self.channel is not None:
                self.channel.mark_read(conversation_id, [message.id])
            self.store.upsert_preview(conversation_id, message, reset_unread=True, move_to_top=True)
        else:
            self.store.upsert_preview(conversation_id, message, increment_unread=True, move_to_top=True)
        return message

    def on_read_receipt(
        self,
        conversation_id: str,
        message_ids: Iterable[str],
        reader_id: str,
        read_at_ms: int | None = None,
    ) -> int:
        read_at = read_at_ms or self._now()
        wanted = set(message_ids)
        thread = self._threads.get(conversation_id, [])
        updated = 0
        touched_tail = False
        for index, message in enumerate(thread):
            if message.id not in wanted or message.sender_id != self.local_user_id:
                continue
            if message.status not in (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ):
                continue
            message.read_by.setdefault(reader_id, read_at)
            advance(message, MessageStatus.READ)
            updated += 1
            touched_tail = touched_tail or index == len(thread) - 1
        if touched_tail:
            self.store.upsert_preview(conversation_id, thread[-1], move_to_top=False)
        return updated

    def mark_failed(self, conversation_id: str, message_id: str) -> bool:
        message = self.find(conversation_id, message_id)
        if message is None or message.status not in MessageStatus.PENDING:
            return False
        return advance(message, MessageStatus.FAILED)

    def apply_status_update(self, conversation_id: str, message_id: str, status: str) -> bool:
        message = self.find(conversation_id, message_id)
        if message is None or message.sender_id != self.local_user_id:
            return False
        try:
            return advance(message, status)
        except InvalidTransition as exc:
            logger.warning("ignoring status update: %s", exc)
            return False

    def discard(self, conversation_id: str, message_id: str) -> Message | None:
        thread = self._threads.get(conversation_id, [])
        for index, message in enumerate(thread):
            if message.id == message_id:
                del thread[index]
                self._refresh_preview(conversation_id)
                return message
        return None

    def remove_messages(self, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        wanted = set(message_ids)
        thread = self._threads.get(conversation_id)
        if not thread or not wanted:
            return []
        removed = [message.id for message in thread if message.id in wanted]
        if not removed:
            return []
        self._threads[conversation_id] = [message for message in thread if message.id not in wanted]
        self._refresh_preview(conversation_id)
        return removed

    def placeholder(self, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        """Null content but keep the entry so the thread shows a deletion marker."""

        changed = []
        for message in self._select(conversation_id, message_ids):
            message.content = DELETED_PLACEHOLDER
            message.media = None
            message.deleted = True
            changed.append(message.id)
        if changed:
            self._refresh_preview(conversation_id)
        return changed

    def strip_media(self, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        changed = []
        for message in self._select(conversation_id, message_ids):
            if message.media is None:
                continue
            message.media = None
            message.content = MEDIA_DELETED_PLACEHOLDER
            changed.append(message.id)
        if changed:
            self._refresh_preview(conversation_id)
        return changed

    def set_expiry(self, conversation_id: str, message_ids: Iterable[str], expires_at_ms: int) -> List[str]:
        changed = []
        for message in self._select(conversation_id, message_ids):
            message.expires_at_ms = expires_at_ms
            changed.append(message.id)
        return changed

    def due_for_expiry(self, now_ms: Optional[int] = None) -> Dict[str, List[str]]:
        now_ms = self._now() if now_ms is None else now_ms
        due: Dict[str, List[str]] = {}
        for conversation_id, thread in self._threads.items():
            ids = [m.id for m in thread if m.expires_at_ms is not None and m.expires_at_ms <= now_ms]
            if ids:
                due[conversation_id] = ids
        return due

    def clear(self, conversation_id: str) -> int:
        thread = self._threads.get(conversation_id, [])
        count = len(thread)
        self._threads[conversation_id] = []
        self.store.upsert_preview(conversation_id, None, move_to_top=False)
        return count

    def drop_conversation(self, conversation_id: str) -> None:
        self._threads.pop(conversation_id, None)

    def load_history(self, conversation_id: str, messages: Iterable[Message]) -> List[Message]:
        """Replace confirmed entries with a server page; provisional ones stay at the tail.

        A provisional entry whose id the page already carries as ``client_id``
        was persisted while its send was in flight; the server copy replaces it.
        """

        history = sorted(messages, key=lambda m: m.created_at_ms)
        persisted = {m.client_id for m in history if m.client_id}
        pending = [
            m for m in self._threads.get(conversation_id, []) if m.is_provisional and m.id not in persisted
        ]
        for message in history:
            if message.sender_id != self.local_user_id:
                message.status = None
            elif message.status is None:
                message.status = MessageStatus.SENT
        self._threads[conversation_id] = history + pending
        self._refresh_preview(conversation_id)
        return self.thread(conversation_id)

    def unread_remote_ids(self, conversation_id: str) -> List[str]:
        return [
            m.id
            for m in self._threads.get(conversation_id, [])
            if m.sender_id != self.local_user_id and self.local_user_id not in m.read_by and not m.is_provisional
        ]

    def mark_locally_read(self, conversation_id: str, message_ids: Iterable[str]) -> None:
        now_ms = self._now()
        for message in self._select(conversation_id, message_ids):
            message.read_by.setdefault(self.local_user_id, now_ms)

    def _select(self, conversation_id: str, message_ids: Iterable[str]) -> List[Message]:
        wanted = set(message_ids)
        return [m for m in self._threads.get(conversation_id, []) if m.id in wanted]

    def _refresh_preview(self, conversation_id: str) -> None:
        thread = self._threads.get(conversation_id, [])
        tail = thread[-1] if thread else None
        self.store.upsert_preview(conversation_id, tail, move_to_top=False)
