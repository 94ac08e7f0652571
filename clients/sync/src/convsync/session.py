from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Set

from .api import ApiError, ConversationApi, TransportError
from .channel import EventChannel, TypingSignal
from .config import SyncConfig
from .deletion import AutoExpirySweeper, DeletionCoordinator, DeletionRejected, DeletionRequest
from .events import (
    ChatCleared,
    ConversationDeleted,
    GroupCreated,
    GroupUpdated,
    InboundEvent,
    MediaDeleted,
    MessageReceived,
    MessagesDeleted,
    ReadReceipt,
    RemovedFromGroup,
    StatusUpdate,
    TypingChanged,
    UnknownEvent,
)
from .membership import MembershipManager, MembershipRejected
from .models import Conversation, MediaRef, Message, MessageStatus, _now_ms
from .render import RenderState, render
from .store import ConversationStore
from .tracker import DeliveryTracker

logger = logging.getLogger(__name__)


class SyncSession:
    """One signed-in client: wires the store, tracker and coordinators to
    the shared channel and the request/response API.

    All mutations run on the event loop thread. Network calls are the only
    suspension points, so each state change is applied in one synchronous
    step after its request completes.
    """

    def __init__(
        self,
        local_user_id: str,
        api: ConversationApi,
        channel: EventChannel,
        *,
        config: SyncConfig | None = None,
        now_func=_now_ms,
    ) -> None:
        self.local_user_id = local_user_id
        self.api = api
        self.channel = channel
        self.config = config or SyncConfig()
        self._now = now_func
        self.store = ConversationStore(local_user_id, channel, now_func=now_func)
        self.tracker = DeliveryTracker(local_user_id, self.store, channel, config=self.config, now_func=now_func)
        self.deletion = DeletionCoordinator(
            local_user_id, self.store, self.tracker, api, config=self.config, now_func=now_func
        )
        self.membership = MembershipManager(local_user_id, self.store, api)
        self.typing_signal = TypingSignal(channel, self.config.typing_debounce_s)
        self.sweeper = AutoExpirySweeper(self.deletion, self.config.expiry_sweep_interval_s)
        self.notices: List[str] = []
        self._remote_typing: Set[str] = set()
        self._handler = None
        self._lookups: Dict[str, asyncio.Task] = {}

    # lifecycle

    async def start(self) -> List[Conversation]:
        if self._handler is None:
            self._handler = self.channel.subscribe(self.dispatch)
        self.channel.start()
        conversations = await self.api.list_conversations()
        self.store.load(conversations)
        self.sweeper.start()
        return self.store.list_ordered()

    async def stop(self) -> None:
        self.typing_signal.stop()
        await self.sweeper.stop()
        lookups = list(self._lookups.values())
        for task in lookups:
            task.cancel()
        await asyncio.gather(*lookups, return_exceptions=True)
        if self._handler is not None:
            self.channel.unsubscribe(self._handler)
            self._handler = None

    def notify(self, text: str) -> None:
        self.notices.append(text)
        overflow = len(self.notices) - self.config.max_notices
        if overflow > 0:
            del self.notices[:overflow]

    # navigation

    def _reset_open_view(self) -> None:
        self.typing_signal.stop()
        self._remote_typing.clear()

    async def open_conversation(self, conversation_id: str) -> bool:
        if conversation_id not in self.store:
            logger.debug("open of unknown conversation %s ignored", conversation_id)
            return False
        if self.store.open_conversation_id != conversation_id:
            self._reset_open_view()
        self.store.set_open(conversation_id)
        try:
            history = await self.api.fetch_messages(conversation_id, limit=self.config.history_page_size)
        except (ApiError, TransportError) as exc:
            logger.warning("history for %s not loaded: %s", conversation_id, exc)
            self.notify("Could not load messages")
        else:
            if conversation_id in self.store:
                self.tracker.load_history(conversation_id, history)
        if self.store.is_open(conversation_id):
            self._mark_all_read(conversation_id)
        return True

    def close_conversation(self) -> None:
        self._reset_open_view()
        self.store.set_open(None)

    def _mark_all_read(self, conversation_id: str) -> None:
        unread_ids = self.tracker.unread_remote_ids(conversation_id)
        if unread_ids:
            self.tracker.mark_locally_read(conversation_id, unread_ids)
            self.channel.mark_read(conversation_id, unread_ids)
        conversation = self.store.get(conversation_id)
        if conversation is not None:
            self.store.upsert_preview(
                conversation_id, conversation.last_message, reset_unread=True, move_to_top=False
            )

    # sending

    async def send_message(self, conversation_id: str, content: str, *, media: MediaRef | None = None) -> Message:
        if conversation_id not in self.store:
            raise KeyError(conversation_id)
        if self.typing_signal.active_conversation == conversation_id:
            self.typing_signal.stop()
        provisional = self.tracker.create_provisional(conversation_id, content, media=media)
        try:
            confirmed = await self.api.send_message(
                conversation_id, content, media=media, client_id=provisional.id
            )
        except (ApiError, TransportError) as exc:
            logger.error("send to %s failed: %s", conversation_id, exc)
            self.tracker.mark_failed(conversation_id, provisional.id)
            self.notify("Message not sent")
            return provisional
        return self.tracker.confirm_sent(provisional.id, confirmed)

    async def retry(self, conversation_id: str, message_id: str) -> Message | None:
        failed = self.tracker.find(conversation_id, message_id)
        if failed is None or failed.status != MessageStatus.FAILED:
            return None
        self.tracker.discard(conversation_id, message_id)
        return await self.send_message(conversation_id, failed.content, media=failed.media)

    def typing(self, conversation_id: str) -> None:
        self.typing_signal.keystroke(conversation_id)

    # deletion

    async def delete_messages(self, conversation_id: str, message_ids: Iterable[str], scope: str) -> List[str]:
        request = DeletionRequest(
            scope=scope,
            conversation_id=conversation_id,
            message_ids=tuple(message_ids),
            actor_id=self.local_user_id,
        )
        try:
            return await self.deletion.delete(request)
        except DeletionRejected as exc:
            self.notify(f"Delete failed: {exc.reason}")
            raise

    async def set_auto_delete(
        self, conversation_id: str, message_ids: Iterable[str], duration: str | int | float
    ) -> int | None:
        try:
            return await self.deletion.set_auto_delete(conversation_id, message_ids, duration)
        except DeletionRejected as exc:
            self.notify(f"Auto-delete not set: {exc.reason}")
            raise

    async def delete_media(self, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        try:
            return await self.deletion.delete_media(conversation_id, message_ids)
        except DeletionRejected as exc:
            self.notify(f"Media not deleted: {exc.reason}")
            raise

    def expire(self) -> Dict[str, List[str]]:
        return self.deletion.expire_due()

    async def clear_chat(self, conversation_id: str) -> None:
        """Ask the server to clear this chat for us; the local list empties on the echo event."""

        try:
            await self.api.clear_chat(conversation_id)
        except (ApiError, TransportError) as exc:
            logger.warning("clear of %s failed: %s", conversation_id, exc)
            self.notify("Chat not cleared")
            raise

    async def delete_conversation(self, conversation_id: str) -> bool:
        try:
            await self.api.delete_conversation(conversation_id)
        except (ApiError, TransportError) as exc:
            logger.warning("delete of conversation %s failed: %s", conversation_id, exc)
            self.notify("Conversation not deleted")
            raise
        return self._drop_conversation(conversation_id)

    def _drop_conversation(self, conversation_id: str) -> bool:
        closed = self.store.apply_deletion_of_conversation(conversation_id)
        self.tracker.drop_conversation(conversation_id)
        if closed:
            self._reset_open_view()
        return closed

    # conversations and membership

    async def start_direct(self, participant_id: str) -> Conversation:
        conversation = await self.api.get_or_create_direct(participant_id)
        self.store.upsert_conversation(conversation)
        return self.store.get(conversation.id)

    async def create_group(self, participants: Iterable[str], name: str, description: str = "") -> Conversation:
        conversation = await self.api.create_group(participants, name, description)
        self.store.upsert_conversation(conversation)
        return self.store.get(conversation.id)

    def _discover(self, conversation_id: str) -> None:
        if conversation_id in self._lookups:
            return
        task = asyncio.create_task(self._load_unknown_conversation(conversation_id))
        self._lookups[conversation_id] = task
        task.add_done_callback(lambda _task: self._lookups.pop(conversation_id, None))

    async def _load_unknown_conversation(self, conversation_id: str) -> None:
        """Refresh the list after a message arrives for a conversation we do not hold yet."""

        try:
            conversations = await self.api.list_conversations()
        except (ApiError, TransportError) as exc:
            logger.warning("conversation %s not loaded: %s", conversation_id, exc)
            return
        for conversation in conversations:
            self.store.upsert_conversation(conversation)
        conversation = self.store.get(conversation_id)
        if conversation is None:
            logger.warning("message for unknown conversation %s kept without a list entry", conversation_id)
            return
        thread = self.tracker.thread(conversation_id)
        if not thread:
            return
        # the server count already covers everything up to its own last message
        known = [m.id for m in thread]
        last = conversation.last_message
        start = known.index(last.id) + 1 if last is not None and last.id in known else 0
        for message in thread[start:]:
            self.store.upsert_preview(
                conversation_id, message, increment_unread=message.sender_id != self.local_user_id, move_to_top=True
            )

    async def _membership(self, call):
        try:
            return await call(self.membership)
        except MembershipRejected as exc:
            self.notify(f"Group change failed: {exc.reason}")
            raise

    async def add_members(self, conversation_id: str, member_ids: Iterable[str]) -> Conversation:
        ids = list(member_ids)
        return await self._membership(lambda manager: manager.add_members(conversation_id, ids))

    async def remove_member(self, conversation_id: str, member_id: str) -> bool:
        closed = await self._membership(lambda manager: manager.remove_member(conversation_id, member_id))
        if member_id == self.local_user_id:
            self._after_local_removal(conversation_id, closed)
        return closed

    async def leave(self, conversation_id: str) -> bool:
        closed = await self._membership(lambda manager: manager.leave(conversation_id))
        self._after_local_removal(conversation_id, closed)
        return closed

    async def promote_admin(self, conversation_id: str, user_id: str) -> Conversation:
        return await self._membership(lambda manager: manager.promote_admin(conversation_id, user_id))

    async def demote_admin(self, conversation_id: str, user_id: str) -> Conversation:
        return await self._membership(lambda manager: manager.demote_admin(conversation_id, user_id))

    def _after_local_removal(self, conversation_id: str, closed: bool) -> None:
        self.tracker.drop_conversation(conversation_id)
        if closed:
            self._reset_open_view()

    # inbound

    def dispatch(self, event: InboundEvent) -> None:
        """Route one inbound event to the component that owns its effect."""

        local = self.local_user_id
        if isinstance(event, MessageReceived):
            message = event.message
            self._remote_typing.discard(message.sender_id)
            if message.sender_id == local:
                self.tracker.on_channel_echo(message)
            else:
                self.tracker.on_inbound(message)
            if message.conversation_id not in self.store:
                self._discover(message.conversation_id)
        elif isinstance(event, TypingChanged):
            if event.user_id == local or not self.store.is_open(event.conversation_id):
                return
            if event.active:
                self._remote_typing.add(event.user_id)
            else:
                self._remote_typing.discard(event.user_id)
        elif isinstance(event, ReadReceipt):
            if event.reader_id == local:
                self.tracker.mark_locally_read(event.conversation_id, event.message_ids)
                if self.store.is_open(event.conversation_id):
                    self.store.reset_unread(event.conversation_id)
                return
            self.tracker.on_read_receipt(event.conversation_id, event.message_ids, event.reader_id, event.read_at_ms)
        elif isinstance(event, MessagesDeleted):
            self.deletion.apply_remote(event.conversation_id, event.message_ids, event.scope, event.deleted_by)
        elif isinstance(event, MediaDeleted):
            self.tracker.strip_media(event.conversation_id, event.message_ids)
        elif isinstance(event, ChatCleared):
            if event.cleared_by != local:
                logger.warning("ignoring chat clear in %s issued by %s", event.conversation_id, event.cleared_by)
                return
            self.tracker.clear(event.conversation_id)
        elif isinstance(event, ConversationDeleted):
            self._drop_conversation(event.conversation_id)
        elif isinstance(event, GroupCreated):
            self.store.upsert_conversation(event.conversation)
        elif isinstance(event, GroupUpdated):
            conversation = event.conversation
            if local not in conversation.participants:
                self._drop_conversation(conversation.id)
                return
            self.store.upsert_conversation(conversation)
        elif isinstance(event, RemovedFromGroup):
            closed = self.store.apply_membership_change(event.conversation_id, removed=[local])
            self._after_local_removal(event.conversation_id, closed)
        elif isinstance(event, StatusUpdate):
            self.tracker.apply_status_update(event.conversation_id, event.message_id, event.status)
        elif isinstance(event, UnknownEvent):
            logger.warning("unknown event %s ignored", event.name)

    # presentation

    def typing_users(self) -> List[str]:
        return sorted(self._remote_typing)

    def render(self) -> RenderState:
        return render(self.store, self.tracker, typing=self._remote_typing, notices=self.notices)
