from __future__ import annotations

import copy
import logging
from typing import Iterable

from .api import ApiError, ConversationApi, TransportError
from .models import Conversation
from .store import ConversationStore

logger = logging.getLogger(__name__)


class MembershipRejected(Exception):
    def __init__(self, action: str, reason: str) -> None:
        self.action = action
        self.reason = reason
        super().__init__(f"{action} rejected: {reason}")


class MembershipManager:
    """Admin-gated group membership changes with optimistic apply and revert.

    The local admin check only keeps the UI responsive; the server decides.
    A rejected or failed request restores the conversation as it was before
    the optimistic change.
    """

    def __init__(self, local_user_id: str, store: ConversationStore, api: ConversationApi | None = None) -> None:
        self.local_user_id = local_user_id
        self.store = store
        self.api = api

    def _require_group(self, conversation_id: str, action: str) -> Conversation:
        conversation = self.store.get(conversation_id)
        if conversation is None or conversation.group is None:
            raise MembershipRejected(action, "not a group conversation")
        return conversation

    def _require_admin(self, conversation: Conversation, action: str) -> None:
        if conversation.group is None or not conversation.group.is_admin(self.local_user_id):
            raise MembershipRejected(action, "only group admins can do this")

    def _require_primary_admin(self, conversation: Conversation, action: str) -> None:
        if conversation.group is None or conversation.group.admin_id != self.local_user_id:
            raise MembershipRejected(action, "only the primary admin can do this")

    def _restore(self, snapshot: Conversation, was_open: bool) -> None:
        self.store.upsert_conversation(snapshot)
        if was_open and self.store.open_conversation_id is None:
            self.store.set_open(snapshot.id)

    async def _commit(self, action: str, snapshot: Conversation, was_open: bool, call) -> Conversation | None:
        if self.api is None:
            self._restore(snapshot, was_open)
            raise MembershipRejected(action, "no server connection")
        try:
            updated = await call(self.api)
        except (ApiError, TransportError) as exc:
            logger.warning("%s in %s failed, reverting: %s", action, snapshot.id, exc)
            self._restore(snapshot, was_open)
            reason = exc.message if isinstance(exc, ApiError) else str(exc)
            raise MembershipRejected(action, reason) from exc
        if updated is not None and updated.id in self.store:
            self.store.upsert_conversation(updated)
        return updated

    async def add_members(self, conversation_id: str, member_ids: Iterable[str]) -> Conversation:
        conversation = self._require_group(conversation_id, "add_members")
        self._require_admin(conversation, "add_members")
        new_members = [user_id for user_id in dict.fromkeys(member_ids) if user_id not in conversation.participants]
        if not new_members:
            return conversation
        snapshot = copy.deepcopy(conversation)
        self.store.apply_membership_change(conversation_id, added=new_members)
        await self._commit(
            "add_members",
            snapshot,
            False,
            lambda api: api.add_members(conversation_id, new_members),
        )
        return self.store.get(conversation_id)

    async def remove_member(self, conversation_id: str, member_id: str) -> bool:
        """Remove ``member_id``; removing yourself is ``leave``.

        Returns True when the open thread was closed by the change.
        """

        if member_id == self.local_user_id:
            return await self.leave(conversation_id)
        conversation = self._require_group(conversation_id, "remove_member")
        self._require_admin(conversation, "remove_member")
        if member_id == conversation.group.admin_id:
            raise MembershipRejected("remove_member", "the primary admin cannot be removed")
        if member_id not in conversation.participants:
            return False
        snapshot = copy.deepcopy(conversation)
        self.store.apply_membership_change(conversation_id, removed=[member_id])
        await self._commit(
            "remove_member",
            snapshot,
            False,
            lambda api: api.remove_member(conversation_id, member_id),
        )
        return False

    async def leave(self, conversation_id: str) -> bool:
        conversation = self._require_group(conversation_id, "leave")
        if conversation.group.admin_id == self.local_user_id:
            raise MembershipRejected("leave", "the primary admin cannot leave the group")
        snapshot = copy.deepcopy(conversation)
        was_open = self.store.is_open(conversation_id)
        closed = self.store.apply_membership_change(conversation_id, removed=[self.local_user_id])
        await self._commit(
            "leave",
            snapshot,
            was_open,
            lambda api: api.remove_member(conversation_id, self.local_user_id),
        )
        return closed

    async def promote_admin(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self._require_group(conversation_id, "promote_admin")
        self._require_admin(conversation, "promote_admin")
        if user_id not in conversation.participants:
            raise MembershipRejected("promote_admin", "user is not a member of the group")
        if conversation.group.is_admin(user_id):
            return conversation
        snapshot = copy.deepcopy(conversation)
        self.store.apply_membership_change(conversation_id, promoted=[user_id])
        await self._commit(
            "promote_admin",
            snapshot,
            False,
            lambda api: api.promote_admin(conversation_id, user_id),
        )
        return self.store.get(conversation_id)

    async def demote_admin(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self._require_group(conversation_id, "demote_admin")
        self._require_primary_admin(conversation, "demote_admin")
        if user_id == conversation.group.admin_id:
            raise MembershipRejected("demote_admin", "the primary admin cannot be demoted")
        if user_id not in conversation.group.admins:
            return conversation
        snapshot = copy.deepcopy(conversation)
        self.store.apply_membership_change(conversation_id, demoted=[user_id])
        await self._commit(
            "demote_admin",
            snapshot,
            False,
            lambda api: api.demote_admin(conversation_id, user_id),
        )
        return self.store.get(conversation_id)
