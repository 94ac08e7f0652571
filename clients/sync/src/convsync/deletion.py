"""Deletion scopes dispatched through one policy table.

Every request resolves to a set of message ids in one conversation. Ids that
are no longer present locally are dropped (stale target, not an error). The
remaining set is checked for eligibility before any network call; a local or
server rejection raises ``DeletionRejected`` and leaves every message in
place, a success applies the whole set at once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .api import ApiError, ConversationApi, TransportError
from .config import SyncConfig
from .models import Conversation, DeletionScope, Message, MessageStatus, _now_ms
from .store import ConversationStore
from .tracker import DeliveryTracker

logger = logging.getLogger(__name__)

EFFECT_REMOVE = "remove"
EFFECT_PLACEHOLDER = "placeholder"

AUTO_DELETE_DURATIONS_HOURS: Dict[str, int] = {
    "24h": 24,
    "7d": 7 * 24,
    "90d": 90 * 24,
}


class DeletionRejected(Exception):
    def __init__(self, scope: str, reason: str) -> None:
        self.scope = scope
        self.reason = reason
        super().__init__(f"{scope} deletion rejected: {reason}")


@dataclass(frozen=True)
class DeletionRequest:
    scope: str
    conversation_id: str
    message_ids: Tuple[str, ...]
    actor_id: str


@dataclass(frozen=True)
class EligibilityContext:
    actor_id: str
    conversation: Optional[Conversation]
    now_ms: int
    window_ms: int

    @property
    def actor_is_admin(self) -> bool:
        group = self.conversation.group if self.conversation is not None else None
        return group is not None and group.is_admin(self.actor_id)


Eligibility = Callable[[EligibilityContext, Message], Optional[str]]


@dataclass(frozen=True)
class ScopePolicy:
    scope: str
    eligibility: Eligibility
    remote: bool
    broadcast: bool
    effect: str = EFFECT_REMOVE


def _confirmed(message: Message) -> Optional[str]:
    if message.is_provisional:
        return "message has not reached the server yet"
    return None


def _any_participant(ctx: EligibilityContext, message: Message) -> Optional[str]:
    return _confirmed(message)


def _owner_within_window(ctx: EligibilityContext, message: Message) -> Optional[str]:
    if message.sender_id != ctx.actor_id:
        return "only the sender can delete for everyone"
    if ctx.now_ms - message.created_at_ms > ctx.window_ms:
        return "delete-for-everyone window has passed"
    return _confirmed(message)


def _group_admin(ctx: EligibilityContext, message: Message) -> Optional[str]:
    if ctx.conversation is None or not ctx.conversation.is_group:
        return "admin delete is only available in group conversations"
    if not ctx.actor_is_admin:
        return "only group admins can delete any message"
    return _confirmed(message)


def _owner_or_admin(ctx: EligibilityContext, message: Message) -> Optional[str]:
    if message.sender_id != ctx.actor_id and not ctx.actor_is_admin:
        return "only the sender or a group admin can do this"
    return _confirmed(message)


def _owner(ctx: EligibilityContext, message: Message) -> Optional[str]:
    if message.sender_id != ctx.actor_id:
        return "only the sender can do this"
    return _confirmed(message)


def _own_unsent(ctx: EligibilityContext, message: Message) -> Optional[str]:
    if message.sender_id != ctx.actor_id:
        return "only the sender can discard unsent messages"
    if message.status not in (MessageStatus.SENDING, MessageStatus.FAILED):
        return "message was already sent"
    return None


POLICIES: Dict[str, ScopePolicy] = {
    DeletionScope.FOR_ME: ScopePolicy(DeletionScope.FOR_ME, _any_participant, remote=True, broadcast=False),
    DeletionScope.FOR_EVERYONE: ScopePolicy(
        DeletionScope.FOR_EVERYONE, _owner_within_window, remote=True, broadcast=True
    ),
    DeletionScope.ADMIN: ScopePolicy(DeletionScope.ADMIN, _group_admin, remote=True, broadcast=True),
    DeletionScope.HARD: ScopePolicy(DeletionScope.HARD, _owner_or_admin, remote=True, broadcast=True),
    DeletionScope.SOFT: ScopePolicy(
        DeletionScope.SOFT, _owner, remote=True, broadcast=True, effect=EFFECT_PLACEHOLDER
    ),
    DeletionScope.UNSENT: ScopePolicy(DeletionScope.UNSENT, _own_unsent, remote=True, broadcast=False),
}

# Not caller-selectable: only the expiry sweep removes scheduled messages.
EXPIRY_POLICY = ScopePolicy(DeletionScope.AUTO_EXPIRY, _any_participant, remote=False, broadcast=True)


def parse_auto_delete_duration(duration: str | int | float) -> float:
    """Return the duration in hours for ``24h``/``7d``/``90d`` or a number of hours."""

    if isinstance(duration, str) and duration in AUTO_DELETE_DURATIONS_HOURS:
        return AUTO_DELETE_DURATIONS_HOURS[duration]
    try:
        hours = float(duration)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"unsupported auto-delete duration: {duration!r}") from exc
    if hours <= 0:
        raise ValueError("auto-delete duration must be positive")
    return hours


class DeletionCoordinator:
    def __init__(
        self,
        local_user_id: str,
        store: ConversationStore,
        tracker: DeliveryTracker,
        api: ConversationApi | None = None,
        *,
        config: SyncConfig | None = None,
        now_func=_now_ms,
    ) -> None:
        self.local_user_id = local_user_id
        self.store = store
        self.tracker = tracker
        self.api = api
        self.config = config or SyncConfig()
        self._now = now_func

    def _context(self, actor_id: str, conversation_id: str) -> EligibilityContext:
        return EligibilityContext(
            actor_id=actor_id,
            conversation=self.store.get(conversation_id),
            now_ms=self._now(),
            window_ms=self.config.delete_for_everyone_window_ms,
        )

    def _targets(self, conversation_id: str, message_ids: Iterable[str]) -> List[Message]:
        wanted = set(message_ids)
        return [m for m in self.tracker.thread(conversation_id) if m.id in wanted]

    @staticmethod
    def _policy(scope: str) -> ScopePolicy:
        if scope == DeletionScope.AUTO_EXPIRY:
            raise DeletionRejected(scope, "expiry is scheduled with set_auto_delete")
        policy = POLICIES.get(scope)
        if policy is None:
            raise ValueError(f"unknown deletion scope: {scope}")
        return policy

    def check(self, request: DeletionRequest) -> List[Message]:
        """Resolve live targets and run the scope's eligibility; raises on the first violation."""

        policy = self._policy(request.scope)
        targets = self._targets(request.conversation_id, request.message_ids)
        ctx = self._context(request.actor_id, request.conversation_id)
        for message in targets:
            reason = policy.eligibility(ctx, message)
            if reason is not None:
                raise DeletionRejected(request.scope, reason)
        return targets

    async def _call_remote(self, scope: str, call) -> None:
        if self.api is None:
            raise DeletionRejected(scope, "no server connection")
        try:
            await call(self.api)
        except ApiError as exc:
            logger.warning("server rejected %s deletion: %s", scope, exc)
            raise DeletionRejected(scope, exc.message or exc.code) from exc
        except TransportError as exc:
            logger.warning("%s deletion did not reach the server: %s", scope, exc)
            raise DeletionRejected(scope, str(exc)) from exc

    async def delete(self, request: DeletionRequest) -> List[str]:
        policy = self._policy(request.scope)
        targets = self.check(request)
        if not targets:
            logger.debug("%s deletion in %s has no live targets", request.scope, request.conversation_id)
            return []
        ids = [m.id for m in targets]
        remote_ids = [m.id for m in targets if not m.is_provisional]
        if policy.remote and remote_ids:
            await self._call_remote(
                request.scope,
                lambda api: api.delete_messages(request.scope, request.conversation_id, remote_ids),
            )
        return self._apply(policy, request.conversation_id, ids)

    def _apply(self, policy: ScopePolicy, conversation_id: str, message_ids: List[str]) -> List[str]:
        if policy.effect == EFFECT_PLACEHOLDER:
            return self.tracker.placeholder(conversation_id, message_ids)
        return self.tracker.remove_messages(conversation_id, message_ids)

    def apply_remote(
        self,
        conversation_id: str,
        message_ids: Iterable[str],
        scope: str | None,
        deleted_by: str | None = None,
    ) -> List[str]:
        """Apply a deletion another participant (or the server) already performed.

        Scopes that are never broadcast only reach this client as the echo of
        the local user's own action; any other actor is ignored.
        """

        policy = POLICIES.get(scope) if scope is not None else None
        if policy is not None and not policy.broadcast and deleted_by != self.local_user_id:
            logger.warning("ignoring %s deletion in %s issued by %s", scope, conversation_id, deleted_by)
            return []
        if policy is not None and policy.effect == EFFECT_PLACEHOLDER:
            return self.tracker.placeholder(conversation_id, message_ids)
        return self.tracker.remove_messages(conversation_id, message_ids)

    async def set_auto_delete(
        self, conversation_id: str, message_ids: Iterable[str], duration: str | int | float
    ) -> int | None:
        try:
            hours = parse_auto_delete_duration(duration)
        except ValueError as exc:
            raise DeletionRejected(DeletionScope.AUTO_EXPIRY, str(exc)) from exc
        targets = self._targets(conversation_id, message_ids)
        if not targets:
            return None
        ctx = self._context(self.local_user_id, conversation_id)
        for message in targets:
            reason = _owner(ctx, message)
            if reason is not None:
                raise DeletionRejected(DeletionScope.AUTO_EXPIRY, reason)
        ids = [m.id for m in targets]
        result: Dict[str, int | None] = {}

        async def _remote(api: ConversationApi) -> None:
            result["expires_at"] = await api.set_auto_delete(conversation_id, ids, str(duration))

        await self._call_remote(DeletionScope.AUTO_EXPIRY, _remote)
        expires_at = result.get("expires_at") or int(ctx.now_ms + hours * 3600 * 1000)
        self.tracker.set_expiry(conversation_id, ids, expires_at)
        return expires_at

    async def delete_media(self, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        targets = [m for m in self._targets(conversation_id, message_ids) if m.media is not None]
        if not targets:
            return []
        ctx = self._context(self.local_user_id, conversation_id)
        for message in targets:
            reason = _owner_or_admin(ctx, message)
            if reason is not None:
                raise DeletionRejected(DeletionScope.MEDIA, reason)
        ids = [m.id for m in targets]
        await self._call_remote(DeletionScope.MEDIA, lambda api: api.delete_media(conversation_id, ids))
        return self.tracker.strip_media(conversation_id, ids)

    def expire_due(self, now_ms: int | None = None) -> Dict[str, List[str]]:
        expired: Dict[str, List[str]] = {}
        for conversation_id, ids in self.tracker.due_for_expiry(now_ms).items():
            removed = self._apply(EXPIRY_POLICY, conversation_id, ids)
            if removed:
                expired[conversation_id] = removed
        return expired


class AutoExpirySweeper:
    def __init__(self, coordinator: DeletionCoordinator, interval_s: float = 1.0) -> None:
        self.coordinator = coordinator
        self.interval_s = interval_s
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sweep())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _sweep(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_s)
                try:
                    expired = self.coordinator.expire_due()
                except Exception:
                    logger.exception("auto-expiry sweep failed")
                    continue
                if expired:
                    logger.debug("expired messages in %d conversation(s)", len(expired))
        except asyncio.CancelledError:
            return
