"""Conversation synchronization engine for direct and group messaging."""

from .api import ApiError, ConversationApi, TransportError
from .channel import EventChannel, TypingSignal, WebSocketChannel
from .config import SyncConfig, load_sync_config_from_env
from .deletion import AutoExpirySweeper, DeletionCoordinator, DeletionRejected, DeletionRequest, ScopePolicy
from .membership import MembershipManager, MembershipRejected
from .models import Conversation, DeletionScope, GroupInfo, MediaRef, Message, MessageStatus
from .render import RenderState, render
from .session import SyncSession
from .store import ConversationStore
from .tracker import DeliveryTracker, InvalidTransition

__all__ = [
    "ApiError",
    "AutoExpirySweeper",
    "Conversation",
    "ConversationApi",
    "ConversationStore",
    "DeletionCoordinator",
    "DeletionRejected",
    "DeletionRequest",
    "DeletionScope",
    "DeliveryTracker",
    "EventChannel",
    "GroupInfo",
    "InvalidTransition",
    "MediaRef",
    "MembershipManager",
    "MembershipRejected",
    "Message",
    "MessageStatus",
    "RenderState",
    "ScopePolicy",
    "SyncConfig",
    "SyncSession",
    "TransportError",
    "TypingSignal",
    "WebSocketChannel",
    "load_sync_config_from_env",
    "render",
]
