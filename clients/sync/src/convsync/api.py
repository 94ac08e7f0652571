"""aiohttp client for the conversation request/response API."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from .models import (
    Conversation,
    DeletionScope,
    MediaRef,
    Message,
    conversation_from_dict,
    message_from_dict,
)

REJECTION_STATUSES = frozenset({400, 403, 404, 409, 410, 422})

DELETE_PATHS: Dict[str, str] = {
    DeletionScope.FOR_ME: "/messages/delete-for-me",
    DeletionScope.FOR_EVERYONE: "/messages/delete-for-everyone",
    DeletionScope.HARD: "/messages/hard-delete",
    DeletionScope.SOFT: "/messages/soft-delete",
    DeletionScope.ADMIN: "/messages/admin-delete",
    DeletionScope.UNSENT: "/messages/unsent-delete",
}


class ApiError(Exception):
    def __init__(self, status: int, code: str, message: str) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"{status} {code}: {message}")

    @property
    def is_rejection(self) -> bool:
        return self.status in REJECTION_STATUSES


class TransportError(Exception):
    pass


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class ConversationApi:
    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Dict[str, Any] | None = None,
        params: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        url = _build_url(self.base_url, path)
        try:
            async with self._session.request(
                method,
                url,
                json=payload,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                if resp.status >= 300:
                    if not isinstance(body, dict):
                        body = {}
                    raise ApiError(
                        resp.status,
                        str(body.get("code") or "error"),
                        str(body.get("message") or body.get("error") or resp.reason or ""),
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method} {path} failed: {exc or type(exc).__name__}") from exc
        if not isinstance(body, dict):
            return {}
        return body

    @staticmethod
    def _conversation(body: Dict[str, Any]) -> Conversation:
        return conversation_from_dict(body.get("conversation"))

    async def list_conversations(self) -> List[Conversation]:
        body = await self._request("GET", "/conversations")
        return [conversation_from_dict(item) for item in body.get("conversations", [])]

    async def fetch_messages(
        self, conversation_id: str, *, limit: int = 50, before: Optional[str] = None
    ) -> List[Message]:
        params = {"limit": str(limit)}
        if before:
            params["before"] = before
        body = await self._request("GET", f"/conversations/{conversation_id}/messages", params=params)
        return [message_from_dict(item, conversation_id=conversation_id) for item in body.get("messages", [])]

    async def get_or_create_direct(self, participant_id: str) -> Conversation:
        body = await self._request("POST", "/conversations", payload={"participant_id": participant_id})
        return self._conversation(body)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        *,
        media: MediaRef | None = None,
        client_id: str | None = None,
    ) -> Message:
        payload: Dict[str, Any] = {"content": content, "media": media.to_dict() if media is not None else None}
        if client_id is not None:
            payload["client_id"] = client_id
        body = await self._request("POST", f"/conversations/{conversation_id}/messages", payload=payload)
        return message_from_dict(body.get("message"), conversation_id=conversation_id)

    async def create_group(self, participants: Iterable[str], name: str, description: str = "") -> Conversation:
        payload = {"participants": list(participants), "name": name, "description": description}
        body = await self._request("POST", "/conversations/group", payload=payload)
        return self._conversation(body)

    async def add_members(self, conversation_id: str, member_ids: Iterable[str]) -> Conversation:
        body = await self._request(
            "POST", f"/conversations/{conversation_id}/members", payload={"member_ids": list(member_ids)}
        )
        return self._conversation(body)

    async def remove_member(self, conversation_id: str, member_id: str) -> Conversation | None:
        body = await self._request("DELETE", f"/conversations/{conversation_id}/members/{member_id}")
        if not body.get("conversation"):
            return None
        return self._conversation(body)

    async def promote_admin(self, conversation_id: str, user_id: str) -> Conversation:
        body = await self._request("POST", f"/conversations/{conversation_id}/admins", payload={"user_id": user_id})
        return self._conversation(body)

    async def demote_admin(self, conversation_id: str, user_id: str) -> Conversation:
        body = await self._request("DELETE", f"/conversations/{conversation_id}/admins/{user_id}")
        return self._conversation(body)

    async def delete_messages(self, scope: str, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        path = DELETE_PATHS.get(scope)
        if path is None:
            raise ValueError(f"scope {scope} has no remote endpoint")
        ids = list(message_ids)
        body = await self._request("POST", path, payload={"conversation_id": conversation_id, "message_ids": ids})
        return [str(item) for item in body.get("message_ids", ids)]

    async def set_auto_delete(
        self, conversation_id: str, message_ids: Iterable[str], duration: str
    ) -> int | None:
        payload = {"conversation_id": conversation_id, "message_ids": list(message_ids), "duration": duration}
        body = await self._request("POST", "/messages/set-auto-delete", payload=payload)
        expires_at = body.get("expires_at")
        return int(expires_at) if isinstance(expires_at, (int, float)) else None

    async def delete_media(self, conversation_id: str, message_ids: Iterable[str]) -> List[str]:
        ids = list(message_ids)
        body = await self._request(
            "POST", "/messages/media-delete", payload={"conversation_id": conversation_id, "message_ids": ids}
        )
        return [str(item) for item in body.get("message_ids", ids)]

    async def clear_chat(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/messages/conversation/{conversation_id}/clear")

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/messages/conversation/{conversation_id}")
