from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Set

import aiohttp

from .events import (
    InboundEvent,
    join_conversations_frame,
    leave_conversations_frame,
    mark_read_frame,
    parse_event,
    start_typing_frame,
    stop_typing_frame,
)

logger = logging.getLogger(__name__)

Handler = Callable[[InboundEvent], None]


class EventChannel:
    """Process-wide duplex channel shared by every conversation.

    Conversations subscribe to logical rooms; inbound frames are parsed into
    typed events and handed to the registered handlers in arrival order.
    """

    def __init__(self) -> None:
        self.rooms: Set[str] = set()
        self._handlers: List[Handler] = []

    def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def subscribe(self, handler: Handler) -> Handler:
        self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Handler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            return

    def emit(self, frame: Dict[str, Any]) -> None:
        raise NotImplementedError

    def join_rooms(self, conversation_ids: Iterable[str]) -> List[str]:
        new_rooms = sorted(set(conversation_ids) - self.rooms)
        if not new_rooms:
            return []
        self.rooms.update(new_rooms)
        logger.info("joining %d conversation room(s)", len(new_rooms))
        self.emit(join_conversations_frame(new_rooms))
        return new_rooms

    def leave_rooms(self, conversation_ids: Iterable[str]) -> List[str]:
        joined = sorted(set(conversation_ids) & self.rooms)
        if not joined:
            return []
        self.rooms.difference_update(joined)
        self.emit(leave_conversations_frame(joined))
        return joined

    def start_typing(self, conversation_id: str) -> None:
        self.emit(start_typing_frame(conversation_id))

    def stop_typing(self, conversation_id: str) -> None:
        self.emit(stop_typing_frame(conversation_id))

    def mark_read(self, conversation_id: str, message_ids: Iterable[str]) -> None:
        ids = list(message_ids)
        if not ids:
            return
        self.emit(mark_read_frame(conversation_id, ids))

    def deliver(self, frame: Any) -> InboundEvent | None:
        try:
            event = parse_event(frame)
        except ValueError as exc:
            logger.warning("dropping malformed frame: %s", exc)
            return None
        for handler in list(self._handlers):
            handler(event)
        return event


class WebSocketChannel(EventChannel):
    """aiohttp websocket transport with an outbound queue and reconnect loop."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        session: aiohttp.ClientSession | None = None,
        heartbeat_s: float = 20.0,
        reconnect: bool = True,
        max_backoff_s: float = 5.0,
        queue_maxsize: int = 1000,
    ) -> None:
        super().__init__()
        self.url = url
        self.token = token
        self.heartbeat_s = heartbeat_s
        self.reconnect = reconnect
        self.max_backoff_s = max_backoff_s
        self.connected = asyncio.Event()
        self._session = session
        self._owns_session = session is None
        self._outbound: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_maxsize)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._closing = False

    def emit(self, frame: Dict[str, Any]) -> None:
        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full, dropping %s intent", frame.get("t"))

    def start(self) -> None:
        if self._task is None:
            self._closing = False
            self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self.connected.wait(), timeout)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    async def _run(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        backoff_s = 0.5
        while not self._closing:
            try:
                async with self._session.ws_connect(self.url, headers=self._headers(), heartbeat=self.heartbeat_s) as ws:
                    backoff_s = 0.5
                    await self._serve(ws)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("event channel connection failed: %s", exc)
            if self._closing or not self.reconnect:
                break
            await asyncio.sleep(backoff_s)
            backoff_s = min(backoff_s * 2, self.max_backoff_s)

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws
        logger.info("event channel connected to %s", self.url)
        if self.rooms:
            await ws.send_json(join_conversations_frame(sorted(self.rooms)))
        writer_task = asyncio.create_task(self._writer(ws))
        self.connected.set()
        try:
            await self._reader(ws)
        finally:
            self.connected.clear()
            writer_task.cancel()
            await asyncio.gather(writer_task, return_exceptions=True)
            self._ws = None
            logger.info("event channel disconnected")

    async def _writer(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("event channel write failed: %s", exc)

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    logger.warning("dropping non-JSON frame")
                    continue
                if isinstance(frame, dict) and frame.get("t") == "ping":
                    await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                try:
                    self.deliver(frame)
                except Exception:
                    logger.exception("event handler failed for %s", frame.get("t") if isinstance(frame, dict) else frame)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("event channel error: %s", ws.exception())
                break


class TypingSignal:
    """Debounced start/stop typing intents for one composer.

    A keystroke emits ``start_typing`` once per conversation and re-arms a
    timer; when it fires ``stop_typing`` is emitted. Typing in a different
    conversation stops the previous one first.
    """

    def __init__(self, channel: EventChannel, debounce_s: float = 1.0) -> None:
        self.channel = channel
        self.debounce_s = debounce_s
        self._active: str | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def active_conversation(self) -> str | None:
        return self._active

    def keystroke(self, conversation_id: str) -> None:
        if self._active is not None and self._active != conversation_id:
            self.stop()
        if self._active is None:
            self._active = conversation_id
            self.channel.start_typing(conversation_id)
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().call_later(self.debounce_s, self.stop)

    def stop(self) -> None:
        self._cancel_timer()
        if self._active is None:
            return
        conversation_id = self._active
        self._active = None
        self.channel.stop_typing(conversation_id)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
