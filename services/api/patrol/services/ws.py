from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any

from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)

ConnectionHook = Callable[[str], None]


class WebSocketManager:
    """Topic fan-out and guard connection registry for the WebSocket transport.

    Implements the ``publish(topic, event)`` capability the patrol services call.
    Connection bookkeeping stays here; the services only emit events.
    ``publish`` runs on threadpool workers, so the registries are guarded by a
    threading lock and never iterated outside it.
    """

    def __init__(self) -> None:
        self._topics: dict[str, set[WebSocket]] = {}
        self._guards: dict[str, set[WebSocket]] = {}
        self._owners: dict[WebSocket, str] = {}
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._on_connect: list[ConnectionHook] = []
        self._on_disconnect: list[ConnectionHook] = []

    def on_connect(self, hook: ConnectionHook) -> None:
        self._on_connect.append(hook)

    def on_disconnect(self, hook: ConnectionHook) -> None:
        self._on_disconnect.append(hook)

    async def connect(self, websocket: WebSocket, *, guard_id: str, topics: list[str]) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        with self._lock:
            for topic in topics:
                self._topics.setdefault(topic, set()).add(websocket)
            self._owners[websocket] = guard_id
            first = guard_id not in self._guards
            self._guards.setdefault(guard_id, set()).add(websocket)
        if first:
            self._fire(self._on_connect, guard_id)

    def disconnect(self, websocket: WebSocket, *, guard_id: str | None = None) -> None:
        with self._lock:
            owner = self._owners.pop(websocket, guard_id)
            for topic in list(self._topics):
                subscribers = self._topics[topic]
                subscribers.discard(websocket)
                if not subscribers:
                    self._topics.pop(topic, None)
            sockets = self._guards.get(owner) if owner is not None else None
            if sockets is None:
                return
            sockets.discard(websocket)
            last = not sockets
            if last:
                self._guards.pop(owner, None)
        if last:
            self._fire(self._on_disconnect, owner)

    def online_guards(self) -> list[str]:
        with self._lock:
            return sorted(self._guards)

    def publish(self, topic: str, event: dict[str, Any]) -> None:
        # Fire-and-forget: schedule sends on the server loop, from any thread.
        with self._lock:
            subscribers = list(self._topics.get(topic, ()))
        if not subscribers:
            return
        message = {"topic": topic, **event}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            for ws in subscribers:
                loop.create_task(self._safe_send(ws, message))
            return

        if self._loop is None or self._loop.is_closed():
            return
        for ws in subscribers:
            asyncio.run_coroutine_threadsafe(self._safe_send(ws, message), self._loop)

    async def _safe_send(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        try:
            await websocket.send_json(message)
        except Exception:  # noqa: BLE001
            logger.info("Dropping unreachable WebSocket subscriber")
            self.disconnect(websocket)

    @staticmethod
    def _fire(hooks: list[ConnectionHook], guard_id: str) -> None:
        for hook in hooks:
            try:
                hook(guard_id)
            except Exception:  # noqa: BLE001
                logger.exception("Connection hook failed for guard %s", guard_id)


ws_manager = WebSocketManager()
