"""
Guardian — WebSocket Connection Manager

Manages real-time WebSocket connections keyed by user id. Trip owners and
their watchers both connect here; the change-feed bridge pushes session and
alert updates, and the watcher notifier pushes emergency messages.

Provides both async methods (for WebSocket endpoints) and sync-safe methods
(for calling from request worker threads and background timers).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from fastapi import WebSocket

from guardian.common.events import RecordChangedEvent, Table

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Central hub for all active WebSocket connections."""

    def __init__(self) -> None:
        self.user_connections: Dict[str, WebSocket] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Called at startup to capture the running event loop."""
        self._loop = loop

    # ── Connection lifecycle ──────────────────────────────────────────────────

    async def connect(self, websocket: WebSocket, user_id: str) -> None:
        await websocket.accept()
        self.user_connections[user_id] = websocket
        logger.info(f"User {user_id} connected via WebSocket")

    def disconnect(self, user_id: str, websocket: Optional[WebSocket] = None) -> None:
        """Drop `user_id`'s socket; with `websocket`, only if it is still the registered one."""
        if websocket is not None and self.user_connections.get(user_id) is not websocket:
            return
        self.user_connections.pop(user_id, None)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.user_connections

    # ── Async send (for use inside async endpoint handlers) ──────────────────

    async def send_to_user(self, user_id: str, data: dict) -> None:
        ws = self.user_connections.get(user_id)
        if ws:
            try:
                await ws.send_json(data)
            except Exception as exc:
                logger.warning(f"User WS send failed ({user_id}): {exc}")
                self.disconnect(user_id, ws)

    # ── Sync-safe sends (called from worker threads) ─────────────────────────

    def send_to_user_sync(self, user_id: str, data: dict) -> bool:
        """Fire-and-forget from a sync thread. False when the user is not reachable."""
        if user_id not in self.user_connections:
            return False
        if self._loop and self._loop.is_running():
            asyncio.run_coroutine_threadsafe(self.send_to_user(user_id, data), self._loop)
            return True
        return False

    def send_to_users_sync(self, user_ids: Iterable[str], data: dict) -> List[str]:
        return [uid for uid in user_ids if self.send_to_user_sync(uid, data)]


# Global singleton shared across the entire app
ws_manager = ConnectionManager()


class ChangeFeedBridge:
    """Forwards tracking-session and alert changes to interested sockets."""

    def __init__(self, store, manager: ConnectionManager = ws_manager) -> None:
        self._store = store
        self._manager = manager

    def on_session_change(self, event: RecordChangedEvent) -> None:
        session = self._store.get_session(event.record_id)
        if session is None:
            return
        message = event.to_message()
        message["session"] = session.model_dump(mode="json")
        message["type"] = "TRACKING_SESSION_UPDATED"
        self._manager.send_to_users_sync([session.owner_id, *session.watcher_ids], message)

    def on_alert_change(self, event: RecordChangedEvent) -> None:
        # Alert feed views re-query on this signal; push to every connected client
        self._manager.send_to_users_sync(list(self._manager.user_connections), event.to_message())

    def attach(self, feed) -> list:
        return [
            feed.subscribe(Table.TRACKING_SESSIONS, self.on_session_change),
            feed.subscribe(Table.ALERTS, self.on_alert_change),
        ]
