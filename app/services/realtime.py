"""Realtime notifications to browser sessions over WebSocket."""
from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import WebSocket

log = logging.getLogger("uvicorn.error")

EVENT_CONNECTED = "connected"
EVENT_REGISTRATION_SUCCESS = "registration-success"
EVENT_REGISTRATION_FAILURE = "registration-failure"
EVENT_PAYMENT_SUCCESS = "payment-success"
EVENT_PAYMENT_FAILURE = "payment-failure"


class ConnectionManager:
    """Tracks open WebSockets by session id. The client sends its session id with the STK push."""

    def __init__(self):
        self._connections: dict[str, list[WebSocket]] = {}

    def is_connected(self, session_id: str) -> bool:
        return bool(self._connections.get(session_id))

    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket, assign a session id and tell the client about it."""
        await websocket.accept()
        session_id = uuid.uuid4().hex
        self._connections.setdefault(session_id, []).append(websocket)
        log.info("[Realtime] Client connected: %s", session_id)
        await websocket.send_json({"event": EVENT_CONNECTED, "data": {"session_id": session_id}})
        return session_id

    def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        sockets = self._connections.get(session_id)
        if not sockets:
            return
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            del self._connections[session_id]
        log.info("[Realtime] Client disconnected: %s", session_id)

    async def emit(self, session_id: str, event: str, data: dict[str, Any]) -> None:
        """Send an event to every socket of the session. Unknown sessions are ignored."""
        sockets = self._connections.get(session_id)
        if not sockets:
            log.info("[Realtime] No open connection for session %s, %s not delivered", session_id, event)
            return
        for websocket in sockets[:]:
            try:
                await websocket.send_json({"event": event, "data": data})
            except Exception as e:
                log.warning("[Realtime] Send to %s failed: %s: %s", session_id, type(e).__name__, e)
                self.disconnect(session_id, websocket)
