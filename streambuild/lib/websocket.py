# streambuild/lib/websocket.py
from typing import Dict, List
import asyncio

from fastapi import WebSocket

from streambuild.core.logging import log


class ConnectionManager:
    """
    Per-session WebSocket connection manager.

    - Each session_id has its own list of WebSocket connections.
    - Session events are fanned out to every socket of that session.
    """

    def __init__(self) -> None:
        # session_id -> list[WebSocket]
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        async with self._lock:
            self.active_connections.setdefault(session_id, []).append(websocket)
        log("WS", f"Client connected ({self.count(session_id)} open)", session_id=session_id)

    async def disconnect(self, websocket: WebSocket, session_id: str) -> None:
        async with self._lock:
            connections = self.active_connections.get(session_id, [])
            if websocket in connections:
                connections.remove(websocket)
            if not connections and session_id in self.active_connections:
                del self.active_connections[session_id]

    def count(self, session_id: str) -> int:
        return len(self.active_connections.get(session_id, []))

    async def send_to_session(self, session_id: str, message: dict) -> None:
        """
        Send a JSON message to all clients of ``session_id``.
        Takes a snapshot of connections under lock.
        """
        async with self._lock:
            connections = list(self.active_connections.get(session_id, []))

        disconnected: List[WebSocket] = []
        for ws in connections:
            try:
                await ws.send_json(message)
            except Exception as e:
                log("WS", f"Send failed, dropping client: {e}", session_id=session_id)
                disconnected.append(ws)

        for ws in disconnected:
            await self.disconnect(ws, session_id)


manager = ConnectionManager()
