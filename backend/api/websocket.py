"""WebSocket handler for real-time transfer and room events."""

import asyncio
import json
import logging
from typing import Callable

from fastapi import WebSocket

from room.models import Peer, RoomState

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Pushes events to UI clients.

    A new client first receives a ``snapshot`` event so it never has to
    poll for the state it missed.
    """

    def __init__(self, snapshot: Callable[[], dict] | None = None) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._snapshot = snapshot

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if self._snapshot is not None:
            await websocket.send_text(json.dumps({"event": "snapshot", "data": self._snapshot()}))
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"UI client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"UI client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Send an event to every client, dropping the ones that are gone."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with TransferCoordinator.on_event()."""
        await self.broadcast(event_type, data)

    # Room callbacks are synchronous; hop onto the loop to broadcast

    def handle_room_state(self, state: RoomState) -> None:
        self._schedule("room_state", state.model_dump(mode="json"))

    def handle_peer_join(self, peer: Peer) -> None:
        self._schedule("peer_joined", peer.model_dump())

    def handle_peer_leave(self, peer: Peer) -> None:
        self._schedule("peer_left", peer.model_dump())

    def _schedule(self, event: str, data: dict) -> None:
        if self._connections:
            asyncio.get_running_loop().create_task(self.broadcast(event, data))
