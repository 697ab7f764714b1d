"""
Websocket relay room transport.

Connects to a relay (see ``signaling.gateway``), joins a room and forwards
action messages through it. The connection is retried forever with
exponential backoff; every successful (re-)join counts as a new connection.
"""

import asyncio
import json
import logging
from typing import Any

import websockets
from websockets.exceptions import WebSocketException

from config import APP_ID, RECONNECT_DELAY, RECONNECT_DELAY_MAX
from room.base import Room
from room.models import Peer, RoomStatus

logger = logging.getLogger(__name__)


class RelayRoom(Room):
    """Room member reached through a websocket relay."""

    def __init__(
        self,
        url: str,
        user_name: str,
        app_id: str = APP_ID,
        peer_id: str | None = None,
        reconnect_delay: float = RECONNECT_DELAY,
        reconnect_delay_max: float = RECONNECT_DELAY_MAX,
        **kwargs,
    ) -> None:
        super().__init__(app_id=app_id, user_name=user_name, peer_id=peer_id, **kwargs)
        self.url = url
        self._reconnect_delay = reconnect_delay
        self._reconnect_delay_max = reconnect_delay_max
        self._full_code: str | None = None
        self._task: asyncio.Task | None = None
        self._outbox: asyncio.Queue | None = None
        self._ws = None

    async def join(self, room_code: str) -> None:
        """Start connecting in the background; returns immediately."""
        if self._task is not None:
            await self.leave()
        self._full_code = self.full_room_code(room_code)
        self._update_state(status=RoomStatus.CONNECTING, room_code=room_code,
                           peers={}, error=None)
        self._task = asyncio.create_task(self._run())

    async def leave(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        # Closing the socket is enough for the relay to drop our membership
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._outbox = None
        self._full_code = None
        self._drop_all_peers()
        self._update_state(status=RoomStatus.DISCONNECTED)

    async def _run(self) -> None:
        delay = self._reconnect_delay
        attempt = 0
        while True:
            try:
                async with websockets.connect(self.url) as ws:
                    delay = self._reconnect_delay
                    attempt = 0
                    await self._session(ws)
                reason = "Connection closed"
            # asyncio.TimeoutError is not an OSError before 3.11
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                reason = f"Connection lost: {e}"
                logger.warning(f"Relay connection to {self.url} failed: {e}")

            self._outbox = None
            self._drop_all_peers()
            attempt += 1
            self._update_state(status=RoomStatus.CONNECTING,
                               error=f"{reason}, reconnecting ({attempt})")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._reconnect_delay_max)

    async def _session(self, ws) -> None:
        outbox: asyncio.Queue = asyncio.Queue()
        self._outbox = outbox
        self._ws = ws
        await ws.send(json.dumps({
            "type": "join",
            "roomCode": self._full_code,
            "peerId": self.peer_id,
            "name": self.user_name,
        }))

        writer = asyncio.create_task(self._write_loop(ws, outbox))
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                    self._handle_frame(frame)
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.debug(f"Ignoring invalid relay frame: {e}")
        finally:
            self._ws = None
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)

    @staticmethod
    async def _write_loop(ws, outbox: asyncio.Queue) -> None:
        """Drain the outbox; a failed send closes the socket so the session restarts."""
        while True:
            frame = await outbox.get()
            try:
                await ws.send(json.dumps(frame))
            except (OSError, WebSocketException) as e:
                logger.warning(
                    f"Relay send failed, dropping {outbox.qsize() + 1} frame(s): {e}"
                )
                await ws.close()
                return

    def _handle_frame(self, frame: dict) -> None:
        kind = frame.get("type")
        if kind == "joined":
            members = [
                Peer(id=m["peerId"], name=m.get("name", ""))
                for m in frame.get("members", [])
            ]
            logger.info(f"Joined relay room with {len(members)} peer(s)")
            self._set_connected(members)
        elif kind == "peer-joined":
            self._add_peer(Peer(id=frame["peerId"], name=frame.get("name", "")))
        elif kind == "peer-left":
            self._remove_peer(frame["peerId"])
        elif kind == "message":
            data = frame.get("data") or {}
            action = data.get("action")
            if action:
                self._deliver(action, data.get("payload"), frame.get("fromPeerId", ""))
        elif kind == "error":
            logger.warning(f"Relay error: {frame.get('error')}")
        else:
            logger.debug(f"Ignoring relay frame of type {kind!r}")

    def _transmit(self, action: str, data: Any, peer_id: str | None) -> None:
        if self._outbox is None or not self.is_connected:
            logger.warning(f"Relay not connected, dropping '{action}'")
            return
        frame = {"type": "message", "data": {"action": action, "payload": data}}
        if peer_id is not None:
            frame["targetPeerId"] = peer_id
        self._outbox.put_nowait(frame)
