"""
In-process room transport.

Every LocalRoom attached to the same LocalHub can talk to the others in its
room. Delivery goes through ``loop.call_soon`` so it is asynchronous and
keeps FIFO order, and payloads are JSON round-tripped like on a real wire.
"""

import asyncio
import json
import logging
from typing import Any

from config import APP_ID
from room.base import Room
from room.models import Peer, RoomStatus

logger = logging.getLogger(__name__)


class LocalHub:
    """Routes messages between LocalRoom instances."""

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, "LocalRoom"]] = {}

    def attach(self, room: "LocalRoom", full_code: str) -> list[Peer]:
        members = self._rooms.setdefault(full_code, {})
        existing = [Peer(id=m.peer_id, name=m.user_name) for m in members.values()]
        members[room.peer_id] = room
        joined = Peer(id=room.peer_id, name=room.user_name)
        for member in list(members.values()):
            if member is not room:
                member._add_peer(joined)
        return existing

    def detach(self, room: "LocalRoom", full_code: str) -> None:
        members = self._rooms.get(full_code)
        if not members or members.pop(room.peer_id, None) is None:
            return
        for member in list(members.values()):
            member._remove_peer(room.peer_id)
        if not members:
            del self._rooms[full_code]

    def route(self, full_code: str, sender: "LocalRoom", action: str,
              data: Any, target: str | None) -> None:
        members = self._rooms.get(full_code, {})
        if target is not None:
            recipients = [members[target]] if target in members else []
            if not recipients:
                logger.warning(f"Dropping '{action}' for unknown peer {target}")
        else:
            recipients = [m for m in members.values() if m is not sender]

        raw = json.dumps(data)
        loop = asyncio.get_running_loop()
        for recipient in recipients:
            loop.call_soon(recipient._deliver, action, json.loads(raw), sender.peer_id)


class LocalRoom(Room):
    """Room member living in the same process as its peers."""

    def __init__(self, hub: LocalHub, user_name: str, app_id: str = APP_ID,
                 peer_id: str | None = None, **kwargs) -> None:
        super().__init__(app_id=app_id, user_name=user_name, peer_id=peer_id, **kwargs)
        self._hub = hub
        self._full_code: str | None = None

    async def join(self, room_code: str) -> None:
        if self._full_code is not None:
            await self.leave()
        self._update_state(status=RoomStatus.CONNECTING, room_code=room_code,
                           peers={}, error=None)
        self._full_code = self.full_room_code(room_code)
        existing = self._hub.attach(self, self._full_code)
        self._set_connected(existing)

    async def leave(self) -> None:
        if self._full_code is None:
            return
        self._hub.detach(self, self._full_code)
        self._full_code = None
        self._drop_all_peers()
        self._update_state(status=RoomStatus.DISCONNECTED)

    def _transmit(self, action: str, data: Any, peer_id: str | None) -> None:
        if self._full_code is None:
            logger.warning(f"Not in a room, dropping '{action}'")
            return
        self._hub.route(self._full_code, self, action, data, peer_id)
