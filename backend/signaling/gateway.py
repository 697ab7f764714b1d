"""
Websocket relay for room members.

Peers join a room by code and the relay forwards their action messages,
either to one member or to everyone else in the room. Membership changes
are announced to the remaining members.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter()


@dataclass
class RoomMember:
    websocket: WebSocket
    peer_id: str
    name: str


class SignalingHub:
    """Tracks room membership and forwards frames between members."""

    def __init__(self) -> None:
        # room code -> peer id -> member
        self._rooms: dict[str, dict[str, RoomMember]] = {}
        self._lock = asyncio.Lock()

    def rooms(self) -> dict[str, list[str]]:
        return {code: list(members) for code, members in self._rooms.items()}

    async def _send(self, member: RoomMember, frame: dict) -> bool:
        try:
            await member.websocket.send_text(json.dumps(frame))
            return True
        except Exception as e:
            logger.debug(f"Send to {member.peer_id} failed: {e}")
            return False

    async def join(self, websocket: WebSocket, room_code: str,
                   peer_id: str, name: str) -> RoomMember:
        member = RoomMember(websocket=websocket, peer_id=peer_id, name=name)
        async with self._lock:
            room = self._rooms.setdefault(room_code, {})
            existing = [m for m in room.values() if m.peer_id != peer_id]
            room[peer_id] = member

        logger.info(f"{name} ({peer_id}) joined room {room_code}")
        await self._send(member, {
            "type": "joined",
            "members": [{"peerId": m.peer_id, "name": m.name} for m in existing],
        })
        for other in existing:
            await self._send(other, {"type": "peer-joined", "peerId": peer_id, "name": name})
        return member

    async def leave(self, room_code: str, member: RoomMember) -> None:
        async with self._lock:
            room = self._rooms.get(room_code)
            # A reconnect may already have replaced this member
            if room is None or room.get(member.peer_id) is not member:
                return
            del room[member.peer_id]
            remaining = list(room.values())
            if not room:
                del self._rooms[room_code]

        logger.info(f"{member.name} ({member.peer_id}) left room {room_code}")
        for other in remaining:
            await self._send(other, {"type": "peer-left", "peerId": member.peer_id})

    async def relay(self, room_code: str, sender: RoomMember,
                    data: dict, target_peer_id: str | None) -> str | None:
        """Forward ``data``. Returns an error string if it could not be routed."""
        room = self._rooms.get(room_code)
        if room is None:
            return "Room not found"
        if room.get(sender.peer_id) is not sender:
            return "Not in room"

        frame = {"type": "message", "fromPeerId": sender.peer_id, "data": data}
        if target_peer_id:
            target = room.get(target_peer_id)
            if target is None:
                return "Target not found"
            await self._send(target, frame)
        else:
            for member in list(room.values()):
                if member.peer_id != sender.peer_id:
                    await self._send(member, frame)
        return None


hub = SignalingHub()


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket):
    await websocket.accept()
    member: RoomMember | None = None
    room_code: str | None = None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
                kind = frame["type"]
            except (ValueError, KeyError, TypeError) as e:
                await websocket.send_text(json.dumps({"type": "error", "error": f"Bad frame: {e}"}))
                continue

            if kind == "join":
                if not frame.get("roomCode") or not frame.get("peerId"):
                    await websocket.send_text(json.dumps({"type": "error", "error": "Missing roomCode or peerId"}))
                    continue
                if member is not None:
                    await hub.leave(room_code, member)
                room_code = frame["roomCode"]
                member = await hub.join(websocket, room_code, frame["peerId"], frame.get("name", ""))
            elif kind == "leave":
                if member is not None:
                    await hub.leave(room_code, member)
                member = None
                room_code = None
            elif kind == "message":
                if member is None:
                    error = "Not in room"
                else:
                    error = await hub.relay(room_code, member, frame.get("data"),
                                            frame.get("targetPeerId"))
                if error:
                    await websocket.send_text(json.dumps({"type": "error", "error": error}))
            else:
                logger.debug(f"Ignoring signaling frame of type {kind!r}")
    except WebSocketDisconnect:
        pass
    finally:
        if member is not None:
            await hub.leave(room_code, member)
