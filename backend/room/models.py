"""Pydantic models for room membership."""

from enum import Enum

from pydantic import BaseModel, computed_field


class RoomStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Peer(BaseModel):
    """Another member of the room."""
    id: str
    name: str


class RoomState(BaseModel):
    """Snapshot of the local node's room connection."""
    status: RoomStatus = RoomStatus.IDLE
    room_code: str | None = None
    peers: dict[str, Peer] = {}
    error: str | None = None
    # Bumped every time a connection is (re-)established
    connection_id: int = 0

    @computed_field
    @property
    def peer_count(self) -> int:
        return len(self.peers)
