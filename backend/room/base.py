"""
Room interface shared by every transport.

A room multiplexes named "actions" over whatever carries the bytes. Each
action has at most one local handler; messages that arrive before their
handler is registered are buffered and replayed on registration.
"""

import logging
import uuid
from typing import Any, Callable

from pydantic import BaseModel

from config import MESSAGE_BUFFER_LIMIT
from room.models import Peer, RoomState, RoomStatus

logger = logging.getLogger(__name__)

# fn(data, from_peer_id)
ActionHandler = Callable[[Any, str], None]


def generate_peer_id() -> str:
    return uuid.uuid4().hex


class ActionSender:
    """Callable returned by Room.create_action: ``send(data, peer_id=None)``."""

    def __init__(self, room: "Room", name: str) -> None:
        self._room = room
        self.name = name

    def __call__(self, data: Any, peer_id: str | None = None) -> None:
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        self._room._transmit(self.name, data, peer_id)


class Room:
    """Base class for room transports."""

    def __init__(
        self,
        app_id: str,
        user_name: str,
        peer_id: str | None = None,
        buffer_limit: int = MESSAGE_BUFFER_LIMIT,
    ) -> None:
        self.app_id = app_id
        self.user_name = user_name
        self.peer_id = peer_id or generate_peer_id()
        self._state = RoomState()
        self._handlers: dict[str, ActionHandler] = {}
        self._buffer: list[tuple[str, Any, str]] = []
        self._buffer_limit = buffer_limit
        self._status_callbacks: list[Callable[[RoomState], None]] = []
        self._join_callbacks: list[Callable[[Peer], None]] = []
        self._leave_callbacks: list[Callable[[Peer], None]] = []

    @property
    def state(self) -> RoomState:
        return self._state

    @property
    def peers(self) -> dict[str, Peer]:
        return self._state.peers

    @property
    def is_connected(self) -> bool:
        return self._state.status == RoomStatus.CONNECTED

    def full_room_code(self, room_code: str) -> str:
        """Room codes are namespaced per application."""
        return f"{self.app_id}:{room_code}"

    # --- Callbacks ---

    def on_status_change(self, callback: Callable[[RoomState], None]) -> None:
        self._status_callbacks.append(callback)

    def on_peer_join(self, callback: Callable[[Peer], None]) -> None:
        self._join_callbacks.append(callback)

    def on_peer_leave(self, callback: Callable[[Peer], None]) -> None:
        self._leave_callbacks.append(callback)

    @staticmethod
    def _fire(callbacks: list, arg) -> None:
        for cb in list(callbacks):
            try:
                cb(arg)
            except Exception:
                logger.exception("Room callback failed")

    # --- State helpers for subclasses ---

    def _update_state(self, **changes) -> None:
        previous = self._state
        self._state = previous.model_copy(update=changes)
        if (self._state.status != previous.status
                or self._state.connection_id != previous.connection_id):
            logger.info(f"Room status: {previous.status.value} -> {self._state.status.value}")
            self._fire(self._status_callbacks, self._state)

    def _set_connected(self, peers: list[Peer]) -> None:
        self._update_state(
            status=RoomStatus.CONNECTED,
            peers={p.id: p for p in peers},
            error=None,
            connection_id=self._state.connection_id + 1,
        )
        for peer in peers:
            self._fire(self._join_callbacks, peer)

    def _add_peer(self, peer: Peer) -> None:
        if peer.id == self.peer_id:
            return
        peers = dict(self._state.peers)
        is_new = peer.id not in peers
        peers[peer.id] = peer
        self._update_state(peers=peers)
        if is_new:
            logger.info(f"Peer joined: {peer.name} ({peer.id})")
            self._fire(self._join_callbacks, peer)

    def _remove_peer(self, peer_id: str) -> None:
        peers = dict(self._state.peers)
        peer = peers.pop(peer_id, None)
        if peer is None:
            return
        self._update_state(peers=peers)
        logger.info(f"Peer left: {peer.name} ({peer.id})")
        self._fire(self._leave_callbacks, peer)

    def _drop_all_peers(self) -> None:
        for peer_id in list(self._state.peers):
            self._remove_peer(peer_id)

    # --- Actions ---

    def create_action(self, name: str, on_receive: ActionHandler | None = None) -> ActionSender:
        """
        Register ``on_receive`` for ``name`` (replacing any previous handler)
        and return a sender for the same action.
        """
        if on_receive is not None:
            self._handlers[name] = on_receive
            pending = [m for m in self._buffer if m[0] == name]
            if pending:
                self._buffer = [m for m in self._buffer if m[0] != name]
                logger.debug(f"Replaying {len(pending)} buffered '{name}' message(s)")
                for _, data, from_peer in pending:
                    self._dispatch(on_receive, name, data, from_peer)
        return ActionSender(self, name)

    def remove_action(self, name: str) -> None:
        self._handlers.pop(name, None)

    def _deliver(self, action: str, data: Any, from_peer: str) -> None:
        """Called by the transport for every inbound message."""
        handler = self._handlers.get(action)
        if handler is None:
            if len(self._buffer) >= self._buffer_limit:
                dropped = self._buffer.pop(0)
                logger.warning(f"Message buffer full, dropping '{dropped[0]}' message")
            self._buffer.append((action, data, from_peer))
            return
        self._dispatch(handler, action, data, from_peer)

    @staticmethod
    def _dispatch(handler: ActionHandler, action: str, data: Any, from_peer: str) -> None:
        try:
            handler(data, from_peer)
        except Exception:
            logger.exception(f"Handler for '{action}' failed")

    # --- Transport ---

    def _transmit(self, action: str, data: Any, peer_id: str | None) -> None:
        raise NotImplementedError

    async def join(self, room_code: str) -> None:
        raise NotImplementedError

    async def leave(self) -> None:
        raise NotImplementedError
