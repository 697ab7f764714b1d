"""
Transfer Coordinator: the public face of the transfer layer.

Owns the send and receive pipelines, wires them to the room's message
channels, and turns record changes into events for the UI.
"""

import asyncio
import logging
import os
from pathlib import Path

from config import ACCEPT_TIMEOUT, AUTO_ACCEPT, DEFAULT_SAVE_DIR
from room.base import Room
from room.models import Peer, RoomState, RoomStatus
from transfer.errors import NotConnectedError, UnknownPeerError
from transfer.models import (
    Action,
    FileMetadata,
    OutgoingFile,
    TransferDirection,
    TransferRecord,
    TransferStatus,
)
from transfer.receiver import Accept, DecisionCallback, ReceivePipeline, Reject
from transfer.sender import SendPipeline
from transfer.store import TransferStore

logger = logging.getLogger(__name__)


class TransferCoordinator:
    """Multiplexes every in-flight transfer of one room connection."""

    def __init__(
        self,
        room: Room,
        user_name: str | None = None,
        on_file_receive_request: DecisionCallback | None = None,
        auto_accept: bool = AUTO_ACCEPT,
        accept_timeout: float | None = ACCEPT_TIMEOUT,
        save_dir: str = DEFAULT_SAVE_DIR,
        store: TransferStore | None = None,
        send_pipeline: SendPipeline | None = None,
        receive_pipeline: ReceivePipeline | None = None,
    ) -> None:
        self.room = room
        self.user_name = user_name or room.user_name
        self.store = store or TransferStore()
        self._save_dir = save_dir
        self._accept_timeout = accept_timeout
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._accept_futures: dict[str, asyncio.Future] = {}
        self._wired_connection: int | None = None

        if on_file_receive_request is not None:
            decide = on_file_receive_request
        elif auto_accept:
            decide = None
        else:
            decide = self._prompt_accept

        self._sender = send_pipeline or SendPipeline(self.store)
        self._receiver = receive_pipeline or ReceivePipeline(self.store, decide=decide)

        self.store.subscribe(self._on_record_change)
        room.on_status_change(self._on_room_status)
        room.on_peer_leave(self._on_peer_leave)
        if room.is_connected:
            self._wire()

    # --- Wiring ---

    def _wire(self) -> None:
        """Create the three action channels for the current connection."""
        connection_id = self.room.state.connection_id
        if self._wired_connection == connection_id:
            return
        send_metadata = self.room.create_action(Action.METADATA, self._receiver.on_metadata)
        send_chunk = self.room.create_action(Action.CHUNK, self._receiver.on_chunk)
        send_ack = self.room.create_action(Action.ACK, self._sender.on_ack)
        self._sender.bind(send_metadata, send_chunk)
        self._receiver.bind(send_ack)
        self._wired_connection = connection_id
        logger.info(f"Transfer channels wired for connection {connection_id}")

    def _on_room_status(self, state: RoomState) -> None:
        if state.status == RoomStatus.CONNECTED:
            self._wire()

    def _on_peer_leave(self, peer: Peer) -> None:
        self._sender.fail_peer(peer.id, "Peer disconnected")
        self._receiver.fail_peer(peer.id, "Peer disconnected")

    # --- Events ---

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._save_dir = path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _schedule_emit(self, event_type: str, data: dict) -> None:
        if self._event_callbacks:
            asyncio.get_running_loop().create_task(self._emit(event_type, data))

    def _on_record_change(self, kind: str, record: TransferRecord,
                          previous: TransferRecord | None) -> None:
        if kind == "remove":
            self._schedule_emit("transfer_removed", {"id": record.id})
            return
        self._schedule_emit("transfer_state", record.model_dump(mode="json"))

        if previous is not None and previous.status == record.status:
            return
        # Generate user-facing notifications
        notification = None
        if record.status == TransferStatus.COMPLETED:
            direction = "sent" if record.direction == TransferDirection.SEND else "received"
            notification = {
                "type": "success",
                "message": f"'{record.name}' {direction} successfully!",
            }
        elif record.status == TransferStatus.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{record.name}' failed: {record.error}",
            }
        if notification:
            self._schedule_emit("notification", notification)

    # --- Accept prompt ---

    async def _prompt_accept(self, metadata: FileMetadata, accept: Accept, reject: Reject) -> None:
        """
        Ask the user to accept/reject an incoming transfer.
        Creates a Future that will be resolved by respond_to_request().
        """
        # Must exist before the request event fires
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._accept_futures[metadata.file_id] = future

        try:
            record = self.store.get(metadata.file_id)
            await self._emit("transfer_request", record.model_dump(mode="json") if record else {
                "id": metadata.file_id, "name": metadata.name, "size": metadata.size,
            })
            accepted = await asyncio.wait_for(future, timeout=self._accept_timeout)
        except asyncio.TimeoutError:
            logger.info(f"Transfer {metadata.file_id} timed out waiting for acceptance")
            reject("Timed out waiting for the receiver")
            return
        finally:
            self._accept_futures.pop(metadata.file_id, None)

        if accepted:
            accept()
        else:
            reject(None)

    def respond_to_request(self, file_id: str, accept: bool) -> bool:
        """Resolve a pending acceptance prompt. Returns False if none is open."""
        future = self._accept_futures.get(file_id)
        if future and not future.done():
            future.set_result(accept)
            return True
        return False

    # --- Public API ---

    @property
    def transfers(self) -> list[TransferRecord]:
        return self.store.list()

    def get_transfer(self, file_id: str) -> TransferRecord | None:
        return self.store.get(file_id)

    def _resolve_peer(self, target_peer_id: str | None) -> Peer:
        if not self.room.is_connected or not self._sender.is_bound:
            raise NotConnectedError("Not connected to a room")
        peers = self.room.peers
        if target_peer_id is not None:
            peer = peers.get(target_peer_id)
            if peer is None:
                raise UnknownPeerError(f"Peer {target_peer_id} is not in the room")
            return peer
        if not peers:
            raise NotConnectedError("No peers in the room")
        return next(iter(peers.values()))

    def send_file(self, file: OutgoingFile, target_peer_id: str | None = None) -> TransferRecord:
        """Offer ``file`` to a peer. Progress is reported through the store."""
        peer = self._resolve_peer(target_peer_id)
        return self._sender.initiate(file, peer, self.user_name)

    async def download_file(self, file_id: str, save_dir: str | None = None) -> Path | None:
        """Write a completed received file to disk. Returns its path."""
        record = self.store.get(file_id)
        if (record is None or record.direction != TransferDirection.RECEIVE
                or record.status != TransferStatus.COMPLETED or record.payload is None):
            return None

        target_dir = Path(save_dir or self._save_dir)
        path = await asyncio.to_thread(_write_unique, target_dir, record.name, record.payload)
        logger.info(f"Saved '{record.name}' to {path}")
        return path

    def remove_transfer(self, file_id: str) -> None:
        """Forget a transfer; in-flight work for it stops."""
        self._sender.cancel(file_id)
        self._receiver.discard(file_id)
        self.store.remove(file_id)
        future = self._accept_futures.get(file_id)
        if future and not future.done():
            future.set_result(False)

    def clear_transfers(self) -> None:
        for record in self.store.list():
            self.remove_transfer(record.id)
        self._sender.clear()
        self._receiver.clear()

    async def reset(self) -> None:
        """Clear everything and leave the room."""
        self.clear_transfers()
        for name in (Action.METADATA, Action.CHUNK, Action.ACK):
            self.room.remove_action(name)
        self._wired_connection = None
        await self.room.leave()

    async def stop(self) -> None:
        """Stop all transfer activity."""
        for future in self._accept_futures.values():
            if not future.done():
                future.set_result(False)
        await self._sender.stop()
        await self._receiver.stop()
        logger.info("Transfer coordinator stopped")


def _write_unique(directory: Path, name: str, data: bytes) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    name = os.path.basename(name) or "download"
    stem, suffix = os.path.splitext(name)
    path = directory / name
    n = 1
    while path.exists():
        path = directory / f"{stem} ({n}){suffix}"
        n += 1
    path.write_bytes(data)
    return path
