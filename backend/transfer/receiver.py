"""
Receive pipeline.

Drives the receiver side of a transfer:

    pending (metadata received) -> transferring (accepted) -> completed | failed

Every accepted transfer owns a reservation: a slot list of exactly
``total_chunks`` entries, filled by chunk index. Arrival order does not
matter; completion is checked whenever the last-chunk marker is seen or
every slot is filled.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from pydantic import ValidationError

from config import IDLE_TIMEOUT, REASSEMBLY_GRACE
from transfer.codec import decode_chunks
from transfer.errors import ChunkCodecError
from transfer.models import (
    FileChunk,
    FileMetadata,
    TransferAck,
    TransferDirection,
    TransferRecord,
    TransferStatus,
)
from transfer.store import TransferStore

logger = logging.getLogger(__name__)

Accept = Callable[[], None]
Reject = Callable[..., None]
# fn(metadata, accept, reject), may return an awaitable
DecisionCallback = Callable[[FileMetadata, Accept, Reject], Awaitable[None] | None]

DEFAULT_REJECT_REASON = "Rejected by peer"
REASSEMBLY_ERROR = "File reassembly failed"


@dataclass
class _Reservation:
    metadata: FileMetadata
    peer_id: str
    slots: list[str | None] = field(default_factory=list)
    filled: int = 0
    accepted: bool = False
    grace_timer: asyncio.TimerHandle | None = None
    idle_timer: asyncio.TimerHandle | None = None

    def cancel_timers(self) -> None:
        for timer in (self.grace_timer, self.idle_timer):
            if timer is not None:
                timer.cancel()
        self.grace_timer = None
        self.idle_timer = None


class ReceivePipeline:
    """Receiver state machine for all inbound transfers."""

    def __init__(
        self,
        store: TransferStore,
        decide: DecisionCallback | None = None,
        reassembly_grace: float = REASSEMBLY_GRACE,
        idle_timeout: float | None = IDLE_TIMEOUT,
    ) -> None:
        self._store = store
        self._decide = decide
        self._reassembly_grace = reassembly_grace
        self._idle_timeout = idle_timeout
        self._reservations: dict[str, _Reservation] = {}
        self._decisions: dict[str, asyncio.Task] = {}
        self._send_ack: Callable[..., None] | None = None

    def bind(self, send_ack: Callable[..., None]) -> None:
        """Attach the ack sender for the current room connection."""
        self._send_ack = send_ack

    def has_reservation(self, file_id: str) -> bool:
        return file_id in self._reservations

    # --- Metadata / decision ---

    def on_metadata(self, data, peer_id: str) -> None:
        try:
            metadata = FileMetadata.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed metadata from {peer_id}: {e}")
            return

        file_id = metadata.file_id
        if file_id in self._reservations or file_id in self._store:
            logger.warning(f"Ignoring duplicate metadata for {file_id} from {peer_id}")
            return

        self._store.upsert(TransferRecord(
            id=file_id,
            name=metadata.name,
            size=metadata.size,
            type=metadata.type,
            direction=TransferDirection.RECEIVE,
            status=TransferStatus.PENDING,
            peer_id=peer_id,
            peer_name=metadata.sender_name or peer_id,
        ))
        self._reservations[file_id] = _Reservation(
            metadata=metadata,
            peer_id=peer_id,
            slots=[None] * metadata.total_chunks,
        )
        logger.info(
            f"Incoming '{metadata.name}' ({metadata.size} bytes, "
            f"{metadata.total_chunks} chunks) from {metadata.sender_name or peer_id}"
        )

        decided = False

        def accept() -> None:
            nonlocal decided
            if decided:
                return
            decided = True
            self._accept(file_id, peer_id)

        def reject(reason: str | None = None) -> None:
            nonlocal decided
            if decided:
                return
            decided = True
            self._reject(file_id, peer_id, reason)

        if self._decide is None:
            accept()
            return

        try:
            result = self._decide(metadata, accept, reject)
        except Exception as e:
            logger.error(f"Receive decision for {file_id} failed: {e}")
            reject("Receiver error")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._decisions[file_id] = task

            def _done(t: asyncio.Future) -> None:
                self._decisions.pop(file_id, None)
                if t.cancelled():
                    reject("Cancelled by receiver")
                elif t.exception() is not None:
                    logger.error(f"Receive decision for {file_id} failed: {t.exception()}")
                    reject("Receiver error")

            task.add_done_callback(_done)

    def _accept(self, file_id: str, peer_id: str) -> None:
        reservation = self._reservations.get(file_id)
        if reservation is None:
            # Removed locally while the decision was outstanding
            self._ack(file_id, peer_id, False, "Cancelled by receiver")
            return

        reservation.accepted = True
        self._store.patch(file_id, status=TransferStatus.TRANSFERRING)
        self._ack(file_id, peer_id, True, None)
        logger.info(f"Accepted {file_id}")

        if reservation.metadata.total_chunks == 0:
            self._finish(file_id, reservation)
            return
        self._arm_idle_timer(file_id, reservation)

    def _reject(self, file_id: str, peer_id: str, reason: str | None) -> None:
        reason = reason or DEFAULT_REJECT_REASON
        reservation = self._reservations.pop(file_id, None)
        # Without a reservation the record already has its final state
        if reservation is not None:
            reservation.cancel_timers()
            self._store.patch(file_id, status=TransferStatus.FAILED, error=reason)
        self._ack(file_id, peer_id, False, reason)
        logger.info(f"Rejected {file_id}: {reason}")

    def _ack(self, file_id: str, peer_id: str, accepted: bool, reason: str | None) -> None:
        if self._send_ack is None:
            logger.warning(f"No connection to acknowledge {file_id}")
            return
        self._send_ack(TransferAck(file_id=file_id, accepted=accepted, reason=reason), peer_id)

    # --- Chunks ---

    def on_chunk(self, data, peer_id: str) -> None:
        try:
            chunk = FileChunk.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed chunk from {peer_id}: {e}")
            return

        reservation = self._reservations.get(chunk.file_id)
        if reservation is None:
            return
        if reservation.peer_id != peer_id:
            logger.warning(f"Dropping chunk for {chunk.file_id} from unexpected peer {peer_id}")
            return
        if not reservation.accepted:
            logger.debug(f"Dropping chunk for {chunk.file_id}: not accepted yet")
            return

        total = reservation.metadata.total_chunks
        if not 0 <= chunk.chunk_index < total:
            logger.warning(
                f"Dropping chunk {chunk.chunk_index} for {chunk.file_id}: "
                f"outside 0..{total - 1}"
            )
            return

        if reservation.slots[chunk.chunk_index] is None:
            reservation.filled += 1
        reservation.slots[chunk.chunk_index] = chunk.data

        self._store.patch(chunk.file_id, progress=round(reservation.filled / total * 100))
        self._arm_idle_timer(chunk.file_id, reservation)

        if reservation.filled == total:
            self._finish(chunk.file_id, reservation)
        elif chunk.is_last and reservation.grace_timer is None:
            self._check_holes(chunk.file_id, reservation)

    def _check_holes(self, file_id: str, reservation: _Reservation) -> None:
        """Last-chunk marker seen with empty slots left."""
        if self._reassembly_grace <= 0:
            self._finish(file_id, reservation)
            return
        loop = asyncio.get_running_loop()
        reservation.grace_timer = loop.call_later(
            self._reassembly_grace, self._on_grace_expired, file_id,
        )

    def _on_grace_expired(self, file_id: str) -> None:
        reservation = self._reservations.get(file_id)
        if reservation is None:
            return
        reservation.grace_timer = None
        self._finish(file_id, reservation)

    def _finish(self, file_id: str, reservation: _Reservation) -> None:
        """Reassemble, or fail if any slot is still empty."""
        self._reservations.pop(file_id, None)
        reservation.cancel_timers()
        try:
            payload = decode_chunks(reservation.slots)
        except ChunkCodecError as e:
            logger.warning(f"Reassembly of {file_id} failed: {e}")
            self._store.patch(
                file_id,
                status=TransferStatus.FAILED,
                error=f"{REASSEMBLY_ERROR}: {e}",
            )
            return

        self._store.patch(
            file_id,
            status=TransferStatus.COMPLETED,
            progress=100,
            payload=payload,
        )
        logger.info(f"Received '{reservation.metadata.name}' ({len(payload)} bytes)")

    # --- Timers ---

    def _arm_idle_timer(self, file_id: str, reservation: _Reservation) -> None:
        if self._idle_timeout is None:
            return
        if reservation.idle_timer is not None:
            reservation.idle_timer.cancel()
        loop = asyncio.get_running_loop()
        reservation.idle_timer = loop.call_later(
            self._idle_timeout, self._on_idle, file_id,
        )

    def _on_idle(self, file_id: str) -> None:
        reservation = self._reservations.pop(file_id, None)
        if reservation is None:
            return
        reservation.cancel_timers()
        logger.warning(f"Transfer {file_id} stalled")
        self._store.patch(file_id, status=TransferStatus.FAILED, error="Transfer stalled")

    # --- Cleanup ---

    def discard(self, file_id: str) -> None:
        """Forget the reservation; later chunks for this id are dropped."""
        reservation = self._reservations.pop(file_id, None)
        if reservation is not None:
            reservation.cancel_timers()

    def fail_peer(self, peer_id: str, reason: str) -> None:
        """Fail every open reservation from ``peer_id``."""
        for file_id, reservation in list(self._reservations.items()):
            if reservation.peer_id != peer_id:
                continue
            self.discard(file_id)
            self._store.patch(file_id, status=TransferStatus.FAILED, error=reason)

    def clear(self) -> None:
        for file_id in list(self._reservations):
            self.discard(file_id)

    async def stop(self) -> None:
        self.clear()
        tasks = list(self._decisions.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._decisions.clear()
