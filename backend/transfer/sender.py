"""
Send pipeline.

Drives the sender side of a transfer:

    pending (metadata sent) -> transferring (accepted) -> completed | failed

The whole file is encoded up front and parked in a queue keyed by file id
until the receiver answers. Streaming is paced in small bursts so the
channel's send buffer is not flooded.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable

from pydantic import ValidationError

from config import ACK_TIMEOUT, BATCH_DELAY, BATCH_SIZE, CHUNK_SIZE
from room.models import Peer
from transfer.codec import encode_chunks, total_chunks
from transfer.models import (
    FileChunk,
    FileMetadata,
    OutgoingFile,
    TransferAck,
    TransferDirection,
    TransferRecord,
    TransferStatus,
)
from transfer.store import TransferStore

logger = logging.getLogger(__name__)

# fn(payload, peer_id)
Emit = Callable[..., None]


@dataclass
class _QueueEntry:
    file: OutgoingFile
    chunks: list[str]
    peer_id: str
    streaming: bool = False
    timer: asyncio.TimerHandle | None = None


def generate_file_id() -> str:
    return str(uuid.uuid4())


class SendPipeline:
    """Sender state machine for all outbound transfers."""

    def __init__(
        self,
        store: TransferStore,
        chunk_size: int = CHUNK_SIZE,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY,
        ack_timeout: float | None = ACK_TIMEOUT,
    ) -> None:
        self._store = store
        self._chunk_size = chunk_size
        self._batch_size = max(1, batch_size)
        self._batch_delay = batch_delay
        self._ack_timeout = ack_timeout
        self._queue: dict[str, _QueueEntry] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._send_metadata: Emit | None = None
        self._send_chunk: Emit | None = None

    def bind(self, send_metadata: Emit, send_chunk: Emit) -> None:
        """Attach the channel senders for the current room connection."""
        self._send_metadata = send_metadata
        self._send_chunk = send_chunk

    @property
    def is_bound(self) -> bool:
        return self._send_metadata is not None and self._send_chunk is not None

    def has_pending(self, file_id: str) -> bool:
        return file_id in self._queue

    def initiate(self, file: OutgoingFile, peer: Peer, sender_name: str) -> TransferRecord:
        """Queue ``file`` for ``peer`` and send its metadata."""
        if not self.is_bound:
            raise RuntimeError("SendPipeline is not bound to a room connection")

        file_id = generate_file_id()
        chunks = encode_chunks(file.data, self._chunk_size)

        entry = _QueueEntry(file=file, chunks=chunks, peer_id=peer.id)
        self._queue[file_id] = entry

        record = self._store.upsert(TransferRecord(
            id=file_id,
            name=file.name,
            size=file.size,
            type=file.type,
            direction=TransferDirection.SEND,
            status=TransferStatus.PENDING,
            peer_id=peer.id,
            peer_name=peer.name,
        ))

        metadata = FileMetadata(
            file_id=file_id,
            name=file.name,
            size=file.size,
            type=file.type,
            total_chunks=total_chunks(file.size, self._chunk_size),
            sender_name=sender_name,
        )
        self._send_metadata(metadata, peer.id)
        logger.info(
            f"Offered '{file.name}' ({file.size} bytes, {len(chunks)} chunks) "
            f"to {peer.name} as {file_id}"
        )

        if self._ack_timeout is not None:
            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(self._ack_timeout, self._on_ack_timeout, file_id)

        return record

    def on_ack(self, data, peer_id: str) -> None:
        """Handle the receiver's accept/reject answer."""
        try:
            ack = TransferAck.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed ack from {peer_id}: {e}")
            return

        entry = self._queue.get(ack.file_id)
        if entry is None:
            logger.debug(f"Ack for unknown or finished transfer {ack.file_id}")
            return
        if entry.peer_id != peer_id:
            logger.warning(f"Ignoring ack for {ack.file_id} from unexpected peer {peer_id}")
            return
        if entry.streaming:
            logger.debug(f"Duplicate ack for {ack.file_id}")
            return

        self._cancel_timer(entry)

        if not ack.accepted:
            reason = ack.reason or "Rejected by peer"
            logger.info(f"Transfer {ack.file_id} rejected: {reason}")
            self._queue.pop(ack.file_id, None)
            self._store.patch(ack.file_id, status=TransferStatus.FAILED, error=reason)
            return

        entry.streaming = True
        self._store.patch(ack.file_id, status=TransferStatus.TRANSFERRING)
        self._tasks[ack.file_id] = asyncio.create_task(self._stream(ack.file_id))

    async def _stream(self, file_id: str) -> None:
        """Emit every chunk in order, pausing between bursts."""
        try:
            entry = self._queue.get(file_id)
            if entry is None:
                return
            chunks = entry.chunks
            count = len(chunks)

            for i, data in enumerate(chunks):
                # Removed by the caller: stop quietly
                if file_id not in self._queue:
                    logger.info(f"Transfer {file_id} cancelled after {i}/{count} chunks")
                    return

                self._send_chunk(
                    FileChunk(
                        file_id=file_id,
                        chunk_index=i,
                        data=data,
                        is_last=i == count - 1,
                    ),
                    entry.peer_id,
                )
                self._store.patch(file_id, progress=round((i + 1) / count * 100))

                if (i + 1) % self._batch_size == 0 and i < count - 1:
                    await asyncio.sleep(self._batch_delay)

            if self._queue.pop(file_id, None) is None:
                return
            self._store.patch(file_id, status=TransferStatus.COMPLETED, progress=100)
            logger.info(f"Sent '{entry.file.name}' ({count} chunks)")
        except Exception as e:
            logger.error(f"Send error for {file_id}: {e}")
            self._queue.pop(file_id, None)
            self._store.patch(file_id, status=TransferStatus.FAILED, error=str(e))
        finally:
            self._tasks.pop(file_id, None)

    def _on_ack_timeout(self, file_id: str) -> None:
        entry = self._queue.get(file_id)
        if entry is None or entry.streaming:
            return
        logger.info(f"Transfer {file_id} timed out waiting for the receiver")
        self._queue.pop(file_id, None)
        self._store.patch(file_id, status=TransferStatus.FAILED, error="No response from peer")

    @staticmethod
    def _cancel_timer(entry: _QueueEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def cancel(self, file_id: str) -> None:
        """Drop the queue entry; a running stream notices before its next chunk."""
        entry = self._queue.pop(file_id, None)
        if entry is not None:
            self._cancel_timer(entry)

    def fail_peer(self, peer_id: str, reason: str) -> None:
        """Fail every unfinished send addressed to ``peer_id``."""
        for file_id, entry in list(self._queue.items()):
            if entry.peer_id != peer_id:
                continue
            self.cancel(file_id)
            self._store.patch(file_id, status=TransferStatus.FAILED, error=reason)

    def clear(self) -> None:
        for file_id in list(self._queue):
            self.cancel(file_id)

    async def stop(self) -> None:
        """Cancel all streaming tasks."""
        self.clear()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
