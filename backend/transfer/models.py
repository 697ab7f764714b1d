"""Pydantic models for file transfer."""

import mimetypes
import os
from enum import Enum

from pydantic import BaseModel, Field


class TransferStatus(str, Enum):
    """All possible states for a file transfer."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (TransferStatus.COMPLETED, TransferStatus.FAILED)


class TransferDirection(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class TransferRecord(BaseModel):
    """Full state of a single file transfer, exposed to the frontend."""
    id: str
    name: str
    size: int
    type: str = ""
    direction: TransferDirection
    status: TransferStatus = TransferStatus.PENDING
    progress: int = 0
    peer_id: str
    peer_name: str
    # Reassembled file, receive side only
    payload: bytes | None = Field(default=None, exclude=True, repr=False)
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class OutgoingFile(BaseModel):
    """A local file handed to the coordinator for sending."""
    name: str
    data: bytes = Field(repr=False)
    type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: str) -> "OutgoingFile":
        with open(path, "rb") as f:
            data = f.read()
        content_type, _ = mimetypes.guess_type(path)
        return cls(
            name=os.path.basename(path),
            data=data,
            type=content_type or "application/octet-stream",
        )


# --- Wire protocol message types ---

class Action:
    METADATA = "file-metadata"
    CHUNK = "file-chunk"
    ACK = "file-ack"


class FileMetadata(BaseModel):
    """Metadata sent once before any chunk."""
    file_id: str
    name: str
    size: int = Field(ge=0)
    type: str = ""
    total_chunks: int = Field(ge=0)
    sender_name: str = ""


class FileChunk(BaseModel):
    """One base64-encoded slice of a file."""
    file_id: str
    chunk_index: int
    data: str
    is_last: bool = False


class TransferAck(BaseModel):
    """Receiver's answer to a FileMetadata."""
    file_id: str
    accepted: bool
    reason: str | None = None
