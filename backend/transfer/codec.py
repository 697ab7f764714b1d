"""
Chunk codec.

Splits a payload into fixed-size slices and turns each slice into base64
text so it can travel inside a JSON message, then puts them back together.
"""

import base64
import binascii
from typing import Sequence

from config import CHUNK_SIZE
from transfer.errors import ChunkCodecError


def total_chunks(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of chunks needed for ``size`` bytes (ceil division)."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    return -(-size // chunk_size)


def encode_chunks(data: bytes, chunk_size: int = CHUNK_SIZE) -> list[str]:
    """Split ``data`` into ordered base64 chunks."""
    count = total_chunks(len(data), chunk_size)
    return [
        base64.b64encode(data[i * chunk_size:(i + 1) * chunk_size]).decode("ascii")
        for i in range(count)
    ]


def decode_chunks(chunks: Sequence[str | None]) -> bytes:
    """
    Reassemble chunks given in index order.

    Raises:
        ChunkCodecError: a slot is empty or holds invalid base64.
    """
    missing = [i for i, chunk in enumerate(chunks) if not chunk]
    if missing:
        raise ChunkCodecError(f"Missing {len(missing)} chunk(s), first at index {missing[0]}")

    parts = []
    for index, chunk in enumerate(chunks):
        try:
            parts.append(base64.b64decode(chunk, validate=True))
        except (binascii.Error, ValueError) as e:
            raise ChunkCodecError(f"Chunk {index} is not valid base64: {e}") from e
    return b"".join(parts)
