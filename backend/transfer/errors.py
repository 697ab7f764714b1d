"""Exceptions raised to callers of the transfer layer.

Protocol-level failures never surface as exceptions; they end up as a
``failed`` TransferRecord instead.
"""


class TransferError(Exception):
    """Base class for transfer errors."""


class NotConnectedError(TransferError):
    """The room is not connected, or has nobody to send to."""


class UnknownPeerError(TransferError):
    """The requested target peer is not in the room."""


class ChunkCodecError(TransferError):
    """Chunks could not be reassembled into a payload."""
