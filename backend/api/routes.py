"""REST API routes for Roomdrop."""

import asyncio
import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from transfer.errors import NotConnectedError, UnknownPeerError
from transfer.models import OutgoingFile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_room = None
_coordinator = None


def init_routes(room, coordinator) -> None:
    """Inject service dependencies into the routes module."""
    global _room, _coordinator
    _room = room
    _coordinator = coordinator


# --- Room ---

class JoinRoomBody(BaseModel):
    room_code: str


@router.get("/room")
async def get_room():
    """Return the room connection state and its peers."""
    return {"peer_id": _room.peer_id, **_room.state.model_dump(mode="json")}


@router.post("/room/join")
async def join_room(body: JoinRoomBody):
    if not body.room_code.strip():
        raise HTTPException(status_code=400, detail="Room code must not be empty")
    await _room.join(body.room_code.strip())
    return {"status": _room.state.status.value}


@router.post("/room/leave")
async def leave_room():
    await _coordinator.reset()
    return {"status": _room.state.status.value}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    file_paths: list[str]
    peer_id: str | None = None


@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + finished)."""
    return {"transfers": [t.model_dump(mode="json") for t in _coordinator.transfers]}


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Offer local files to a peer, read directly from disk."""
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    try:
        files = [await asyncio.to_thread(OutgoingFile.from_path, path) for path in valid_paths]
    except OSError as e:
        raise HTTPException(status_code=400, detail=f"Could not read file: {e}")

    # No await between offers: either every file goes to the peer or none does
    try:
        records = [_coordinator.send_file(f, body.peer_id) for f in files]
    except UnknownPeerError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotConnectedError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "transfers": [r.model_dump(mode="json") for r in records],
        "message": f"Offered {len(records)} file(s)",
    }


@router.post("/transfers/{file_id}/accept")
async def accept_transfer(file_id: str):
    if not _coordinator.respond_to_request(file_id, accept=True):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "accepted"}


@router.post("/transfers/{file_id}/reject")
async def reject_transfer(file_id: str):
    if not _coordinator.respond_to_request(file_id, accept=False):
        raise HTTPException(status_code=404, detail="No pending request")
    return {"status": "rejected"}


@router.post("/transfers/{file_id}/download")
async def download_transfer(file_id: str):
    path = await _coordinator.download_file(file_id)
    if path is None:
        raise HTTPException(status_code=404, detail="No completed download for this transfer")
    return {"path": str(path)}


@router.delete("/transfers/{file_id}")
async def remove_transfer(file_id: str):
    _coordinator.remove_transfer(file_id)
    return {"status": "removed"}


@router.delete("/transfers")
async def clear_transfers():
    _coordinator.clear_transfers()
    return {"status": "cleared"}


# --- Settings ---

class SettingsBody(BaseModel):
    user_name: str | None = None
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "user_name": _coordinator.user_name,
        "save_dir": _coordinator.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.user_name is not None:
        _coordinator.user_name = body.user_name
        _room.user_name = body.user_name
    if body.save_dir is not None:
        try:
            _coordinator.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    return {"status": "updated"}
