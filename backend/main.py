"""
Roomdrop — FastAPI application entry point.

Serves the REST API, the UI event socket and the room relay, and runs one
transfer node connected to the relay.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, LOG_LEVEL, RELAY_URL, ROOM_CODE, USER_NAME
from room.relay import RelayRoom
from signaling.gateway import router as signaling_router
from transfer.coordinator import TransferCoordinator

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
room = RelayRoom(url=RELAY_URL, user_name=USER_NAME)
coordinator = TransferCoordinator(room)
ws_manager = ConnectionManager(snapshot=lambda: {
    "room": room.state.model_dump(mode="json"),
    "transfers": [t.model_dump(mode="json") for t in coordinator.transfers],
})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting Roomdrop services...")

    try:
        # Wire up event broadcasting
        coordinator.on_event(ws_manager.handle_event)
        room.on_status_change(ws_manager.handle_room_state)
        room.on_peer_join(ws_manager.handle_peer_join)
        room.on_peer_leave(ws_manager.handle_peer_leave)

        if ROOM_CODE:
            await room.join(ROOM_CODE)

        logger.info(f"Roomdrop ready — API: {API_HOST}:{API_PORT}, relay: {RELAY_URL}")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        # Shutdown
        logger.info("Shutting down Roomdrop services...")
        await coordinator.stop()
        await room.leave()


# --- FastAPI app ---
app = FastAPI(
    title="Roomdrop",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(room, coordinator)
app.include_router(router)
app.include_router(signaling_router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )
