"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path


def _env_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None:
        return default
    if value.strip().lower() in ("", "none", "off"):
        return None
    return float(value)


# --- Identity ---
APP_ID = os.getenv("ROOMDROP_APP_ID", "roomdrop-p2p-file-transfer")
USER_NAME = os.getenv("ROOMDROP_USER_NAME", platform.node() or "anonymous")

# --- Networking ---
API_HOST = os.getenv("ROOMDROP_API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("ROOMDROP_API_PORT", "8765"))
# The node hosts the relay itself unless pointed elsewhere
RELAY_URL = os.getenv("ROOMDROP_RELAY_URL", f"ws://127.0.0.1:{API_PORT}/signaling")
ROOM_CODE = os.getenv("ROOMDROP_ROOM_CODE") or None

RECONNECT_DELAY = float(os.getenv("ROOMDROP_RECONNECT_DELAY", "1.0"))
RECONNECT_DELAY_MAX = float(os.getenv("ROOMDROP_RECONNECT_DELAY_MAX", "10.0"))
MESSAGE_BUFFER_LIMIT = int(os.getenv("ROOMDROP_MESSAGE_BUFFER_LIMIT", "1024"))

# --- Transfer ---
CHUNK_SIZE = int(os.getenv("ROOMDROP_CHUNK_SIZE", str(16 * 1024)))  # 16 KB
BATCH_SIZE = int(os.getenv("ROOMDROP_BATCH_SIZE", "5"))  # chunks per burst
BATCH_DELAY = float(os.getenv("ROOMDROP_BATCH_DELAY", "0.05"))  # seconds

# Timeouts in seconds; "none" disables
ACK_TIMEOUT = _env_float("ROOMDROP_ACK_TIMEOUT", 120.0)
ACCEPT_TIMEOUT = _env_float("ROOMDROP_ACCEPT_TIMEOUT", 60.0)
IDLE_TIMEOUT = _env_float("ROOMDROP_IDLE_TIMEOUT", 30.0)
REASSEMBLY_GRACE = float(os.getenv("ROOMDROP_REASSEMBLY_GRACE", "1.0"))

AUTO_ACCEPT = os.getenv("ROOMDROP_AUTO_ACCEPT", "true").lower() == "true"

# --- Storage ---
DEFAULT_SAVE_DIR = os.getenv(
    "ROOMDROP_SAVE_DIR",
    str(Path.home() / "Downloads" / "Roomdrop"),
)

# --- Logging ---
LOG_LEVEL = os.getenv("ROOMDROP_LOG_LEVEL", "INFO").upper()
