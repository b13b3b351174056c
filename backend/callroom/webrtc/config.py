"""Relay and call settings.

STUN server list, room capacity, and signaling/reconnect constants, loaded
from environment variables (``config/.env``) where overridable.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# ICE Server settings
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """Fixed public STUN endpoints. No TURN is configured."""

    STUN_SERVERS: tuple = (
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
        "stun:stun3.l.google.com:19302",
    )

    def as_browser_ice_servers(self) -> list:
        """Return the list in ``RTCIceServer`` dictionary form."""
        return [{"urls": list(self.STUN_SERVERS)}]


# ============================================================
# Room settings
# ============================================================

@dataclass(frozen=True)
class RoomConfig:
    """Room registry settings."""

    # Maximum occupants per room
    MAX_ROOM_SIZE: int = 4

    # Length of generated room codes
    ROOM_CODE_LENGTH: int = 6


# ============================================================
# Connection settings
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """Client-side signaling and capture settings."""

    # Signaling WebSocket URL used by the headless client
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")

    # Delay before the single reconnect attempt (seconds)
    RECONNECT_DELAY: float = float(os.getenv("RECONNECT_DELAY", "2.0"))

    # Capture target resolution
    VIDEO_WIDTH: int = 1280
    VIDEO_HEIGHT: int = 720

    # Default capture source for the headless client (aiortc MediaPlayer)
    MEDIA_SOURCE: Optional[str] = os.getenv("MEDIA_SOURCE")
    MEDIA_FORMAT: Optional[str] = os.getenv("MEDIA_FORMAT")


# ============================================================
# Singletons
# ============================================================

ice_config = ICEServerConfig()
room_config = RoomConfig()
connection_config = ConnectionConfig()


logger.debug(f"[Config] .env path: {_env_path} (exists: {_env_path.exists()})")
logger.debug(f"[Config] STUN servers: {', '.join(ice_config.STUN_SERVERS)}")
logger.debug(f"[Config] Room capacity: {room_config.MAX_ROOM_SIZE}")
