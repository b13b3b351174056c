"""FastAPI WebRTC Signaling Server with Room Support.

Signaling relay for room-code audio/video calls. Participants connect over a
WebSocket, join a room by code and exchange offer/answer/ICE messages through
the relay; media flows peer to peer and never touches this server.

Main features:
    - Room codes with a fixed capacity (room-full rejection)
    - join / leave / peer-joined / peer-left notifications
    - offer / answer / ice-candidate relay to the other occupants
    - CORS for local development origins

Architecture:
    - SignalingRelay: routes messages between room occupants
    - RoomManager: room membership and capacity
    - WebSocket: one connection per participant (/ws)
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from callroom.webrtc import get_signaling_relay, reset_signaling_relay
from routes import health_router, signaling_router

# Load variables from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")


os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{datetime.now().strftime('%Y%m%d')}.log"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# Days to keep server_*.log files
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """Delete daily log files older than the retention period.

    Args:
        log_dir: Log directory
        retention_days: Retention period in days

    Returns:
        Number of deleted files
    """
    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now().timestamp() - retention_days * 86400
    deleted_count = 0

    for log_file in Path(log_dir).glob("server_*.log"):
        try:
            date_str = log_file.stem.replace("server_", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")
            if file_date.timestamp() < cutoff_date:
                log_file.unlink()
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(log_filename, encoding="utf-8"),
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"Logging initialized: level={LOG_LEVEL}, env={ENV}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown of the relay.

    Args:
        app (FastAPI): FastAPI application instance

    Yields:
        None: control while the app is running

    Note:
        - Startup: prune old log files, construct the relay
        - Shutdown: drop every room and the relay instance
    """
    logger.info("Signaling server starting...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"Removed {deleted_logs} log files older than {LOG_RETENTION_DAYS} days")

    get_signaling_relay()

    yield

    logger.info("Signaling server shutting down...")
    reset_signaling_relay()


app = FastAPI(title="Room Call Signaling Server", lifespan=lifespan)

# CORS - any local network origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$|^https://.*\.ngrok(-free)?\.(app|dev|io)$|^https://.*\.trycloudflare\.com$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(signaling_router)


@app.get("/")
async def root():
    """Liveness check.

    Returns:
        dict: ``{"status": "ok", "service": <name>}``

    Examples:
        >>> response = await root()
        >>> print(response)
        {"status": "ok", "service": "Room Call Signaling Server"}
    """
    return {"status": "ok", "service": "Room Call Signaling Server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")), log_level="info")
