"""Health check API router.

Relay status, live room list and the ICE server list browsers should use.
"""

from fastapi import APIRouter

from callroom.webrtc import get_signaling_relay, ice_config, room_config

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check():
    """Relay status and message counters.

    Returns:
        dict: status, room/peer totals and relay stats
    """
    relay = get_signaling_relay()
    rooms = relay.room_manager.get_room_list()
    return {
        "status": "ok",
        "rooms": len(rooms),
        "peers": sum(room["peer_count"] for room in rooms),
        "max_room_size": room_config.MAX_ROOM_SIZE,
        "stats": dict(relay.stats),
    }


@router.get("/rooms")
async def list_rooms():
    """List active rooms.

    Returns:
        dict: ``{"rooms": [{"room_id", "peer_count", "peers"}]}``
    """
    return {"rooms": get_signaling_relay().room_manager.get_room_list()}


@router.get("/ice-servers")
async def ice_servers():
    """ICE servers in the browser ``RTCIceServer`` shape."""
    return {"iceServers": ice_config.as_browser_ice_servers()}
