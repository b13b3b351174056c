"""Signaling WebSocket router.

Room join/leave and offer/answer/ICE relay over a single ``/ws`` endpoint.
The server never terminates media; it only forwards signaling frames between
occupants of the same room.
"""

import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from callroom.webrtc import Peer, get_signaling_relay, parse_signal_message
from callroom.webrtc.messages import DisconnectingMessage

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for call signaling.

    Frames are JSON ``{"type", "data", "ack_id"?}``.

    Handled message types:
        - join: enter a room (``roomId``)
        - leave: leave a room (``roomId``)
        - offer / answer: relayed SDP, acknowledged when ``ack_id`` is set
        - ice-candidate: relayed ICE candidate

    Malformed frames and unknown types are logged and dropped. Whatever way
    the socket ends, the peer leaves its room and the others get ``peer-left``.

    Args:
        websocket: FastAPI WebSocket connection
    """
    relay = get_signaling_relay()
    await websocket.accept()

    peer = Peer(peer_id=str(uuid.uuid4()), websocket=websocket)
    logger.info(f"[Signaling] Peer {peer.peer_id[:8]} connected")

    try:
        while True:
            try:
                raw = await websocket.receive_json()
            except ValueError:
                # receive_json raises JSONDecodeError (a ValueError) on bad text
                logger.warning(f"[Signaling] Non-JSON frame from {peer.peer_id[:8]}")
                continue

            message = parse_signal_message(raw)
            if message is None:
                continue
            await relay.handle_message(peer, message)

    except WebSocketDisconnect:
        logger.info(f"[Signaling] Peer {peer.peer_id[:8]} disconnected")
    except Exception as e:
        logger.error(f"[Signaling] WebSocket error for {peer.peer_id[:8]}: {e}")
    finally:
        await relay.handle_message(peer, DisconnectingMessage())
        logger.info(f"[Signaling] Peer {peer.peer_id[:8]} cleaned up")
