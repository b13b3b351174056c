"""Call participant side.

Classes:
    SignalingChannel: WebSocket connection to the relay
    ConnectionNegotiator: Offer/answer/ICE state machine over one peer connection
    SessionController: Room membership, role selection and teardown
    PlayerMediaCapture: Camera/mic capture through aiortc MediaPlayer
"""

from .errors import (
    CallError,
    MediaAccessError,
    RoomFullError,
    TransportError,
    NegotiationError,
    ConnectionFailed,
)
from .media import MediaCapture, MediaStream, PlayerMediaCapture, ToggleableTrack, VideoConstraints
from .state import CallSession, NegotiationState
from .signaling_channel import SignalingChannel
from .negotiator import ConnectionNegotiator
from .session import SessionController, generate_room_code

__all__ = [
    # Classes
    "SignalingChannel",
    "ConnectionNegotiator",
    "SessionController",
    "CallSession",
    "NegotiationState",
    "generate_room_code",
    # Media
    "MediaCapture",
    "MediaStream",
    "PlayerMediaCapture",
    "ToggleableTrack",
    "VideoConstraints",
    # Errors
    "CallError",
    "MediaAccessError",
    "RoomFullError",
    "TransportError",
    "NegotiationError",
    "ConnectionFailed",
]
