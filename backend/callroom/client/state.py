"""Call session state."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .media import MediaStream


class NegotiationState(str, Enum):
    """Negotiator states.

    ``IDLE -> LOCAL_MEDIA_READY -> (OFFER_SENT -> AWAITING_ANSWER |
    ANSWERING_REMOTE_OFFER) -> CONNECTED -> {DISCONNECTED, FAILED, CLOSED}``

    ``OFFER_SENT`` means the offer was handed to the signaling channel;
    ``AWAITING_ANSWER`` means the relay acknowledged it.
    """

    IDLE = "idle"
    LOCAL_MEDIA_READY = "local_media_ready"
    OFFER_SENT = "offer_sent"
    AWAITING_ANSWER = "awaiting_answer"
    ANSWERING_REMOTE_OFFER = "answering_remote_offer"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationState.FAILED, NegotiationState.CLOSED)


@dataclass
class CallSession:
    """One call in one room.

    The session controller owns the room, the enabled flags and the
    participant count; the negotiator owns the streams and ``state``.

    Attributes:
        room_id (str): normalized room code
        local_stream (Optional[MediaStream]): captured tracks
        remote_stream (Optional[MediaStream]): tracks received from the peer
        state (NegotiationState): negotiator state
        audio_enabled (bool): microphone flag applied to local audio tracks
        video_enabled (bool): camera flag applied to local video tracks
        participant_count (int): last occupancy reported by the relay
    """
    room_id: str
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None
    state: NegotiationState = NegotiationState.IDLE
    audio_enabled: bool = True
    video_enabled: bool = True
    participant_count: int = 0

    @property
    def is_connected(self) -> bool:
        return self.state == NegotiationState.CONNECTED
