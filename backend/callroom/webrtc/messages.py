"""Signaling message types.

Inbound (client → relay) messages are a closed tagged union keyed by the
``type`` field and parsed with a pydantic discriminated union. Outbound
(relay → client) events are built by the small helpers at the bottom of this
module so the wire shapes live in one place.

Wire frame::

    {"type": "<event>", "data": {...}, "ack_id": 7}

``description`` and ``candidate`` payloads are never inspected by the relay;
they are carried through as opaque JSON values.
"""

import logging
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class SignalEvent(str, Enum):
    """Event names used on the wire."""

    # client -> relay
    JOIN = "join"
    LEAVE = "leave"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    DISCONNECTING = "disconnecting"

    # relay -> client
    JOINED_ROOM = "joined-room"
    ROOM_FULL = "room-full"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    ACK = "ack"


class RoomPayload(BaseModel):
    """``{roomId}`` payload of join/leave."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_id: Optional[str] = Field(default=None, alias="roomId")


class SignalPayload(RoomPayload):
    """``{roomId, description?, candidate?}`` payload of relayed messages."""

    description: Optional[Any] = None
    candidate: Optional[Any] = None


class JoinMessage(BaseModel):
    type: Literal["join"]
    data: RoomPayload = Field(default_factory=RoomPayload)


class LeaveMessage(BaseModel):
    type: Literal["leave"]
    data: RoomPayload = Field(default_factory=RoomPayload)


class OfferMessage(BaseModel):
    type: Literal["offer"]
    data: SignalPayload = Field(default_factory=SignalPayload)
    ack_id: Optional[int] = None

    @property
    def payload(self) -> Any:
        return self.data.description


class AnswerMessage(BaseModel):
    type: Literal["answer"]
    data: SignalPayload = Field(default_factory=SignalPayload)
    ack_id: Optional[int] = None

    @property
    def payload(self) -> Any:
        return self.data.description


class IceCandidateMessage(BaseModel):
    type: Literal["ice-candidate"]
    data: SignalPayload = Field(default_factory=SignalPayload)
    ack_id: Optional[int] = None

    @property
    def payload(self) -> Any:
        return self.data.candidate


class DisconnectingMessage(BaseModel):
    """Synthesized by the WebSocket endpoint when the transport drops."""

    type: Literal["disconnecting"] = "disconnecting"


SignalMessage = Annotated[
    Union[
        JoinMessage,
        LeaveMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
        DisconnectingMessage,
    ],
    Field(discriminator="type"),
]

_signal_adapter = TypeAdapter(SignalMessage)


def parse_signal_message(raw: Any) -> Optional[SignalMessage]:
    """Parse one inbound frame into a :data:`SignalMessage`.

    Args:
        raw: Decoded JSON frame.

    Returns:
        The parsed message, or ``None`` if the frame has an unknown type or
        an unusable shape. Such frames are dropped, never raised.
    """
    msg_type = raw.get("type") if isinstance(raw, dict) else None
    if msg_type == SignalEvent.DISCONNECTING.value:
        # internal only, never accepted from the wire
        logger.warning("[Signaling] Dropping client-sent disconnecting frame")
        return None
    try:
        return _signal_adapter.validate_python(raw)
    except ValidationError as e:
        logger.warning(f"[Signaling] Dropping unrecognized frame type={msg_type!r}: {e.error_count()} error(s)")
        return None


def is_missing(value: Any) -> bool:
    """Payload fields that are absent or empty count as missing."""
    return value is None or value == ""


# ============================================================
# Outbound events
# ============================================================

def make_event(event: SignalEvent, data: Optional[dict] = None, ack_id: Optional[int] = None) -> dict:
    frame = {"type": event.value, "data": data or {}}
    if ack_id is not None:
        frame["ack_id"] = ack_id
    return frame


def joined_room_event(participants: int) -> dict:
    return make_event(SignalEvent.JOINED_ROOM, {"participants": participants})


def room_full_event() -> dict:
    return make_event(SignalEvent.ROOM_FULL)


def peer_joined_event(participant_id: str, participants: int) -> dict:
    return make_event(
        SignalEvent.PEER_JOINED,
        {"participantId": participant_id, "participants": participants},
    )


def peer_left_event(participant_id: str) -> dict:
    return make_event(SignalEvent.PEER_LEFT, {"participantId": participant_id})


def relayed_event(event: SignalEvent, payload: Any, participant_id: str) -> dict:
    """Build an offer/answer/ice-candidate broadcast from the sender's payload."""
    key = "candidate" if event is SignalEvent.ICE_CANDIDATE else "description"
    return make_event(event, {key: payload, "participantId": participant_id})


def ack_event(ack_id: int) -> dict:
    return make_event(SignalEvent.ACK, ack_id=ack_id)
