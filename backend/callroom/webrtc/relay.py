"""Signaling relay module.

Consumes parsed signaling messages, updates the room registry and routes
each message to the right subset of room occupants. The relay holds no state
of its own beyond the registry.

Message handling:
    - join: capacity check + add, ``joined-room`` to the joiner, then
      ``peer-joined`` to everyone else
    - leave: remove, ``peer-left`` to the remaining occupants
    - offer / answer / ice-candidate: broadcast to the room except the
      sender; offer/answer are acknowledged to the sender afterwards
    - disconnecting: same as leave for the room the connection was in

Incomplete payloads (missing room code, description or candidate) are
dropped without an error reply.

Examples:
    >>> relay = get_signaling_relay()
    >>> peer = Peer("peer-1", websocket)
    >>> await relay.handle_message(peer, parse_signal_message(
    ...     {"type": "join", "data": {"roomId": "abc123"}}))
"""
import logging
from typing import Any, Optional

from .messages import (
    AnswerMessage,
    DisconnectingMessage,
    IceCandidateMessage,
    JoinMessage,
    LeaveMessage,
    OfferMessage,
    SignalEvent,
    SignalMessage,
    ack_event,
    is_missing,
    joined_room_event,
    peer_joined_event,
    peer_left_event,
    relayed_event,
    room_full_event,
)
from .room_manager import Peer, RoomFullError, RoomManager

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Routes signaling messages between the occupants of a room.

    Attributes:
        room_manager (RoomManager): membership registry
        stats (dict): counters exposed by the health endpoint
    """

    def __init__(self, room_manager: Optional[RoomManager] = None):
        self.room_manager = room_manager or RoomManager()
        self.stats = {"relayed": 0, "dropped": 0, "rejected_joins": 0}

    async def handle_message(self, peer: Peer, message: SignalMessage) -> None:
        """Dispatch one inbound message from ``peer``."""
        if isinstance(message, JoinMessage):
            await self.join(peer, message.data.room_id)
        elif isinstance(message, LeaveMessage):
            await self.leave(peer, message.data.room_id)
        elif isinstance(message, (OfferMessage, AnswerMessage, IceCandidateMessage)):
            await self.relay(
                SignalEvent(message.type), peer, message.data.room_id,
                message.payload, ack_id=message.ack_id,
            )
        elif isinstance(message, DisconnectingMessage):
            await self.disconnect(peer)
        else:
            raise TypeError(f"Unhandled signal message: {type(message).__name__}")

    async def join(self, peer: Peer, room_id: Optional[str]) -> None:
        """Add ``peer`` to ``room_id`` or reply ``room-full``.

        A peer that is still a member of a different room leaves that room
        first, so the one-room-per-connection invariant holds.
        """
        room_id = self._normalize(room_id)
        if is_missing(room_id):
            self.stats["dropped"] += 1
            return

        previous = self.room_manager.get_peer_room(peer.peer_id)
        if previous is not None and previous != room_id:
            await self.leave(peer, previous)

        async with self.room_manager.room_guard(room_id):
            rejoin = self.room_manager.get_peer_room(peer.peer_id) == room_id
            try:
                count = self.room_manager.join_room(room_id, peer)
            except RoomFullError:
                self.stats["rejected_joins"] += 1
                await self._send(peer, room_full_event())
                return

            await self._send(peer, joined_room_event(count))
            if not rejoin:
                await self._broadcast(
                    room_id, peer_joined_event(peer.peer_id, count), exclude=peer.peer_id
                )

    async def leave(self, peer: Peer, room_id: Optional[str]) -> None:
        """Remove ``peer`` and tell the remaining occupants. No reply to the leaver."""
        room_id = self._normalize(room_id)
        if is_missing(room_id):
            self.stats["dropped"] += 1
            return

        async with self.room_manager.room_guard(room_id):
            if self.room_manager.get_peer_room(peer.peer_id) != room_id:
                logger.debug(f"[Signaling] {peer.peer_id[:8]} is not in '{room_id}', ignoring leave")
                return
            self.room_manager.leave_room(peer.peer_id)
            await self._broadcast(room_id, peer_left_event(peer.peer_id), exclude=peer.peer_id)

    async def relay(
        self,
        event: SignalEvent,
        peer: Peer,
        room_id: Optional[str],
        payload: Any,
        ack_id: Optional[int] = None,
    ) -> None:
        """Broadcast an offer/answer/ice-candidate to the room except the sender.

        Args:
            event: ``OFFER``, ``ANSWER`` or ``ICE_CANDIDATE``
            peer: Sending connection
            room_id: Target room
            payload: Description or candidate, passed through untouched
            ack_id: Acknowledgment id for offer/answer

        Note:
            - The ack is sent once the broadcast step has finished; the relay
              does not wait for recipients to process the message
        """
        room_id = self._normalize(room_id)
        if is_missing(room_id) or is_missing(payload):
            self.stats["dropped"] += 1
            logger.debug(f"[Signaling] Dropping incomplete {event.value} from {peer.peer_id[:8]}")
            return

        async with self.room_manager.room_guard(room_id):
            await self._broadcast(
                room_id, relayed_event(event, payload, peer.peer_id), exclude=peer.peer_id
            )
            self.stats["relayed"] += 1

        if ack_id is not None and event in (SignalEvent.OFFER, SignalEvent.ANSWER):
            await self._send(peer, ack_event(ack_id))

    async def disconnect(self, peer: Peer) -> None:
        """Handle an abrupt transport drop like an explicit leave."""
        room_id = self.room_manager.get_peer_room(peer.peer_id)
        if room_id is None:
            return
        logger.info(f"[Signaling] {peer.peer_id[:8]} disconnected from '{room_id}'")
        await self.leave(peer, room_id)

    def _normalize(self, room_id: Optional[str]) -> Optional[str]:
        return None if room_id is None else self.room_manager.normalize_room_id(room_id)

    async def _broadcast(self, room_id: str, frame: dict, exclude: str) -> None:
        for other in self.room_manager.get_other_peers(room_id, exclude):
            await self._send(other, frame)

    async def _send(self, peer: Peer, frame: dict) -> bool:
        try:
            await peer.websocket.send_json(frame)
            return True
        except Exception as e:
            # The peer's own endpoint runs disconnect cleanup when its socket dies.
            logger.error(f"[Signaling] Failed to send {frame.get('type')} to {peer.peer_id[:8]}: {e}")
            return False


# ============================================================
# Process-wide instance
# ============================================================

_relay: Optional[SignalingRelay] = None


def get_signaling_relay() -> SignalingRelay:
    """Return the process-wide relay, constructing it on first use."""
    global _relay
    if _relay is None:
        _relay = SignalingRelay()
        logger.info("[Signaling] Relay initialized")
    return _relay


def reset_signaling_relay() -> None:
    """Drop the process-wide relay and its rooms (shutdown and test isolation)."""
    global _relay
    if _relay is not None:
        _relay.room_manager.clear()
    _relay = None
