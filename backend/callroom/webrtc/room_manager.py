"""Room registry module.

Tracks which signaling connections belong to which room code and enforces
the room capacity. Several independent rooms are managed at once; each room
has its own lock so that the capacity check and the membership add happen
as a single step, while operations on different rooms never wait on each
other.

Main features:
    - Implicit room creation on first join, deletion when the last peer leaves
    - Capacity check (``room_config.MAX_ROOM_SIZE``) before every add
    - Per-room ordering guard for the relay
    - Room listing for the HTTP endpoints

Architecture:
    - rooms: Dict[str, Dict[str, Peer]] - room code -> peers
    - peer_to_room: Dict[str, str] - peer ID -> room code (one room per peer)
    - _guards: Dict[str, _RoomGuard] - room code -> lock + waiter count

Classes:
    Peer: One signaling connection inside a room
    RoomManager: Room and membership bookkeeping

Examples:
    Basic usage:
        >>> manager = RoomManager()
        >>> async with manager.room_guard("abc123"):
        ...     count = manager.join_room("abc123", Peer("peer-1", ws))
        >>> count
        1
        >>> manager.get_peer_room("peer-1")
        'ABC123'

See Also:
    relay.py: message routing on top of this registry
    routes/signaling.py: WebSocket endpoint
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import room_config

logger = logging.getLogger(__name__)


@dataclass
class Peer:
    """A signaling connection that is a member of a room.

    Attributes:
        peer_id (str): Connection identifier, also used as ``participantId``
        websocket (Any): Object with an async ``send_json(dict)`` method
            (a FastAPI ``WebSocket`` in production)
    """
    peer_id: str
    websocket: Any


@dataclass
class _RoomGuard:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RoomFullError(Exception):
    """Raised by :meth:`RoomManager.join_room` when the room is at capacity."""


class RoomManager:
    """Room registry.

    Membership is the only shared mutable state of the relay. All mutation
    goes through :meth:`join_room` and :meth:`leave_room`; callers that need
    per-room ordering (the relay) wrap their work in :meth:`room_guard`.

    Attributes:
        rooms (Dict[str, Dict[str, Peer]]): room code -> {peer_id: Peer}
        peer_to_room (Dict[str, str]): reverse lookup, one room per peer
        max_room_size (int): capacity per room

    Thread Safety:
        - Runs on a single asyncio event loop
        - ``join_room`` contains no await, so check-then-add cannot interleave
    """

    def __init__(self, max_room_size: int = room_config.MAX_ROOM_SIZE):
        # room_id -> {peer_id: Peer}
        self.rooms: Dict[str, Dict[str, Peer]] = {}

        # peer_id -> room_id
        self.peer_to_room: Dict[str, str] = {}

        self.max_room_size = max_room_size
        self._guards: Dict[str, _RoomGuard] = {}

    @staticmethod
    def normalize_room_id(room_id: str) -> str:
        """Trim and uppercase a room code.

        Examples:
            >>> RoomManager.normalize_room_id("  abc123 ")
            'ABC123'
        """
        return room_id.strip().upper()

    @asynccontextmanager
    async def room_guard(self, room_id: str) -> AsyncIterator[None]:
        """Serialize work on one room.

        The guard entry is reference counted so it is only discarded once no
        coroutine holds or waits on its lock; otherwise a latecomer could get
        a fresh lock and run concurrently with a waiter on the old one.

        Args:
            room_id (str): Room code (normalized internally)
        """
        room_id = self.normalize_room_id(room_id)
        guard = self._guards.get(room_id)
        if guard is None:
            guard = _RoomGuard()
            self._guards[room_id] = guard
        guard.users += 1
        try:
            async with guard.lock:
                yield
        finally:
            guard.users -= 1
            if guard.users == 0 and room_id not in self.rooms:
                self._guards.pop(room_id, None)

    def join_room(self, room_id: str, peer: Peer) -> int:
        """Add a peer to a room, creating the room if needed.

        Args:
            room_id (str): Room code (normalized internally)
            peer (Peer): Joining connection

        Returns:
            int: Occupancy after the join

        Raises:
            RoomFullError: The room already holds ``max_room_size`` peers.
                Membership is left untouched.

        Note:
            - Re-joining the same room is a no-op returning the current count
            - A peer still registered in another room must leave it first
        """
        room_id = self.normalize_room_id(room_id)
        members = self.rooms.get(room_id, {})

        if peer.peer_id in members:
            return len(members)

        if len(members) >= self.max_room_size:
            logger.info(f"[Room] '{room_id}' is full ({len(members)}/{self.max_room_size}), "
                        f"rejecting {peer.peer_id[:8]}")
            raise RoomFullError(room_id)

        if room_id not in self.rooms:
            self.rooms[room_id] = {}
            logger.info(f"[Room] '{room_id}' created")

        self.rooms[room_id][peer.peer_id] = peer
        self.peer_to_room[peer.peer_id] = room_id

        count = len(self.rooms[room_id])
        logger.info(f"[Room] Peer {peer.peer_id[:8]} joined '{room_id}'. Room has {count} peers")
        return count

    def leave_room(self, peer_id: str) -> Optional[str]:
        """Remove a peer from the room it belongs to.

        Args:
            peer_id (str): Leaving peer

        Returns:
            Optional[str]: Room code the peer was in, or None

        Note:
            - The room is deleted when its last peer leaves
        """
        room_id = self.peer_to_room.pop(peer_id, None)
        if room_id is None:
            return None

        members = self.rooms.get(room_id)
        if members is None or peer_id not in members:
            return None

        del members[peer_id]
        if not members:
            del self.rooms[room_id]
            guard = self._guards.get(room_id)
            if guard is not None and guard.users == 0:
                del self._guards[room_id]
            logger.info(f"[Room] '{room_id}' deleted (empty)")
        else:
            logger.info(f"[Room] Peer {peer_id[:8]} left '{room_id}'. Room has {len(members)} peers")

        return room_id

    def get_room_peers(self, room_id: str) -> List[Peer]:
        """Return every peer in a room (empty list for unknown rooms)."""
        return list(self.rooms.get(self.normalize_room_id(room_id), {}).values())

    def get_other_peers(self, room_id: str, exclude_peer_id: str) -> List[Peer]:
        """Return the peers of a room except ``exclude_peer_id``.

        Used for every broadcast so a sender never receives its own message.
        """
        return [peer for peer in self.get_room_peers(room_id)
                if peer.peer_id != exclude_peer_id]

    def get_peer_room(self, peer_id: str) -> Optional[str]:
        """Return the room code a peer is in.

        Args:
            peer_id (str): Peer ID to look up

        Returns:
            Optional[str]: Normalized room code, or None if the peer is in no room

        Examples:
            >>> manager = RoomManager()
            >>> manager.join_room("abc123", Peer("peer-1", ws))
            1
            >>> manager.get_peer_room("peer-1")
            'ABC123'
        """
        return self.peer_to_room.get(peer_id)

    def get_peer(self, peer_id: str) -> Optional[Peer]:
        """Look up a Peer by ID.

        Args:
            peer_id (str): Peer ID to look up

        Returns:
            Optional[Peer]: The peer, or None if it is not in any room

        Note:
            - Goes through peer_to_room first, so the lookup touches one room only
        """
        room_id = self.peer_to_room.get(peer_id)
        if room_id and room_id in self.rooms:
            return self.rooms[room_id].get(peer_id)
        return None

    def get_room_count(self, room_id: str) -> int:
        """Return the current occupancy of a room (0 if it does not exist)."""
        return len(self.rooms.get(self.normalize_room_id(room_id), {}))

    def get_room_list(self) -> List[dict]:
        """Return a summary of every active room.

        Returns:
            List[dict]: one entry per room with keys
                - room_id (str)
                - peer_count (int)
                - peers (List[str]): peer IDs

        Examples:
            >>> manager.get_room_list()
            [{'room_id': 'ABC123', 'peer_count': 2, 'peers': ['peer-1', 'peer-2']}]
        """
        return [
            {
                "room_id": room_id,
                "peer_count": len(peers),
                "peers": list(peers.keys()),
            }
            for room_id, peers in self.rooms.items()
        ]

    def clear(self) -> None:
        """Drop all rooms. Used on shutdown and between tests."""
        self.rooms.clear()
        self.peer_to_room.clear()
        self._guards.clear()
