"""Relay side: room registry, signaling messages and message routing.

Classes:
    RoomManager: Room membership and capacity
    Peer: Signaling connection data class
    SignalingRelay: Routes join/leave/offer/answer/ICE messages

Config:
    ice_config: STUN server list
    room_config: Room capacity and code length
    connection_config: Client signaling/capture settings
"""

from .config import (
    ice_config,
    room_config,
    connection_config,
    ICEServerConfig,
    RoomConfig,
    ConnectionConfig,
)
from .messages import SignalEvent, SignalMessage, parse_signal_message
from .room_manager import RoomManager, Peer, RoomFullError
from .relay import SignalingRelay, get_signaling_relay, reset_signaling_relay

__all__ = [
    # Classes
    "RoomManager",
    "Peer",
    "RoomFullError",
    "SignalingRelay",
    "get_signaling_relay",
    "reset_signaling_relay",
    # Messages
    "SignalEvent",
    "SignalMessage",
    "parse_signal_message",
    # Config
    "ice_config",
    "room_config",
    "connection_config",
    "ICEServerConfig",
    "RoomConfig",
    "ConnectionConfig",
]
