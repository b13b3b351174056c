"""Call error taxonomy.

Each error maps to one recovery policy in the session controller:

    MediaAccessError   abort the join, tear down the half-built call locally
    RoomFullError      abort the join, local teardown only (no leave message)
    TransportError     signaling channel dropped, one delayed reconnect
    NegotiationError   offer/answer failed, peer connection kept for retry
    ConnectionFailed   transport failed, full teardown, manual rejoin
"""


class CallError(Exception):
    """Base class for user-visible call errors."""

    fatal = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MediaAccessError(CallError):
    """Capture device unavailable or permission denied."""


class RoomFullError(CallError):
    """The relay rejected the join because the room is at capacity."""

    def __init__(self, message: str = "This room already has the maximum number of participants."):
        super().__init__(message)


class TransportError(CallError):
    """The signaling channel is not connected or dropped mid-send."""


class NegotiationError(CallError):
    """Creating or transmitting an offer/answer failed."""


class ConnectionFailed(CallError):
    """The peer transport reached the ``failed`` state."""

    fatal = True

    def __init__(self, message: str = "Peer connection failed. Please try rejoining the room."):
        super().__init__(message)
