"""pytest configuration and shared fixtures.

Test infrastructure:
- FakeWebSocket: records frames the relay sends to one participant
- FakePeerConnection: stands in for aiortc RTCPeerConnection
- FakeChannel: in-memory signaling channel for negotiator/session tests
- FakeCapture: hands out fake audio/video tracks
"""

import asyncio
from collections import defaultdict

import pytest
from aiortc import RTCSessionDescription

from callroom.client.errors import MediaAccessError, TransportError
from callroom.client.media import MediaCapture, MediaStream
from callroom.webrtc import Peer, reset_signaling_relay


async def settle(rounds: int = 20):
    """Let queued tasks (negotiator worker, ack posts) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ===== Relay side =====


class FakeWebSocket:
    """Records everything sent with ``send_json``."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, frame):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(frame)

    def types(self):
        return [frame["type"] for frame in self.sent]

    def of_type(self, event):
        return [frame for frame in self.sent if frame["type"] == event]


def make_peer(peer_id: str, fail: bool = False) -> Peer:
    return Peer(peer_id=peer_id, websocket=FakeWebSocket(fail=fail))


@pytest.fixture(autouse=True)
def fresh_relay():
    """Each test starts with an empty process-wide relay."""
    reset_signaling_relay()
    yield
    reset_signaling_relay()


# ===== Client side =====


class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeSender:
    def __init__(self, track):
        self.track = track


class FakePeerConnection:
    """Minimal RTCPeerConnection double.

    Signaling state follows the JSEP rules the negotiator relies on:
    local offer -> ``have-local-offer``, remote offer -> ``have-remote-offer``,
    answer -> ``stable``.
    """

    instances = []

    def __init__(self):
        self.handlers = defaultdict(list)
        self.senders = []
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.candidates = []
        self.closed = False
        self.fail_create_offer = False
        FakePeerConnection.instances.append(self)

    def on(self, event, handler=None):
        def register(fn):
            self.handlers[event].append(fn)
            return fn
        return register(handler) if handler else register

    def emit(self, event, *args):
        for handler in list(self.handlers[event]):
            handler(*args)

    def remove_all_listeners(self):
        self.handlers.clear()

    def getSenders(self):
        return list(self.senders)

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    async def createOffer(self):
        if self.fail_create_offer:
            raise ValueError("cannot create offer")
        return RTCSessionDescription(sdp="v=0 offer", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakeChannel:
    """In-memory signaling channel.

    ``emitted`` collects outgoing ``(event, data)`` pairs; ``deliver`` feeds
    an incoming relay event to the registered handlers.
    """

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.handlers = defaultdict(list)
        self.emitted = []
        self.acks = []
        self.fail_events = set()
        self.connect_calls = 0
        self.fail_connect = False

    def on(self, event, handler):
        self.handlers[event].append(handler)

    async def emit(self, event, data, ack=None):
        if not self.connected or event in self.fail_events:
            raise TransportError(f"cannot send {event}")
        self.emitted.append((event, data))
        if ack is not None:
            self.acks.append(ack)

    async def connect(self):
        self.connect_calls += 1
        if self.fail_connect:
            await self.deliver("connect_error", {"message": "refused"})
            raise TransportError("Signaling connection error: refused")
        self.connected = True
        await self.deliver("connect", {})

    async def disconnect(self):
        self.connected = False

    async def drop(self):
        """Simulate the relay going away."""
        self.connected = False
        await self.deliver("disconnect", {})

    async def deliver(self, event, data):
        for handler in self.handlers[event]:
            await handler(data)

    def sent(self, event):
        return [data for name, data in self.emitted if name == event]


class FakeCapture(MediaCapture):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0
        self.streams = []

    async def acquire(self, audio, video):
        self.calls += 1
        if self.fail:
            raise MediaAccessError("Unable to access camera/mic: permission denied")
        stream = MediaStream([FakeTrack("audio"), FakeTrack("video")])
        self.streams.append(stream)
        return stream


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture(autouse=True)
def reset_peer_connections():
    FakePeerConnection.instances = []
    yield
