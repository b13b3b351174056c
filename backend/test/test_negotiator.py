"""ConnectionNegotiator unit tests

- local media attach (once, no duplicate senders)
- offer side: local description committed before send, ack -> awaiting answer
- answer side and glare: first remote offer wins
- answers only applied with an outstanding offer
- early ICE candidates dropped
- transport failure -> on_failed, teardown idempotent
"""

from unittest.mock import AsyncMock

import pytest

from callroom.client.errors import ConnectionFailed, MediaAccessError, NegotiationError
from callroom.client.negotiator import ConnectionNegotiator
from callroom.client.state import CallSession, NegotiationState

from conftest import FakeCapture, FakePeerConnection, FakeTrack, settle

REMOTE_OFFER = {"type": "offer", "sdp": "v=0 remote offer"}
REMOTE_ANSWER = {"type": "answer", "sdp": "v=0 remote answer"}
HOST_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 192.168.1.5 61665 typ host generation 0",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


@pytest.fixture
def session():
    return CallSession(room_id="ROOM1")


@pytest.fixture
def statuses():
    return []


@pytest.fixture
def on_failed():
    return AsyncMock()


@pytest.fixture
def negotiator(session, channel, capture, statuses, on_failed):
    return ConnectionNegotiator(
        session, channel, capture,
        pc_factory=FakePeerConnection,
        on_status=statuses.append,
        on_failed=on_failed,
    )


# ===== local media =====


@pytest.mark.asyncio
async def test_attach_local_media_captures_once(negotiator, session, capture):
    await negotiator.attach_local_media()
    await negotiator.attach_local_media()

    assert capture.calls == 1
    assert session.state == NegotiationState.LOCAL_MEDIA_READY
    assert len(negotiator.pc.getSenders()) == 2
    assert session.remote_stream is not None


@pytest.mark.asyncio
async def test_attach_applies_enabled_flags(negotiator, session):
    session.audio_enabled = False

    await negotiator.attach_local_media()

    assert [t.enabled for t in session.local_stream.get_audio_tracks()] == [False]
    assert [t.enabled for t in session.local_stream.get_video_tracks()] == [True]


@pytest.mark.asyncio
async def test_attach_local_media_failure_raises(session, channel):
    negotiator = ConnectionNegotiator(session, channel, FakeCapture(fail=True), pc_factory=FakePeerConnection)

    with pytest.raises(MediaAccessError):
        await negotiator.attach_local_media()

    assert session.local_stream is None
    assert session.state == NegotiationState.IDLE


# ===== offer side =====


@pytest.mark.asyncio
async def test_initiate_offer_sends_committed_description(negotiator, session, channel):
    await negotiator.attach_local_media()

    await negotiator.initiate_offer()

    pc = negotiator.pc
    assert pc.signalingState == "have-local-offer"
    assert channel.sent("offer") == [
        {"roomId": "ROOM1", "description": {"type": "offer", "sdp": pc.localDescription.sdp}}
    ]
    assert session.state == NegotiationState.OFFER_SENT


@pytest.mark.asyncio
async def test_offer_ack_moves_to_awaiting_answer(negotiator, session, channel, statuses):
    await negotiator.attach_local_media()
    await negotiator.initiate_offer()

    channel.acks[0]()
    await settle()

    assert session.state == NegotiationState.AWAITING_ANSWER
    assert statuses[-1] == "Offer sent"


@pytest.mark.asyncio
async def test_initiate_offer_without_transport_is_noop(negotiator, channel):
    await negotiator.initiate_offer()

    assert channel.emitted == []


@pytest.mark.asyncio
async def test_offer_send_failure_leaves_state(negotiator, session, channel):
    await negotiator.attach_local_media()
    channel.fail_events.add("offer")

    with pytest.raises(NegotiationError):
        await negotiator.initiate_offer()

    assert session.state == NegotiationState.LOCAL_MEDIA_READY
    assert negotiator.pc is not None


@pytest.mark.asyncio
async def test_offer_creation_failure_raises_negotiation_error(negotiator, session, channel):
    await negotiator.attach_local_media()
    negotiator.pc.fail_create_offer = True

    with pytest.raises(NegotiationError, match="Unable to create an offer"):
        await negotiator.initiate_offer()

    assert channel.sent("offer") == []
    assert session.state == NegotiationState.LOCAL_MEDIA_READY


@pytest.mark.asyncio
async def test_answer_applied_with_outstanding_offer(negotiator, statuses):
    await negotiator.attach_local_media()
    await negotiator.initiate_offer()

    await negotiator.handle_remote_answer(REMOTE_ANSWER)

    assert negotiator.pc.remoteDescription.sdp == REMOTE_ANSWER["sdp"]
    assert negotiator.pc.signalingState == "stable"
    assert statuses[-1] == "Call connected"


@pytest.mark.asyncio
async def test_answer_without_outstanding_offer_is_ignored(negotiator):
    await negotiator.attach_local_media()

    await negotiator.handle_remote_answer(REMOTE_ANSWER)

    assert negotiator.pc.remoteDescription is None


# ===== answer side =====


@pytest.mark.asyncio
async def test_remote_offer_builds_transport_and_answers(negotiator, session, channel, capture, statuses):
    await negotiator.handle_remote_offer(REMOTE_OFFER)

    pc = negotiator.pc
    assert capture.calls == 1
    assert pc.remoteDescription.sdp == REMOTE_OFFER["sdp"]
    assert channel.sent("answer") == [
        {"roomId": "ROOM1", "description": {"type": "answer", "sdp": pc.localDescription.sdp}}
    ]
    assert session.state == NegotiationState.ANSWERING_REMOTE_OFFER
    assert statuses[-1] == "Answer sent"


@pytest.mark.asyncio
async def test_first_remote_offer_wins(negotiator, channel):
    await negotiator.handle_remote_offer(REMOTE_OFFER)
    await negotiator.handle_remote_offer({"type": "offer", "sdp": "v=0 second offer"})

    assert negotiator.pc.remoteDescription.sdp == REMOTE_OFFER["sdp"]
    assert len(channel.sent("answer")) == 1


@pytest.mark.asyncio
async def test_malformed_offer_is_ignored(negotiator, channel):
    await negotiator.handle_remote_offer("not a description")
    await negotiator.handle_remote_offer({"type": "answer", "sdp": "v=0"})

    assert negotiator.pc is None
    assert channel.emitted == []


# ===== ICE =====


@pytest.mark.asyncio
async def test_early_ice_candidate_is_dropped(negotiator):
    """Candidate arrives before the transport exists."""
    await negotiator.handle_remote_ice_candidate(HOST_CANDIDATE)

    assert negotiator.pc is None
    assert FakePeerConnection.instances == []


@pytest.mark.asyncio
async def test_remote_ice_candidate_is_applied(negotiator):
    await negotiator.handle_remote_offer(REMOTE_OFFER)

    await negotiator.handle_remote_ice_candidate(HOST_CANDIDATE)

    [candidate] = negotiator.pc.candidates
    assert candidate.ip == "192.168.1.5"
    assert candidate.port == 61665
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


@pytest.mark.asyncio
async def test_bad_ice_candidate_is_logged_not_raised(negotiator):
    await negotiator.handle_remote_offer(REMOTE_OFFER)

    await negotiator.handle_remote_ice_candidate({"candidate": "candidate:garbage"})
    await negotiator.handle_remote_ice_candidate({"candidate": ""})

    assert negotiator.pc.candidates == []


# ===== transport state =====


@pytest.mark.asyncio
async def test_connected_state_is_reported(negotiator, session, statuses):
    await negotiator.attach_local_media()

    negotiator.pc.set_connection_state("connected")
    await settle()

    assert session.state == NegotiationState.CONNECTED
    assert statuses[-1] == "Connected"


@pytest.mark.asyncio
async def test_failed_state_calls_on_failed(negotiator, session, on_failed):
    await negotiator.attach_local_media()

    negotiator.pc.set_connection_state("failed")
    await settle()

    assert session.state == NegotiationState.FAILED
    on_failed.assert_awaited_once()
    assert isinstance(on_failed.await_args.args[0], ConnectionFailed)


@pytest.mark.asyncio
async def test_remote_track_added_to_remote_stream(negotiator, session):
    await negotiator.attach_local_media()
    track = FakeTrack("video")

    negotiator.pc.emit("track", track)

    assert session.remote_stream.get_video_tracks() == [track]


# ===== close / teardown =====


@pytest.mark.asyncio
async def test_close_transport_keeps_local_media(negotiator, session):
    await negotiator.attach_local_media()
    await negotiator.initiate_offer()
    pc = negotiator.pc

    await negotiator.close_transport()

    assert pc.closed
    assert negotiator.pc is None
    assert session.remote_stream is None
    assert session.local_stream is not None
    assert session.state == NegotiationState.LOCAL_MEDIA_READY


@pytest.mark.asyncio
async def test_teardown_releases_everything_once(negotiator, session, channel):
    await negotiator.attach_local_media()
    session.video_enabled = False
    tracks = session.local_stream.get_tracks()
    pc = negotiator.pc

    await negotiator.teardown(notify_peer=True)
    await negotiator.teardown(notify_peer=True)

    assert pc.closed
    assert pc.handlers == {}
    assert all(t.stopped for t in tracks)
    assert session.local_stream is None
    assert session.remote_stream is None
    assert session.video_enabled is True
    assert session.state == NegotiationState.CLOSED
    assert channel.sent("leave") == [{"roomId": "ROOM1"}]


@pytest.mark.asyncio
async def test_teardown_without_notify_sends_nothing(negotiator, channel):
    await negotiator.attach_local_media()

    await negotiator.teardown()

    assert channel.emitted == []


@pytest.mark.asyncio
async def test_late_callbacks_after_teardown_are_ignored(negotiator, session, on_failed):
    await negotiator.attach_local_media()
    pc = negotiator.pc
    handler = pc.handlers["connectionstatechange"][0]
    await negotiator.teardown()

    pc.connectionState = "failed"
    handler()
    await settle()

    on_failed.assert_not_awaited()
    assert session.state == NegotiationState.CLOSED


@pytest.mark.asyncio
async def test_operations_after_teardown_are_noops(negotiator, channel, capture):
    await negotiator.teardown()

    await negotiator.attach_local_media()
    await negotiator.handle_remote_offer(REMOTE_OFFER)

    assert capture.calls == 0
    assert channel.emitted == []
