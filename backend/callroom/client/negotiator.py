"""Connection negotiator.

Owns one call's peer connection, local capture and the offer/answer/ICE
exchange. Every operation and every transport callback becomes an event on a
per-negotiator queue and is processed one at a time, so a remote offer that
arrives while a local offer is being built simply waits its turn.

WebRTC Flow:
    Offer side (participant that saw ``peer-joined``):
        1. attach_local_media()
        2. initiate_offer(): createOffer -> setLocalDescription -> send offer
        3. handle_remote_answer(): setRemoteDescription
    Answer side (participant that only saw ``joined-room``):
        1. handle_remote_offer(): setRemoteDescription -> createAnswer ->
           setLocalDescription -> send answer

Glare:
    The first accepted remote offer wins; later offers are ignored until the
    transport is replaced. Answers are only applied in ``have-local-offer``.

Limitations:
    - Remote ICE candidates that arrive before the transport exists are
      dropped, not buffered.
    - Nothing times out: a lost offer/answer leaves the call "connecting".

Examples:
    >>> negotiator = ConnectionNegotiator(session, channel, capture)
    >>> await negotiator.attach_local_media()
    >>> await negotiator.initiate_offer()
    >>> ...
    >>> await negotiator.teardown(notify_peer=True)
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from callroom.webrtc.config import connection_config, ice_config
from callroom.webrtc.messages import SignalEvent

from .errors import CallError, ConnectionFailed, NegotiationError
from .media import MediaCapture, MediaStream, VideoConstraints
from .signaling_channel import SignalingChannel
from .state import CallSession, NegotiationState

logger = logging.getLogger(__name__)

# Errors aiortc raises from createOffer/createAnswer/set*Description
_SDP_ERRORS = (InvalidStateError, InvalidAccessError, ValueError)


def default_peer_connection_factory() -> RTCPeerConnection:
    """Create an ``RTCPeerConnection`` with the fixed STUN server list."""
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=list(ice_config.STUN_SERVERS))])
    return RTCPeerConnection(configuration=config)


class ConnectionNegotiator:
    """Per-call negotiation state machine.

    Args:
        session: Call session; the negotiator writes its streams and state
        channel: Signaling channel used to transmit offer/answer/ICE/leave
        capture: Media capture capability
        pc_factory: Zero-argument peer connection factory
        video: Capture constraints
        on_status: Called with user-facing status strings
        on_failed: Awaited when the transport reaches ``failed``

    Attributes:
        pc: Current peer connection, or None before construction / after close
    """

    def __init__(
        self,
        session: CallSession,
        channel: SignalingChannel,
        capture: MediaCapture,
        pc_factory: Callable[[], Any] = default_peer_connection_factory,
        video: Optional[VideoConstraints] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_failed: Optional[Callable[[CallError], Awaitable[None]]] = None,
    ):
        self.session = session
        self.channel = channel
        self.capture = capture
        self.pc = None
        self.video = video or VideoConstraints(
            connection_config.VIDEO_WIDTH, connection_config.VIDEO_HEIGHT
        )
        self._pc_factory = pc_factory
        self._on_status = on_status
        self._on_failed = on_failed

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._torn_down = False

    @property
    def state(self) -> NegotiationState:
        return self.session.state

    @property
    def room_id(self) -> str:
        return self.session.room_id

    # ============================================================
    # Public operations (each is one queued event)
    # ============================================================

    async def attach_local_media(self) -> None:
        """Capture (once) and attach local tracks to the transport.

        Raises:
            MediaAccessError: Capture failed.
        """
        await self._submit(self._attach_local_media)

    async def initiate_offer(self) -> None:
        """Create, commit and transmit an offer.

        Raises:
            NegotiationError: Creation or transmission failed; state unchanged.
        """
        await self._submit(self._initiate_offer)

    async def handle_remote_offer(self, description: Any) -> None:
        """Answer a relayed offer unless one was already accepted.

        Raises:
            NegotiationError: Applying the offer or sending the answer failed.
        """
        await self._submit(self._handle_remote_offer, description)

    async def handle_remote_answer(self, description: Any) -> None:
        """Apply a relayed answer if an offer of ours is outstanding."""
        await self._submit(self._handle_remote_answer, description)

    async def handle_remote_ice_candidate(self, candidate: Any) -> None:
        """Apply a relayed candidate, or drop it if there is no transport yet."""
        await self._submit(self._handle_remote_ice_candidate, candidate)

    async def close_transport(self) -> None:
        """Close the peer connection only; local capture is kept.

        Used when the remote participant leaves so the next ``peer-joined``
        negotiates on a fresh transport.
        """
        await self._submit(self._close_transport)

    def ensure_transport(self):
        """Construct the peer connection if it does not exist yet."""
        if self.pc is None:
            self.pc = self._create_peer_connection()
        return self.pc

    async def teardown(self, notify_peer: bool = False) -> None:
        """Release everything this negotiator owns.

        Handlers are detached before the transport is closed so no late
        callbacks run. Local and remote tracks are stopped, enabled flags
        reset, and a ``leave`` is sent when ``notify_peer`` is set. Calling
        it again does nothing.
        """
        if self._torn_down:
            return
        self._torn_down = True
        logger.info(f"[WebRTC] Tearing down call in '{self.room_id}' (notify_peer={notify_peer})")

        self._stop_worker()
        await self._release_transport()

        if self.session.local_stream is not None:
            self.session.local_stream.stop()
            self.session.local_stream = None
        self.session.audio_enabled = True
        self.session.video_enabled = True
        if not self.session.state.is_terminal:
            self.session.state = NegotiationState.CLOSED

        if notify_peer:
            try:
                await self.channel.emit(SignalEvent.LEAVE.value, {"roomId": self.room_id})
            except CallError as e:
                logger.warning(f"[WebRTC] Could not send leave for '{self.room_id}': {e}")

    # ============================================================
    # Event queue
    # ============================================================

    async def _submit(self, handler: Callable[..., Awaitable[Any]], *args) -> Any:
        if self._torn_down:
            logger.debug(f"[WebRTC] Ignoring {handler.__name__} after teardown")
            return None
        if self._worker is not None and asyncio.current_task() is self._worker:
            return await handler(*args)

        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((handler, args, future))
        self._ensure_worker()
        return await future

    def _post(self, handler: Callable[..., Awaitable[Any]], *args) -> None:
        """Queue an event nobody waits for (transport callbacks, acks)."""
        if self._torn_down:
            return
        self._queue.put_nowait((handler, args, None))
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._torn_down:
            handler, args, future = await self._queue.get()
            if future is not None and future.done():
                continue
            try:
                result = await handler(*args)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.set_result(None)
                raise
            except Exception as e:
                if future is None:
                    logger.error(f"[WebRTC] {handler.__name__} failed: {e}", exc_info=True)
                elif not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
        self._drain_queue()

    def _stop_worker(self) -> None:
        worker = self._worker
        if worker is not None and worker is not asyncio.current_task() and not worker.done():
            worker.cancel()
        self._drain_queue()

    def _drain_queue(self) -> None:
        # Pending callers resume with None once the call is gone.
        while not self._queue.empty():
            _, _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.set_result(None)

    # ============================================================
    # Transport
    # ============================================================

    def _create_peer_connection(self):
        pc = self._pc_factory()
        logger.info(f"[WebRTC] Peer connection created for '{self.room_id}'")

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            if candidate and pc is self.pc:
                self._post(self._send_local_candidate, candidate)

        @pc.on("track")
        def on_track(track):
            if pc is not self.pc:
                return
            logger.info(f"[WebRTC] Remote {track.kind} track received")
            if self.session.remote_stream is not None:
                self.session.remote_stream.add_track(track)

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            self._post(self._on_transport_state_changed, pc, pc.connectionState)

        self.session.remote_stream = MediaStream()
        return pc

    async def _release_transport(self) -> None:
        pc, self.pc = self.pc, None
        if pc is not None:
            pc.remove_all_listeners()
            await pc.close()
        if self.session.remote_stream is not None:
            self.session.remote_stream.stop()
            self.session.remote_stream = None

    async def _close_transport(self) -> None:
        await self._release_transport()
        if not self.session.state.is_terminal:
            self.session.state = (
                NegotiationState.LOCAL_MEDIA_READY
                if self.session.local_stream is not None
                else NegotiationState.IDLE
            )

    async def _on_transport_state_changed(self, pc, state: str) -> None:
        if pc is not self.pc:
            return
        logger.info(f"[WebRTC] Connection state in '{self.room_id}': {state}")

        if state == "connected":
            self.session.state = NegotiationState.CONNECTED
            self._status("Connected")
        elif state == "connecting":
            self._status("Connecting…")
        elif state == "disconnected":
            self.session.state = NegotiationState.DISCONNECTED
            self._status("Disconnected")
        elif state == "failed":
            self.session.state = NegotiationState.FAILED
            self._status("Connection failed")
            if self._on_failed is not None:
                await self._on_failed(ConnectionFailed())
        elif state == "closed":
            self.session.state = NegotiationState.CLOSED
            self._status("Connection closed")

    # ============================================================
    # Handlers
    # ============================================================

    async def _attach_local_media(self) -> None:
        stream = self.session.local_stream
        if stream is None:
            stream = await self.capture.acquire(audio=True, video=self.video)
            if self._torn_down:
                stream.stop()
                return
            for track in stream.get_audio_tracks():
                track.enabled = self.session.audio_enabled
            for track in stream.get_video_tracks():
                track.enabled = self.session.video_enabled
            self.session.local_stream = stream

        pc = self.ensure_transport()
        for track in stream.get_tracks():
            if not any(sender.track is track for sender in pc.getSenders()):
                pc.addTrack(track)

        if self.session.state == NegotiationState.IDLE:
            self.session.state = NegotiationState.LOCAL_MEDIA_READY

    async def _initiate_offer(self) -> None:
        pc = self.pc
        if pc is None:
            logger.warning("[WebRTC] initiate_offer called without a peer connection")
            return

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            description = pc.localDescription
            await self.channel.emit(
                SignalEvent.OFFER.value,
                {
                    "roomId": self.room_id,
                    "description": {"type": description.type, "sdp": description.sdp},
                },
                ack=self._on_offer_acknowledged,
            )
        except (CallError,) + _SDP_ERRORS as e:
            logger.error(f"[WebRTC] Offer failed in '{self.room_id}': {e}")
            raise NegotiationError("Unable to create an offer. Please retry.") from e

        self.session.state = NegotiationState.OFFER_SENT
        logger.info(f"[WebRTC] Offer sent to '{self.room_id}'")

    def _on_offer_acknowledged(self) -> None:
        self._post(self._offer_acknowledged)

    async def _offer_acknowledged(self) -> None:
        if self.session.state == NegotiationState.OFFER_SENT:
            self.session.state = NegotiationState.AWAITING_ANSWER
        self._status("Offer sent")

    async def _handle_remote_offer(self, description: Any) -> None:
        remote = _to_session_description(description, "offer")
        if remote is None:
            return

        if self.pc is None:
            await self._attach_local_media()
        pc = self.pc
        if pc is None:
            return

        if pc.remoteDescription is not None:
            logger.info(f"[WebRTC] Ignoring offer in '{self.room_id}': remote description already set")
            return

        previous = self.session.state
        self.session.state = NegotiationState.ANSWERING_REMOTE_OFFER
        try:
            await pc.setRemoteDescription(remote)
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            local = pc.localDescription
            await self.channel.emit(
                SignalEvent.ANSWER.value,
                {
                    "roomId": self.room_id,
                    "description": {"type": local.type, "sdp": local.sdp},
                },
            )
        except (CallError,) + _SDP_ERRORS as e:
            self.session.state = previous
            logger.error(f"[WebRTC] Answer failed in '{self.room_id}': {e}")
            raise NegotiationError("Unable to answer the incoming call. Please retry.") from e

        self._status("Answer sent")

    async def _handle_remote_answer(self, description: Any) -> None:
        pc = self.pc
        if pc is None or pc.signalingState != "have-local-offer":
            logger.info(f"[WebRTC] Ignoring answer in '{self.room_id}' (no outstanding offer)")
            return

        remote = _to_session_description(description, "answer")
        if remote is None:
            return

        try:
            await pc.setRemoteDescription(remote)
        except _SDP_ERRORS as e:
            logger.error(f"[WebRTC] Applying answer failed in '{self.room_id}': {e}")
            raise NegotiationError("Unable to apply the answer. Please retry.") from e
        self._status("Call connected")

    async def _handle_remote_ice_candidate(self, candidate: Any) -> None:
        pc = self.pc
        if pc is None:
            logger.debug("[WebRTC] Dropping remote ICE candidate: no peer connection yet")
            return

        try:
            candidate_str = candidate.get("candidate") or ""
            if candidate_str.startswith("candidate:"):
                candidate_str = candidate_str[len("candidate:"):]
            if not candidate_str:
                # end-of-candidates marker
                return
            ice_candidate = candidate_from_sdp(candidate_str)
            ice_candidate.sdpMid = candidate.get("sdpMid")
            ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
            await pc.addIceCandidate(ice_candidate)
        except Exception as e:
            logger.error(f"[WebRTC] Error adding received ICE candidate: {e}")

    async def _send_local_candidate(self, candidate) -> None:
        payload = {
            "roomId": self.room_id,
            "candidate": {
                "candidate": "candidate:" + candidate_to_sdp(candidate),
                "sdpMid": candidate.sdpMid,
                "sdpMLineIndex": candidate.sdpMLineIndex,
            },
        }
        try:
            await self.channel.emit(SignalEvent.ICE_CANDIDATE.value, payload)
        except CallError as e:
            logger.warning(f"[WebRTC] Could not send ICE candidate: {e}")

    def _status(self, status: str) -> None:
        if self._on_status is not None:
            self._on_status(status)


def _to_session_description(description: Any, expected_type: str) -> Optional[RTCSessionDescription]:
    try:
        sdp = description["sdp"]
        sdp_type = description.get("type") or expected_type
    except (TypeError, KeyError, AttributeError):
        logger.warning(f"[WebRTC] Ignoring malformed {expected_type} description")
        return None
    if sdp_type != expected_type:
        logger.warning(f"[WebRTC] Expected {expected_type} description, got {sdp_type!r}")
        return None
    return RTCSessionDescription(sdp=sdp, type=sdp_type)
