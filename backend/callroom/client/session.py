"""Session controller.

Owns the signaling channel subscription and at most one active call. Relay
events are translated into negotiator operations; every way out of a call
(leave, end call, process exit, fatal failure) goes through one teardown.
"""
import asyncio
import logging
import secrets
import string
from typing import Callable, Optional

from callroom.webrtc.config import connection_config, room_config
from callroom.webrtc.messages import SignalEvent

from .errors import CallError, ConnectionFailed, NegotiationError, RoomFullError, TransportError
from .media import MediaCapture
from .negotiator import ConnectionNegotiator
from .signaling_channel import SignalingChannel
from .state import CallSession

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_room_code(length: int = room_config.ROOM_CODE_LENGTH) -> str:
    """Random uppercase alphanumeric room code."""
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(length))


def normalize_room_code(room_id: Optional[str]) -> str:
    return (room_id or "").strip().upper()


class SessionController:
    """Drives one participant's calls over a signaling channel.

    Args:
        channel: Signaling channel (connected by :meth:`start`)
        capture: Media capture capability handed to each negotiator
        reconnect_delay: Seconds before the single reconnect attempt
        negotiator_factory: Builds a negotiator for a new session
        on_status: Called with every status string
        on_error: Called with every surfaced :class:`CallError`

    Attributes:
        session: Active call, or None
        negotiator: Negotiator of the active call, or None
        status: Last status string
        error: Last surfaced error, or None

    Examples:
        >>> async with SessionController(SignalingChannel(url), capture) as controller:
        ...     await controller.join("ab12cd")
        ...     ...
    """

    def __init__(
        self,
        channel: SignalingChannel,
        capture: MediaCapture,
        reconnect_delay: float = connection_config.RECONNECT_DELAY,
        negotiator_factory: Callable[..., ConnectionNegotiator] = ConnectionNegotiator,
        on_status: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[CallError], None]] = None,
    ):
        self.channel = channel
        self.capture = capture
        self.reconnect_delay = reconnect_delay
        self.negotiator_factory = negotiator_factory
        self.on_status = on_status
        self.on_error = on_error

        self.session: Optional[CallSession] = None
        self.negotiator: Optional[ConnectionNegotiator] = None
        self.status = "Idle"
        self.error: Optional[CallError] = None

        self._joining = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._register_handlers()

    # ============================================================
    # Lifecycle
    # ============================================================

    async def start(self) -> None:
        """Connect the signaling channel; failures are surfaced, not raised."""
        try:
            await self.channel.connect()
        except TransportError as e:
            self._report(e)

    async def close(self) -> None:
        """End the call, cancel the reconnect timer and disconnect signaling."""
        self._cancel_reconnect()
        await self.end_call()
        await self.channel.disconnect()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ============================================================
    # User intents
    # ============================================================

    async def join(self, room_id: Optional[str] = None) -> Optional[str]:
        """Join a room, generating a code when none is given.

        Returns:
            Optional[str]: the normalized room code, or None if the join did
            not start (already joining, or signaling not connected)
        """
        if self._joining:
            logger.info("[Session] Join already in progress")
            return None

        code = normalize_room_code(room_id) or generate_room_code()
        if not self.channel.connected:
            self._report(TransportError("Socket is not ready yet. Please wait a second and retry."))
            return None

        self._joining = True
        try:
            if self.session is not None and self.session.room_id != code:
                await self._end_session(notify_peer=True)

            if self.session is None:
                self.session = CallSession(room_id=code)
                self.negotiator = self._create_negotiator(self.session)
            session, negotiator = self.session, self.negotiator
            self.error = None
            self._set_status("Preparing devices…")

            try:
                await negotiator.attach_local_media()
                if self.session is not session:
                    return None
                await self.channel.emit(SignalEvent.JOIN.value, {"roomId": code})
            except CallError as e:
                self._report(e)
                if self.session is session:
                    await self._end_session(notify_peer=False)
                return None

            self._set_status("Waiting for others to join…")
            session.participant_count = max(session.participant_count, 1)
            logger.info(f"[Session] Joining room '{code}'")
            return code
        finally:
            self._joining = False

    async def leave(self) -> None:
        """Leave the current room (same as :meth:`end_call`)."""
        await self.end_call()

    async def end_call(self) -> None:
        if self.session is None:
            return
        await self._end_session(notify_peer=True)

    def toggle_audio(self) -> bool:
        """Flip the microphone flag. Does nothing without local media."""
        return self._toggle("audio")

    def toggle_video(self) -> bool:
        """Flip the camera flag. Does nothing without local media."""
        return self._toggle("video")

    # ============================================================
    # Properties
    # ============================================================

    @property
    def room_id(self) -> Optional[str]:
        return self.session.room_id if self.session else None

    @property
    def participant_count(self) -> int:
        return self.session.participant_count if self.session else 0

    @property
    def audio_enabled(self) -> bool:
        return self.session.audio_enabled if self.session else True

    @property
    def video_enabled(self) -> bool:
        return self.session.video_enabled if self.session else True

    @property
    def is_call_active(self) -> bool:
        return (
            self.session is not None
            and self.session.is_connected
            and self.session.participant_count > 0
        )

    # ============================================================
    # Channel events
    # ============================================================

    def _register_handlers(self) -> None:
        on = self.channel.on
        on("connect", self._on_connect)
        on("disconnect", self._on_disconnect)
        on("connect_error", self._on_connect_error)
        on(SignalEvent.JOINED_ROOM.value, self._on_joined_room)
        on(SignalEvent.ROOM_FULL.value, self._on_room_full)
        on(SignalEvent.PEER_JOINED.value, self._on_peer_joined)
        on(SignalEvent.OFFER.value, self._on_offer)
        on(SignalEvent.ANSWER.value, self._on_answer)
        on(SignalEvent.ICE_CANDIDATE.value, self._on_ice_candidate)
        on(SignalEvent.PEER_LEFT.value, self._on_peer_left)

    async def _on_connect(self, data: dict) -> None:
        self._set_status("Connected to signaling server")

    async def _on_disconnect(self, data: dict) -> None:
        self._set_status("Disconnected from signaling server")
        self._schedule_reconnect()

    async def _on_connect_error(self, data: dict) -> None:
        message = data.get("message") or "unknown error"
        self.error = TransportError(f"Signaling connection error: {message}")
        if self.on_error is not None:
            self.on_error(self.error)

    async def _on_joined_room(self, data: dict) -> None:
        if self.session is None:
            return
        participants = data.get("participants")
        if isinstance(participants, int):
            self.session.participant_count = participants
        if self.session.participant_count > 1:
            self._set_status("Connected to peers")
        else:
            self._set_status("Waiting for others to join…")

    async def _on_room_full(self, data: dict) -> None:
        self._report(RoomFullError())
        if self.session is not None:
            await self._end_session(notify_peer=False)

    async def _on_peer_joined(self, data: dict) -> None:
        session, negotiator = self.session, self.negotiator
        if session is None:
            return
        participants = data.get("participants")
        if isinstance(participants, int):
            session.participant_count = participants
        logger.info(f"[Session] Peer {str(data.get('participantId'))[:8]} joined '{session.room_id}'")

        try:
            await negotiator.attach_local_media()
            if self.session is not session:
                return
            self._set_status("Peer joined. Establishing connection…")
            await negotiator.initiate_offer()
        except CallError as e:
            self._report(e)
            if not isinstance(e, NegotiationError) and self.session is session:
                await self._end_session(notify_peer=True)

    async def _on_offer(self, data: dict) -> None:
        if self.negotiator is None or data.get("description") is None:
            logger.debug("[Session] Dropping offer: no active call or no description")
            return
        try:
            await self.negotiator.handle_remote_offer(data["description"])
        except CallError as e:
            self._report(e)

    async def _on_answer(self, data: dict) -> None:
        if self.negotiator is None or data.get("description") is None:
            logger.debug("[Session] Dropping answer: no active call or no description")
            return
        try:
            await self.negotiator.handle_remote_answer(data["description"])
        except CallError as e:
            self._report(e)

    async def _on_ice_candidate(self, data: dict) -> None:
        candidate = data.get("candidate")
        if self.negotiator is None or not isinstance(candidate, dict):
            logger.debug("[Session] Dropping ICE candidate: no active call or malformed")
            return
        await self.negotiator.handle_remote_ice_candidate(candidate)

    async def _on_peer_left(self, data: dict) -> None:
        if self.session is None:
            return
        self._set_status("Peer disconnected")
        self.session.participant_count = max(self.session.participant_count - 1, 0)
        await self.negotiator.close_transport()

    # ============================================================
    # Internals
    # ============================================================

    def _create_negotiator(self, session: CallSession) -> ConnectionNegotiator:
        return self.negotiator_factory(
            session,
            self.channel,
            self.capture,
            on_status=self._set_status,
            on_failed=self._on_connection_failed,
        )

    async def _on_connection_failed(self, error: ConnectionFailed) -> None:
        self._report(error)
        await self._end_session(notify_peer=True, status="Connection failed")

    async def _end_session(self, notify_peer: bool, status: str = "Idle") -> None:
        self._cancel_reconnect()
        # Detach first so concurrent exit paths find nothing to tear down.
        session, negotiator = self.session, self.negotiator
        self.session = None
        self.negotiator = None
        if negotiator is not None:
            await negotiator.teardown(notify_peer=notify_peer)
        if session is not None:
            logger.info(f"[Session] Call in '{session.room_id}' ended")
        self._set_status(status)

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect())

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        logger.info("[Session] Reconnecting to signaling server")
        try:
            await self.channel.connect()
        except TransportError as e:
            logger.warning(f"[Session] Reconnect failed: {e}")

    def _toggle(self, kind: str) -> bool:
        session = self.session
        if session is None or session.local_stream is None:
            return False
        attr = f"{kind}_enabled"
        enabled = not getattr(session, attr)
        setattr(session, attr, enabled)
        tracks = (
            session.local_stream.get_audio_tracks()
            if kind == "audio"
            else session.local_stream.get_video_tracks()
        )
        for track in tracks:
            track.enabled = enabled
        logger.info(f"[Session] {kind} {'enabled' if enabled else 'disabled'}")
        return enabled

    def _set_status(self, status: str) -> None:
        self.status = status
        if self.on_status is not None:
            self.on_status(status)

    def _report(self, error: CallError) -> None:
        logger.warning(f"[Session] {type(error).__name__}: {error.message}")
        self.error = error
        if self.on_error is not None:
            self.on_error(error)
