"""Local media capture.

Capture devices are an opaque capability: anything that implements
:class:`MediaCapture` and hands back audio/video tracks. The default
implementation opens devices or files with aiortc's ``MediaPlayer``.

Tracks handed to the peer connection are wrapped in :class:`ToggleableTrack`
so mute / camera-off only flips a flag on the track: frames keep flowing
(silence / black) and no renegotiation is needed.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from .errors import MediaAccessError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VideoConstraints:
    """Requested capture resolution (a target, not a guarantee)."""

    width: int = 1280
    height: int = 720

    @property
    def video_size(self) -> str:
        return f"{self.width}x{self.height}"


class ToggleableTrack(MediaStreamTrack):
    """Wraps a source track and blanks its frames while disabled.

    Attributes:
        kind (str): "audio" or "video", copied from the source
        source (MediaStreamTrack): wrapped capture track
        enabled (bool): False replaces frames with silence / black
    """

    def __init__(self, source: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence_like(frame)
        return _black_like(frame)

    def stop(self) -> None:
        super().stop()
        self.source.stop()


def _silence_like(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.sample_rate = frame.sample_rate
    silent.pts = frame.pts
    if frame.time_base is not None:
        silent.time_base = frame.time_base
    return silent


def _black_like(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="bgr24"
    )
    black.pts = frame.pts
    if frame.time_base is not None:
        black.time_base = frame.time_base
    return black


class MediaStream:
    """An ordered collection of tracks, like a browser ``MediaStream``."""

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self._tracks: List[MediaStreamTrack] = list(tracks or [])

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def stop(self) -> None:
        """Stop every track; the stream is unusable afterwards."""
        for track in self._tracks:
            track.stop()
        self._tracks.clear()


class MediaCapture(ABC):
    """Capture capability interface."""

    @abstractmethod
    async def acquire(self, audio: bool, video: Optional[VideoConstraints]) -> MediaStream:
        """Open capture and return a stream of :class:`ToggleableTrack`.

        Raises:
            MediaAccessError: The device is unavailable or access was denied.
        """


class PlayerMediaCapture(MediaCapture):
    """Capture through aiortc ``MediaPlayer``.

    Args:
        video_source: Device or file for video (e.g. ``/dev/video0``)
        video_format: FFmpeg input format (e.g. ``v4l2``, ``avfoundation``)
        audio_source: Optional separate audio device (e.g. ``default``)
        audio_format: FFmpeg input format for audio (e.g. ``pulse``)

    Examples:
        >>> capture = PlayerMediaCapture("/dev/video0", "v4l2", "default", "pulse")
        >>> stream = await capture.acquire(True, VideoConstraints())
    """

    def __init__(
        self,
        video_source: str,
        video_format: Optional[str] = None,
        audio_source: Optional[str] = None,
        audio_format: Optional[str] = None,
    ):
        self.video_source = video_source
        self.video_format = video_format
        self.audio_source = audio_source
        self.audio_format = audio_format

    async def acquire(self, audio: bool, video: Optional[VideoConstraints]) -> MediaStream:
        options = {"video_size": video.video_size} if video else {}
        try:
            # MediaPlayer opens the container synchronously
            player = await asyncio.to_thread(
                MediaPlayer, self.video_source, format=self.video_format, options=options
            )
            audio_player = None
            if audio and self.audio_source:
                audio_player = await asyncio.to_thread(
                    MediaPlayer, self.audio_source, format=self.audio_format
                )
        except Exception as e:
            raise MediaAccessError(f"Unable to access camera/mic: {e}") from e

        tracks: List[MediaStreamTrack] = []
        audio_track = audio_player.audio if audio_player else player.audio
        if audio and audio_track is not None:
            tracks.append(ToggleableTrack(audio_track))
        if video and player.video is not None:
            tracks.append(ToggleableTrack(player.video))

        if not tracks:
            raise MediaAccessError("No audio or video track available from the capture source.")

        logger.info(f"[Media] Captured {', '.join(t.kind for t in tracks)} from {self.video_source}")
        return MediaStream(tracks)
