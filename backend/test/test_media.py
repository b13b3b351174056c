"""Local media tests

- disabled tracks keep producing frames (black video, silent audio)
- MediaStream bookkeeping
- capture failures surface as MediaAccessError
"""

from unittest.mock import patch

import numpy as np
import pytest
from av import AudioFrame, VideoFrame

from callroom.client.errors import MediaAccessError
from callroom.client.media import MediaCapture, MediaStream, PlayerMediaCapture, ToggleableTrack, VideoConstraints

from conftest import FakeTrack


class FrameSource(FakeTrack):
    def __init__(self, kind, frame):
        super().__init__(kind)
        self.frame = frame

    async def recv(self):
        return self.frame


def white_frame():
    frame = VideoFrame.from_ndarray(np.full((4, 6, 3), 255, dtype=np.uint8), format="bgr24")
    frame.pts = 90
    return frame


def tone_frame():
    frame = AudioFrame.from_ndarray(np.full((1, 160), 1000, dtype=np.int16), format="s16", layout="mono")
    frame.sample_rate = 8000
    frame.pts = 160
    return frame


@pytest.mark.asyncio
async def test_enabled_track_passes_frames_through():
    frame = white_frame()
    track = ToggleableTrack(FrameSource("video", frame))

    assert await track.recv() is frame


@pytest.mark.asyncio
async def test_disabled_video_track_sends_black_frames():
    track = ToggleableTrack(FrameSource("video", white_frame()))
    track.enabled = False

    frame = await track.recv()

    assert (frame.width, frame.height) == (6, 4)
    assert frame.pts == 90
    assert not frame.to_ndarray(format="bgr24").any()


@pytest.mark.asyncio
async def test_disabled_audio_track_sends_silence():
    track = ToggleableTrack(FrameSource("audio", tone_frame()))
    track.enabled = False

    frame = await track.recv()

    assert frame.samples == 160
    assert frame.sample_rate == 8000
    assert not frame.to_ndarray().any()


def test_stopping_wrapper_stops_source():
    source = FakeTrack("audio")
    track = ToggleableTrack(source)

    track.stop()

    assert source.stopped


def test_media_stream_tracks_by_kind():
    audio, video = FakeTrack("audio"), FakeTrack("video")
    stream = MediaStream([audio])
    stream.add_track(video)
    stream.add_track(video)

    assert stream.get_tracks() == [audio, video]
    assert stream.get_audio_tracks() == [audio]
    assert stream.get_video_tracks() == [video]

    stream.stop()

    assert audio.stopped and video.stopped
    assert stream.get_tracks() == []


def test_video_constraints_size():
    assert VideoConstraints().video_size == "1280x720"


@pytest.mark.asyncio
async def test_player_capture_wraps_open_errors():
    capture = PlayerMediaCapture("/dev/video9", "v4l2")

    with patch("callroom.client.media.MediaPlayer", side_effect=OSError("No such device")):
        with pytest.raises(MediaAccessError, match="Unable to access camera/mic"):
            await capture.acquire(True, VideoConstraints())


@pytest.mark.asyncio
async def test_player_capture_wraps_tracks():
    class Player:
        def __init__(self, file, format=None, options=None):
            self.audio = FakeTrack("audio")
            self.video = FakeTrack("video")
            self.options = options

    capture = PlayerMediaCapture("sample.mp4")
    with patch("callroom.client.media.MediaPlayer", Player):
        stream = await capture.acquire(True, VideoConstraints(640, 480))

    assert [t.kind for t in stream.get_tracks()] == ["audio", "video"]
    assert all(isinstance(t, ToggleableTrack) for t in stream.get_tracks())


def test_capture_without_acquire_cannot_be_constructed():
    class Incomplete(MediaCapture):
        pass

    with pytest.raises(TypeError):
        Incomplete()

    assert isinstance(PlayerMediaCapture("sample.mp4"), MediaCapture)
