"""Headless call client.

Joins a room through the signaling relay and sends camera/mic (or any
source aiortc's MediaPlayer can open) to the other participant.

Usage:
    # Join a room, capture from a webcam on Linux:
    python call_client.py --room AB12CD --source /dev/video0 --format v4l2

    # Create a room (code is generated and logged), stream a file:
    python call_client.py --source sample.mp4

Ctrl+C (or SIGTERM) ends the call and notifies the other participant.
"""
import argparse
import asyncio
import logging
import signal

from callroom.client import PlayerMediaCapture, SessionController, SignalingChannel
from callroom.webrtc.config import connection_config

logger = logging.getLogger("call_client")


async def run(args) -> int:
    channel = SignalingChannel(args.url)
    capture = PlayerMediaCapture(
        args.source,
        video_format=args.format,
        audio_source=args.audio_source,
        audio_format=args.audio_format,
    )
    controller = SessionController(
        channel,
        capture,
        on_status=lambda status: logger.info(f"[Session] Status: {status}"),
        on_error=lambda error: logger.error(f"[Session] {error.message}"),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with controller:
        if not channel.connected:
            return 1

        room_id = await controller.join(args.room)
        if room_id is None:
            return 1
        logger.info(f"Room code: {room_id}")

        toggles = {"a": controller.toggle_audio, "v": controller.toggle_video}
        for key in args.mute or "":
            if key in toggles:
                toggles[key]()

        await stop.wait()
        logger.info("Ending call...")

    return 0


def main():
    p = argparse.ArgumentParser(description="Headless room-code call client")
    p.add_argument("--url", default=connection_config.SIGNALING_URL, help="Signaling WebSocket URL")
    p.add_argument("--room", default=None, help="Room code (generated when omitted)")
    p.add_argument("--source", default=connection_config.MEDIA_SOURCE, required=connection_config.MEDIA_SOURCE is None,
                   help="Video device or media file")
    p.add_argument("--format", default=connection_config.MEDIA_FORMAT, help="FFmpeg input format (v4l2, avfoundation, dshow)")
    p.add_argument("--audio-source", default=None, help="Separate audio device")
    p.add_argument("--audio-format", default=None, help="FFmpeg input format for audio (pulse, alsa)")
    p.add_argument("--mute", default=None, help="Start with 'a' (mic) and/or 'v' (camera) disabled, e.g. --mute av")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
