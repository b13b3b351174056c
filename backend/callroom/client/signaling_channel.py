"""Client side of the signaling WebSocket.

Sends ``{"type", "data", "ack_id"?}`` frames to the relay and dispatches
incoming frames to registered handlers one at a time, in arrival order.

Besides the relay events the channel dispatches three local events:
    - ``connect``: the socket opened
    - ``disconnect``: the socket closed without :meth:`disconnect` being called
    - ``connect_error``: opening the socket failed (``{"message": str}``)
"""

import asyncio
import inspect
import itertools
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import TransportError

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]


class SignalingChannel:
    """Reconnectable signaling connection.

    Reconnection policy belongs to the session controller; the channel only
    knows how to open, close and report.

    Args:
        url: Relay WebSocket URL (``ws://host:8000/ws``)
    """

    def __init__(self, url: str):
        self.url = url
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._acks: Dict[int, Callable[[], Any]] = {}
        self._ack_ids = itertools.count(1)
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on(self, event: str, handler: Handler) -> None:
        """Register a handler (sync or async) for an event name."""
        self._handlers[event].append(handler)

    async def connect(self) -> None:
        """Open the socket and start reading.

        Raises:
            TransportError: The relay could not be reached.
        """
        if self.connected:
            return
        self._closing = False
        try:
            self._ws = await websockets.connect(self.url)
        except (OSError, WebSocketException) as e:
            logger.warning(f"[Signaling] Connection to {self.url} failed: {e}")
            await self._dispatch("connect_error", {"message": str(e)})
            raise TransportError(f"Signaling connection error: {e}") from e

        logger.info(f"[Signaling] Connected to {self.url}")
        self._reader = asyncio.create_task(self._read_loop(self._ws))
        await self._dispatch("connect", {})

    async def disconnect(self) -> None:
        """Close the socket. No ``disconnect`` event is dispatched."""
        self._closing = True
        ws, reader = self._ws, self._reader
        self._ws = None
        self._reader = None
        self._acks.clear()
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def emit(self, event: str, data: dict, ack: Optional[Callable[[], Any]] = None) -> None:
        """Send one frame.

        Args:
            event: Wire event name
            data: Payload
            ack: Called once the relay acknowledges the frame

        Raises:
            TransportError: The channel is not connected or the send failed.
        """
        if self._ws is None:
            raise TransportError("Signaling channel is not connected")

        frame: Dict[str, Any] = {"type": event, "data": data}
        ack_id = None
        if ack is not None:
            ack_id = next(self._ack_ids)
            self._acks[ack_id] = ack
            frame["ack_id"] = ack_id

        try:
            await self._ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            if ack_id is not None:
                self._acks.pop(ack_id, None)
            raise TransportError(f"Signaling channel closed while sending {event}") from e

    async def _read_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("[Signaling] Ignoring non-JSON frame")
                    continue
                if not isinstance(frame, dict):
                    continue

                if frame.get("type") == "ack":
                    callback = self._acks.pop(frame.get("ack_id"), None)
                    if callback is not None:
                        await self._call(callback)
                    continue

                data = frame.get("data")
                await self._dispatch(frame.get("type"), data if isinstance(data, dict) else {})
        except ConnectionClosed as e:
            logger.info(f"[Signaling] Connection closed: {e}")
        finally:
            if self._ws is ws:
                self._ws = None
                self._reader = None
                self._acks.clear()
            if not self._closing:
                logger.info("[Signaling] Disconnected from relay")
                await self._dispatch("disconnect", {})

    async def _dispatch(self, event: Optional[str], data: dict) -> None:
        handlers = self._handlers.get(event) if event else None
        if not handlers:
            logger.debug(f"[Signaling] No handler for event {event!r}")
            return
        for handler in handlers:
            await self._call(handler, data)

    @staticmethod
    async def _call(callback: Callable, *args) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[Signaling] Handler error: {e}", exc_info=True)
