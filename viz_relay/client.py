"""
Relay Python Client
Connects to the relay as an admin console or a visualizer.
"""

import asyncio
import json
import logging
import random
import string
import time
from typing import Any, Callable, Dict, List, Optional

import websockets

from viz_relay.messages import (
    AUDIO_DATA,
    AUDIO_PAUSE,
    AUDIO_PLAY,
    AUDIO_STREAM,
    CLIENT_READY,
    PERFORMANCE_METRICS,
    SERVER_STATUS,
    MessageError,
    decode_message,
    encode_message,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_client_id(length: int = 9) -> str:
    """Generate a random client ID, e.g. ``client_k3j9x0a1b_1700000000000``."""
    alphabet = string.ascii_lowercase + string.digits
    return "client_" + "".join(random.choice(alphabet) for _ in range(length)) + f"_{_now_ms()}"


class RelayClient:
    """WebSocket client for the audio visualization relay."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8889,
        role: str = "visualization",
        client_id: Optional[str] = None,
        connect_timeout: float = 10.0,
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
    ):
        self.host = host
        self.port = port
        self.uri = f"ws://{host}:{port}"
        self.role = role
        self.client_id = client_id or generate_client_id()
        self.ws = None
        self._connected = False
        self._closing = False
        self._message_handlers: Dict[str, Callable] = {}

        # Connection timeout
        self.connect_timeout = connect_timeout

        # Reconnection settings
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None

        self._receive_task: Optional[asyncio.Task] = None

        # Last server:status payload
        self.last_status: Optional[dict] = None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """Connect to the relay and announce this client's role."""
        self._closing = False
        try:
            self.ws = await asyncio.wait_for(
                websockets.connect(self.uri), timeout=self.connect_timeout
            )
            self._connected = True

            # Reset reconnection counter on successful connection
            self._reconnect_attempts = 0

            await self.ws.send(
                encode_message(
                    CLIENT_READY,
                    {"clientId": self.client_id, "type": self.role, "timestamp": _now_ms()},
                )
            )
            logger.info(f"Connected to relay at {self.uri} as {self.role}")

            self._receive_task = asyncio.create_task(self._receive_loop())
            return True

        except asyncio.TimeoutError:
            logger.error(f"Connection timed out to {self.uri}")
            self._connected = False
            return False

        except Exception as e:
            logger.error(f"Failed to connect: {e}")
            self._connected = False
            return False

    async def disconnect(self):
        """Disconnect from the relay without reconnecting."""
        self._closing = True
        self._stop_receive_loop()

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            self._reconnect_task = None

        if self.ws:
            await self.ws.close()
            self.ws = None
        if self._connected:
            self._connected = False
            logger.info("Disconnected from relay")

    def _stop_receive_loop(self):
        """Stop the receive loop task."""
        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
        self._receive_task = None

    async def _receive_loop(self):
        """Receive frames and route them to registered handlers."""
        try:
            async for message in self.ws:
                try:
                    event, payload = decode_message(message)
                except (json.JSONDecodeError, MessageError):
                    logger.warning("Received invalid message")
                    continue
                await self._dispatch(event, payload)
        except websockets.exceptions.ConnectionClosed:
            pass
        except asyncio.CancelledError:
            return  # Task cancelled during shutdown

        if self._closing:
            return
        logger.warning("Connection closed by server")
        self._connected = False
        if self.auto_reconnect:
            self._reconnect_task = asyncio.create_task(self.reconnect())

    async def _dispatch(self, event: str, payload: Any):
        if event == SERVER_STATUS and isinstance(payload, dict):
            self.last_status = payload

        handler = self._message_handlers.get(event)
        if handler is None:
            return
        try:
            if asyncio.iscoroutinefunction(handler):
                await handler(payload)
            else:
                handler(payload)
        except Exception as e:
            logger.error(f"Handler error for {event}: {e}")

    def on(self, event: str, callback: Callable[[Any], Any]):
        """Register a handler for an event.

        Args:
            event: Event name (e.g., "audio:data", "server:status")
            callback: Function called with the event payload. Can be sync or async.
        """
        self._message_handlers[event] = callback

    async def reconnect(self) -> bool:
        """Attempt to reconnect with exponential backoff.

        Returns:
            True if reconnection succeeded, False if all attempts exhausted.
        """
        self._stop_receive_loop()

        if self.ws:
            try:
                await self.ws.close()
            except Exception as e:
                logger.debug(f"Error closing stale connection: {e}")
            self.ws = None

        max_delay = 30.0

        while self._reconnect_attempts < self.max_reconnect_attempts:
            self._reconnect_attempts += 1
            delay = min(self.reconnect_delay * (2 ** (self._reconnect_attempts - 1)), max_delay)

            logger.info(
                f"Reconnecting in {delay:.1f}s "
                f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

            if await self.connect():
                logger.info("Reconnection successful")
                return True

        logger.error(f"Failed to reconnect after {self.max_reconnect_attempts} attempts")
        return False

    async def emit(self, event: str, data: Any) -> bool:
        """Send an event to the relay. Returns False when not connected."""
        if not self.ws or not self._connected:
            logger.warning(f"Cannot emit {event}: not connected")
            return False

        try:
            await self.ws.send(encode_message(event, data))
            return True
        except websockets.exceptions.ConnectionClosed as e:
            logger.error(f"Connection closed: {e}")
            self._connected = False
            return False

    async def play(self, audio_id: str, timestamp: Optional[int] = None) -> bool:
        """Announce that playback of ``audio_id`` started."""
        return await self.emit(
            AUDIO_PLAY,
            {"audioId": audio_id, "timestamp": _now_ms() if timestamp is None else timestamp},
        )

    async def pause(self, position: float = 0.0, timestamp: Optional[int] = None) -> bool:
        """Announce that playback paused at ``position`` seconds."""
        return await self.emit(
            AUDIO_PAUSE,
            {"timestamp": _now_ms() if timestamp is None else timestamp, "position": position},
        )

    async def send_audio_data(
        self,
        frequency_data: List[float],
        waveform_data: List[float],
        amplitude: float = 0.0,
        bands: Optional[dict] = None,
    ) -> bool:
        """Send one analyser frame to every visualizer."""
        return await self.emit(
            AUDIO_DATA,
            {
                "frequencyData": list(frequency_data),
                "waveformData": list(waveform_data),
                "amplitude": amplitude,
                "bands": bands or {},
                "timestamp": _now_ms(),
            },
        )

    async def send_stream_chunk(self, chunk: bytes) -> bool:
        """Send a raw audio chunk as a binary frame."""
        return await self.emit(AUDIO_STREAM, chunk)

    async def send_metrics(
        self, fps: float, latency: float, memory_usage: Optional[dict] = None
    ) -> bool:
        """Report rendering performance to the admin console."""
        return await self.emit(
            PERFORMANCE_METRICS,
            {
                "clientId": self.client_id,
                "fps": fps,
                "latency": latency,
                "memoryUsage": memory_usage,
                "timestamp": _now_ms(),
            },
        )
