"""Shared fixtures for relay tests."""

import asyncio
import json
import uuid

import pytest
import websockets.exceptions

from viz_relay.config import RelayConfig
from viz_relay.server import RelayServer
from viz_relay.state import RelayState

_CLOSED = object()


class MockWebSocket:
    """Mock WebSocket connection that records sent frames."""

    def __init__(self, fail_send=False, send_delay=0.0):
        self.id = uuid.uuid4()
        self.sent = []
        self.closed = False
        self.fail_send = fail_send
        self.send_delay = send_delay
        self.remote_address = ("127.0.0.1", 12345)
        self._incoming = asyncio.Queue()

    async def send(self, message):
        """Record sent message."""
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_send:
            raise websockets.exceptions.ConnectionClosed(None, None)
        self.sent.append(message)

    def push(self, event, data=None):
        """Queue an inbound envelope."""
        self._incoming.put_nowait(json.dumps({"type": event, "data": data}))

    def push_raw(self, frame):
        self._incoming.put_nowait(frame)

    async def close(self, code=1000, reason=""):
        self.closed = True
        self._incoming.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is _CLOSED:
            raise StopAsyncIteration
        return message

    def events(self, name=None):
        """Decoded (type, data) pairs sent to this socket, optionally filtered."""
        decoded = []
        for frame in self.sent:
            if isinstance(frame, bytes):
                decoded.append(("audio:stream", frame))
            else:
                envelope = json.loads(frame)
                decoded.append((envelope["type"], envelope["data"]))
        if name is not None:
            decoded = [(t, d) for t, d in decoded if t == name]
        return decoded


async def _settle(delay=0.02):
    await asyncio.sleep(delay)


@pytest.fixture
def clock():
    """Controllable clock returning seconds."""

    class _Clock:
        now = 1_700_000_000.0

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def state(clock):
    return RelayState(clock=clock)


@pytest.fixture
def relay_config():
    return RelayConfig(http_port=0, metrics_port=None, status_interval=60.0, send_timeout=0.1)


@pytest.fixture
def relay(relay_config):
    return RelayServer(relay_config)


@pytest.fixture
def make_ws():
    """Factory for mock client sockets."""
    return MockWebSocket


@pytest.fixture
def settle():
    """Awaitable that lets pending handler and send tasks run."""
    return _settle
