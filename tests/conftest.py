import asyncio
import json

import pytest
from starlette.websockets import WebSocketState

from rover_relay.errors import SinkUnavailable
from rover_relay.registry import Connection, ConnectionRegistry


class FakeWebSocket:
    """Records what the server sends; can be fed inbound frames."""

    def __init__(self, frames=None):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.client = ("127.0.0.1", 50000)
        self.sent = []
        self.close_calls = []
        self._frames = list(frames or [])

    async def accept(self):
        pass

    async def send_json(self, data):
        self.sent.append(json.loads(json.dumps(data)))

    async def close(self, code=1000, reason=None):
        self.close_calls.append((code, reason))
        self.application_state = WebSocketState.DISCONNECTED

    async def receive(self):
        if self._frames:
            return {"type": "websocket.receive", "text": self._frames.pop(0)}
        self.client_state = WebSocketState.DISCONNECTED
        return {"type": "websocket.disconnect", "code": 1000}


class FakeSink:
    def __init__(self, connected=True, accept=True):
        self.connected = connected
        self.accept = accept
        self.published = []

    async def publish(self, topic, payload):
        if not self.connected:
            raise SinkUnavailable("MQTT broker not connected")
        if self.accept:
            self.published.append((topic, payload))
        return self.accept


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def run(coro):
    return asyncio.run(coro)


def make_connection(client_id="client_1"):
    return Connection(FakeWebSocket(), client_id)


def sent(connection):
    return connection.websocket.sent


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def clock():
    return FakeClock()
