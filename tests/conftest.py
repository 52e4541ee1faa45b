import asyncio
import sys
from pathlib import Path
from typing import Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pyaspen.listener import RouterListener, RouterResponseListener


class FakeTransport(asyncio.Transport):
    """Collects written bytes instead of sending them."""

    def __init__(self):
        super().__init__()
        self.written: list[bytes] = []
        self.closed = False

    def write(self, data):
        self.written.append(data)

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return ("192.0.2.10", 23)
        return default

    @property
    def commands(self) -> list[str]:
        return [data.decode("ascii") for data in self.written]


class RecordingListener(RouterListener):

    def __init__(self):
        self.statuses = []
        self.tags = []
        self.routes = []
        self.device_errors = []
        self.dropped = []

    def status_changed(self, status, detail: Optional[str] = None):
        self.statuses.append((status, detail))

    def state_changed(self, tag: str):
        self.tags.append(tag)

    def routing_changed(self, output_id: int, levels: dict[int, int]):
        self.routes.append((output_id, levels))

    def device_error(self, message: str):
        self.device_errors.append(message)

    def command_dropped(self, command: str):
        self.dropped.append(command)


class RecordingResponseListener(RouterResponseListener):

    def __init__(self):
        self.events = []

    def connected(self):
        self.events.append(("connected",))

    def disconnected(self, exc):
        self.events.append(("disconnected", exc))

    def event_received(self, event):
        self.events.append(event)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def recorder() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def response_recorder() -> RecordingResponseListener:
    return RecordingResponseListener()


@pytest.fixture
def transport_factory():
    return FakeTransport
