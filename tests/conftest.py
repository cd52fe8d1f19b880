"""Pytest configuration and shared fakes."""

import json
import os

os.environ.setdefault("RELAY_LOG_TO_FILE", "0")
os.environ.setdefault("RELAY_LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from core.registry import RoomRegistry  # noqa: E402
from core.upstreams import UpstreamRouter  # noqa: E402


class FakeSession:
    """Stands in for a DownstreamSession: records frames, probes, termination."""

    _counter = 0

    def __init__(self, *, open_: bool = True, fail_enqueue: bool = False):
        FakeSession._counter += 1
        self.session_id = f"fake-{FakeSession._counter}"
        self.joined_rooms = set()
        self.alive = True
        self.open = open_
        self.fail_enqueue = fail_enqueue
        self.frames = []
        self.probes = 0
        self.terminated = False

    @property
    def is_open(self) -> bool:
        return self.open and not self.terminated

    def enqueue(self, payload: str) -> bool:
        if self.fail_enqueue:
            raise RuntimeError("socket write failed")
        self.frames.append(json.loads(payload))
        return True

    def send_json(self, payload) -> bool:
        return self.enqueue(json.dumps(payload))

    def probe(self) -> None:
        self.probes += 1

    def mark_alive(self) -> None:
        self.alive = True

    def terminate(self) -> None:
        self.terminated = True


class FakeAdapter:
    """Upstream adapter that records subscribe/release calls."""

    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.subscribed = []
        self.released = []

    def subscribe(self, channel: str) -> None:
        self.subscribed.append(channel)
        if self.fail:
            raise RuntimeError("upstream unavailable")

    def release(self, channel: str) -> None:
        self.released.append(channel)


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def twitch_adapter():
    return FakeAdapter()


@pytest.fixture
def router(registry, twitch_adapter):
    router = UpstreamRouter(registry)
    router.register("twitch", twitch_adapter)
    return router


@pytest.fixture
def make_session():
    def _make(**kwargs):
        return FakeSession(**kwargs)

    return _make
