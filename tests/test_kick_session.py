import asyncio
import json

import pytest

from core.rooms import RoomKey, UpstreamState
from core.upstreams import UpstreamRouter
from services.kick.api.channels import ChannelResolutionError, KickChannelInfo
from services.kick.models.message import parse_envelope
from services.kick.runtime.supervisor import KickSupervisor
from services.kick.workers.chat_worker import KickChannelSession, SessionState
from shared.config.relay import KickConfig

CHAT_FRAME = json.dumps(
    {
        "event": "App\\Events\\ChatMessageEvent",
        "channel": "chatrooms.77.v2",
        "data": json.dumps(
            {"id": "k-1", "content": "hey", "sender": {"id": 5, "username": "Viewer"}}
        ),
    }
)


class FakeResolver:
    def __init__(self, *, fail=()):
        self.fail = set(fail)
        self.calls = []
        self.closed = False

    async def resolve(self, channel):
        self.calls.append(channel)
        if channel in self.fail:
            raise ChannelResolutionError(channel, "unexpected status 404", status_code=404)
        return KickChannelInfo(slug=channel, room_id="77", user_id="55")

    async def close(self):
        self.closed = True


class FakeSocket:
    """One scripted upstream connection: optional open failure, then frames."""

    def __init__(self, url, channel, frames=(), fail_open=False, hold=False):
        self.url = url
        self.channel = channel
        self.frames = list(frames)
        self.fail_open = fail_open
        self.hold = hold
        self.topics = []
        self.closed = False

    async def open(self):
        if self.fail_open:
            raise OSError("connection refused")

    async def subscribe(self, topic):
        self.topics.append(topic)

    async def iter_envelopes(self):
        for raw in self.frames:
            yield parse_envelope(raw)
            await asyncio.sleep(0)
        if self.hold:
            await asyncio.Event().wait()

    async def close(self):
        self.closed = True


class SocketScript:
    """Socket factory handing out FakeSockets from a list of specs."""

    def __init__(self, specs, session_ref=None):
        self.specs = list(specs)
        self.sockets = []
        self.delays_seen = []
        self.session_ref = session_ref

    def __call__(self, url, *, channel):
        if self.session_ref is not None:
            self.delays_seen.append(self.session_ref[0].reconnect_delay)
        spec = self.specs.pop(0) if self.specs else {"hold": True}
        socket = FakeSocket(url, channel, **spec)
        self.sockets.append(socket)
        return socket


async def _wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.005)
    return predicate()


async def _stop(task):
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_session_subscribes_both_topics_and_forwards_events():
    events, states = [], []
    factory = SocketScript([{"frames": [CHAT_FRAME], "hold": True}])
    session = KickChannelSession(
        channel="bar",
        resolver=FakeResolver(),
        pusher_url="wss://pusher.test/app",
        on_event=events.append,
        on_state=states.append,
        socket_factory=factory,
    )

    task = asyncio.create_task(session.run())
    assert await _wait_for(lambda: events)

    assert session.state == SessionState.ACTIVE
    assert session.room_id == "77"
    assert session.user_id == "55"
    assert factory.sockets[0].topics == ["chatrooms.77.v2", "channel.55"]
    assert events[0].to_wire()["message"] == "hey"
    assert states[:4] == [
        SessionState.RESOLVING,
        SessionState.CONNECTING,
        SessionState.SUBSCRIBING,
        SessionState.ACTIVE,
    ]

    await _stop(task)
    assert session.state == SessionState.STOPPED
    assert factory.sockets[0].closed is True


@pytest.mark.asyncio
async def test_reconnect_reuses_metadata_and_backs_off():
    resolver = FakeResolver()
    session_ref = []
    factory = SocketScript(
        [
            {"fail_open": True},
            {"fail_open": True},
            {"fail_open": True},
            {},
            {"hold": True},
        ],
        session_ref=session_ref,
    )
    session = KickChannelSession(
        channel="bar",
        resolver=resolver,
        pusher_url="wss://pusher.test/app",
        on_event=lambda event: None,
        socket_factory=factory,
        reconnect_initial=0.001,
        reconnect_max=0.004,
    )
    session_ref.append(session)

    task = asyncio.create_task(session.run())
    assert await _wait_for(lambda: len(factory.sockets) >= 5 and session.state == SessionState.ACTIVE)
    await _stop(task)

    assert resolver.calls == ["bar"]
    # doubles while failing, capped, then resets after a clean open
    assert factory.delays_seen == [0.001, 0.002, 0.004, 0.004, 0.002]
    assert all(socket.closed for socket in factory.sockets)


@pytest.mark.asyncio
async def test_resolution_failure_ends_session():
    factory = SocketScript([])
    session = KickChannelSession(
        channel="ghost",
        resolver=FakeResolver(fail={"ghost"}),
        pusher_url="wss://pusher.test/app",
        on_event=lambda event: None,
        socket_factory=factory,
    )

    assert await session.run() is False
    assert session.state == SessionState.IDLE
    assert factory.sockets == []


@pytest.mark.asyncio
async def test_supervisor_scenario_failed_resolution_then_retry(registry, make_session):
    resolver = FakeResolver(fail={"bar"})
    router = UpstreamRouter(registry)
    supervisor = KickSupervisor(
        registry=registry,
        config=KickConfig(reconnect_initial_seconds=0.01, reconnect_max_seconds=0.01),
        resolver=resolver,
        socket_factory=SocketScript([]),
    )
    router.register("kick", supervisor)
    key = RoomKey.create("kick", "bar")
    first, second = make_session(), make_session()

    acks = [registry.join(first, key).ack(), registry.join(second, key).ack()]

    assert acks == [{"status": "joined", "room": "kick-bar"}] * 2
    assert await _wait_for(lambda: registry.upstream_state(key) == UpstreamState.UNSUBSCRIBED)
    assert supervisor.channels == set()
    assert resolver.calls == ["bar"]

    resolver.fail.clear()
    registry.join(make_session(), key)
    assert await _wait_for(lambda: registry.upstream_state(key) == UpstreamState.ACTIVE)
    assert resolver.calls == ["bar", "bar"]
    assert supervisor.channels == {"bar"}

    await supervisor.shutdown()
    assert resolver.closed is True


@pytest.mark.asyncio
async def test_supervisor_dispatches_to_room_and_release_stops_session(registry, make_session):
    supervisor = KickSupervisor(
        registry=registry,
        resolver=FakeResolver(),
        socket_factory=SocketScript([{"frames": [CHAT_FRAME], "hold": True}]),
    )
    router = UpstreamRouter(registry)
    router.register("kick", supervisor)
    viewer = make_session()
    key = RoomKey.create("kick", "Bar")

    registry.join(viewer, key)
    assert await _wait_for(lambda: viewer.frames)

    assert viewer.frames[0]["platform"] == "kick"
    assert viewer.frames[0]["user"] == "Viewer"
    session = supervisor.session("bar")

    supervisor.release("bar")
    assert await _wait_for(lambda: session.state == SessionState.STOPPED)
    assert supervisor.channels == set()

    await supervisor.shutdown()
