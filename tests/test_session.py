import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import Close
from websockets.protocol import State

from core.rooms import RoomKey
from core.session import DownstreamSession


class FakeTransport:
    def __init__(self):
        self.aborted = False

    def abort(self):
        self.aborted = True


class FakeConnection:
    def __init__(self):
        self.state = State.OPEN
        self.sent = []
        self.closed = False
        self.transport = FakeTransport()
        self.pong_waiters = []

    async def send(self, payload):
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)
        self.sent.append(json.loads(payload))

    async def ping(self):
        waiter = asyncio.get_running_loop().create_future()
        self.pong_waiters.append(waiter)
        return waiter

    async def close(self):
        self.closed = True
        self.state = State.CLOSED


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


def test_join_frame_registers_membership_and_queues_ack(registry, router):
    session = DownstreamSession(FakeConnection())

    session.handle_frame(json.dumps({"action": "join", "platform": "twitch", "channel": "Foo"}), registry)

    key = RoomKey.create("twitch", "foo")
    assert key in session.joined_rooms
    assert registry.members_of(key) == [session]
    assert json.loads(session._queue.get_nowait()) == {"status": "joined", "room": "twitch-foo"}


@pytest.mark.parametrize(
    "frame",
    [
        "not json",
        json.dumps(["join"]),
        json.dumps({"action": "join", "platform": "twitch"}),
        json.dumps({"action": "join", "channel": "foo"}),
        json.dumps({"action": "join", "platform": "youtube", "channel": "foo"}),
        json.dumps({"action": "dance", "platform": "twitch", "channel": "foo"}),
    ],
)
def test_ignored_frames_leave_session_untouched(registry, router, frame):
    session = DownstreamSession(FakeConnection())

    session.handle_frame(frame, registry)

    assert session.joined_rooms == set()
    assert registry.room_count() == 0
    assert session._queue.empty()


def test_leave_frame_removes_membership(registry, router):
    session = DownstreamSession(FakeConnection())
    join = {"action": "join", "platform": "kick", "channel": "bar"}
    session.handle_frame(json.dumps(join), registry)

    session.handle_frame(json.dumps({**join, "action": "leave"}), registry)

    assert session.joined_rooms == set()
    assert registry.room_count() == 0


def test_full_outbound_queue_drops_frames():
    session = DownstreamSession(FakeConnection(), queue_size=1)

    assert session.enqueue("{}") is True
    assert session.enqueue("{}") is False


@pytest.mark.asyncio
async def test_writer_task_sends_frames_in_order():
    connection = FakeConnection()
    session = DownstreamSession(connection)
    session.start()

    for i in range(3):
        session.send_json({"n": i})
    await _settle()

    assert connection.sent == [{"n": 0}, {"n": 1}, {"n": 2}]
    await session.close()
    assert connection.closed is True
    assert session.is_open is False


@pytest.mark.asyncio
async def test_pong_marks_session_alive():
    connection = FakeConnection()
    session = DownstreamSession(connection)
    session.alive = False

    session.probe()
    await _settle()
    assert session.alive is False

    connection.pong_waiters[0].set_result(0.01)
    await _settle()
    assert session.alive is True


@pytest.mark.asyncio
async def test_terminate_aborts_transport_and_stops_delivery():
    connection = FakeConnection()
    session = DownstreamSession(connection)
    session.start()

    session.terminate()
    await _settle()

    assert connection.transport.aborted is True
    assert session.is_open is False
    assert session.enqueue("{}") is False
