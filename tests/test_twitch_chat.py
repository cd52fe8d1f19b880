import asyncio

import pytest

from core.rooms import RoomKey, UpstreamState
from services.twitch.api.chat import TwitchChatClient
from services.twitch.models.message import TwitchChatMessage, TwitchClearChat, TwitchClearMessage
from services.twitch.workers.chat_worker import TwitchUpstream
from shared.config.relay import TwitchConfig

PRIVMSG = (
    "@badge-info=;badges=broadcaster/1,premium/1;color=#FF0000;display-name=Foo\\sBar;"
    "emotes=25:0-4;id=abc-123;room-id=1001;tmi-sent-ts=1700000000000;user-id=2002 "
    ":foobar!foobar@foobar.tmi.twitch.tv PRIVMSG #Foo :Kappa hello there"
)
ACTION = (
    "@display-name=Foo;id=act-1;user-id=2002 "
    ":foo!foo@foo.tmi.twitch.tv PRIVMSG #foo :\x01ACTION waves\x01"
)
CLEARMSG = (
    "@login=troll;room-id=1001;target-msg-id=abc-123;tmi-sent-ts=1700000000000 "
    ":tmi.twitch.tv CLEARMSG #foo :bad words"
)
CLEARCHAT_USER = (
    "@ban-duration=600;room-id=1001;target-user-id=3003;tmi-sent-ts=1700000000000 "
    ":tmi.twitch.tv CLEARCHAT #foo :troll"
)
CLEARCHAT_ALL = "@room-id=1001;tmi-sent-ts=1700000000000 :tmi.twitch.tv CLEARCHAT #foo"


def test_parse_privmsg_keeps_raw_tags():
    message = TwitchChatClient.parse_line(PRIVMSG)

    assert isinstance(message, TwitchChatMessage)
    assert message.channel == "foo"
    assert message.username == "foobar"
    assert message.display_name == "Foo Bar"
    assert message.text == "Kappa hello there"
    assert message.badges_raw == "broadcaster/1,premium/1"
    assert message.emotes_raw == "25:0-4"
    assert message.timestamp is not None

    normalized = message.to_normalized()
    assert normalized.to_wire() == {
        "user": "Foo Bar",
        "message": "Kappa hello there",
        "userId": "2002",
        "msgId": "abc-123",
        "platform": "twitch",
        "badgesRaw": "broadcaster/1,premium/1",
        "emotesRaw": "25:0-4",
        "isAction": False,
    }


def test_parse_action_message():
    message = TwitchChatClient.parse_line(ACTION)

    assert message.is_action is True
    assert message.text == "waves"


def test_parse_moderation_events():
    cleared_message = TwitchChatClient.parse_line(CLEARMSG)
    cleared_user = TwitchChatClient.parse_line(CLEARCHAT_USER)
    cleared_all = TwitchChatClient.parse_line(CLEARCHAT_ALL)

    assert isinstance(cleared_message, TwitchClearMessage)
    assert cleared_message.to_normalized().to_wire() == {"type": "delete-message", "msgId": "abc-123"}
    assert isinstance(cleared_user, TwitchClearChat)
    assert cleared_user.to_normalized().to_wire() == {"type": "delete-messages", "userId": "3003"}
    assert cleared_all.to_normalized().to_wire() == {"type": "clear-chat"}


def test_parse_ignores_unrelated_commands():
    assert TwitchChatClient.parse_line(":tmi.twitch.tv 001 justinfan123 :Welcome, GLHF!") is None
    assert TwitchChatClient.parse_line("@emote-only=0 :tmi.twitch.tv ROOMSTATE #foo") is None
    assert TwitchChatClient.parse_line(":tmi.twitch.tv RECONNECT") == "RECONNECT"


def test_client_without_credentials_is_anonymous():
    client = TwitchChatClient()

    assert client.token is None
    assert client.nickname.startswith("justinfan")
    assert TwitchChatClient("abc", "Bot").token == "oauth:abc"


def test_subscribe_is_idempotent_per_normalized_channel(registry):
    upstream = TwitchUpstream(registry=registry)

    upstream.subscribe("Foo")
    upstream.subscribe("#foo")

    assert upstream.joined_channels == {"foo"}


def test_events_reach_members_of_matching_room(registry, make_session):
    upstream = TwitchUpstream(registry=registry)
    viewer = make_session()
    registry.join(viewer, RoomKey.create("twitch", "foo"))

    delivered = upstream.handle_event(TwitchChatClient.parse_line(PRIVMSG))

    assert delivered == 1
    assert viewer.frames[-1]["platform"] == "twitch"
    assert viewer.frames[-1]["msgId"] == "abc-123"


def test_events_for_rooms_without_members_are_dropped(registry):
    upstream = TwitchUpstream(registry=registry)

    assert upstream.handle_event(TwitchChatClient.parse_line(PRIVMSG)) == 0


class ScriptedTwitchClient:
    """Fake IRC session replaying a fixed list of lines, then closing."""

    def __init__(self, lines):
        self.lines = list(lines)
        self.joined = []
        self.connected = False
        self.closed = False

    async def connect(self):
        self.connected = True

    async def join(self, channel):
        self.joined.append(channel)

    async def part(self, channel):
        pass

    async def iter_events(self):
        for line in self.lines:
            event = TwitchChatClient.parse_line(line)
            if event is not None:
                yield event
            await asyncio.sleep(0)

    async def close(self):
        self.closed = True
        self.connected = False


@pytest.mark.asyncio
async def test_run_rejoins_channels_after_session_loss(registry, make_session):
    clients = []

    def factory():
        client = ScriptedTwitchClient([PRIVMSG])
        clients.append(client)
        return client

    upstream = TwitchUpstream(
        registry=registry,
        config=TwitchConfig(reconnect_initial_seconds=0.01, reconnect_max_seconds=0.02),
        client_factory=factory,
    )
    viewer = make_session()
    key = RoomKey.create("twitch", "foo")
    registry.join(viewer, key)
    upstream.subscribe("foo")

    task = asyncio.create_task(upstream.run())
    for _ in range(100):
        if len(clients) >= 2:
            break
        await asyncio.sleep(0.01)

    await upstream.shutdown()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert len(clients) >= 2
    assert clients[0].joined == ["foo"]
    assert clients[1].joined == ["foo"]
    assert clients[0].closed is True
    assert viewer.frames[0]["msgId"] == "abc-123"
    assert registry.upstream_state(key) in {UpstreamState.ACTIVE, UpstreamState.PENDING}
