import json

import pytest

from watchsyncrelay import Member, Relay


class FakeConnection:
    def __init__(self):
        self.sent = []

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    def of_type(self, t):
        return [m for m in self.sent if m.get("type") == t]


async def join(relay, room, user_id, announce=True):
    member = Member(connection=FakeConnection(), user_id=user_id)
    room.add(member)
    await relay.handle_message(
        room, member, {"type": "join", "room": room.name, "userId": user_id, "name": user_id.title(), "announce": announce}
    )
    return member


@pytest.fixture
def relay():
    return Relay()


@pytest.mark.asyncio
async def test_join_welcomes_and_announces(relay):
    room = relay.room("movie-night")
    alice = await join(relay, room, "alice")
    bob = await join(relay, room, "bob")

    assert alice.connection.of_type("welcome") == [{"type": "welcome", "userId": "alice"}]
    assert alice.connection.of_type("presence")[-1]["users"] == [
        {"userId": "alice", "name": "Alice"},
        {"userId": "bob", "name": "Bob"},
    ]
    assert bob.connection.of_type("presence")[-1]["users"][-1]["userId"] == "bob"


@pytest.mark.asyncio
async def test_watch_only_member_is_not_announced(relay):
    room = relay.room("movie-night")
    alice = await join(relay, room, "alice")
    await join(relay, room, "carol", announce=False)

    assert len(alice.connection.of_type("presence")) == 1
    assert room.presence() == [{"userId": "alice", "name": "Alice"}]


@pytest.mark.asyncio
async def test_commands_fan_out_to_others(relay):
    room = relay.room("movie-night")
    alice = await join(relay, room, "alice")
    bob = await join(relay, room, "bob")
    carol = await join(relay, room, "carol", announce=False)

    await relay.handle_message(
        room, alice, {"type": "command", "room": "movie-night", "command": {"action": "play", "value": 42.0}}
    )

    expected = {"type": "command", "command": {"action": "play", "value": 42.0}, "from": "alice"}
    assert bob.connection.of_type("command") == [expected]
    assert carol.connection.of_type("command") == [expected]
    assert alice.connection.of_type("command") == []


@pytest.mark.asyncio
async def test_info_goes_back_to_the_requester_only(relay):
    room = relay.room("movie-night")
    alice = await join(relay, room, "alice")
    bob = await join(relay, room, "bob")
    newcomer = await join(relay, room, "newcomer")

    await relay.handle_message(room, newcomer, {"type": "getInfo", "room": "movie-night"})
    assert alice.connection.of_type("getInfo") == [{"type": "getInfo", "from": "newcomer"}]
    assert bob.connection.of_type("getInfo") == [{"type": "getInfo", "from": "newcomer"}]
    assert newcomer.connection.of_type("getInfo") == []

    info = {"videoUrl": "dQw4w9WgXcQ", "timestamp": 1, "time": 2.0, "paused": False}
    await relay.handle_message(room, alice, {"type": "info", "info": info, "to": "newcomer"})
    assert newcomer.connection.of_type("info") == [{"type": "info", "info": info, "from": "alice"}]
    assert bob.connection.of_type("info") == []


@pytest.mark.asyncio
async def test_rejections(relay):
    room = relay.room("movie-night")
    stranger = Member(connection=FakeConnection(), user_id="stranger")
    room.add(stranger)

    await relay.handle_message(room, stranger, {"type": "command", "command": {"action": "play"}})
    await relay.handle_message(room, stranger, {"type": "join", "room": "other-room"})
    alice = await join(relay, room, "alice")
    await relay.handle_message(room, alice, {"type": "dance"})

    codes = [m["code"] for m in stranger.connection.of_type("error")]
    assert codes == ["not-joined", "wrong-room"]
    assert alice.connection.of_type("error")[0]["code"] == "unknown-type"


@pytest.mark.asyncio
async def test_ping_is_answered_before_join(relay):
    room = relay.room("movie-night")
    member = Member(connection=FakeConnection(), user_id="x")
    room.add(member)
    await relay.handle_message(room, member, {"type": "ping", "t": 123})
    pong = member.connection.of_type("pong")[0]
    assert pong["t"] == 123
    assert pong["serverTimeMs"] > 0


@pytest.mark.asyncio
async def test_empty_rooms_are_dropped(relay):
    room = relay.room("movie-night")
    alice = await join(relay, room, "alice")
    relay.leave(room, alice)
    assert "movie-night" not in relay.rooms
