import pytest

from watchsync import PlayerError, Subscription


class FakePlayer:
    """Records widget operations; position and duration are set by the test."""

    def __init__(self, position=0.0, duration=300.0):
        self.position = position
        self.duration = duration
        self.calls = []
        self.fail = False
        self.on_state_change = None
        self.on_error = None
        self.on_playback_rate_change = None

    async def _record(self, *call):
        if self.fail:
            raise PlayerError(150, "embedding disabled")
        self.calls.append(call)

    async def load_video_by_id(self, video_id, start=0.0, quality="default"):
        await self._record("load", video_id, start)
        self.position = start

    async def play_video(self):
        await self._record("play")

    async def pause_video(self):
        await self._record("pause")

    async def seek_to(self, seconds, allow_seek_ahead=True):
        await self._record("seek", seconds)
        self.position = seconds

    async def get_current_time(self):
        return self.position

    async def get_duration(self):
        return self.duration


class FakeChannel:
    def __init__(self):
        self.joins = []
        self.commands = []
        self.infos = []
        self.info_requests = 0
        self.command_sub = None
        self.request_sub = None
        self.info_sub = None

    async def join_room(self, room, announce=True):
        self.joins.append((room, announce))

    async def send_command(self, room, command):
        self.commands.append(command)

    def on_command(self):
        self.command_sub = Subscription()
        return self.command_sub

    async def send_info(self, room, info, to=None):
        self.infos.append((info, to))

    def on_get_info(self):
        self.request_sub = Subscription()
        return self.request_sub

    async def get_info(self, room):
        self.info_requests += 1
        self.info_sub = Subscription()
        return self.info_sub


@pytest.fixture
def player():
    return FakePlayer()


@pytest.fixture
def channel():
    return FakeChannel()
