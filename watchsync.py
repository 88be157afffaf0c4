# watchsync.py
#
# Synchronized watch party viewer
# - mpv plays the room's video (YouTube ids via yt-dlp), driven over JSON IPC
# - Relay (watchsyncrelay.py) fans commands out to the room over WebSocket
# - Local play/pause/seek is broadcast, remote commands are applied without echo
# - Late joiners catch up from the first viewer that answers
# - .env support
#
# Install:
#   pip install websockets python-dotenv
#
# .env example:
#   WS_BASE_URL=ws://localhost:8765
#   DEFAULT_ROOM=movie-night
#   DEFAULT_NAME=Zain
#   DEFAULT_VIDEO=https://youtu.be/XIMLoLxmTDw
#   HEARTBEAT_SECONDS=25
#   # Optional:
#   # MPV_PATH=/usr/local/bin/mpv
#   # CATCHUP_TIMEOUT_SECONDS=10
#
# Run:
#   python watchsyncrelay.py --port 8765
#   python watchsync.py --room movie-night
#   python watchsync.py --room movie-night --watch-only

import argparse
import asyncio
import enum
import json
import logging
import os
import platform
import random
import re
import string
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

import websockets
from dotenv import load_dotenv

load_dotenv(override=False)

log = logging.getLogger(__name__)

DEFAULT_WS_URL = "ws://localhost:8765"
DEFAULT_VIDEO_ID = "XIMLoLxmTDw"

# Fixed compensation for local player initialisation during catch-up
LOADING_DELAY = 0.5

# ----------------------------
# Utilities
# ----------------------------


def ms() -> int:
    return int(time.time() * 1000)


def rand_id(n=12) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(random.choice(alphabet) for _ in range(n))


def fmt_time(seconds: Optional[float]) -> str:
    if seconds is None:
        return "--:--"
    seconds = int(max(0, seconds))
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h:d}:{m:02d}:{s:02d}" if h > 0 else f"{m:02d}:{s:02d}"


# ----------------------------
# Errors
# ----------------------------


class InvalidIdentifierError(ValueError):
    def __init__(self, url: str):
        super().__init__(f"Not a recognised video url or id: {url!r}")
        self.url = url


class PlayerError(Exception):
    """Restriction, not-found or transport failure reported by the player."""

    def __init__(self, code: Union[int, str], message: str = ""):
        super().__init__(f"player error {code}" + (f": {message}" if message else ""))
        self.code = code
        self.message = message


# ----------------------------
# Video identifiers
# ----------------------------

VIDEO_ID_LENGTH = 11

_URL_ID = re.compile(r"^.*(youtu\.be/|v/|u/\w/|embed/|watch\?v=|&v=)([^#&?]*).*")
_BARE_ID = re.compile(r"[A-Za-z0-9_-]{11}")


def extract_video_id(url: str) -> Optional[str]:
    """Return the 11 character video id carried by ``url``, or None.

    Accepts short links (``youtu.be/<id>``), embed and ``/v/`` paths,
    ``watch?v=`` / ``&v=`` query forms and a bare id.
    """
    if not isinstance(url, str):
        return None
    url = url.strip()
    if _BARE_ID.fullmatch(url):
        return url
    match = _URL_ID.match(url)
    if match and len(match.group(2)) == VIDEO_ID_LENGTH:
        return match.group(2)
    return None


def parse_video_id(url: str) -> str:
    video_id = extract_video_id(url)
    if video_id is None:
        raise InvalidIdentifierError(url)
    return video_id


def canonical_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


# ----------------------------
# Data model
# ----------------------------


class Action(str, enum.Enum):
    CHANGE = "change"
    PLAY = "play"
    PAUSE = "pause"
    SPEED = "speed"  # reserved, never acted on


@dataclass(frozen=True)
class Command:
    action: Action
    value: Union[float, str, None] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"action": self.action.value}
        if self.value is not None:
            payload["value"] = self.value
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Command":
        action = Action(data.get("action"))
        value = data.get("value")
        if action is Action.CHANGE:
            if not isinstance(value, str):
                raise ValueError("change command needs a video id")
        elif action is Action.SPEED:
            value = None
        elif value is not None:
            value = float(value)
        return cls(action, value)


@dataclass(frozen=True)
class Info:
    """Snapshot of one viewer's playback, used for late-join catch-up.

    ``timestamp`` (epoch ms) and ``time`` (seconds) are taken together
    by the sender.
    """

    video_url: str
    timestamp: int
    time: float
    paused: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "videoUrl": self.video_url,
            "timestamp": self.timestamp,
            "time": self.time,
            "paused": self.paused,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Info":
        return cls(
            video_url=str(data["videoUrl"]),
            timestamp=int(data["timestamp"]),
            time=float(data["time"]),
            paused=bool(data["paused"]),
        )


@dataclass(frozen=True)
class InfoRequest:
    sender: Optional[str] = None


class PlayerState(enum.IntEnum):
    UNSTARTED = -1  # loading
    ENDED = 0
    PLAYING = 1
    PAUSED = 2
    BUFFERING = 3
    CUED = 5  # ready


SETTLED_STATES = (PlayerState.PLAYING, PlayerState.PAUSED, PlayerState.ENDED)


# ----------------------------
# Transitions
# ----------------------------


@dataclass(frozen=True)
class Transition:
    state: PlayerState
    paused: Optional[bool] = None
    command: Optional[Command] = None


def is_anchor_start(position: float) -> bool:
    # first play of a freshly loaded video, everybody is already at 0
    return position == 0


def is_end_of_stream(position: float, duration: float) -> bool:
    return duration - position == 0


def transition(
    state: PlayerState, position: float, duration: float, suppressed: bool = False
) -> Transition:
    """Map one adapter state change to the new local state and the command to broadcast.

    ``suppressed`` is True when the event is the expected echo of an
    inbound seek and must not be rebroadcast.
    """
    if state is PlayerState.PLAYING:
        if is_anchor_start(position):
            command = Command(Action.PLAY)
        elif suppressed:
            command = None
        else:
            command = Command(Action.PLAY, position)
        return Transition(state, paused=False, command=command)

    if state is PlayerState.PAUSED:
        if suppressed or is_end_of_stream(position, duration):
            return Transition(state, paused=True)
        return Transition(state, paused=True, command=Command(Action.PAUSE))

    if state is PlayerState.ENDED:
        return Transition(state, paused=True)

    return Transition(state)


class EchoGuard:
    """Single-shot expectation of the adapter event caused by an inbound seek.

    The next settled event consumes the expectation whatever it reports;
    only a matching state is suppressed.
    """

    def __init__(self):
        self.expected: Optional[PlayerState] = None
        self.command: Optional[Command] = None

    @property
    def pending(self) -> bool:
        return self.expected is not None

    def expect(self, state: PlayerState, command: Command):
        self.expected = state
        self.command = command

    def consume(self, state: PlayerState) -> bool:
        matched = self.expected is not None and self.expected is state
        self.clear()
        return matched

    def clear(self):
        self.expected = None
        self.command = None


def catch_up_position(info: Info, now_ms: int, loading_delay: float = LOADING_DELAY) -> float:
    elapsed = (now_ms - info.timestamp) / 1000 + loading_delay
    return info.time + elapsed


# ----------------------------
# Synchronization session
# ----------------------------


class Session:
    """Playback synchronization for one room membership.

    Inbound commands drive the local player without being rebroadcast;
    a joining viewer catches up from the first snapshot it is sent.
    All handlers are run one at a time from ``run``.
    """

    def __init__(
        self,
        room: str,
        player,
        channel,
        joined: bool = True,
        video_id: str = DEFAULT_VIDEO_ID,
        catch_up_timeout: Optional[float] = None,
        clock: Callable[[], int] = ms,
    ):
        self.room = room
        self.player = player
        self.channel = channel
        self.joined = joined
        self.current_video_id = video_id
        self.paused = True
        self.state = PlayerState.UNSTARTED
        self.echo = EchoGuard()
        self.catch_up_timeout = catch_up_timeout
        self._clock = clock
        self._events: asyncio.Queue = asyncio.Queue()
        self._subscriptions: List["Subscription"] = []
        self._tasks: List[asyncio.Task] = []
        self._started = False

    @property
    def suppress_echo(self) -> bool:
        return self.echo.pending

    # ---------- event queue ----------

    def bind(self, player):
        player.on_state_change = lambda state, position: self.post("state", (state, position))
        player.on_error = lambda error: self.post("error", error)
        player.on_playback_rate_change = lambda rate: self.post("rate", rate)

    def post(self, kind: str, payload: Any = None):
        self._events.put_nowait((kind, payload))

    async def run(self):
        while True:
            kind, payload = await self._events.get()
            try:
                await self.dispatch(kind, payload)
            except PlayerError as e:
                log.warning("Player rejected %s handling: %s", kind, e)

    async def dispatch(self, kind: str, payload: Any):
        if kind == "ready":
            await self.on_ready()
        elif kind == "state":
            state, position = payload
            duration = await self.player.get_duration()
            await self.on_adapter_state_change(state, position, duration)
        elif kind == "command":
            await self.on_inbound_command(payload)
        elif kind == "info_request":
            await self.on_info_request(payload)
        elif kind == "catch_up":
            await self.apply_catch_up(payload)
        elif kind == "local_change":
            await self.on_local_change(payload)
        elif kind == "error":
            self.on_player_error(payload)
        elif kind == "rate":
            self.on_playback_rate_change(payload)
        else:
            log.warning("Unknown session event %r", kind)

    async def _pump(self, subscription: "Subscription", kind: str):
        async for item in subscription:
            self.post(kind, item)

    # ---------- lifecycle ----------

    async def on_ready(self):
        if self._started:
            return
        self._started = True
        self.state = PlayerState.CUED
        await self.channel.join_room(self.room, announce=self.joined)

        requests = self.channel.on_get_info()
        commands = self.channel.on_command()
        self._subscriptions += [requests, commands]
        self._tasks.append(asyncio.create_task(self._pump(requests, "info_request")))
        self._tasks.append(asyncio.create_task(self._pump(commands, "command")))

        if self.joined:
            self._tasks.append(asyncio.create_task(self._catch_up_task()))

        # autoplay
        await self._guarded(self.player.play_video())

    async def leave(self):
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    # ---------- local ----------

    async def on_local_change(self, url: str) -> Optional[Command]:
        video_id = extract_video_id(url)
        if video_id is None:
            log.info("Ignoring unrecognised video url %r", url)
            return None
        self.current_video_id = video_id
        self.echo.clear()
        await self._load(video_id, 0)
        command = Command(Action.CHANGE, video_id)
        await self._send(command)
        return command

    async def on_adapter_state_change(
        self, state: PlayerState, position: float, duration: float
    ) -> Optional[Command]:
        state = PlayerState(state)
        suppressed = self.echo.consume(state) if state in SETTLED_STATES else False
        result = transition(state, position, duration, suppressed)

        self.state = result.state
        if result.paused is not None:
            self.paused = result.paused
        if state is PlayerState.ENDED:
            log.info("Video %s ended", self.current_video_id)
        elif suppressed:
            log.debug("Suppressed echo of %s @ %.3f", state.name, position)

        if result.command is not None:
            await self._send(result.command)
        return result.command

    def on_player_error(self, error):
        log.warning("Player error on %s: %s", self.current_video_id, error)

    def on_playback_rate_change(self, rate):
        log.info("speed changed to %s", rate)

    # ---------- inbound ----------

    async def on_inbound_command(self, command: Command):
        log.debug("Inbound %s", command)
        if command.action is Action.CHANGE:
            self.current_video_id = command.value
            self.echo.clear()
            await self._load(command.value, 0)
        elif command.action is Action.PLAY:
            if command.value is not None:
                self.echo.expect(PlayerState.PLAYING, command)
                await self._guarded(self.player.seek_to(float(command.value), True))
            await self._guarded(self.player.play_video())
        elif command.action is Action.PAUSE:
            if command.value is not None:
                self.echo.expect(PlayerState.PAUSED, command)
                await self._guarded(self.player.seek_to(float(command.value), True))
            await self._guarded(self.player.pause_video())
        elif command.action is Action.SPEED:
            pass

    async def on_info_request(self, request: Optional[InfoRequest] = None) -> Info:
        position = await self.player.get_current_time()
        info = Info(
            video_url=self.current_video_id,
            timestamp=self._clock(),
            time=position,
            paused=self.paused,
        )
        log.debug("Answering info request with %s", info)
        to = request.sender if request is not None else None
        await self.channel.send_info(self.room, info, to=to)
        return info

    # ---------- catch-up ----------

    async def request_catch_up(self) -> Optional[Info]:
        """Ask the room for its playback state and wait for the first answer."""
        if not self.joined:
            return None
        responses = await self.channel.get_info(self.room)
        try:
            return await asyncio.wait_for(responses.get(), self.catch_up_timeout)
        except asyncio.TimeoutError:
            log.warning(
                "No playback info from room %s after %ss, staying on %s",
                self.room,
                self.catch_up_timeout,
                self.current_video_id,
            )
            return None
        finally:
            responses.unsubscribe()

    async def apply_catch_up(self, info: Info) -> float:
        position = catch_up_position(info, self._clock())
        log.info("Catching up to %s @ %.3f (delay %.3fs)", info.video_url, position, position - info.time)
        self.current_video_id = info.video_url
        self.echo.clear()
        await self._load(info.video_url, position)
        if info.paused:
            self.paused = True
            await self._guarded(self.player.pause_video())
        else:
            self.paused = False
            await self._guarded(self.player.play_video())
        return position

    async def catch_up(self) -> Optional[float]:
        info = await self.request_catch_up()
        if info is None:
            return None
        return await self.apply_catch_up(info)

    async def _catch_up_task(self):
        info = await self.request_catch_up()
        if info is not None:
            self.post("catch_up", info)

    # ---------- helpers ----------

    async def _load(self, video_id: str, start: float):
        self.state = PlayerState.UNSTARTED
        await self._guarded(self.player.load_video_by_id(video_id, start, "default"))

    async def _send(self, command: Command):
        log.debug("Outbound %s", command)
        await self.channel.send_command(self.room, command)

    async def _guarded(self, operation):
        try:
            return await operation
        except PlayerError as e:
            log.warning("Player operation failed: %s", e)
            return None


# ----------------------------
# mpv JSON IPC player
# ----------------------------


class MPV:
    """mpv driven over JSON IPC, exposing the player widget operations and events."""

    OBSERVED = ("pause", "speed", "eof-reached")

    def __init__(self, mpv_path: str = "mpv"):
        self.mpv_path = mpv_path
        self.proc = None
        self.ipc_path = self._make_ipc_path()
        self.ready = False
        self.on_ready: Optional[Callable[[], None]] = None
        self.on_state_change: Optional[Callable[[PlayerState, float], None]] = None
        self.on_error: Optional[Callable[[PlayerError], None]] = None
        self.on_playback_rate_change: Optional[Callable[[float], None]] = None
        self._paused: Optional[bool] = None
        self._speed: Optional[float] = None
        self._seeking = False
        self._eof = False
        self._request_id = 0

    def _make_ipc_path(self) -> str:
        suffix = "".join(random.choice(string.ascii_lowercase) for _ in range(8))
        if platform.system().lower().startswith("win"):
            return rf"\\.\pipe\watchsync-mpv-{suffix}"
        return f"/tmp/watchsync-mpv-{suffix}.sock"

    def start(self, url: Optional[str] = None):
        # --keep-open pauses on the last frame instead of unloading
        args = [
            self.mpv_path,
            "--force-window=yes",
            "--idle=yes",
            "--keep-open=yes",
            f"--input-ipc-server={self.ipc_path}",
        ]
        if url:
            args.append(url)
        self.proc = subprocess.Popen(
            args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        )

    def terminate(self):
        if self.proc and self.proc.poll() is None:
            self.proc.terminate()
        self.proc = None

    async def _connect_ipc(self, timeout_s=5.0):
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            try:
                if platform.system().lower().startswith("win"):
                    return await asyncio.open_connection(self.ipc_path)
                return await asyncio.open_unix_connection(self.ipc_path)
            except OSError:
                await asyncio.sleep(0.1)
        raise PlayerError("ipc-unavailable", f"could not connect to {self.ipc_path}")

    async def command(self, cmd):
        self._request_id += 1
        request_id = self._request_id
        reader, writer = await self._connect_ipc()
        try:
            payload = {"command": cmd, "request_id": request_id}
            writer.write(json.dumps(payload).encode("utf-8") + b"\n")
            await writer.drain()
            # event lines can arrive before the reply
            while True:
                line = await reader.readline()
                if not line:
                    raise PlayerError("ipc-closed", f"no reply to {cmd!r}")
                try:
                    resp = json.loads(line.decode("utf-8", errors="ignore"))
                except json.JSONDecodeError:
                    continue
                if "event" in resp or resp.get("request_id") != request_id:
                    continue
                return resp
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def _checked(self, cmd):
        resp = await self.command(cmd)
        if resp.get("error") != "success":
            raise PlayerError(resp.get("error", "unknown"), f"{cmd!r} failed")
        return resp.get("data")

    async def get_property(self, prop: str):
        resp = await self.command(["get_property", prop])
        if resp.get("error") == "success":
            return resp.get("data")
        return None

    async def set_property(self, prop: str, value):
        await self._checked(["set_property", prop, value])

    # ---------- widget operations ----------

    async def load_video_by_id(self, video_id: str, start: float = 0.0, quality: str = "default"):
        options = [f"start={max(0.0, float(start)):.3f}"]
        if quality != "default":
            options.append(f"ytdl-format={quality}")
        await self._checked(
            {
                "name": "loadfile",
                "url": canonical_url(video_id),
                "flags": "replace",
                "options": ",".join(options),
            }
        )

    async def play_video(self):
        await self.set_property("pause", False)

    async def pause_video(self):
        await self.set_property("pause", True)

    async def seek_to(self, seconds: float, allow_seek_ahead: bool = True):
        flags = "absolute" if allow_seek_ahead else "absolute+keyframes"
        await self._checked(["seek", float(seconds), flags])

    async def get_current_time(self) -> float:
        return float(await self.get_property("time-pos") or 0.0)

    async def get_duration(self) -> float:
        return float(await self.get_property("duration") or 0.0)

    # ---------- events ----------

    async def listen(self):
        reader, writer = await self._connect_ipc(timeout_s=15.0)
        try:
            for i, prop in enumerate(self.OBSERVED, start=1):
                msg = {"command": ["observe_property", i, prop]}
                writer.write(json.dumps(msg).encode("utf-8") + b"\n")
            await writer.drain()

            self.ready = True
            if self.on_ready:
                self.on_ready()

            while True:
                line = await reader.readline()
                if not line:
                    log.warning("mpv IPC closed")
                    return
                try:
                    evt = json.loads(line.decode("utf-8", errors="ignore"))
                except json.JSONDecodeError:
                    continue
                if "event" in evt:
                    await self._handle_event(evt)
        finally:
            writer.close()

    async def _emit(self, state: PlayerState):
        if not self.on_state_change:
            return
        # position is read now, the session may handle the event much later
        try:
            position = await self.get_current_time()
        except PlayerError as e:
            log.warning("Dropping %s event, position unavailable: %s", state.name, e)
            return
        self.on_state_change(state, position)

    async def _handle_event(self, evt: Dict[str, Any]):
        name = evt.get("event")

        if name == "start-file":
            self._seeking = True
            self._eof = False
            await self._emit(PlayerState.UNSTARTED)
        elif name == "seek":
            self._seeking = True
        elif name == "playback-restart":
            self._seeking = False
            if not self._paused:
                await self._emit(PlayerState.PLAYING)
        elif name == "end-file":
            if evt.get("reason") == "error":
                error = PlayerError(evt.get("file_error", "unknown"), "could not load video")
                if self.on_error:
                    self.on_error(error)
            elif evt.get("reason") == "eof":
                await self._emit(PlayerState.ENDED)
        elif name == "property-change":
            await self._property_changed(evt.get("name"), evt.get("data"))

    async def _property_changed(self, prop: Optional[str], data):
        if prop == "pause":
            if data is None:
                return
            paused = bool(data)
            previous, self._paused = self._paused, paused
            if previous is None or previous == paused:
                return
            if not paused:
                if not self._seeking:
                    # otherwise reported by playback-restart
                    await self._emit(PlayerState.PLAYING)
                return
            if self._eof:
                return
            # keep-open pauses on the last frame, a frame short of duration
            try:
                at_end = bool(await self.get_property("eof-reached"))
            except PlayerError as e:
                log.debug("eof-reached unreadable, reporting a pause: %s", e)
                at_end = False
            if at_end:
                self._eof = True
                await self._emit(PlayerState.ENDED)
            else:
                await self._emit(PlayerState.PAUSED)
        elif prop == "speed":
            if data is None:
                return
            previous, self._speed = self._speed, float(data)
            if previous is not None and previous != self._speed and self.on_playback_rate_change:
                self.on_playback_rate_change(self._speed)
        elif prop == "eof-reached":
            eof = bool(data)
            previous, self._eof = self._eof, eof
            if eof and not previous:
                await self._emit(PlayerState.ENDED)


class PlayerRuntime:
    """Process-wide player runtime: started at most once, ready callbacks fired once."""

    _instance: Optional["PlayerRuntime"] = None

    def __init__(self, factory=MPV):
        self._factory = factory
        self.player = None
        self.ready = False
        self._callbacks: List[Callable] = []
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def get(cls) -> "PlayerRuntime":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def when_ready(self, callback: Callable):
        if self.ready:
            callback(self.player)
        else:
            self._callbacks.append(callback)

    def ensure_started(self, url: Optional[str] = None, mpv_path: str = "mpv"):
        if self._task is None:
            self.player = self._factory(mpv_path)
            self.player.on_ready = self._fire_ready
            self.player.start(url)
            self._task = asyncio.create_task(self.player.listen())
        return self.player

    def _fire_ready(self):
        self.ready = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self.player)

    async def shutdown(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self.player is not None:
            self.player.terminate()
        self.player = None
        self.ready = False
        if PlayerRuntime._instance is self:
            PlayerRuntime._instance = None


# ----------------------------
# Command channel
# ----------------------------


class Subscription:
    """Async-iterable queue of inbound items, detached by ``unsubscribe``."""

    def __init__(self, on_close: Optional[Callable[["Subscription"], None]] = None):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._on_close = on_close

    def push(self, item):
        if not self.closed:
            self.queue.put_nowait(item)

    async def get(self):
        return await self.queue.get()

    def unsubscribe(self):
        if self.closed:
            return
        self.closed = True
        if self._on_close:
            self._on_close(self)

    def __aiter__(self):
        return self

    async def __anext__(self):
        return await self.get()


class CommandChannel:
    """Room-scoped message bus over a websocket to the relay."""

    def __init__(
        self,
        ws_url: str = DEFAULT_WS_URL,
        user_id: Optional[str] = None,
        name: str = "anon",
        heartbeat_seconds: float = 25,
    ):
        self.ws_url = ws_url.rstrip("/")
        self.user_id = user_id or rand_id()
        self.name = name
        self.heartbeat_seconds = heartbeat_seconds
        self.ws = None
        self.room: Optional[str] = None
        self._subscribers: Dict[str, List[Subscription]] = {
            "command": [],
            "getInfo": [],
            "info": [],
        }
        self._tasks: List[asyncio.Task] = []

    async def connect(self, room: str):
        self.room = room
        url = f"{self.ws_url}/room/{room}"
        log.info("Connecting: %s", url)
        self.ws = await websockets.connect(url, ping_interval=None)
        self._tasks = [
            asyncio.create_task(self._recv_loop()),
            asyncio.create_task(self._heartbeat_loop()),
        ]

    async def wait_closed(self):
        if self._tasks:
            await self._tasks[0]

    async def close(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.ws is not None:
            await self.ws.close()
        self.ws = None

    async def _send(self, obj: Dict[str, Any]):
        if not self.ws:
            return
        await self.ws.send(json.dumps(obj))

    def _subscribe(self, kind: str) -> Subscription:
        sub = Subscription(on_close=self._subscribers[kind].remove)
        self._subscribers[kind].append(sub)
        return sub

    # ---------- room API ----------

    async def join_room(self, room: str, announce: bool = True):
        await self._send(
            {
                "type": "join",
                "room": room,
                "userId": self.user_id,
                "name": self.name,
                "announce": announce,
            }
        )

    async def send_command(self, room: str, command: Command):
        await self._send({"type": "command", "room": room, "command": command.to_dict()})

    def on_command(self) -> Subscription:
        return self._subscribe("command")

    async def send_info(self, room: str, info: Info, to: Optional[str] = None):
        payload = {"type": "info", "room": room, "info": info.to_dict()}
        if to:
            payload["to"] = to
        await self._send(payload)

    def on_get_info(self) -> Subscription:
        return self._subscribe("getInfo")

    async def get_info(self, room: str) -> Subscription:
        # subscribe before asking so no answer is missed
        sub = self._subscribe("info")
        await self._send({"type": "getInfo", "room": room})
        return sub

    # ---------- loops ----------

    async def _heartbeat_loop(self):
        while self.ws:
            await self._send({"type": "ping", "t": ms()})
            await asyncio.sleep(self.heartbeat_seconds)

    async def _recv_loop(self):
        try:
            async for raw in self.ws:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    log.warning("Dropping undecodable frame")
                    continue
                self._dispatch(msg)
        except websockets.ConnectionClosed as e:
            log.warning("Disconnected: %s", e)

    def _publish(self, kind: str, item):
        for sub in list(self._subscribers[kind]):
            sub.push(item)

    def _dispatch(self, msg: Dict[str, Any]):
        t = msg.get("type")

        if t == "command":
            try:
                command = Command.from_dict(msg.get("command") or {})
            except (TypeError, ValueError) as e:
                log.warning("Dropping malformed command %r: %s", msg.get("command"), e)
                return
            self._publish("command", command)
        elif t == "getInfo":
            self._publish("getInfo", InfoRequest(sender=msg.get("from")))
        elif t == "info":
            try:
                info = Info.from_dict(msg.get("info") or {})
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Dropping malformed info %r: %s", msg.get("info"), e)
                return
            self._publish("info", info)
        elif t == "presence":
            users = msg.get("users", [])
            names = [u.get("name", "?") for u in users]
            print(f"[PRESENCE] {len(users)} users: {', '.join(names)}")
        elif t == "pong":
            rtt = ms() - int(msg.get("t", 0))
            log.debug("pong rtt=%dms", rtt)
        elif t == "welcome":
            log.debug("Joined as %s", msg.get("userId"))
        elif t == "error":
            print(f"[ERROR] {msg.get('code')}: {msg.get('message')}")


# ----------------------------
# Settings
# ----------------------------


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass
class Settings:
    ws_url: str = DEFAULT_WS_URL
    room: str = ""
    name: str = "anon"
    video: str = DEFAULT_VIDEO_ID
    mpv_path: str = "mpv"
    heartbeat_seconds: float = 25
    catch_up_timeout: Optional[float] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ws_url=os.getenv("WS_BASE_URL", DEFAULT_WS_URL),
            room=os.getenv("DEFAULT_ROOM", ""),
            name=os.getenv("DEFAULT_NAME", "anon"),
            video=os.getenv("DEFAULT_VIDEO", DEFAULT_VIDEO_ID),
            mpv_path=os.getenv("MPV_PATH", "mpv"),
            heartbeat_seconds=float(os.getenv("HEARTBEAT_SECONDS", "25")),
            catch_up_timeout=_optional_float(os.getenv("CATCHUP_TIMEOUT_SECONDS")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# ----------------------------
# Client logic
# ----------------------------


def start_stdin_reader(loop: asyncio.AbstractEventLoop, stream=None):
    """Feed lines from ``stream`` into a queue from a daemon thread.

    The thread is a daemon so a pending read never blocks shutdown.
    """
    stream = stream if stream is not None else sys.stdin
    lines: asyncio.Queue = asyncio.Queue()

    def read():
        for line in stream:
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                # loop already closed
                return

    thread = threading.Thread(target=read, name="watchsync-stdin", daemon=True)
    thread.start()
    return lines, thread


async def stdin_loop(session: Session, player: MPV, lines: asyncio.Queue):
    """
    Commands:
      change <url>
      play
      pause
      seek <seconds>
      fwd <seconds>
      back <seconds>
      time   (prints local player time)
      quit
    """
    while True:
        line = (await lines.get()).strip()
        if not line:
            continue

        parts = line.split()
        cmd = parts[0].lower()

        try:
            if cmd in ("quit", "exit"):
                print("Bye.")
                return

            if cmd == "change" and len(parts) >= 2:
                session.post("local_change", parts[1])
                continue

            if cmd == "time":
                cur = await player.get_current_time()
                dur = await player.get_duration()
                print(f"{session.current_video_id} {fmt_time(cur)} / {fmt_time(dur)}")
                continue

            if cmd == "play":
                await player.play_video()
                continue

            if cmd == "pause":
                await player.pause_video()
                continue

            if cmd == "seek" and len(parts) >= 2:
                await player.seek_to(float(parts[1]))
                continue

            if cmd in ("fwd", "forward", "back", "rewind") and len(parts) >= 2:
                delta = float(parts[1])
                if cmd in ("back", "rewind"):
                    delta = -delta
                cur = await player.get_current_time()
                await player.seek_to(max(0.0, cur + delta))
                continue
        except ValueError:
            pass
        except PlayerError as e:
            print(f"[PLAYER] {e}")
            continue

        print(
            "Unknown command. Try: change <url> | play | pause | seek 120 | fwd 10 | back 10 | time | quit"
        )


async def watchsync_client(settings: Settings, joined: bool = True):
    video_id = parse_video_id(settings.video)
    channel = CommandChannel(
        settings.ws_url,
        name=settings.name,
        heartbeat_seconds=settings.heartbeat_seconds,
    )
    await channel.connect(settings.room)

    runtime = PlayerRuntime.get()
    player = runtime.ensure_started(canonical_url(video_id), settings.mpv_path)
    session = Session(
        settings.room,
        player,
        channel,
        joined=joined,
        video_id=video_id,
        catch_up_timeout=settings.catch_up_timeout,
    )
    session.bind(player)
    runtime.when_ready(lambda _player: session.post("ready"))

    run_task = asyncio.create_task(session.run())
    lines, _reader = start_stdin_reader(asyncio.get_running_loop())
    stdin_task = asyncio.create_task(stdin_loop(session, player, lines))
    closed_task = asyncio.create_task(channel.wait_closed())
    try:
        await asyncio.wait(
            {run_task, stdin_task, closed_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        await session.leave()
        for task in (run_task, stdin_task, closed_task):
            task.cancel()
        await channel.close()
        await runtime.shutdown()


def main():
    settings = Settings.from_env()

    ap = argparse.ArgumentParser(description="Synchronized video watch party")
    ap.add_argument("--ws-url", default=settings.ws_url, help="Relay base URL (ws://...)")
    ap.add_argument(
        "--room",
        default=settings.room or None,
        required=not settings.room,
        help="Room id/code (e.g. abc123)",
    )
    ap.add_argument("--name", default=settings.name, help="Display name")
    ap.add_argument("--video", default=settings.video, help="Video url or id to start on")
    ap.add_argument(
        "--watch-only",
        action="store_true",
        help="Don't catch up to the room or announce presence",
    )
    ap.add_argument("--mpv", default=settings.mpv_path, help="mpv executable")
    ap.add_argument(
        "--catch-up-timeout",
        type=float,
        default=settings.catch_up_timeout,
        help="Give up waiting for room state after this many seconds",
    )
    ap.add_argument("--log-level", default=settings.log_level)
    args = ap.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings.ws_url = args.ws_url
    settings.room = args.room
    settings.name = args.name
    settings.video = args.video
    settings.mpv_path = args.mpv
    settings.catch_up_timeout = args.catch_up_timeout

    try:
        parse_video_id(settings.video)
    except InvalidIdentifierError as e:
        print(e)
        sys.exit(1)

    asyncio.run(watchsync_client(settings, joined=not args.watch_only))


if __name__ == "__main__":
    main()
