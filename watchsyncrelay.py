import argparse
import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import websockets
from dotenv import load_dotenv

load_dotenv(override=False)

log = logging.getLogger(__name__)

# ----------------------------
# Rooms
# ----------------------------


def ms() -> int:
    return int(time.time() * 1000)


@dataclass(eq=False)
class Member:
    connection: Any
    user_id: str = ""
    name: str = "anon"
    announced: bool = False
    joined: bool = False


@dataclass
class Room:
    """Viewers sharing one session. Holds membership only, never playback state."""

    name: str
    members: List[Member] = field(default_factory=list)

    def add(self, member: Member):
        self.members.append(member)

    def remove(self, member: Member):
        if member in self.members:
            self.members.remove(member)

    def find(self, user_id: str) -> Optional[Member]:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def presence(self) -> List[Dict[str, str]]:
        return [
            {"userId": m.user_id, "name": m.name}
            for m in self.members
            if m.joined and m.announced
        ]

    async def send(self, member: Member, obj: Dict[str, Any]):
        try:
            await member.connection.send(json.dumps(obj))
        except websockets.ConnectionClosed:
            log.debug("Dropping message to closed member %s", member.user_id)

    async def broadcast(self, obj: Dict[str, Any], exclude: Optional[Member] = None):
        targets = [m for m in self.members if m is not exclude and m.joined]
        await asyncio.gather(*(self.send(m, obj) for m in targets))


# ----------------------------
# Relay
# ----------------------------


class Relay:
    """Fans room messages out to the other members; the first info answer is the requester's business."""

    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    def room(self, name: str) -> Room:
        if name not in self.rooms:
            self.rooms[name] = Room(name)
        return self.rooms[name]

    def leave(self, room: Room, member: Member):
        room.remove(member)
        if not room.members:
            self.rooms.pop(room.name, None)

    async def error(self, room: Room, member: Member, code: str, message: str):
        await room.send(member, {"type": "error", "code": code, "message": message})

    async def handle_message(self, room: Room, member: Member, msg: Dict[str, Any]):
        t = msg.get("type")

        if t == "ping":
            await room.send(member, {"type": "pong", "t": msg.get("t", 0), "serverTimeMs": ms()})
            return

        if "room" in msg and msg["room"] != room.name:
            await self.error(room, member, "wrong-room", f"connected to room {room.name!r}")
            return

        if t == "join":
            member.user_id = str(msg.get("userId") or member.user_id)
            member.name = str(msg.get("name") or "anon")
            member.announced = bool(msg.get("announce", True))
            member.joined = True
            log.info("%s (%s) joined %s", member.name, member.user_id, room.name)
            await room.send(member, {"type": "welcome", "userId": member.user_id})
            if member.announced:
                await room.broadcast({"type": "presence", "users": room.presence()})
            return

        if not member.joined:
            await self.error(room, member, "not-joined", "send join first")
            return

        if t == "command":
            await room.broadcast(
                {"type": "command", "command": msg.get("command"), "from": member.user_id},
                exclude=member,
            )
        elif t == "getInfo":
            await room.broadcast({"type": "getInfo", "from": member.user_id}, exclude=member)
        elif t == "info":
            payload = {"type": "info", "info": msg.get("info"), "from": member.user_id}
            target = room.find(msg["to"]) if msg.get("to") else None
            if target is not None:
                await room.send(target, payload)
            elif msg.get("to"):
                log.debug("Info for %s who already left %s", msg["to"], room.name)
            else:
                await room.broadcast(payload, exclude=member)
        else:
            await self.error(room, member, "unknown-type", f"unknown message type {t!r}")

    async def handler(self, websocket):
        path = websocket.request.path
        parts = path.strip("/").split("/")
        if len(parts) != 2 or parts[0] != "room" or not parts[1]:
            await websocket.close(1008, "expected /room/<room>")
            return

        room = self.room(parts[1])
        member = Member(connection=websocket, user_id=str(websocket.id))
        room.add(member)
        try:
            async for raw in websocket:
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    await self.error(room, member, "bad-json", "could not decode message")
                    continue
                await self.handle_message(room, member, msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.leave(room, member)
            log.info("%s left %s", member.name, room.name)
            if member.announced:
                await room.broadcast({"type": "presence", "users": room.presence()})


async def serve(host: str, port: int):
    relay = Relay()
    async with websockets.serve(relay.handler, host, port):
        log.info("Relay listening on ws://%s:%d", host, port)
        await asyncio.Future()


def main():
    ap = argparse.ArgumentParser(description="Watch party room relay")
    ap.add_argument("--host", default=os.getenv("RELAY_HOST", "0.0.0.0"))
    ap.add_argument("--port", type=int, default=int(os.getenv("RELAY_PORT", "8765")))
    ap.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = ap.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(serve(args.host, args.port))


if __name__ == "__main__":
    main()
