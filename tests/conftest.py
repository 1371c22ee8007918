import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from auth import IdentityVerifier
from errors import StoreUnavailable
from membership import RoomMembershipTracker
from message_router import MessageRouter
from presence import PresenceBroadcaster
from registry import Connection, ConnectionRegistry
from relay import InMemoryRelay
from schemas.records import DirectMessageRecord, MessageRecord, RoomRecord, UserRecord, UserSummary

TEST_SECRET = "test-secret"


class InMemoryStore:
    """Store double with the same async interface as ``backend.RedisBackend``."""

    def __init__(self):
        self.users: dict[str, UserRecord] = {}
        self.rooms: dict[str, RoomRecord] = {}
        self.room_messages: list[MessageRecord] = []
        self.direct_messages: list[DirectMessageRecord] = []
        self.blocked: set[tuple[str, str]] = set()
        self.available = True
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _check(self):
        if not self.available:
            raise StoreUnavailable()

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    async def ping(self):
        self._check()

    async def close(self):
        pass

    def add_user(self, username: str, user_id: Optional[str] = None, age: int = 30, sex: str = "F", country: str = "NZ"):
        user = UserRecord(id=user_id or str(uuid.uuid4()), username=username, age=age, sex=sex, country=country,
                          created_at=self._tick())
        self.users[user.id] = user
        return user

    def add_room(self, name: str, room_id: Optional[str] = None):
        room = RoomRecord(id=room_id or str(uuid.uuid4()), name=name, created_at=self._tick())
        self.rooms[room.id] = room
        return room

    async def create_user(self, username, age, sex, country):
        self._check()
        if any(u.username.lower() == username.lower() for u in self.users.values()):
            return None
        return self.add_user(username, age=age, sex=sex, country=country)

    async def find_user(self, user_id):
        self._check()
        return self.users.get(user_id)

    async def room_exists(self, room_id):
        self._check()
        return room_id in self.rooms

    async def get_or_create_room(self, name):
        self._check()
        for room in self.rooms.values():
            if room.name == name:
                return room, False
        return self.add_room(name), True

    async def list_rooms(self):
        self._check()
        return sorted(self.rooms.values(), key=lambda r: r.created_at, reverse=True)

    def add_room_message(self, sender, room_id, content, image_url=None):
        message = MessageRecord(id=str(uuid.uuid4()), content=content, user_id=sender.id, username=sender.username,
                                room_id=room_id, created_at=self._tick(), image_url=image_url)
        self.room_messages.append(message)
        return message

    async def persist_room_message(self, sender, room_id, content, image_url=None):
        self._check()
        return self.add_room_message(sender, room_id, content, image_url)

    async def get_room_messages(self, room_id, limit=50, before=None):
        self._check()
        messages = [m for m in self.room_messages if m.room_id == room_id and (before is None or m.created_at < before)]
        return messages[-limit:]

    def _summary(self, user_id):
        user = self.users.get(user_id)
        if user is None:
            return UserSummary(id=user_id, username="unknown")
        return UserSummary(id=user.id, username=user.username, age=user.age, sex=user.sex)

    def add_direct_message(self, sender, receiver_id, content, image_url=None):
        message = DirectMessageRecord(id=str(uuid.uuid4()), content=content, sender_id=sender.id,
                                      receiver_id=receiver_id, sender=self._summary(sender.id),
                                      receiver=self._summary(receiver_id), created_at=self._tick(),
                                      image_url=image_url)
        self.direct_messages.append(message)
        return message

    async def persist_direct_message(self, sender, receiver_id, content, image_url=None):
        self._check()
        return self.add_direct_message(sender, receiver_id, content, image_url)

    async def get_direct_messages(self, user_id, limit=100):
        self._check()
        mine = [m for m in self.direct_messages if user_id in (m.sender_id, m.receiver_id)]
        return sorted(mine, key=lambda m: m.created_at, reverse=True)[:limit]

    async def get_conversation(self, user_id, other_id, limit=50):
        self._check()
        pair = {user_id, other_id}
        conversation = [m for m in self.direct_messages if {m.sender_id, m.receiver_id} == pair][-limit:]
        for index, message in enumerate(self.direct_messages):
            if message in conversation and message.receiver_id == user_id:
                self.direct_messages[index] = message.model_copy(update={"read": True})
        return conversation

    async def is_blocked(self, blocker_id, blocked_id):
        self._check()
        return (blocker_id, blocked_id) in self.blocked

    async def block_user(self, blocker_id, blocked_id):
        self._check()
        self.blocked.add((blocker_id, blocked_id))

    async def unblock_user(self, blocker_id, blocked_id):
        self._check()
        self.blocked.discard((blocker_id, blocked_id))

    async def get_blocked_users(self, blocker_id):
        self._check()
        return [self._summary(blocked) for blocker, blocked in sorted(self.blocked) if blocker == blocker_id]


class FakeWebSocket:
    """Records what the server sends; enough of the Starlette WebSocket for ``Connection``."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed_with: Optional[tuple[int, str]] = None
        self.fail_sends = False

    async def send_text(self, text: str):
        if self.fail_sends:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed_with = (code, reason)

    def frames(self, frame_type: str) -> list[dict]:
        return [frame for frame in self.sent if frame["type"] == frame_type]


class ChatHarness:
    """One process worth of chat core, wired to fake sockets."""

    def __init__(self, store: InMemoryStore, relay=None, max_message_length: int = 5000):
        self.store = store
        self.relay = relay or InMemoryRelay()
        self.verifier = IdentityVerifier(secret=TEST_SECRET)
        self.registry = ConnectionRegistry()
        self.tracker = RoomMembershipTracker()
        self.presence = PresenceBroadcaster(self.registry)
        self.router = MessageRouter(self.store, self.relay, self.registry, self.tracker, self.verifier,
                                    max_message_length=max_message_length)

    async def connect(self, user: UserRecord) -> Connection:
        connection = Connection(FakeWebSocket())
        assert await self.router.authenticate(connection, self.verifier.issue(user.id, user.username))
        await self.router.connect(connection)
        return connection

    async def send(self, connection: Connection, frame_type: str, **payload):
        await self.router.handle_frame(connection, json.dumps({"type": frame_type, "payload": payload}))
        await self.relay.join()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def verifier():
    return IdentityVerifier(secret=TEST_SECRET)


@pytest_asyncio.fixture
async def harness(store):
    chat = ChatHarness(store)
    await chat.router.start()
    yield chat
    await chat.relay.close()
