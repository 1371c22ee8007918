import asyncio

import pytest

from backend import RedisBackend
from errors import StoreUnavailable
from redis_keys import REDIS_ROOM_NAME_KEY


class YieldingRedis:
    """Just enough of redis.asyncio for room creation; every command yields to the loop first."""

    def __init__(self):
        self.strings = {}
        self.hashes = {}
        self.zsets = {}

    async def get(self, key):
        await asyncio.sleep(0)
        return self.strings.get(key)

    async def set(self, key, value, nx=False):
        await asyncio.sleep(0)
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    async def hgetall(self, key):
        await asyncio.sleep(0)
        return dict(self.hashes.get(key, {}))

    async def zrevrange(self, key, start, end):
        await asyncio.sleep(0)
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        return [member for member, _ in members]

    def pipeline(self, transaction=True):
        return YieldingPipeline(self)


class YieldingPipeline:
    def __init__(self, client):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def hset(self, key, mapping):
        self.commands.append(lambda: self.client.hashes.setdefault(key, {}).update(mapping))

    def zadd(self, key, mapping):
        self.commands.append(lambda: self.client.zsets.setdefault(key, {}).update(mapping))

    def delete(self, key):
        self.commands.append(lambda: self.client.hashes.pop(key, None))

    def zrem(self, key, member):
        self.commands.append(lambda: self.client.zsets.get(key, {}).pop(member, None))

    async def execute(self):
        await asyncio.sleep(0)
        for command in self.commands:
            command()
        self.commands = []


@pytest.mark.asyncio
async def test_concurrent_get_or_create_room_returns_one_room():
    backend = RedisBackend(client=YieldingRedis())

    results = await asyncio.gather(*(backend.get_or_create_room("general") for _ in range(3)))

    assert len({room.id for room, _ in results}) == 1
    assert [created for _, created in results].count(True) == 1
    rooms = await backend.list_rooms()
    assert [room.name for room in rooms] == ["general"]


@pytest.mark.asyncio
async def test_existing_room_is_returned():
    backend = RedisBackend(client=YieldingRedis())
    room, created = await backend.get_or_create_room("general")

    again, created_again = await backend.get_or_create_room("general")

    assert created and not created_again
    assert again == room


@pytest.mark.asyncio
async def test_room_name_without_metadata_is_a_store_error():
    client = YieldingRedis()
    client.strings[REDIS_ROOM_NAME_KEY.format(name="general")] = "missing-room"
    backend = RedisBackend(client=client)

    with pytest.raises(StoreUnavailable):
        await backend.get_or_create_room("general")
