import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from redis_keys import CHANNEL_DIRECT_MESSAGE, CHANNEL_ROOM_MESSAGE, RELAY_CHANNELS
from relay import InMemoryRelay, RedisRelay, Relay
from schemas.frames import RelayEnvelope, error_frame


def envelope(key, text="hi"):
    return RelayEnvelope(routing_key=key, frame=error_frame(text))


def test_relay_transport_must_implement_publish():
    class ListenOnlyRelay(Relay):
        async def _start_listening(self):
            return None

    with pytest.raises(TypeError):
        Relay()
    with pytest.raises(TypeError):
        ListenOnlyRelay()


@pytest.mark.asyncio
async def test_in_memory_relay_preserves_order():
    relay = InMemoryRelay()
    seen = []

    async def handler(channel, env):
        seen.append((channel, env.frame.payload.message))

    await relay.subscribe(RELAY_CHANNELS, handler)
    try:
        for i in range(5):
            assert await relay.publish(CHANNEL_ROOM_MESSAGE, envelope("r1", str(i)))
        await relay.join()
    finally:
        await relay.close()

    assert seen == [(CHANNEL_ROOM_MESSAGE, str(i)) for i in range(5)]


@pytest.mark.asyncio
async def test_handler_errors_do_not_stop_dispatch():
    relay = InMemoryRelay()
    seen = []

    async def handler(channel, env):
        if env.routing_key == "bad":
            raise RuntimeError("boom")
        seen.append(env.routing_key)

    await relay.subscribe(RELAY_CHANNELS, handler)
    try:
        await relay.publish(CHANNEL_ROOM_MESSAGE, envelope("bad"))
        await relay.publish(CHANNEL_ROOM_MESSAGE, envelope("good"))
        await relay.join()
    finally:
        await relay.close()

    assert seen == ["good"]


@pytest.mark.asyncio
async def test_unsubscribed_channels_are_not_delivered():
    relay = InMemoryRelay()
    seen = []

    async def handler(channel, env):
        seen.append(channel)

    await relay.subscribe([CHANNEL_ROOM_MESSAGE], handler)
    try:
        await relay.publish(CHANNEL_DIRECT_MESSAGE, envelope("u1"))
        await relay.join()
    finally:
        await relay.close()

    assert seen == []


@pytest.mark.asyncio
async def test_only_one_subscriber_per_relay():
    relay = InMemoryRelay()

    async def handler(channel, env):
        pass

    await relay.subscribe(RELAY_CHANNELS, handler)
    try:
        with pytest.raises(RuntimeError):
            await relay.subscribe(RELAY_CHANNELS, handler)
    finally:
        await relay.close()


@pytest.mark.asyncio
async def test_redis_publish_sends_json_envelope():
    client = MagicMock()
    client.publish = AsyncMock(return_value=2)
    relay = RedisRelay(client=client)

    assert await relay.publish(CHANNEL_ROOM_MESSAGE, envelope("r1", "hello"))

    channel, data = client.publish.call_args.args
    assert channel == CHANNEL_ROOM_MESSAGE
    assert json.loads(data) == {
        "routingKey": "r1",
        "frame": {"type": "ERROR", "payload": {"message": "hello", "code": "INTERNAL_ERROR"}},
    }


@pytest.mark.asyncio
async def test_redis_publish_failure_is_logged_not_raised():
    client = MagicMock()
    client.publish = AsyncMock(side_effect=RedisConnectionError("down"))
    relay = RedisRelay(client=client)

    assert await relay.publish(CHANNEL_ROOM_MESSAGE, envelope("r1")) is False


@pytest.mark.asyncio
async def test_redis_messages_are_parsed_and_dispatched():
    client = MagicMock()
    relay = RedisRelay(client=client)
    relay._start_listening = AsyncMock()
    seen = []

    async def handler(channel, env):
        seen.append((channel, env))

    await relay.subscribe(RELAY_CHANNELS, handler)
    try:
        relay._handle_message({"type": "message", "channel": CHANNEL_ROOM_MESSAGE, "data": "not json"})
        relay._handle_message({
            "type": "message",
            "channel": CHANNEL_ROOM_MESSAGE,
            "data": envelope("r1", "hello").model_dump_json(by_alias=True),
        })
        await relay.join()
    finally:
        relay.redis_client.aclose = AsyncMock()
        await relay.close()

    assert len(seen) == 1
    channel, env = seen[0]
    assert channel == CHANNEL_ROOM_MESSAGE
    assert env == envelope("r1", "hello")
