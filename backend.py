import functools
import json
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from constants import REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from errors import StoreUnavailable
from logging_config import get_logger
from redis_keys import (
    REDIS_BLOCKED_KEY,
    REDIS_DM_CONVERSATION_KEY,
    REDIS_DM_KEY,
    REDIS_DM_PEERS_KEY,
    REDIS_META_KEY,
    REDIS_ROOM_MESSAGES_KEY,
    REDIS_ROOM_NAME_KEY,
    REDIS_ROOMS_INDEX,
    REDIS_USER_KEY,
    REDIS_USERNAME_KEY,
)
from schemas.records import DirectMessageRecord, MessageRecord, RoomRecord, UserRecord, UserSummary

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _conversation_key(user_a: str, user_b: str) -> str:
    low, high = sorted((user_a, user_b))
    return REDIS_DM_CONVERSATION_KEY.format(low=low, high=high)


def _store_operation(func):
    """Turn Redis failures into ``StoreUnavailable`` so callers see one error type."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except RedisError as e:
            logger.error(f"Store operation {func.__name__} failed: {e}", exc_info=True)
            raise StoreUnavailable() from e

    return wrapper


class RedisBackend:
    """User, room and message store on Redis hashes and sorted sets."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self.redis_client = client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    async def ping(self) -> None:
        try:
            await self.redis_client.ping()
            logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    async def close(self) -> None:
        await self.redis_client.aclose()

    # Users

    @_store_operation
    async def create_user(self, username: str, age: int, sex: str, country: str) -> Optional[UserRecord]:
        """Create a user, or return ``None`` if the username is taken."""
        user = UserRecord(id=str(uuid.uuid4()), username=username, age=age, sex=sex, country=country, created_at=_now())
        claimed = await self.redis_client.set(REDIS_USERNAME_KEY.format(username=username.lower()), user.id, nx=True)
        if not claimed:
            logger.debug(f"Username {username} already exists")
            return None
        await self.redis_client.hset(
            REDIS_USER_KEY.format(user_id=user.id),
            mapping={k: str(v) for k, v in user.model_dump(mode="json").items() if v is not None},
        )
        logger.info(f"Created user {user.id} ({username})")
        return user

    @_store_operation
    async def find_user(self, user_id: str) -> Optional[UserRecord]:
        data = await self.redis_client.hgetall(REDIS_USER_KEY.format(user_id=user_id))
        if not data:
            logger.debug(f"User {user_id} not found in Redis")
            return None
        return UserRecord.model_validate(data)

    async def _user_summary(self, user_id: str) -> UserSummary:
        user = await self.find_user(user_id)
        if user is None:
            return UserSummary(id=user_id, username="unknown")
        return UserSummary(id=user.id, username=user.username, age=user.age, sex=user.sex)

    # Rooms

    @_store_operation
    async def room_exists(self, room_id: str) -> bool:
        return bool(await self.redis_client.exists(REDIS_META_KEY.format(slug=room_id)))

    @_store_operation
    async def get_or_create_room(self, name: str) -> tuple[RoomRecord, bool]:
        name_key = REDIS_ROOM_NAME_KEY.format(name=name)
        existing_id = await self.redis_client.get(name_key)
        if existing_id:
            return await self._load_room(existing_id), False

        # The name key is claimed last, so whoever sees it can also see the meta hash
        room = RoomRecord(id=str(uuid.uuid4()), name=name, created_at=_now())
        meta_key = REDIS_META_KEY.format(slug=room.id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hset(meta_key, mapping=room.model_dump(mode="json"))
            pipe.zadd(REDIS_ROOMS_INDEX, {room.id: room.created_at.timestamp()})
            await pipe.execute()

        if await self.redis_client.set(name_key, room.id, nx=True):
            logger.info(f"Room {room.id} created with name {name}")
            return room, True

        logger.debug(f"Lost race creating room {name}, discarding {room.id}")
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.delete(meta_key)
            pipe.zrem(REDIS_ROOMS_INDEX, room.id)
            await pipe.execute()
        return await self._load_room(await self.redis_client.get(name_key)), False

    async def _load_room(self, room_id: str) -> RoomRecord:
        data = await self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        if not data:
            raise StoreUnavailable(f"Room {room_id} has no metadata")
        return RoomRecord.model_validate(data)

    @_store_operation
    async def list_rooms(self) -> List[RoomRecord]:
        room_ids = await self.redis_client.zrevrange(REDIS_ROOMS_INDEX, 0, -1)
        rooms = []
        for room_id in room_ids:
            data = await self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
            if data:
                rooms.append(RoomRecord.model_validate(data))
        return rooms

    # Room messages

    @_store_operation
    async def persist_room_message(
        self, sender: UserRecord, room_id: str, content: str, image_url: Optional[str] = None
    ) -> MessageRecord:
        message = MessageRecord(
            id=str(uuid.uuid4()),
            content=content,
            user_id=sender.id,
            username=sender.username,
            room_id=room_id,
            created_at=_now(),
            image_url=image_url,
        )
        await self.redis_client.zadd(
            REDIS_ROOM_MESSAGES_KEY.format(slug=room_id),
            {message.model_dump_json(): message.created_at.timestamp()},
        )
        logger.debug(f"Stored message {message.id} in room {room_id}")
        return message

    @_store_operation
    async def get_room_messages(
        self, room_id: str, limit: int = 50, before: Optional[datetime] = None
    ) -> List[MessageRecord]:
        """Up to ``limit`` messages older than ``before``, oldest first."""
        upper = f"({before.timestamp()}" if before else "+inf"
        raw = await self.redis_client.zrevrangebyscore(
            REDIS_ROOM_MESSAGES_KEY.format(slug=room_id), upper, "-inf", start=0, num=limit
        )
        return [MessageRecord.model_validate_json(item) for item in reversed(raw)]

    # Direct messages

    @_store_operation
    async def persist_direct_message(
        self, sender: UserRecord, receiver_id: str, content: str, image_url: Optional[str] = None
    ) -> DirectMessageRecord:
        message = DirectMessageRecord(
            id=str(uuid.uuid4()),
            content=content,
            sender_id=sender.id,
            receiver_id=receiver_id,
            sender=UserSummary(id=sender.id, username=sender.username, age=sender.age, sex=sender.sex),
            receiver=await self._user_summary(receiver_id),
            created_at=_now(),
            image_url=image_url,
        )
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(REDIS_DM_KEY.format(message_id=message.id), message.model_dump_json())
            pipe.zadd(_conversation_key(sender.id, receiver_id), {message.id: message.created_at.timestamp()})
            pipe.sadd(REDIS_DM_PEERS_KEY.format(user_id=sender.id), receiver_id)
            pipe.sadd(REDIS_DM_PEERS_KEY.format(user_id=receiver_id), sender.id)
            await pipe.execute()
        logger.debug(f"Stored direct message {message.id} from {sender.id} to {receiver_id}")
        return message

    async def _load_direct_messages(self, message_ids: List[str]) -> List[DirectMessageRecord]:
        if not message_ids:
            return []
        raw = await self.redis_client.mget([REDIS_DM_KEY.format(message_id=mid) for mid in message_ids])
        return [DirectMessageRecord.model_validate_json(item) for item in raw if item]

    @_store_operation
    async def get_direct_messages(self, user_id: str, limit: int = 100) -> List[DirectMessageRecord]:
        """Latest messages across all of the user's conversations, newest first."""
        peers = await self.redis_client.smembers(REDIS_DM_PEERS_KEY.format(user_id=user_id))
        messages: List[DirectMessageRecord] = []
        for peer in peers:
            ids = await self.redis_client.zrevrange(_conversation_key(user_id, peer), 0, limit - 1)
            messages.extend(await self._load_direct_messages(ids))
        messages.sort(key=lambda m: m.created_at, reverse=True)
        return messages[:limit]

    @_store_operation
    async def get_conversation(self, user_id: str, other_id: str, limit: int = 50) -> List[DirectMessageRecord]:
        """Latest messages between two users, oldest first; marks the ones sent to ``user_id`` read."""
        ids = await self.redis_client.zrange(_conversation_key(user_id, other_id), -limit, -1)
        messages = await self._load_direct_messages(ids)
        unread = [m for m in messages if m.receiver_id == user_id and not m.read]
        if unread:
            await self.redis_client.mset(
                {REDIS_DM_KEY.format(message_id=m.id): m.model_copy(update={"read": True}).model_dump_json() for m in unread}
            )
            logger.debug(f"Marked {len(unread)} messages from {other_id} to {user_id} as read")
        return messages

    # Blocking

    @_store_operation
    async def is_blocked(self, blocker_id: str, blocked_id: str) -> bool:
        return bool(await self.redis_client.sismember(REDIS_BLOCKED_KEY.format(user_id=blocker_id), blocked_id))

    @_store_operation
    async def block_user(self, blocker_id: str, blocked_id: str) -> None:
        await self.redis_client.sadd(REDIS_BLOCKED_KEY.format(user_id=blocker_id), blocked_id)
        logger.info(f"User {blocker_id} blocked {blocked_id}")

    @_store_operation
    async def unblock_user(self, blocker_id: str, blocked_id: str) -> None:
        await self.redis_client.srem(REDIS_BLOCKED_KEY.format(user_id=blocker_id), blocked_id)
        logger.info(f"User {blocker_id} unblocked {blocked_id}")

    @_store_operation
    async def get_blocked_users(self, blocker_id: str) -> List[UserSummary]:
        blocked_ids = await self.redis_client.smembers(REDIS_BLOCKED_KEY.format(user_id=blocker_id))
        return [await self._user_summary(blocked_id) for blocked_id in sorted(blocked_ids)]
