"""Cross-process pub/sub relay.

Publishing is fire-and-forget: failures are logged and reported as ``False``,
never raised. Received envelopes go through a queue that a single dispatch
loop drains, so the subscriber handler never runs re-entrantly and envelopes
are handled in the order they arrived.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Iterable, Optional, Tuple

import pydantic
import redis.asyncio as redis
from redis.exceptions import RedisError

from constants import RELAY_RECONNECT_DELAY, REDIS_HOST, REDIS_PASSWORD, REDIS_PORT
from logging_config import get_logger
from schemas.frames import RelayEnvelope

logger = get_logger(__name__)

EnvelopeHandler = Callable[[str, RelayEnvelope], Awaitable[None]]


class Relay(ABC):
    """One subscription per process, fed by a transport-specific listener."""

    def __init__(self):
        self.channels: Tuple[str, ...] = ()
        self._handler: Optional[EnvelopeHandler] = None
        self._queue: Optional[asyncio.Queue] = None
        self._dispatch_task: Optional[asyncio.Task] = None

    @abstractmethod
    async def publish(self, channel: str, envelope: RelayEnvelope) -> bool:
        """Send ``envelope`` to every subscriber of ``channel``; ``False`` if it could not be sent."""

    async def subscribe(self, channels: Iterable[str], handler: EnvelopeHandler) -> None:
        if self._dispatch_task is not None:
            raise RuntimeError("Relay already has a subscriber")
        self.channels = tuple(channels)
        self._handler = handler
        self._queue = asyncio.Queue()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        await self._start_listening()
        logger.info(f"Relay subscribed to channels: {', '.join(self.channels)}")

    @abstractmethod
    async def _start_listening(self) -> None:
        """Begin feeding received envelopes to ``_enqueue``."""

    def _enqueue(self, channel: str, envelope: RelayEnvelope) -> None:
        if self._queue is None or channel not in self.channels:
            return
        self._queue.put_nowait((channel, envelope))

    async def _dispatch_loop(self) -> None:
        while True:
            channel, envelope = await self._queue.get()
            try:
                await self._handler(channel, envelope)
            except Exception as e:
                logger.error(f"Error dispatching envelope from channel {channel}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every envelope received so far has been dispatched."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        self._queue = None
        self._handler = None


class InMemoryRelay(Relay):
    """Loops envelopes straight back to this process. Single-process deployments only."""

    async def _start_listening(self) -> None:
        # publish() enqueues directly
        return None

    async def publish(self, channel: str, envelope: RelayEnvelope) -> bool:
        self._enqueue(channel, envelope)
        logger.debug(f"Published envelope to in-memory channel {channel} for {envelope.routing_key}")
        return True


class RedisRelay(Relay):
    def __init__(self, client: Optional[redis.Redis] = None, reconnect_delay: float = RELAY_RECONNECT_DELAY):
        super().__init__()
        # Separate connections for publishing and for the subscription (required by Redis)
        self.redis_client = client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        self.reconnect_delay = reconnect_delay
        self._listen_task: Optional[asyncio.Task] = None

    async def publish(self, channel: str, envelope: RelayEnvelope) -> bool:
        try:
            subscribers = await self.redis_client.publish(channel, envelope.model_dump_json(by_alias=True))
        except RedisError as e:
            logger.error(f"Failed to publish to channel {channel} for {envelope.routing_key}: {e}", exc_info=True)
            return False
        logger.debug(f"Published envelope to channel {channel} for {envelope.routing_key}, {subscribers} subscribers")
        return True

    async def _start_listening(self) -> None:
        self._listen_task = asyncio.create_task(self._listen())

    def _handle_message(self, message: dict) -> None:
        channel = message.get("channel")
        try:
            envelope = RelayEnvelope.model_validate_json(message["data"])
        except (pydantic.ValidationError, KeyError, TypeError) as e:
            logger.error(f"Dropping malformed envelope on channel {channel}: {e}")
            return
        self._enqueue(channel, envelope)

    async def _listen(self) -> None:
        while True:
            pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(*self.channels)
                logger.debug(f"Subscribed to Redis channels: {self.channels}")
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        self._handle_message(message)
            except asyncio.CancelledError:
                logger.info("Redis relay listener cancelled")
                raise
            except RedisError as e:
                logger.error(f"Redis relay listener failed, retrying in {self.reconnect_delay}s: {e}", exc_info=True)
            finally:
                try:
                    await pubsub.aclose()
                except RedisError as e:
                    logger.debug(f"Error closing pub/sub connection: {e}")
            await asyncio.sleep(self.reconnect_delay)

    async def close(self) -> None:
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        await super().close()
        await self.redis_client.aclose()
