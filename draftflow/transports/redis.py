"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple, Type

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..contracts import WireModel
from ..errors import TransportUnavailableError
from .base import BaseTransport, MessageT

logger = logging.getLogger(__name__)

# (topic, message_json)
RedisRaw = Tuple[str, str]


class RedisTransport(BaseTransport[RedisRaw]):
    """Redis-based transport for distributed messaging.

    Each topic is a list. Consumers move a message into a per-topic
    processing list and only drop it on ``ack``, so a crashed consumer
    leaves it recoverable. Delayed messages wait in a sorted set scored by
    their due time and are promoted by the subscribing loop.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def _queue(topic: str) -> str:
        return f"draftflow:{topic}"

    @staticmethod
    def _processing(topic: str) -> str:
        return f"draftflow:{topic}:processing"

    @staticmethod
    def _delayed(topic: str) -> str:
        return f"draftflow:{topic}:delayed"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransportUnavailableError(str(exc)) from exc

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: WireModel, delay: float = 0) -> None:
        """Publish message to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()

        message_json = message.to_json()
        try:
            if delay > 0:
                await self._redis.zadd(
                    self._delayed(topic), {message_json: time.time() + delay}
                )
            else:
                await self._redis.lpush(self._queue(topic), message_json)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise TransportUnavailableError(str(exc)) from exc

    async def _promote_due(self, topic: str) -> None:
        due = await self._redis.zrangebyscore(self._delayed(topic), 0, time.time())
        for message_json in due:
            # only the consumer that wins the ZREM moves the message
            if await self._redis.zrem(self._delayed(topic), message_json):
                await self._redis.lpush(self._queue(topic), message_json)

    async def subscribe(
        self,
        topic: str,
        model: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RedisRaw, MessageT]]:
        """Subscribe to messages from Redis queue."""
        if not self._redis:
            await self.connect()

        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            try:
                await self._promote_due(topic)
                message_json = await self._redis.blmove(
                    self._queue(topic), self._processing(topic), 1, "RIGHT", "LEFT"
                )
            except (RedisConnectionError, RedisTimeoutError) as exc:
                raise TransportUnavailableError(str(exc)) from exc

            if message_json:
                try:
                    message = model.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Failed to parse message on {topic}: {e}")
                    await self._redis.lrem(self._processing(topic), 1, message_json)
                    continue
                yield (topic, message_json), message

            # Brief sleep to prevent busy waiting when no messages
            await asyncio.sleep(0.01)

    async def ack(self, raw_message: RedisRaw) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)

    async def nack(self, raw_message: RedisRaw, requeue: bool = True) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)
        if requeue:
            await self._redis.lpush(self._queue(topic), message_json)
