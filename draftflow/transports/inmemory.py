"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple, Type

from pydantic import ValidationError

from ..contracts import WireModel
from .base import BaseTransport, MessageT

logger = logging.getLogger(__name__)


@dataclass
class QueuedMessage:
    topic: str
    body: str
    delay: float
    available_at: float
    deliveries: int = 0


class InMemoryTransport(BaseTransport[QueuedMessage]):
    """Simple in-process queue for unit tests.

    Delayed messages stay invisible until their delay elapses. Nacked
    messages go back to the end of their queue, or into ``dead_letters``
    when they are not requeued.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[QueuedMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.dead_letters: List[QueuedMessage] = []

    def _now(self) -> float:
        return asyncio.get_event_loop().time()

    async def publish(self, topic: str, message: WireModel, delay: float = 0) -> None:
        """Publish message to in-memory queue."""
        raw = QueuedMessage(
            topic=topic,
            body=message.to_json(),
            delay=delay,
            available_at=self._now() + delay,
        )
        async with self._lock:
            self._queues[topic].append(raw)

    def queued(self, topic: str) -> List[QueuedMessage]:
        """Snapshot of messages waiting on ``topic``, due or not."""
        return list(self._queues[topic])

    def queued_messages(self, topic: str, model: Type[MessageT]) -> List[MessageT]:
        return [model.from_json(raw.body) for raw in self._queues[topic]]

    async def _pop_due(self, topic: str) -> Optional[QueuedMessage]:
        async with self._lock:
            queue = self._queues[topic]
            now = self._now()
            for raw in queue:
                if raw.available_at <= now:
                    queue.remove(raw)
                    raw.deliveries += 1
                    return raw
        return None

    async def subscribe(
        self,
        topic: str,
        model: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[QueuedMessage, MessageT]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            model: Contract used to parse each message body
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        start_time = self._now() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                elapsed = self._now() - start_time
                if elapsed >= lifespan:
                    break

            raw = await self._pop_due(topic)
            if raw is None:
                await asyncio.sleep(0.05)
                continue
            try:
                message = model.from_json(raw.body)
            except ValidationError as e:
                logger.warning(f"Dropping unparseable message on {topic}: {e}")
                continue
            yield raw, message

    async def ack(self, raw_message: QueuedMessage) -> None:
        """Acknowledged messages are already off the queue."""
        pass

    async def nack(self, raw_message: QueuedMessage, requeue: bool = True) -> None:
        if not requeue:
            self.dead_letters.append(raw_message)
            return
        raw_message.available_at = self._now()
        async with self._lock:
            self._queues[raw_message.topic].append(raw_message)
