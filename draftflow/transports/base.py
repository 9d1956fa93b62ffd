"""Base transport interface for draftflow messaging."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, Type, TypeVar

from ..contracts import WireModel

RawMessageT = TypeVar("RawMessageT")
MessageT = TypeVar("MessageT", bound=WireModel)


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    Delivery is at-least-once: a message is only removed for good once it
    has been acknowledged, and ordering is not guaranteed.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: WireModel, delay: float = 0) -> None:
        """Send a message to a topic/queue, visible after ``delay`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self,
        topic: str,
        model: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawMessageT, MessageT]]:
        """Yield raw transport message and parsed ``model`` pairs.

        Args:
            topic: The topic to subscribe to
            model: Contract used to parse each message body
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
