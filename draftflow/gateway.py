"""Queue and event gateway used by the orchestrator."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional, Tuple, Type

from .contracts import OrchestrationEvent, WireModel
from .errors import TransportUnavailableError
from .transports import BaseTransport
from .transports.base import MessageT
from .utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class QueueGateway:
    """Send step requests, publish events and receive agent messages."""

    def __init__(
        self,
        transport: BaseTransport,
        events_topic: str,
        write_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self._events_topic = events_topic
        self._write_policy = write_policy or RetryPolicy(
            max_retries=2, base_delay=2.0, multiplier=1.5, max_delay=15.0
        )
        self._timeout = timeout

    @property
    def transport(self) -> BaseTransport:
        return self._transport

    async def enqueue(self, queue: str, message: WireModel, delay: float = 0) -> None:
        """Send ``message`` to ``queue``; raises once the write budget is spent."""
        await call_with_retry(
            lambda: self._transport.publish(queue, message, delay=delay),
            self._write_policy,
            self._timeout,
            f"enqueue to {queue}",
        )
        logger.debug(f"Enqueued message to {queue} with delay {delay:.2f}s")

    async def publish(self, event: OrchestrationEvent) -> None:
        """Fire-and-forget notification.

        A notification that cannot be delivered is logged and dropped; it
        never fails the state transition that produced it.
        """
        try:
            await call_with_retry(
                lambda: self._transport.publish(self._events_topic, event),
                self._write_policy,
                self._timeout,
                f"publish {event.event_type.value}",
            )
        except (TransportUnavailableError, TimeoutError) as exc:
            logger.error(
                f"Dropped {event.event_type.value} event for workflow "
                f"{event.workflow_id}: {exc!r}"
            )

    def receive(
        self, queue: str, model: Type[MessageT], lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, MessageT]]:
        return self._transport.subscribe(queue, model, lifespan=lifespan)

    async def ack(self, raw_message: Any) -> None:
        await self._transport.ack(raw_message)

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        await self._transport.nack(raw_message, requeue=requeue)
