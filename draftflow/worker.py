"""Queue consumer that feeds delivered messages to the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Type

from .config import QueueConfig
from .contracts import AgentMessage, InputProcessedEvent, WireModel
from .errors import (
    ConcurrentModificationError,
    DuplicateInputError,
    StoreUnavailableError,
    TransportUnavailableError,
    ValidationError,
)
from .gateway import QueueGateway
from .orchestrator import ContentOrchestrator

logger = logging.getLogger(__name__)

# Failures the broker should redeliver.
REDELIVER_ERRORS = (
    StoreUnavailableError,
    TransportUnavailableError,
    ConcurrentModificationError,
    TimeoutError,
)


class OrchestratorWorker:
    """Consumes the orchestrator and input queues one message at a time."""

    def __init__(
        self,
        orchestrator: ContentOrchestrator,
        gateway: QueueGateway,
        queues: Optional[QueueConfig] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._gateway = gateway
        self._queues = queues or QueueConfig()
        self.handled = 0

    @property
    def orchestrator(self) -> ContentOrchestrator:
        return self._orchestrator

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Run both consumer loops until ``lifespan`` elapses (or forever)."""
        await self._gateway.transport.connect()
        logger.info(
            f"Worker listening on {self._queues.orchestrator} and "
            f"{self._queues.input_processed}"
        )
        try:
            await asyncio.gather(
                self._consume(
                    self._queues.orchestrator,
                    AgentMessage,
                    self._handle_agent_message,
                    lifespan,
                ),
                self._consume(
                    self._queues.input_processed,
                    InputProcessedEvent,
                    self._handle_input,
                    lifespan,
                ),
            )
        finally:
            await self._gateway.transport.disconnect()

    async def _consume(
        self,
        queue: str,
        model: Type[WireModel],
        handler: Callable[[Any], Awaitable[None]],
        lifespan: Optional[float],
    ) -> None:
        async for raw_message, message in self._gateway.receive(
            queue, model, lifespan=lifespan
        ):
            try:
                await handler(message)
            except REDELIVER_ERRORS as exc:
                logger.error(f"Infrastructure failure on {queue}, requeueing: {exc!r}")
                await self._gateway.nack(raw_message, requeue=True)
                continue
            except (DuplicateInputError, ValidationError) as exc:
                logger.warning(f"Discarding message on {queue}: {exc}")
            except Exception:
                logger.exception(f"Unhandled failure on {queue}, dead-lettering message")
                await self._gateway.nack(raw_message, requeue=False)
                continue
            self.handled += 1
            await self._gateway.ack(raw_message)

    async def _handle_agent_message(self, message: AgentMessage) -> None:
        outcome = await self._orchestrator.handle_agent_message(message)
        logger.debug(
            f"Message {message.message_id} for workflow {message.workflow_id}: "
            f"{outcome.value}"
        )

    async def _handle_input(self, event: InputProcessedEvent) -> None:
        await self._orchestrator.handle_input_processed(
            event.user_id, event.input_id, event.payload, event.metadata
        )
