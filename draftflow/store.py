"""Typed workflow store client.

Wraps a :class:`WorkflowRepository` with the retry budgets and call timeout
the orchestrator uses for its own I/O: reads are idempotent and retried
aggressively, writes are side-effecting and retried conservatively.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional, Tuple, TypeVar

from .constants import DEFAULT_MAX_CONFLICT_RETRIES
from .contracts import AgentMessage, utcnow
from .errors import ConcurrentModificationError, UnknownWorkflowError
from .persistence import Workflow, WorkflowRepository
from .utils.retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkflowStore:
    def __init__(
        self,
        repository: WorkflowRepository,
        read_policy: Optional[RetryPolicy] = None,
        write_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._repository = repository
        self._read_policy = read_policy or RetryPolicy(
            max_retries=5, base_delay=0.5, multiplier=2.5, max_delay=60.0
        )
        self._write_policy = write_policy or RetryPolicy(
            max_retries=2, base_delay=2.0, multiplier=1.5, max_delay=15.0
        )
        self._timeout = timeout

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    async def _read(self, operation, description: str):
        return await call_with_retry(
            operation, self._read_policy, self._timeout, description
        )

    async def _write(self, operation, description: str):
        return await call_with_retry(
            operation, self._write_policy, self._timeout, description
        )

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        return await self._read(
            lambda: self._repository.get_workflow(workflow_id),
            f"load workflow {workflow_id}",
        )

    async def load(self, workflow_id: str) -> Workflow:
        """Like :meth:`get` but raises ``UnknownWorkflowError`` when absent."""
        workflow = await self.get(workflow_id)
        if workflow is None:
            raise UnknownWorkflowError(workflow_id)
        return workflow

    async def exists_for_input(self, input_id: str) -> bool:
        return await self._read(
            lambda: self._repository.exists_by_input_id(input_id),
            f"check input {input_id}",
        )

    async def list_all(self) -> list[Workflow]:
        return await self._read(self._repository.list_workflows, "list workflows")

    async def create(self, workflow: Workflow) -> None:
        await self._write(
            lambda: self._repository.create_workflow(workflow),
            f"create workflow {workflow.id}",
        )
        logger.debug(f"Created workflow {workflow.id} for input {workflow.input_id}")

    async def save(self, workflow: Workflow) -> None:
        """Conditionally write ``workflow`` over the version it was read at.

        Bumps ``version`` and ``updated_at``. A ``ConcurrentModificationError``
        is not retried here; callers re-run their handler on fresh state.
        """
        expected_version = workflow.version
        workflow.version = expected_version + 1
        workflow.touch()
        try:
            await self._write(
                lambda: self._repository.save_workflow(workflow, expected_version),
                f"save workflow {workflow.id}",
            )
        except Exception:
            workflow.version = expected_version
            raise

    async def was_processed(self, message_id: str) -> bool:
        return await self._read(
            lambda: self._repository.has_message(message_id),
            f"check message {message_id}",
        )

    async def mark_processed(self, message: AgentMessage) -> bool:
        return await self._write(
            lambda: self._repository.record_message(message),
            f"record message {message.message_id}",
        )

    async def prune_processed(self, max_age: timedelta) -> int:
        """Drop dedup records older than ``max_age``.

        A message redelivered after its record is pruned is applied again,
        so ``max_age`` must exceed the transport's redelivery window.
        """
        pruned = await self._write(
            lambda: self._repository.prune_messages(utcnow() - max_age),
            "prune processed messages",
        )
        logger.info(f"Pruned {pruned} processed message records")
        return pruned

    async def update(
        self,
        workflow_id: str,
        mutate: Callable[[Workflow], T],
        max_conflicts: int = DEFAULT_MAX_CONFLICT_RETRIES,
    ) -> Tuple[Workflow, T]:
        """Read-modify-write ``workflow_id`` with ``mutate``.

        ``mutate`` runs against freshly loaded state and is re-run when a
        concurrent writer wins the conditional write. Nothing is written
        when ``mutate`` leaves the workflow unchanged.
        """
        attempt = 0
        while True:
            workflow = await self.load(workflow_id)
            before = workflow.model_dump()
            result = mutate(workflow)
            if workflow.model_dump() == before:
                return workflow, result
            try:
                await self.save(workflow)
                return workflow, result
            except ConcurrentModificationError:
                if attempt >= max_conflicts:
                    raise
                attempt += 1
                logger.warning(
                    f"Workflow {workflow_id} changed concurrently; "
                    f"re-applying update (attempt {attempt}/{max_conflicts})"
                )
