"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict

from ..contracts import AgentMessage, utcnow
from ..errors import ConcurrentModificationError, DuplicateInputError
from .models import Workflow
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are stored as copies so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._input_index: Dict[str, str] = {}
        # message id -> time it was recorded
        self._messages: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> None:
        if workflow.input_id in self._input_index:
            raise DuplicateInputError(workflow.input_id)
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        self._input_index[workflow.input_id] = workflow.id

    async def save_workflow(self, workflow: Workflow, expected_version: int) -> None:
        current = self._workflows.get(workflow.id)
        if current is None or current.version != expected_version:
            raise ConcurrentModificationError(workflow.id, expected_version)
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def exists_by_input_id(self, input_id: str) -> bool:
        return input_id in self._input_index

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    async def record_message(self, message: AgentMessage) -> bool:
        if message.message_id in self._messages:
            return False
        self._messages[message.message_id] = utcnow()
        return True

    async def has_message(self, message_id: str) -> bool:
        return message_id in self._messages

    async def prune_messages(self, before: datetime) -> int:
        stale = [mid for mid, recorded in self._messages.items() if recorded < before]
        for message_id in stale:
            del self._messages[message_id]
        return len(stale)
