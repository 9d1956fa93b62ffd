"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..contracts import AgentMessage
from .models import Workflow


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    ``save_workflow`` is a conditional write: it succeeds only while the
    stored version still equals ``expected_version`` and raises
    ``ConcurrentModificationError`` otherwise.
    """

    async def create_workflow(self, workflow: Workflow) -> None:
        """Persist a new workflow. Raises ``DuplicateInputError`` on a taken input id."""

    async def save_workflow(self, workflow: Workflow, expected_version: int) -> None:
        """Persist ``workflow`` if nobody wrote it since ``expected_version``."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve the workflow by id."""

    async def exists_by_input_id(self, input_id: str) -> bool:
        """Return ``True`` when a workflow was created for ``input_id``."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all persisted workflows."""

    async def record_message(self, message: AgentMessage) -> bool:
        """Remember a processed agent message. Returns ``False`` if already known."""

    async def has_message(self, message_id: str) -> bool:
        """Return ``True`` when the message was already processed."""

    async def prune_messages(self, before: datetime) -> int:
        """Forget processed messages recorded before ``before``. Returns the count."""
