"""Exception taxonomy for the orchestration engine."""

from __future__ import annotations

from typing import Any, Optional


class DraftflowError(Exception):
    """Base class for all draftflow errors."""


class ValidationError(DraftflowError):
    """Malformed caller input. Surfaced synchronously to the caller."""

    status_code = 400


class ContentNotFoundError(ValidationError):
    """The content a caller referenced does not exist."""

    status_code = 404

    def __init__(self, content_id: str) -> None:
        super().__init__(f"Content {content_id} not found")
        self.content_id = content_id


class InvalidStateError(ValidationError):
    """The request is well formed but the workflow cannot accept it now."""

    status_code = 409


class DuplicateInputError(DraftflowError):
    """A workflow already exists for the given input."""

    def __init__(self, input_id: str) -> None:
        super().__init__(f"Workflow already exists for input {input_id}")
        self.input_id = input_id


class UnknownWorkflowError(DraftflowError):
    """A message referenced a workflow that is not in the store."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class ConcurrentModificationError(DraftflowError):
    """A conditional write lost the race against another writer."""

    def __init__(self, workflow_id: str, expected_version: int) -> None:
        super().__init__(
            f"Workflow {workflow_id} changed since version {expected_version}"
        )
        self.workflow_id = workflow_id
        self.expected_version = expected_version


class IllegalTransitionError(DraftflowError):
    """A workflow status change that the state machine does not allow."""


class AgentError(DraftflowError):
    """Failure reported by a generation agent for one step."""

    def __init__(self, message: str, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.error_type = error_type

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        retryable_error_types: frozenset[str] = frozenset(),
    ) -> "AgentError":
        """Build the matching agent error from an ``error`` message payload.

        An explicit ``retryable`` flag from the agent wins. Otherwise the
        ``errorType`` is looked up in ``retryable_error_types``.
        """
        reason = str(payload.get("error") or "Unknown error")
        error_type = payload.get("errorType") or payload.get("error_type")
        retryable = payload.get("retryable")
        if retryable is None:
            retryable = error_type in retryable_error_types
        if retryable:
            return TransientAgentError(reason, error_type)
        return FatalAgentError(reason, error_type)


class TransientAgentError(AgentError):
    """Agent failure that may succeed when the step is re-issued."""


class FatalAgentError(AgentError):
    """Agent failure that no retry can fix."""


class StoreUnavailableError(DraftflowError):
    """The workflow store could not be reached or timed out."""


class TransportUnavailableError(DraftflowError):
    """The message transport could not be reached or timed out."""
