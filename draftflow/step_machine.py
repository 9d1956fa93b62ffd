"""Step and workflow state transitions.

Everything here is pure: functions mutate the ``Workflow`` they are given
and report what happened, but never touch the store or the queues. The
orchestrator decides which side effects follow from a :class:`Transition`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from . import constants
from .contracts import AgentMessage, MessageType, utcnow
from .errors import AgentError, IllegalTransitionError
from .persistence.models import (
    RevisionType,
    StepStatus,
    StepType,
    Workflow,
    WorkflowStatus,
    WorkflowStep,
)
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.INITIATED: {
        WorkflowStatus.CONTENT_GENERATION,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.CONTENT_GENERATION: {
        WorkflowStatus.IMAGE_GENERATION,
        WorkflowStatus.REVIEW_READY,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.IMAGE_GENERATION: {
        WorkflowStatus.REVIEW_READY,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.REVIEW_READY: {
        WorkflowStatus.REVISION_REQUESTED,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.REVISION_REQUESTED: {
        WorkflowStatus.REVIEW_READY,
        WorkflowStatus.FAILED,
    },
    WorkflowStatus.COMPLETED: {WorkflowStatus.REVISION_REQUESTED},
    WorkflowStatus.FAILED: set(),
}

STATUS_FOR_STEP: dict[StepType, WorkflowStatus] = {
    StepType.CONTENT_GENERATION: WorkflowStatus.CONTENT_GENERATION,
    StepType.IMAGE_GENERATION: WorkflowStatus.IMAGE_GENERATION,
    StepType.REVIEW: WorkflowStatus.REVIEW_READY,
}

ARTIFACT_FOR_STEP: dict[StepType, RevisionType] = {
    StepType.CONTENT_GENERATION: RevisionType.CONTENT,
    StepType.IMAGE_GENERATION: RevisionType.IMAGE,
}


def transition_status(workflow: Workflow, to: WorkflowStatus) -> None:
    """Move ``workflow`` to ``to`` if the workflow state machine allows it."""
    if workflow.status == to:
        return
    allowed = ALLOWED_TRANSITIONS.get(workflow.status, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal transition for workflow {workflow.id}: "
            f"{workflow.status.value} -> {to.value}"
        )
    workflow.status = to


def build_steps(
    max_retries: int = constants.DEFAULT_GENERATION_MAX_RETRIES,
) -> list[WorkflowStep]:
    """Return the canonical step sequence for a new workflow."""
    return [
        WorkflowStep(
            step_id=constants.CONTENT_STEP_ID,
            step_type=StepType.CONTENT_GENERATION,
            agent_type=constants.CONTENT_GENERATOR_AGENT,
            max_retries=max_retries,
        ),
        WorkflowStep(
            step_id=constants.IMAGE_STEP_ID,
            step_type=StepType.IMAGE_GENERATION,
            agent_type=constants.IMAGE_GENERATOR_AGENT,
            max_retries=max_retries,
        ),
        WorkflowStep(
            step_id=constants.REVIEW_STEP_ID,
            step_type=StepType.REVIEW,
            max_retries=constants.DEFAULT_REVIEW_MAX_RETRIES,
        ),
    ]


def next_pending_step(workflow: Workflow) -> Optional[WorkflowStep]:
    for step in workflow.steps:
        if step.status == StepStatus.PENDING:
            return step
    return None


def start_step(workflow: Workflow, step: WorkflowStep) -> None:
    """Make ``step`` the single active step of ``workflow``."""
    if step.status != StepStatus.PENDING:
        raise IllegalTransitionError(
            f"Step {step.step_id} of workflow {workflow.id} is {step.status.value}, "
            "only pending steps can start"
        )
    if workflow.active_steps():
        raise IllegalTransitionError(
            f"Workflow {workflow.id} already has an active step"
        )
    transition_status(workflow, STATUS_FOR_STEP[step.step_type])
    step.status = StepStatus.IN_PROGRESS
    if step.started_at is None:
        step.started_at = utcnow()
    workflow.current_step = step.step_id


def complete_step(workflow: Workflow, step: WorkflowStep, output: Any = None) -> None:
    step.status = StepStatus.COMPLETED
    step.output = output
    if step.completed_at is None:
        step.completed_at = utcnow()
    artifact = ARTIFACT_FOR_STEP.get(step.step_type)
    if artifact is not None:
        workflow.artifacts[artifact.value] = output


def fail_step(workflow: Workflow, step: WorkflowStep, reason: str) -> None:
    step.status = StepStatus.FAILED
    step.error = reason or "Unknown error"
    if step.completed_at is None:
        step.completed_at = utcnow()
    transition_status(workflow, WorkflowStatus.FAILED)
    workflow.current_step = constants.FAILED_MARKER


class TransitionAction(str, Enum):
    IGNORE = "ignore"
    ADVANCE = "advance"
    AWAIT_REVIEW = "await_review"
    RETRY = "retry"
    FAIL = "fail"
    RECORD = "record"


@dataclass
class Transition:
    action: TransitionAction
    step: Optional[WorkflowStep] = None
    next_step: Optional[WorkflowStep] = None
    delay: float = 0.0
    reason: str = ""

    @property
    def changed(self) -> bool:
        return self.action not in (TransitionAction.IGNORE, TransitionAction.RECORD)


class StepStateMachine:
    """Advance one workflow step given an incoming agent message."""

    def __init__(
        self,
        retry_policy: RetryPolicy,
        retryable_error_types: frozenset[str] = constants.RETRYABLE_AGENT_ERROR_TYPES,
    ) -> None:
        self.retry_policy = retry_policy
        self.retryable_error_types = retryable_error_types

    def precondition_failure(
        self, workflow: Workflow, message: AgentMessage
    ) -> Optional[str]:
        """Return why ``message`` no longer applies to ``workflow``, if it does not."""
        step = workflow.get_step(message.step_id)
        if step is None:
            return f"unknown step {message.step_id}"
        if step.status != StepStatus.IN_PROGRESS:
            return f"step {step.step_id} is {step.status.value}"
        if step.agent_type is None:
            return f"step {step.step_id} is not handled by an agent"
        if message.agent_type != step.agent_type:
            return (
                f"step {step.step_id} expects agent {step.agent_type}, "
                f"got {message.agent_type}"
            )
        return None

    def apply(self, workflow: Workflow, message: AgentMessage) -> Transition:
        reason = self.precondition_failure(workflow, message)
        if reason is not None:
            return Transition(TransitionAction.IGNORE, reason=reason)

        step = workflow.get_step(message.step_id)
        assert step is not None

        if message.message_id == step.retry_message_id:
            return Transition(
                TransitionAction.IGNORE,
                step=step,
                reason=f"retry {step.retry_count} already scheduled by this message",
            )
        if message.message_type == MessageType.RESPONSE:
            return self._on_response(workflow, step, message)
        if message.message_type == MessageType.ERROR:
            return self._on_error(workflow, step, message)
        if message.message_type == MessageType.STATUS_UPDATE:
            return Transition(TransitionAction.RECORD, step=step)
        return Transition(
            TransitionAction.IGNORE,
            step=step,
            reason=f"{message.message_type.value} messages are outbound only",
        )

    def _on_response(
        self, workflow: Workflow, step: WorkflowStep, message: AgentMessage
    ) -> Transition:
        complete_step(workflow, step, message.payload)
        nxt = next_pending_step(workflow)
        if nxt is None:
            transition_status(workflow, WorkflowStatus.REVIEW_READY)
            workflow.current_step = workflow.steps[-1].step_id
            return Transition(TransitionAction.AWAIT_REVIEW, step=step)

        start_step(workflow, nxt)
        if nxt.agent_type is None:
            return Transition(TransitionAction.AWAIT_REVIEW, step=step, next_step=nxt)
        return Transition(TransitionAction.ADVANCE, step=step, next_step=nxt)

    def _on_error(
        self, workflow: Workflow, step: WorkflowStep, message: AgentMessage
    ) -> Transition:
        error = AgentError.from_payload(message.payload, self.retryable_error_types)
        decision = self.retry_policy.should_retry(
            error, step.retry_count, step.max_retries
        )
        if decision.retry:
            step.retry_count += 1
            step.retry_message_id = message.message_id
            return Transition(
                TransitionAction.RETRY,
                step=step,
                delay=decision.delay,
                reason=str(error),
            )

        fail_step(workflow, step, str(error))
        return Transition(TransitionAction.FAIL, step=step, reason=step.error or "")
