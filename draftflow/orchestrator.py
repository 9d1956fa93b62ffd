"""Content orchestrator: drives a workflow through its generation steps."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from . import constants
from .config import QueueConfig
from .contracts import (
    AgentMessage,
    EventType,
    JsonDict,
    MessageType,
    OrchestrationEvent,
    StepContext,
    StepRequest,
)
from .errors import (
    ContentNotFoundError,
    DraftflowError,
    DuplicateInputError,
    InvalidStateError,
    UnknownWorkflowError,
    ValidationError,
)
from .gateway import QueueGateway
from .persistence.models import StepStatus, Workflow, WorkflowStatus, WorkflowStep
from .revision import RevisionService
from .step_machine import (
    StepStateMachine,
    Transition,
    TransitionAction,
    build_steps,
    complete_step,
    fail_step,
    start_step,
    transition_status,
)
from .store import WorkflowStore
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class MessageOutcome(str, Enum):
    """What :meth:`ContentOrchestrator.handle_agent_message` did."""

    DUPLICATE = "duplicate"
    UNKNOWN_WORKFLOW = "unknown_workflow"
    IGNORED = "ignored"
    ADVANCED = "advanced"
    AWAITING_REVIEW = "awaiting_review"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    RECORDED = "recorded"
    REDRIVEN = "redriven"
    REVISION_APPLIED = "revision_applied"


_OUTCOME_FOR_ACTION = {
    TransitionAction.IGNORE: MessageOutcome.IGNORED,
    TransitionAction.ADVANCE: MessageOutcome.ADVANCED,
    TransitionAction.AWAIT_REVIEW: MessageOutcome.AWAITING_REVIEW,
    TransitionAction.RETRY: MessageOutcome.RETRY_SCHEDULED,
    TransitionAction.FAIL: MessageOutcome.FAILED,
    TransitionAction.RECORD: MessageOutcome.RECORDED,
}


def build_step_request(workflow: Workflow, step: WorkflowStep) -> StepRequest:
    """Assemble the work order for ``step`` from the persisted workflow.

    The step input defaults to the output of the last completed step, and
    the context carries every earlier output so agents can look back.
    """
    previous = []
    step_input = step.input
    for candidate in workflow.steps:
        if candidate.step_id == step.step_id:
            break
        if candidate.status == StepStatus.COMPLETED:
            previous.append(
                {
                    "stepId": candidate.step_id,
                    "stepType": candidate.step_type.value,
                    "output": candidate.output,
                }
            )
    if step_input is None and previous:
        step_input = previous[-1]["output"]

    return StepRequest(
        workflow_id=workflow.id,
        step_id=step.step_id,
        input=step_input,
        context=StepContext(
            previous_steps=previous,
            user_id=workflow.user_id,
            attempt=step.retry_count,
        ),
    )


class ContentOrchestrator:
    """Event handlers for the content workflow.

    Every handler loads the workflow, applies one transition against the
    persisted state and only then performs side effects. A message whose
    precondition no longer holds changes nothing.
    """

    def __init__(
        self,
        store: WorkflowStore,
        gateway: QueueGateway,
        retry_policy: Optional[RetryPolicy] = None,
        revision_service: Optional[RevisionService] = None,
        queues: Optional[QueueConfig] = None,
        max_conflict_retries: int = constants.DEFAULT_MAX_CONFLICT_RETRIES,
        step_max_retries: int = constants.DEFAULT_GENERATION_MAX_RETRIES,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._queues = queues or QueueConfig()
        self._machine = StepStateMachine(retry_policy or RetryPolicy())
        self._max_conflicts = max_conflict_retries
        self._step_max_retries = step_max_retries
        self.revisions = revision_service or RevisionService(
            store, gateway, self._queues, max_conflict_retries=max_conflict_retries
        )

    @property
    def store(self) -> WorkflowStore:
        return self._store

    @property
    def gateway(self) -> QueueGateway:
        return self._gateway

    # ------------------------------------------------------------------
    # Input trigger

    async def handle_input_processed(
        self,
        user_id: str,
        input_id: str,
        initial_payload: JsonDict,
        metadata: Optional[JsonDict] = None,
    ) -> str:
        """Create the workflow for a processed input and start its first step."""
        if not user_id or not input_id:
            raise ValidationError("userId and inputId are required")
        if await self._store.exists_for_input(input_id):
            raise DuplicateInputError(input_id)

        steps = build_steps(self._step_max_retries)
        steps[0].input = initial_payload
        workflow = Workflow(
            user_id=user_id,
            input_id=input_id,
            current_step=steps[0].step_id,
            steps=steps,
            metadata={**(metadata or {}), "originalInput": initial_payload},
        )
        await self._store.create(workflow)
        logger.info(f"Workflow {workflow.id} created for input {input_id}")

        def start_first(wf: Workflow) -> WorkflowStep:
            step = wf.steps[0]
            start_step(wf, step)
            return step

        workflow, step = await self._store.update(
            workflow.id, start_first, self._max_conflicts
        )
        try:
            await self._send_step_request(workflow, step)
        except (DraftflowError, TimeoutError) as exc:
            # The input is acknowledged as a duplicate on redelivery, so the
            # failure has to be recorded here.
            reason = f"Could not enqueue {step.step_id}: {exc}"
            await self._store.update(
                workflow.id,
                lambda wf: self._fail_active(wf, step.step_id, reason),
                self._max_conflicts,
            )
            await self._publish(EventType.WORKFLOW_FAILED, workflow, step, error=reason)
            raise

        await self._publish(EventType.STEP_STARTED, workflow, step)
        return workflow.id

    @staticmethod
    def _fail_active(workflow: Workflow, step_id: str, reason: str) -> None:
        step = workflow.get_step(step_id)
        if step is not None and step.status == StepStatus.IN_PROGRESS:
            fail_step(workflow, step, reason)

    # ------------------------------------------------------------------
    # Agent messages

    async def handle_agent_message(self, message: AgentMessage) -> MessageOutcome:
        """Apply one agent message to its workflow."""
        if await self._store.was_processed(message.message_id):
            logger.info(
                f"Message {message.message_id} for workflow {message.workflow_id} "
                "already processed"
            )
            return MessageOutcome.DUPLICATE

        try:
            if message.revision_id:
                outcome = await self._apply_revision_result(message)
            else:
                outcome = await self._apply_step_message(message)
        except UnknownWorkflowError:
            logger.warning(
                f"Ignoring {message.message_type.value} message {message.message_id}: "
                f"workflow {message.workflow_id} not found"
            )
            return MessageOutcome.UNKNOWN_WORKFLOW

        await self._store.mark_processed(message)
        return outcome

    async def _apply_step_message(self, message: AgentMessage) -> MessageOutcome:
        workflow, transition = await self._store.update(
            message.workflow_id,
            lambda wf: self._machine.apply(wf, message),
            self._max_conflicts,
        )
        if transition.action == TransitionAction.IGNORE:
            pending = self._interrupted_handoff(workflow, message) or self._interrupted_retry(
                workflow, message
            )
            if pending is not None:
                logger.warning(
                    f"Re-sending {pending.step_id} request for workflow {workflow.id}: "
                    f"{message.message_type.value} {message.message_id} was not fully processed"
                )
                await self._send_step_request(workflow, pending)
                return MessageOutcome.REDRIVEN
            logger.info(
                f"Ignoring {message.message_type.value} for workflow {workflow.id} "
                f"step {message.step_id}: {transition.reason}"
            )
            return MessageOutcome.IGNORED

        await self._perform(workflow, transition, message)
        return _OUTCOME_FOR_ACTION[transition.action]

    @staticmethod
    def _interrupted_handoff(
        workflow: Workflow, message: AgentMessage
    ) -> Optional[WorkflowStep]:
        """Return the step that a not-yet-recorded response should have started.

        A response is recorded as processed only after the next request was
        sent. If the state already moved on but the response is unrecorded,
        the handoff was interrupted.
        """
        if message.message_type != MessageType.RESPONSE:
            return None
        step = workflow.get_step(message.step_id)
        if step is None or step.status != StepStatus.COMPLETED:
            return None
        if step.agent_type != message.agent_type:
            return None
        index = workflow.steps.index(step)
        if index + 1 >= len(workflow.steps):
            return None
        nxt = workflow.steps[index + 1]
        if nxt.status != StepStatus.IN_PROGRESS or nxt.agent_type is None:
            return None
        if nxt.retry_count:
            return None
        return nxt

    @staticmethod
    def _interrupted_retry(
        workflow: Workflow, message: AgentMessage
    ) -> Optional[WorkflowStep]:
        """Return the step whose retry ``message`` scheduled but never sent."""
        if message.message_type != MessageType.ERROR:
            return None
        step = workflow.get_step(message.step_id)
        if step is None or step.status != StepStatus.IN_PROGRESS:
            return None
        if step.retry_message_id != message.message_id:
            return None
        return step

    async def _perform(
        self, workflow: Workflow, transition: Transition, message: AgentMessage
    ) -> None:
        step = transition.step
        assert step is not None
        action = transition.action

        if action == TransitionAction.ADVANCE:
            nxt = transition.next_step
            assert nxt is not None
            logger.info(
                f"Workflow {workflow.id}: {step.step_id} completed, starting {nxt.step_id}"
            )
            await self._send_step_request(workflow, nxt)
            await self._publish(EventType.STEP_COMPLETED, workflow, step)
            await self._publish(EventType.STEP_STARTED, workflow, nxt)
        elif action == TransitionAction.AWAIT_REVIEW:
            logger.info(
                f"Workflow {workflow.id}: {step.step_id} completed, ready for review"
            )
            await self._publish(EventType.STEP_COMPLETED, workflow, step)
            await self._publish(EventType.WORKFLOW_REVIEW_READY, workflow)
        elif action == TransitionAction.RETRY:
            logger.warning(
                f"Workflow {workflow.id}: {step.step_id} failed ({transition.reason}); "
                f"retry {step.retry_count}/{step.max_retries} in {transition.delay:.2f}s"
            )
            await self._send_step_request(workflow, step, delay=transition.delay)
            await self._publish(
                EventType.STEP_RETRY_SCHEDULED,
                workflow,
                step,
                retryCount=step.retry_count,
                delay=transition.delay,
                error=transition.reason,
            )
        elif action == TransitionAction.FAIL:
            logger.error(
                f"Workflow {workflow.id} failed at {step.step_id}: {transition.reason}"
            )
            await self._publish(
                EventType.WORKFLOW_FAILED, workflow, step, error=transition.reason
            )
        elif action == TransitionAction.RECORD:
            logger.info(
                f"Status update for workflow {workflow.id} step {step.step_id}: "
                f"{message.payload}"
            )

    async def _apply_revision_result(self, message: AgentMessage) -> MessageOutcome:
        workflow, entry = await self._store.update(
            message.workflow_id,
            lambda wf: self.revisions.handle_revision_result(wf, message),
            self._max_conflicts,
        )
        if entry is None:
            return MessageOutcome.IGNORED

        event_type = (
            EventType.REVISION_FAILED if entry.error else EventType.REVISION_COMPLETED
        )
        logger.info(
            f"Revision {entry.id} of workflow {workflow.id} {entry.status.value}"
        )
        await self._publish(
            event_type,
            workflow,
            revisionId=entry.id,
            revisionType=entry.revision_type.value,
            error=entry.error,
        )
        return MessageOutcome.REVISION_APPLIED

    # ------------------------------------------------------------------
    # Review and revisions

    async def handle_review_approved(
        self, workflow_id: str, user_id: Optional[str] = None
    ) -> JsonDict:
        """Accept the reviewable artifacts and complete the workflow."""

        def approve(workflow: Workflow) -> None:
            if workflow.status != WorkflowStatus.REVIEW_READY:
                raise InvalidStateError(
                    f"Workflow {workflow_id} is {workflow.status.value}, "
                    "only review_ready workflows can be approved"
                )
            review = workflow.get_step(constants.REVIEW_STEP_ID)
            if review is not None and review.status == StepStatus.IN_PROGRESS:
                complete_step(workflow, review, {"approvedBy": user_id})
            transition_status(workflow, WorkflowStatus.COMPLETED)
            workflow.current_step = constants.COMPLETED_MARKER

        try:
            workflow, _ = await self._store.update(
                workflow_id, approve, self._max_conflicts
            )
        except UnknownWorkflowError:
            raise ContentNotFoundError(workflow_id) from None

        logger.info(f"Workflow {workflow_id} approved by {user_id or 'unknown user'}")
        await self._publish(EventType.WORKFLOW_COMPLETED, workflow)
        return workflow.to_dict()

    async def handle_revision_request(
        self,
        content_id: str,
        feedback: str,
        revision_type: str,
        user_id: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> str:
        return await self.revisions.request_revision(
            content_id, feedback, revision_type, user_id=user_id, priority=priority
        )

    async def get_revision_history(self, content_id: str) -> list[JsonDict]:
        return await self.revisions.get_revision_history(content_id)

    async def batch_revision(
        self,
        content_id: str,
        content_feedback: Optional[str] = None,
        image_feedback: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[JsonDict]:
        return await self.revisions.batch_revision(
            content_id, content_feedback, image_feedback, user_id=user_id
        )

    # ------------------------------------------------------------------
    # Reads

    async def get_workflow(self, workflow_id: str) -> JsonDict:
        workflow = await self._store.get(workflow_id)
        if workflow is None:
            raise ContentNotFoundError(workflow_id)
        return workflow.to_dict()

    async def list_workflows(self) -> list[JsonDict]:
        return [wf.to_dict() for wf in await self._store.list_all()]

    # ------------------------------------------------------------------
    # Side effects

    async def _send_step_request(
        self, workflow: Workflow, step: WorkflowStep, delay: float = 0
    ) -> None:
        assert step.agent_type is not None
        request = build_step_request(workflow, step)
        message = AgentMessage(
            workflow_id=workflow.id,
            step_id=step.step_id,
            agent_type=step.agent_type,
            message_type=MessageType.REQUEST,
            payload=request.to_dict(),
            retry_count=step.retry_count,
        )
        await self._gateway.enqueue(
            self._queues.for_agent(step.agent_type), message, delay=delay
        )

    async def _publish(
        self,
        event_type: EventType,
        workflow: Workflow,
        step: Optional[WorkflowStep] = None,
        **data: Any,
    ) -> None:
        await self._gateway.publish(
            OrchestrationEvent(
                event_type=event_type,
                workflow_id=workflow.id,
                step_id=step.step_id if step is not None else None,
                data={"status": workflow.status.value, **data},
            )
        )
