"""User revision requests.

A revision re-drives exactly one generation stage with the user's
feedback. It never touches the workflow's steps: the request goes straight
to the agent that owns the stage, the audit trail lives in
``Workflow.revision_history`` and the agent's answer overwrites the
matching entry in ``Workflow.artifacts``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from . import constants
from .config import QueueConfig
from .contracts import (
    AgentMessage,
    EventType,
    JsonDict,
    MessageType,
    OrchestrationEvent,
    RevisionPlan,
    RevisionRequest,
)
from .errors import (
    ContentNotFoundError,
    DraftflowError,
    InvalidStateError,
    UnknownWorkflowError,
    ValidationError,
)
from .gateway import QueueGateway
from .persistence.models import (
    OPEN_REVISION_STATUSES,
    RevisionEntry,
    RevisionStatus,
    RevisionType,
    Workflow,
    WorkflowStatus,
)
from .step_machine import transition_status
from .store import WorkflowStore

logger = logging.getLogger(__name__)

REVISABLE_STATUSES = frozenset(
    {
        WorkflowStatus.REVIEW_READY,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.REVISION_REQUESTED,
    }
)

PRIORITIES = ("low", "medium", "high")

TARGET_STEP = {
    RevisionType.CONTENT: (constants.CONTENT_STEP_ID, constants.CONTENT_GENERATOR_AGENT),
    RevisionType.IMAGE: (constants.IMAGE_STEP_ID, constants.IMAGE_GENERATOR_AGENT),
}


# ----------------------------------------------------------------------
# Feedback classification


class FeedbackClassifier(Protocol):
    def classify(
        self,
        feedback: str,
        revision_type: RevisionType,
        priority: Optional[str] = None,
    ) -> RevisionPlan:
        """Turn free-text feedback into routing metadata."""


# (keywords, category, estimated seconds), checked in order
CONTENT_RULES: list[tuple[tuple[str, ...], str, int]] = [
    (("tone", "style"), "tone", 45),
    (("structure", "organize"), "structure", 90),
    (("length", "shorter", "longer"), "length", 30),
    (("information", "add", "remove"), "information", 120),
]

IMAGE_RULES: list[tuple[tuple[str, ...], str, int]] = [
    (("color", "bright", "dark"), "colors", 45),
    (("style", "artistic"), "style", 60),
    (("composition", "layout"), "composition", 75),
]


class KeywordFeedbackClassifier:
    """Keyword match against per-type category vocabularies."""

    def __init__(
        self,
        content_rules: Optional[list[tuple[tuple[str, ...], str, int]]] = None,
        image_rules: Optional[list[tuple[tuple[str, ...], str, int]]] = None,
        default_category: str = "general",
        default_estimate: int = 60,
    ) -> None:
        self.rules = {
            RevisionType.CONTENT: content_rules or CONTENT_RULES,
            RevisionType.IMAGE: image_rules or IMAGE_RULES,
        }
        self.default_category = default_category
        self.default_estimate = default_estimate

    def classify(
        self,
        feedback: str,
        revision_type: RevisionType,
        priority: Optional[str] = None,
    ) -> RevisionPlan:
        text = feedback.lower()
        category, estimate = self.default_category, self.default_estimate
        for keywords, rule_category, rule_estimate in self.rules[revision_type]:
            if any(keyword in text for keyword in keywords):
                category, estimate = rule_category, rule_estimate
                break

        if "urgent" in text:
            priority = "high"
        return RevisionPlan(
            category=category,
            estimated_time=estimate,
            priority=priority or "medium",
        )


_PROMPT_STOP_WORDS = frozenset(
    "that this with from they have will been were said each which their "
    "time would there could other".split()
)

_STYLE_MODIFIERS: list[tuple[tuple[str, ...], str]] = [
    (("colorful", "vibrant"), "vibrant colors, colorful"),
    (("dark", "moody"), "dark mood, dramatic lighting"),
    (("minimal", "simple"), "minimalist, clean, simple"),
    (("artistic", "creative"), "artistic, creative, expressive"),
    (("professional", "business"), "professional, clean, modern"),
]


def build_image_prompt(content: str, title: str, feedback: str) -> str:
    """Compose a new image prompt from the draft, its title and the feedback."""
    words = (content or "").lower().split()
    key_words = [w for w in words if len(w) > 4 and w not in _PROMPT_STOP_WORDS]
    concepts = ", ".join(key_words[:3])

    text = feedback.lower()
    modifiers = "".join(
        f", {modifier}"
        for keywords, modifier in _STYLE_MODIFIERS
        if any(keyword in text for keyword in keywords)
    )
    return (
        f"Professional illustration representing {title}, "
        f"featuring {concepts}{modifiers}, high quality, detailed"
    )


def _draft_fields(workflow: Workflow) -> tuple[Any, Optional[str]]:
    """Return the current draft body and title from the content artifact."""
    artifact = workflow.artifacts.get(RevisionType.CONTENT.value)
    if not isinstance(artifact, dict):
        return artifact, None
    body = artifact.get("content", artifact)
    title = artifact.get("title")
    if isinstance(body, dict):
        title = body.get("title") or title
        body = body.get("content", body)
    return body, title


def _previous_image_url(workflow: Workflow) -> Optional[str]:
    artifact = workflow.artifacts.get(RevisionType.IMAGE.value)
    if isinstance(artifact, dict):
        return artifact.get("imageUrl") or artifact.get("image_url")
    return None


# ----------------------------------------------------------------------
# Service


class RevisionService:
    def __init__(
        self,
        store: WorkflowStore,
        gateway: QueueGateway,
        queues: Optional[QueueConfig] = None,
        classifier: Optional[FeedbackClassifier] = None,
        max_conflict_retries: int = constants.DEFAULT_MAX_CONFLICT_RETRIES,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._queues = queues or QueueConfig()
        self._classifier = classifier or KeywordFeedbackClassifier()
        self._max_conflicts = max_conflict_retries

    async def request_revision(
        self,
        content_id: str,
        feedback: str,
        revision_type: str,
        user_id: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> str:
        """Record a revision request and send it to the owning agent.

        Returns the id of the new revision entry.
        """
        if not content_id:
            raise ValidationError("contentId is required")
        if not feedback or not feedback.strip():
            raise ValidationError("feedback is required")
        try:
            rtype = RevisionType(revision_type)
        except ValueError:
            raise ValidationError(
                f"revisionType must be one of: content, image (got {revision_type!r})"
            ) from None
        if priority is not None and priority not in PRIORITIES:
            raise ValidationError(f"priority must be one of: {', '.join(PRIORITIES)}")

        plan = self._classifier.classify(feedback, rtype, priority)
        entry = RevisionEntry(
            feedback=feedback, revision_type=rtype, user_id=user_id, plan=plan
        )

        def append(workflow: Workflow) -> None:
            if workflow.status not in REVISABLE_STATUSES:
                raise InvalidStateError(
                    f"Content {content_id} is {workflow.status.value} and cannot be revised"
                )
            workflow.revision_history.append(entry)
            transition_status(workflow, WorkflowStatus.REVISION_REQUESTED)

        try:
            workflow, _ = await self._store.update(
                content_id, append, self._max_conflicts
            )
        except UnknownWorkflowError:
            raise ContentNotFoundError(content_id) from None

        logger.info(
            f"Revision {entry.id} ({rtype.value}/{plan.category}) requested "
            f"for content {content_id}"
        )

        step_id, agent_type = TARGET_STEP[rtype]
        message = AgentMessage(
            workflow_id=workflow.id,
            step_id=step_id,
            agent_type=agent_type,
            message_type=MessageType.REQUEST,
            payload=self._build_request(workflow, entry, plan).to_dict(),
            revision_id=entry.id,
        )
        try:
            await self._gateway.enqueue(self._queues.for_agent(agent_type), message)
        except (DraftflowError, TimeoutError) as exc:
            await self._finish(content_id, entry.id, RevisionStatus.FAILED, error=str(exc))
            raise

        await self._store.update(
            content_id,
            lambda wf: self._advance_entry(wf, entry.id, RevisionStatus.PROCESSING),
            self._max_conflicts,
        )
        await self._gateway.publish(
            OrchestrationEvent(
                event_type=EventType.REVISION_REQUESTED,
                workflow_id=workflow.id,
                step_id=step_id,
                data={
                    "revisionId": entry.id,
                    "revisionType": rtype.value,
                    "category": plan.category,
                    "estimatedTime": plan.estimated_time,
                },
            )
        )
        return entry.id

    def _build_request(
        self, workflow: Workflow, entry: RevisionEntry, plan: RevisionPlan
    ) -> RevisionRequest:
        draft, title = _draft_fields(workflow)
        request = RevisionRequest(
            content_id=workflow.id,
            revision_id=entry.id,
            revision_type=entry.revision_type.value,
            feedback=entry.feedback,
            revision_plan=plan,
            current_content=draft,
            title=title,
            original_input=workflow.metadata.get("originalInput"),
            priority=plan.priority,
        )
        if entry.revision_type == RevisionType.IMAGE:
            request.prompt = build_image_prompt(
                draft if isinstance(draft, str) else "",
                title or "",
                entry.feedback,
            )
            request.previous_image_url = _previous_image_url(workflow)
        return request

    @staticmethod
    def _advance_entry(
        workflow: Workflow, revision_id: str, status: RevisionStatus
    ) -> Optional[RevisionEntry]:
        entry = workflow.get_revision(revision_id)
        if entry is None or entry.status != RevisionStatus.PENDING:
            return None
        entry.status = status
        return entry

    async def _finish(
        self,
        content_id: str,
        revision_id: str,
        status: RevisionStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        def finish(workflow: Workflow) -> None:
            entry = workflow.get_revision(revision_id)
            if entry is None or entry.status not in OPEN_REVISION_STATUSES:
                return
            entry.status = status
            entry.result = result
            entry.error = error
            _settle(workflow)

        await self._store.update(content_id, finish, self._max_conflicts)

    def handle_revision_result(
        self, workflow: Workflow, message: AgentMessage
    ) -> Optional[RevisionEntry]:
        """Fold an agent's answer to a revision request into ``workflow``.

        Returns the entry that changed, or ``None`` when the message no
        longer applies.
        """
        entry = workflow.get_revision(message.revision_id or "")
        if entry is None:
            logger.warning(
                f"Ignoring result for unknown revision {message.revision_id} "
                f"of workflow {workflow.id}"
            )
            return None
        if entry.status not in OPEN_REVISION_STATUSES:
            logger.info(
                f"Ignoring result for revision {entry.id}: already {entry.status.value}"
            )
            return None
        _, expected_agent = TARGET_STEP[entry.revision_type]
        if message.agent_type != expected_agent:
            logger.warning(
                f"Ignoring result for revision {entry.id} from {message.agent_type}, "
                f"expected {expected_agent}"
            )
            return None

        if message.message_type == MessageType.RESPONSE:
            entry.status = RevisionStatus.COMPLETED
            entry.result = message.payload
            workflow.artifacts[entry.revision_type.value] = message.payload
        elif message.message_type == MessageType.ERROR:
            entry.status = RevisionStatus.FAILED
            entry.error = str(message.payload.get("error") or "Unknown error")
        else:
            return None
        _settle(workflow)
        return entry

    async def get_revision_history(self, content_id: str) -> list[JsonDict]:
        workflow = await self._store.get(content_id)
        if workflow is None:
            raise ContentNotFoundError(content_id)
        return [entry.to_dict() for entry in workflow.revision_history]

    async def batch_revision(
        self,
        content_id: str,
        content_feedback: Optional[str] = None,
        image_feedback: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[JsonDict]:
        """Submit a content and/or an image revision independently."""
        if not content_id or not (content_feedback or image_feedback):
            raise ValidationError(
                "contentId and at least one feedback type are required"
            )

        results: list[JsonDict] = []
        for rtype, feedback in (
            (RevisionType.CONTENT, content_feedback),
            (RevisionType.IMAGE, image_feedback),
        ):
            if not feedback:
                continue
            try:
                revision_id = await self.request_revision(
                    content_id, feedback, rtype.value, user_id=user_id
                )
            except DraftflowError as exc:
                logger.warning(
                    f"Batch {rtype.value} revision for content {content_id} failed: {exc}"
                )
                results.append({"type": rtype.value, "success": False, "error": str(exc)})
            else:
                results.append(
                    {"type": rtype.value, "success": True, "revisionId": revision_id}
                )
        return results


def _settle(workflow: Workflow) -> None:
    """Return to review once no revision is outstanding."""
    if workflow.status == WorkflowStatus.REVISION_REQUESTED and not workflow.open_revisions():
        transition_status(workflow, WorkflowStatus.REVIEW_READY)
