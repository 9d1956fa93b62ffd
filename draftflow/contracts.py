"""Message contracts exchanged with agents and the event bus."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

JsonDict = Dict[str, Any]

WireModelT = TypeVar("WireModelT", bound="WireModel")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for records that cross a process boundary.

    Fields are snake_case in Python and camelCase on the wire.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json(by_alias=True)

    def to_dict(self) -> JsonDict:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json(cls: type[WireModelT], data: str | bytes) -> WireModelT:
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"
    STATUS_UPDATE = "status_update"


class AgentMessage(WireModel):
    """Envelope exchanged between the orchestrator and the agents."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    step_id: str
    agent_type: str
    message_type: MessageType
    payload: JsonDict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    retry_count: Optional[int] = None
    revision_id: Optional[str] = None


class StepContext(WireModel):
    previous_steps: List[JsonDict] = Field(default_factory=list)
    user_id: str
    attempt: int = 0


class StepRequest(WireModel):
    """Work order handed to an agent for one step."""

    workflow_id: str
    step_id: str
    input: Any = None
    context: StepContext


class RevisionPlan(WireModel):
    """Outcome of feedback classification."""

    category: str = "general"
    estimated_time: int = 60
    approach: str = "revision"
    priority: str = "medium"


class RevisionRequest(WireModel):
    """Revision-flavoured work order handed to a generation agent."""

    type: str = "revision_request"
    content_id: str
    revision_id: str
    revision_type: str
    feedback: str
    revision_plan: RevisionPlan
    current_content: Any = None
    title: Optional[str] = None
    original_input: Any = None
    priority: str = "medium"
    prompt: Optional[str] = None
    previous_image_url: Optional[str] = None


class InputProcessedEvent(WireModel):
    """Trigger emitted upstream once raw input has been processed."""

    user_id: str
    input_id: str
    payload: JsonDict = Field(default_factory=dict)
    metadata: JsonDict = Field(default_factory=dict)


class EventType(str, Enum):
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_RETRY_SCHEDULED = "step_retry_scheduled"
    WORKFLOW_REVIEW_READY = "workflow_review_ready"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    REVISION_REQUESTED = "revision_requested"
    REVISION_COMPLETED = "revision_completed"
    REVISION_FAILED = "revision_failed"


class OrchestrationEvent(WireModel):
    """Fire-and-forget notification published on the event bus."""

    event_type: EventType
    workflow_id: str
    step_id: Optional[str] = None
    data: JsonDict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
