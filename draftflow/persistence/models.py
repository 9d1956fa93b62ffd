"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from ..contracts import JsonDict, RevisionPlan, WireModel, utcnow


class WorkflowStatus(str, Enum):
    INITIATED = "initiated"
    CONTENT_GENERATION = "content_generation"
    IMAGE_GENERATION = "image_generation"
    REVIEW_READY = "review_ready"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


class StepType(str, Enum):
    CONTENT_GENERATION = "content_generation"
    IMAGE_GENERATION = "image_generation"
    REVIEW = "review"
    REVISION = "revision"
    PUBLISHING = "publishing"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RevisionType(str, Enum):
    CONTENT = "content"
    IMAGE = "image"


class RevisionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


OPEN_REVISION_STATUSES = frozenset({RevisionStatus.PENDING, RevisionStatus.PROCESSING})


class WorkflowStep(WireModel):
    """One unit of agent work within a workflow."""

    step_id: str
    step_type: StepType
    status: StepStatus = StepStatus.PENDING
    agent_type: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    # agent message whose error scheduled the current retry
    retry_message_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RevisionEntry(WireModel):
    """Audit record of one user revision request."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    feedback: str
    revision_type: RevisionType
    status: RevisionStatus = RevisionStatus.PENDING
    user_id: Optional[str] = None
    plan: Optional[RevisionPlan] = None
    result: Any = None
    error: Optional[str] = None


class Workflow(WireModel):
    """Persisted workflow record tracking one input through the pipeline."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    input_id: str
    status: WorkflowStatus = WorkflowStatus.INITIATED
    current_step: str
    steps: list[WorkflowStep] = Field(default_factory=list)
    metadata: JsonDict = Field(default_factory=dict)
    artifacts: JsonDict = Field(default_factory=dict)
    revision_history: list[RevisionEntry] = Field(default_factory=list)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def get_revision(self, revision_id: str) -> Optional[RevisionEntry]:
        for entry in self.revision_history:
            if entry.id == revision_id:
                return entry
        return None

    def active_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if s.status == StepStatus.IN_PROGRESS]

    def open_revisions(self) -> list[RevisionEntry]:
        return [e for e in self.revision_history if e.status in OPEN_REVISION_STATUSES]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        """Advance ``updated_at`` strictly past its previous value."""
        now = utcnow()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now
