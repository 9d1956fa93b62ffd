"""Draftflow: message-driven orchestration of content generation workflows."""

from .app import build_orchestrator, build_worker
from .contracts import AgentMessage, InputProcessedEvent, OrchestrationEvent
from .orchestrator import ContentOrchestrator, MessageOutcome
from .persistence import get_repository
from .revision import KeywordFeedbackClassifier, RevisionService
from .transports import get_transport
from .worker import OrchestratorWorker

__version__ = "0.1.0"
__all__ = [
    "AgentMessage",
    "ContentOrchestrator",
    "InputProcessedEvent",
    "KeywordFeedbackClassifier",
    "MessageOutcome",
    "OrchestrationEvent",
    "OrchestratorWorker",
    "RevisionService",
    "build_orchestrator",
    "build_worker",
    "get_repository",
    "get_transport",
]
