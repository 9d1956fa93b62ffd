"""Shared fixtures: in-memory store and transport wired into an orchestrator."""

from __future__ import annotations

import pytest

from draftflow.constants import (
    CONTENT_GENERATOR_AGENT,
    CONTENT_STEP_ID,
    EVENTS_TOPIC,
    IMAGE_GENERATOR_AGENT,
    IMAGE_STEP_ID,
)
from draftflow.contracts import AgentMessage, MessageType
from draftflow.errors import TransportUnavailableError
from draftflow.gateway import QueueGateway
from draftflow.orchestrator import ContentOrchestrator
from draftflow.persistence import InMemoryWorkflowRepository
from draftflow.store import WorkflowStore
from draftflow.transports.inmemory import InMemoryTransport
from draftflow.utils.retry import RetryPolicy


class FlakyTransport(InMemoryTransport):
    """In-memory transport whose publishes to ``failing`` topics raise."""

    def __init__(self, failing, failures=100):
        super().__init__()
        self.failing = set(failing)
        self.failures = failures

    async def publish(self, topic, message, delay=0):
        if topic in self.failing and self.failures > 0:
            self.failures -= 1
            raise TransportUnavailableError(f"{topic} unreachable")
        await super().publish(topic, message, delay=delay)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def flaky_transport():
    return FlakyTransport


@pytest.fixture
def make_orchestrator(repository):
    def factory(transport):
        io_policy = RetryPolicy(max_retries=1, base_delay=0.0, jitter=0.0)
        store = WorkflowStore(repository, io_policy, io_policy, timeout=1.0)
        gateway = QueueGateway(transport, EVENTS_TOPIC, io_policy, timeout=1.0)
        step_policy = RetryPolicy(
            base_delay=0.01, multiplier=2.0, max_delay=0.1, jitter=0.0
        )
        return ContentOrchestrator(store, gateway, retry_policy=step_policy)

    return factory


@pytest.fixture
def orchestrator(make_orchestrator, transport):
    return make_orchestrator(transport)


def _reply(workflow_id, step_id, agent_type, message_type, payload=None, **kwargs):
    return AgentMessage(
        workflow_id=workflow_id,
        step_id=step_id,
        agent_type=agent_type,
        message_type=message_type,
        payload=payload or {},
        **kwargs,
    )


@pytest.fixture
def reply():
    """Build an agent message addressed to the orchestrator."""
    return _reply


@pytest.fixture
def drive_to_review():
    """Run a workflow through both generation steps."""

    async def drive(orchestrator, input_id="i1", user_id="u1"):
        workflow_id = await orchestrator.handle_input_processed(
            user_id, input_id, {"text": "Hiking in the Alps"}
        )
        await orchestrator.handle_agent_message(
            _reply(
                workflow_id,
                CONTENT_STEP_ID,
                CONTENT_GENERATOR_AGENT,
                MessageType.RESPONSE,
                {"content": "Mountain trails wander through alpine meadows", "title": "Alps"},
            )
        )
        await orchestrator.handle_agent_message(
            _reply(
                workflow_id,
                IMAGE_STEP_ID,
                IMAGE_GENERATOR_AGENT,
                MessageType.RESPONSE,
                {"imageUrl": "https://images.example/alps-1.png"},
            )
        )
        return workflow_id

    return drive
