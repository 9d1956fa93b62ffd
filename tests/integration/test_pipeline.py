"""End-to-end runs of the worker against scripted agents."""

import asyncio

import pytest

from draftflow import build_worker
from draftflow.config import DraftflowConfig, RetryBudget
from draftflow.constants import (
    CONTENT_GENERATION_QUEUE,
    IMAGE_GENERATION_QUEUE,
    INPUT_PROCESSED_QUEUE,
    ORCHESTRATOR_QUEUE,
)
from draftflow.contracts import AgentMessage, InputProcessedEvent, MessageType
from draftflow.persistence import (
    InMemoryWorkflowRepository,
    RevisionStatus,
    StepStatus,
    WorkflowStatus,
)
from draftflow.transports.inmemory import InMemoryTransport

LIFESPAN = 1.5


def _config():
    config = DraftflowConfig()
    config.retry.agent = RetryBudget(max_retries=3, base_delay=0.01, max_delay=0.05, jitter=0.0)
    return config


async def _agent(transport, queue, respond, lifespan=LIFESPAN):
    """Answer every request on ``queue`` with ``respond(request)``."""
    async for raw, request in transport.subscribe(queue, AgentMessage, lifespan=lifespan):
        message_type, payload = respond(request)
        await transport.publish(
            ORCHESTRATOR_QUEUE,
            AgentMessage(
                workflow_id=request.workflow_id,
                step_id=request.step_id,
                agent_type=request.agent_type,
                message_type=message_type,
                payload=payload,
                revision_id=request.revision_id,
            ),
        )
        await transport.ack(raw)


def _writer(request):
    if request.revision_id:
        return MessageType.RESPONSE, {"content": "Short alpine hike", "title": "Alps"}
    text = request.payload["input"]["text"]
    return MessageType.RESPONSE, {"content": f"A story about {text}", "title": "Alps"}


def _illustrator(request):
    return MessageType.RESPONSE, {"imageUrl": f"https://images.example/{request.workflow_id}.png"}


@pytest.mark.asyncio
async def test_input_runs_through_to_review_and_revision():
    transport = InMemoryTransport()
    repository = InMemoryWorkflowRepository()
    worker = build_worker(_config(), repository, transport)

    await transport.publish(
        INPUT_PROCESSED_QUEUE,
        InputProcessedEvent(user_id="u1", input_id="i1", payload={"text": "hiking"}),
    )
    await asyncio.gather(
        worker.start(lifespan=LIFESPAN),
        _agent(transport, CONTENT_GENERATION_QUEUE, _writer),
        _agent(transport, IMAGE_GENERATION_QUEUE, _illustrator),
    )

    [wf] = await repository.list_workflows()
    assert wf.status == WorkflowStatus.REVIEW_READY
    assert wf.artifacts["content"] == {"content": "A story about hiking", "title": "Alps"}
    assert wf.artifacts["image"] == {"imageUrl": f"https://images.example/{wf.id}.png"}
    assert [s.status for s in wf.steps] == [
        StepStatus.COMPLETED,
        StepStatus.COMPLETED,
        StepStatus.IN_PROGRESS,
    ]

    revision_id = await worker.orchestrator.handle_revision_request(
        wf.id, "make it shorter", "content"
    )
    await asyncio.gather(
        worker.start(lifespan=LIFESPAN),
        _agent(transport, CONTENT_GENERATION_QUEUE, _writer),
    )

    wf = await repository.get_workflow(wf.id)
    assert wf.status == WorkflowStatus.REVIEW_READY
    assert wf.get_revision(revision_id).status == RevisionStatus.COMPLETED
    assert wf.artifacts["content"] == {"content": "Short alpine hike", "title": "Alps"}


@pytest.mark.asyncio
async def test_transient_agent_failures_are_retried():
    transport = InMemoryTransport()
    repository = InMemoryWorkflowRepository()
    worker = build_worker(_config(), repository, transport)
    attempts = []

    def flaky_writer(request):
        attempts.append(request.retry_count)
        if len(attempts) < 3:
            return MessageType.ERROR, {"error": "throttled", "errorType": "ThrottlingException"}
        return _writer(request)

    await transport.publish(
        INPUT_PROCESSED_QUEUE,
        InputProcessedEvent(user_id="u1", input_id="i1", payload={"text": "hiking"}),
    )
    await asyncio.gather(
        worker.start(lifespan=LIFESPAN),
        _agent(transport, CONTENT_GENERATION_QUEUE, flaky_writer),
        _agent(transport, IMAGE_GENERATION_QUEUE, _illustrator),
    )

    assert attempts == [0, 1, 2]
    [wf] = await repository.list_workflows()
    assert wf.status == WorkflowStatus.REVIEW_READY
    assert wf.get_step("content-generation").retry_count == 2


@pytest.mark.asyncio
async def test_duplicate_input_is_acknowledged_once():
    transport = InMemoryTransport()
    repository = InMemoryWorkflowRepository()
    worker = build_worker(_config(), repository, transport)
    event = InputProcessedEvent(user_id="u1", input_id="i1", payload={"text": "hiking"})

    await transport.publish(INPUT_PROCESSED_QUEUE, event)
    await transport.publish(INPUT_PROCESSED_QUEUE, event)
    await worker.start(lifespan=0.5)

    assert len(await repository.list_workflows()) == 1
    assert transport.queued(INPUT_PROCESSED_QUEUE) == []
    assert len(transport.queued(CONTENT_GENERATION_QUEUE)) == 1
