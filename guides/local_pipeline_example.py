"""Run a content workflow end to end in one process.

Stub agents answer the generation requests, the worker drives the
workflow to review, and a revision is requested and applied before the
result is approved.
"""

import asyncio

from draftflow import build_worker
from draftflow.config import DraftflowConfig
from draftflow.constants import (
    CONTENT_GENERATION_QUEUE,
    IMAGE_GENERATION_QUEUE,
    INPUT_PROCESSED_QUEUE,
    ORCHESTRATOR_QUEUE,
)
from draftflow.contracts import AgentMessage, InputProcessedEvent, MessageType
from draftflow.persistence import InMemoryWorkflowRepository
from draftflow.transports import InMemoryTransport


async def stub_agent(transport, queue, make_output, lifespan):
    async for raw, request in transport.subscribe(queue, AgentMessage, lifespan=lifespan):
        print(f"[{queue}] handling {request.step_id} for {request.workflow_id}")
        await transport.publish(
            ORCHESTRATOR_QUEUE,
            AgentMessage(
                workflow_id=request.workflow_id,
                step_id=request.step_id,
                agent_type=request.agent_type,
                message_type=MessageType.RESPONSE,
                payload=make_output(request),
                revision_id=request.revision_id,
            ),
        )
        await transport.ack(raw)


def write_post(request):
    if request.revision_id:
        feedback = request.payload["feedback"]
        return {"title": "Weekend hike", "content": f"Revised after: {feedback}"}
    return {"title": "Weekend hike", "content": f"Notes on {request.payload['input']['text']}"}


def draw_cover(request):
    return {"imageUrl": f"https://images.example/{request.workflow_id}.png"}


async def run_agents_and_worker(worker, transport, lifespan=2.0):
    await asyncio.gather(
        worker.start(lifespan=lifespan),
        stub_agent(transport, CONTENT_GENERATION_QUEUE, write_post, lifespan),
        stub_agent(transport, IMAGE_GENERATION_QUEUE, draw_cover, lifespan),
    )


async def main():
    transport = InMemoryTransport()
    repository = InMemoryWorkflowRepository()
    worker = build_worker(DraftflowConfig(), repository, transport)
    orchestrator = worker.orchestrator

    await transport.publish(
        INPUT_PROCESSED_QUEUE,
        InputProcessedEvent(user_id="demo", input_id="note-1", payload={"text": "a ridge walk"}),
    )
    await run_agents_and_worker(worker, transport)

    [workflow] = await orchestrator.list_workflows()
    print(f"Workflow {workflow['id']} is {workflow['status']}")

    await orchestrator.handle_revision_request(workflow["id"], "make it shorter", "content")
    await run_agents_and_worker(worker, transport)

    for entry in await orchestrator.get_revision_history(workflow["id"]):
        print(f"Revision {entry['id']}: {entry['status']} ({entry['plan']['category']})")

    approved = await orchestrator.handle_review_approved(workflow["id"], user_id="demo")
    print(f"Workflow {approved['id']} is {approved['status']}")
    print(f"Final content: {approved['artifacts']['content']}")


if __name__ == "__main__":
    asyncio.run(main())
