"""Tests for revision requests, classification and results."""

import pytest

from draftflow.constants import (
    CONTENT_GENERATION_QUEUE,
    CONTENT_GENERATOR_AGENT,
    CONTENT_STEP_ID,
    IMAGE_GENERATION_QUEUE,
    IMAGE_GENERATOR_AGENT,
    IMAGE_STEP_ID,
)
from draftflow.contracts import AgentMessage, MessageType
from draftflow.errors import (
    ContentNotFoundError,
    InvalidStateError,
    TransportUnavailableError,
    ValidationError,
)
from draftflow.orchestrator import MessageOutcome
from draftflow.persistence import RevisionStatus, RevisionType, WorkflowStatus
from draftflow.revision import KeywordFeedbackClassifier, build_image_prompt


@pytest.mark.parametrize(
    "feedback, revision_type, category, estimate",
    [
        ("make it shorter", RevisionType.CONTENT, "length", 30),
        ("the tone is too formal", RevisionType.CONTENT, "tone", 45),
        ("please reorganize the sections", RevisionType.CONTENT, "structure", 90),
        ("add more detail about the route", RevisionType.CONTENT, "information", 120),
        ("I do not like it", RevisionType.CONTENT, "general", 60),
        ("make it brighter", RevisionType.IMAGE, "colors", 45),
        ("more artistic please", RevisionType.IMAGE, "style", 60),
        ("change the layout", RevisionType.IMAGE, "composition", 75),
        ("I do not like it", RevisionType.IMAGE, "general", 60),
    ],
)
def test_keyword_classifier(feedback, revision_type, category, estimate):
    plan = KeywordFeedbackClassifier().classify(feedback, revision_type)
    assert plan.category == category
    assert plan.estimated_time == estimate
    assert plan.priority == "medium"


def test_classifier_priority():
    classifier = KeywordFeedbackClassifier()
    assert classifier.classify("urgent: fix the tone", RevisionType.CONTENT).priority == "high"
    assert classifier.classify("fix the tone", RevisionType.CONTENT, "low").priority == "low"


def test_build_image_prompt():
    prompt = build_image_prompt(
        "The mountain landscape painting shows beautiful scenery",
        "Alps",
        "more vibrant please",
    )
    assert prompt == (
        "Professional illustration representing Alps, featuring mountain, "
        "landscape, painting, vibrant colors, colorful, high quality, detailed"
    )


@pytest.mark.asyncio
async def test_content_revision_is_routed_and_tracked(
    orchestrator, repository, transport, drive_to_review
):
    content_id = await drive_to_review(orchestrator)

    revision_id = await orchestrator.handle_revision_request(
        content_id, "make it shorter", "content", user_id="u1"
    )

    wf = await repository.get_workflow(content_id)
    assert wf.status == WorkflowStatus.REVISION_REQUESTED
    history = await orchestrator.get_revision_history(content_id)
    assert history[-1]["id"] == revision_id
    assert history[-1]["feedback"] == "make it shorter"
    assert history[-1]["status"] == "processing"
    assert history[-1]["plan"]["category"] == "length"

    request = transport.queued_messages(CONTENT_GENERATION_QUEUE, AgentMessage)[-1]
    assert request.revision_id == revision_id
    assert request.step_id == CONTENT_STEP_ID
    assert request.payload["type"] == "revision_request"
    assert request.payload["revisionPlan"]["category"] == "length"
    assert request.payload["currentContent"] == "Mountain trails wander through alpine meadows"
    assert request.payload["title"] == "Alps"
    assert request.payload["originalInput"] == {"text": "Hiking in the Alps"}


@pytest.mark.asyncio
async def test_image_revision_carries_prompt(orchestrator, transport, drive_to_review):
    content_id = await drive_to_review(orchestrator)

    await orchestrator.handle_revision_request(content_id, "make it brighter", "image")

    request = transport.queued_messages(IMAGE_GENERATION_QUEUE, AgentMessage)[-1]
    assert request.payload["revisionPlan"]["category"] == "colors"
    assert request.payload["previousImageUrl"] == "https://images.example/alps-1.png"
    assert request.payload["prompt"].startswith(
        "Professional illustration representing Alps, featuring mountain, trails, wander"
    )


@pytest.mark.asyncio
async def test_revision_validation(orchestrator, drive_to_review):
    content_id = await drive_to_review(orchestrator)

    with pytest.raises(ValidationError):
        await orchestrator.handle_revision_request(content_id, "  ", "content")
    with pytest.raises(ValidationError):
        await orchestrator.handle_revision_request(content_id, "shorter", "video")
    with pytest.raises(ValidationError):
        await orchestrator.handle_revision_request(content_id, "shorter", "content", priority="asap")
    with pytest.raises(ContentNotFoundError):
        await orchestrator.handle_revision_request("missing", "shorter", "content")


@pytest.mark.asyncio
async def test_revision_requires_reviewable_workflow(orchestrator, repository, reply):
    content_id = await orchestrator.handle_input_processed("u1", "i1", {"text": "x"})
    with pytest.raises(InvalidStateError):
        await orchestrator.handle_revision_request(content_id, "shorter", "content")

    await orchestrator.handle_agent_message(
        reply(content_id, CONTENT_STEP_ID, CONTENT_GENERATOR_AGENT, MessageType.ERROR, {"error": "boom"})
    )
    wf = await repository.get_workflow(content_id)
    assert wf.status == WorkflowStatus.FAILED
    with pytest.raises(InvalidStateError):
        await orchestrator.handle_revision_request(content_id, "shorter", "content")
    assert (await repository.get_workflow(content_id)).revision_history == []


@pytest.mark.asyncio
async def test_failed_enqueue_marks_revision_failed(
    make_orchestrator, flaky_transport, repository, drive_to_review
):
    transport = flaky_transport({CONTENT_GENERATION_QUEUE}, failures=0)
    orchestrator = make_orchestrator(transport)
    content_id = await drive_to_review(orchestrator)
    transport.failures = 100

    with pytest.raises(TransportUnavailableError):
        await orchestrator.handle_revision_request(content_id, "shorter", "content")

    wf = await repository.get_workflow(content_id)
    [entry] = wf.revision_history
    assert entry.status == RevisionStatus.FAILED
    assert "unreachable" in entry.error
    assert wf.status == WorkflowStatus.REVIEW_READY


@pytest.mark.asyncio
async def test_revision_result_overwrites_artifact(orchestrator, repository, drive_to_review, reply):
    content_id = await drive_to_review(orchestrator)
    revision_id = await orchestrator.handle_revision_request(content_id, "shorter", "content")
    revised = {"content": "Short trails", "title": "Alps"}

    outcome = await orchestrator.handle_agent_message(
        reply(
            content_id,
            CONTENT_STEP_ID,
            CONTENT_GENERATOR_AGENT,
            MessageType.RESPONSE,
            revised,
            revision_id=revision_id,
        )
    )

    assert outcome == MessageOutcome.REVISION_APPLIED
    wf = await repository.get_workflow(content_id)
    entry = wf.get_revision(revision_id)
    assert entry.status == RevisionStatus.COMPLETED
    assert entry.result == revised
    assert wf.artifacts["content"] == revised
    assert wf.status == WorkflowStatus.REVIEW_READY

    late = await orchestrator.handle_agent_message(
        reply(
            content_id,
            CONTENT_STEP_ID,
            CONTENT_GENERATOR_AGENT,
            MessageType.ERROR,
            {"error": "late"},
            revision_id=revision_id,
        )
    )
    assert late == MessageOutcome.IGNORED
    assert (await repository.get_workflow(content_id)).get_revision(revision_id).status == (
        RevisionStatus.COMPLETED
    )


@pytest.mark.asyncio
async def test_revision_error_is_not_retried(orchestrator, repository, transport, drive_to_review, reply):
    content_id = await drive_to_review(orchestrator)
    revision_id = await orchestrator.handle_revision_request(content_id, "darker", "image")
    queued = len(transport.queued(IMAGE_GENERATION_QUEUE))

    await orchestrator.handle_agent_message(
        reply(
            content_id,
            IMAGE_STEP_ID,
            IMAGE_GENERATOR_AGENT,
            MessageType.ERROR,
            {"error": "model overloaded", "retryable": True},
            revision_id=revision_id,
        )
    )

    wf = await repository.get_workflow(content_id)
    entry = wf.get_revision(revision_id)
    assert entry.status == RevisionStatus.FAILED
    assert entry.error == "model overloaded"
    assert wf.status == WorkflowStatus.REVIEW_READY
    assert wf.artifacts["image"] == {"imageUrl": "https://images.example/alps-1.png"}
    assert len(transport.queued(IMAGE_GENERATION_QUEUE)) == queued


@pytest.mark.asyncio
async def test_concurrent_revisions_settle_after_last_result(
    orchestrator, repository, drive_to_review, reply
):
    content_id = await drive_to_review(orchestrator)
    first = await orchestrator.handle_revision_request(content_id, "shorter", "content")
    second = await orchestrator.handle_revision_request(content_id, "brighter", "image")

    await orchestrator.handle_agent_message(
        reply(content_id, CONTENT_STEP_ID, CONTENT_GENERATOR_AGENT, MessageType.RESPONSE, {"content": "a"}, revision_id=first)
    )
    assert (await repository.get_workflow(content_id)).status == WorkflowStatus.REVISION_REQUESTED

    await orchestrator.handle_agent_message(
        reply(content_id, IMAGE_STEP_ID, IMAGE_GENERATOR_AGENT, MessageType.RESPONSE, {"imageUrl": "b"}, revision_id=second)
    )
    wf = await repository.get_workflow(content_id)
    assert wf.status == WorkflowStatus.REVIEW_READY
    assert [e.status for e in wf.revision_history] == [RevisionStatus.COMPLETED] * 2


@pytest.mark.asyncio
async def test_completed_workflow_can_be_revised(orchestrator, repository, drive_to_review, reply):
    content_id = await drive_to_review(orchestrator)
    await orchestrator.handle_review_approved(content_id)

    revision_id = await orchestrator.handle_revision_request(content_id, "shorter", "content")
    assert (await repository.get_workflow(content_id)).status == WorkflowStatus.REVISION_REQUESTED

    await orchestrator.handle_agent_message(
        reply(content_id, CONTENT_STEP_ID, CONTENT_GENERATOR_AGENT, MessageType.RESPONSE, {"content": "a"}, revision_id=revision_id)
    )
    assert (await repository.get_workflow(content_id)).status == WorkflowStatus.REVIEW_READY
    result = await orchestrator.handle_review_approved(content_id)
    assert result["status"] == "completed"


@pytest.mark.asyncio
async def test_batch_revision_reports_each_type(
    make_orchestrator, flaky_transport, drive_to_review
):
    transport = flaky_transport({IMAGE_GENERATION_QUEUE}, failures=0)
    orchestrator = make_orchestrator(transport)
    content_id = await drive_to_review(orchestrator)
    transport.failures = 100

    results = await orchestrator.batch_revision(
        content_id, content_feedback="shorter", image_feedback="brighter"
    )

    content_result, image_result = results
    assert content_result["type"] == "content"
    assert content_result["success"] is True
    assert content_result["revisionId"]
    assert image_result == {
        "type": "image",
        "success": False,
        "error": "image-generation unreachable",
    }
    history = await orchestrator.get_revision_history(content_id)
    assert [h["status"] for h in history] == ["processing", "failed"]


@pytest.mark.asyncio
async def test_batch_revision_requires_feedback(orchestrator, drive_to_review):
    content_id = await drive_to_review(orchestrator)
    with pytest.raises(ValidationError):
        await orchestrator.batch_revision(content_id)


@pytest.mark.asyncio
async def test_history_of_missing_content(orchestrator):
    with pytest.raises(ContentNotFoundError):
        await orchestrator.get_revision_history("missing")
