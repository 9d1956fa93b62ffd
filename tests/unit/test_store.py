"""Tests for the workflow store client."""

from datetime import timedelta

import pytest

from draftflow.contracts import AgentMessage, MessageType, utcnow
from draftflow.errors import ConcurrentModificationError, UnknownWorkflowError
from draftflow.persistence import InMemoryWorkflowRepository, Workflow, WorkflowStatus
from draftflow.store import WorkflowStore
from draftflow.utils.retry import RetryPolicy


class ContendedRepository(InMemoryWorkflowRepository):
    """Loses the first ``conflicts`` conditional writes."""

    def __init__(self, conflicts):
        super().__init__()
        self.conflicts = conflicts
        self.saves = 0

    async def save_workflow(self, workflow, expected_version):
        self.saves += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrentModificationError(workflow.id, expected_version)
        await super().save_workflow(workflow, expected_version)


def _store(repository):
    policy = RetryPolicy(max_retries=1, base_delay=0.0, jitter=0.0)
    return WorkflowStore(repository, policy, policy, timeout=1.0)


async def _create(store):
    wf = Workflow(user_id="u1", input_id="i1", current_step="content-generation")
    await store.create(wf)
    return wf


@pytest.mark.asyncio
async def test_save_bumps_version_and_timestamp():
    store = _store(InMemoryWorkflowRepository())
    wf = await _create(store)
    updated_at = wf.updated_at

    wf.metadata["k"] = "v"
    await store.save(wf)

    stored = await store.load(wf.id)
    assert stored.version == 1
    assert stored.updated_at > updated_at
    assert stored.metadata == {"k": "v"}


@pytest.mark.asyncio
async def test_stale_save_is_rejected():
    store = _store(InMemoryWorkflowRepository())
    wf = await _create(store)
    stale = await store.load(wf.id)

    await store.save(wf)
    with pytest.raises(ConcurrentModificationError):
        await store.save(stale)
    assert stale.version == 0


@pytest.mark.asyncio
async def test_update_reapplies_mutation_after_conflict():
    repository = ContendedRepository(conflicts=2)
    store = _store(repository)
    wf = await _create(store)
    calls = []

    def mutate(workflow):
        calls.append(workflow.version)
        workflow.status = WorkflowStatus.CONTENT_GENERATION
        return "done"

    updated, result = await store.update(wf.id, mutate, max_conflicts=3)

    assert result == "done"
    assert len(calls) == 3
    assert updated.version == 1
    assert (await store.load(wf.id)).status == WorkflowStatus.CONTENT_GENERATION


@pytest.mark.asyncio
async def test_update_gives_up_after_max_conflicts():
    repository = ContendedRepository(conflicts=10)
    store = _store(repository)
    wf = await _create(store)

    def mutate(workflow):
        workflow.metadata["n"] = 1

    with pytest.raises(ConcurrentModificationError):
        await store.update(wf.id, mutate, max_conflicts=2)
    assert repository.saves == 3


@pytest.mark.asyncio
async def test_update_without_changes_does_not_write():
    repository = ContendedRepository(conflicts=0)
    store = _store(repository)
    wf = await _create(store)

    await store.update(wf.id, lambda workflow: None)

    assert repository.saves == 0


@pytest.mark.asyncio
async def test_load_unknown_workflow():
    store = _store(InMemoryWorkflowRepository())
    assert await store.get("missing") is None
    with pytest.raises(UnknownWorkflowError):
        await store.load("missing")


@pytest.mark.asyncio
async def test_prune_processed_keeps_recent_messages():
    repository = InMemoryWorkflowRepository()
    store = _store(repository)
    old = AgentMessage(
        workflow_id="wf",
        step_id="content-generation",
        agent_type="content-generator",
        message_type=MessageType.RESPONSE,
    )
    recent = old.model_copy(update={"message_id": "recent"})
    await store.mark_processed(old)
    await store.mark_processed(recent)
    repository._messages[old.message_id] = utcnow() - timedelta(days=30)

    assert await store.prune_processed(timedelta(days=7)) == 1
    assert not await store.was_processed(old.message_id)
    assert await store.was_processed("recent")
