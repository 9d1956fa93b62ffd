"""Wire an orchestrator from configuration."""

from __future__ import annotations

from typing import Optional

from .config import DraftflowConfig, load_config
from .gateway import QueueGateway
from .orchestrator import ContentOrchestrator
from .persistence import WorkflowRepository, get_repository
from .revision import RevisionService
from .store import WorkflowStore
from .transports import BaseTransport, get_transport
from .utils.retry import RetryPolicy
from .worker import OrchestratorWorker


def build_orchestrator(
    config: Optional[DraftflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
) -> ContentOrchestrator:
    """Build a :class:`ContentOrchestrator` with its collaborators.

    ``repository`` and ``transport`` default to the configured backends.
    """
    config = config or load_config()
    repository = repository or get_repository(config.database_url)
    transport = transport or get_transport(config=config)

    read_policy = RetryPolicy.from_budget(config.retry.aggressive)
    write_policy = RetryPolicy.from_budget(config.retry.conservative)
    timeout = config.timeouts.call_seconds
    max_conflicts = config.concurrency.max_conflict_retries

    store = WorkflowStore(repository, read_policy, write_policy, timeout)
    gateway = QueueGateway(transport, config.queues.events, write_policy, timeout)
    revisions = RevisionService(
        store, gateway, config.queues, max_conflict_retries=max_conflicts
    )
    return ContentOrchestrator(
        store,
        gateway,
        retry_policy=RetryPolicy.from_budget(config.retry.agent),
        revision_service=revisions,
        queues=config.queues,
        max_conflict_retries=max_conflicts,
        step_max_retries=config.retry.agent.max_retries,
    )


def build_worker(
    config: Optional[DraftflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
) -> OrchestratorWorker:
    config = config or load_config()
    orchestrator = build_orchestrator(config, repository, transport)
    return OrchestratorWorker(orchestrator, orchestrator.gateway, config.queues)
