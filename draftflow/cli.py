"""Command line interface for running and inspecting draftflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, NoReturn, Optional

import typer

from draftflow.app import build_orchestrator, build_worker
from draftflow.errors import DraftflowError

app = typer.Typer(help="CLI for draftflow content workflows")

# Command groups
worker_app = typer.Typer(help="Commands for running the orchestrator worker")
workflow_app = typer.Typer(help="Commands for inspecting and approving workflows")
revision_app = typer.Typer(help="Commands for requesting revisions")
input_app = typer.Typer(help="Commands for submitting processed input")

app.add_typer(worker_app, name="worker")
app.add_typer(workflow_app, name="workflow")
app.add_typer(revision_app, name="revision")
app.add_typer(input_app, name="input")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level, e.g. INFO or DEBUG"),
) -> None:
    """Draftflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _fail(exc: DraftflowError) -> NoReturn:
    typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


@worker_app.command("run")
def worker_run(lifespan: Optional[float] = None) -> None:
    """
    Run the orchestrator worker.

    Consumes agent messages from the orchestrator queue and processed-input
    events from the input queue, using the configured transport and store.

    Example:
        draftflow worker run
        draftflow worker run --lifespan 300
    """
    worker = build_worker()
    typer.echo("Starting orchestrator worker")
    asyncio.run(worker.start(lifespan=lifespan))
    typer.echo(f"Worker stopped after {worker.handled} messages")


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflows with their current status.

    Example:
        draftflow workflow list
        # Output: 3f2a...    review_ready    review
    """
    orchestrator = build_orchestrator()
    workflows = asyncio.run(orchestrator.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf['id']}\t{wf['status']}\t{wf['currentStep']}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show the steps, artifacts and revision history of one workflow."""
    orchestrator = build_orchestrator()
    try:
        wf = asyncio.run(orchestrator.get_workflow(workflow_id))
    except DraftflowError as exc:
        _fail(exc)
    typer.echo(f"Workflow {wf['id']}: {wf['status']} (current step: {wf['currentStep']})")
    for step in wf["steps"]:
        line = f"- {step['stepId']}: {step['status']}"
        if step["retryCount"]:
            line += f" (retries {step['retryCount']}/{step['maxRetries']})"
        if step["error"]:
            line += f" error: {step['error']}"
        typer.echo(line)
    if wf["artifacts"]:
        typer.echo("Artifacts:")
        _echo_json(wf["artifacts"])
    for entry in wf["revisionHistory"]:
        typer.echo(
            f"* revision {entry['id']} [{entry['revisionType']}] "
            f"{entry['status']}: {entry['feedback']}"
        )


@workflow_app.command("approve")
def workflow_approve(workflow_id: str, user_id: Optional[str] = None) -> None:
    """Approve a workflow that is ready for review."""
    orchestrator = build_orchestrator()
    try:
        wf = asyncio.run(orchestrator.handle_review_approved(workflow_id, user_id))
    except DraftflowError as exc:
        _fail(exc)
    typer.echo(f"Workflow {wf['id']}: {wf['status']}")


@workflow_app.command("prune-messages")
def workflow_prune_messages(
    days: float = typer.Option(7.0, help="Keep dedup records newer than this many days"),
) -> None:
    """
    Forget processed agent messages older than ``--days``.

    Example:
        draftflow workflow prune-messages --days 14
    """
    orchestrator = build_orchestrator()
    try:
        pruned = asyncio.run(orchestrator.store.prune_processed(timedelta(days=days)))
    except DraftflowError as exc:
        _fail(exc)
    typer.echo(f"Pruned {pruned} processed messages")


@revision_app.command("request")
def revision_request(
    content_id: str,
    feedback: str,
    revision_type: str = typer.Option("content", "--type", help="content or image"),
    priority: Optional[str] = typer.Option(None, help="low, medium or high"),
    user_id: Optional[str] = None,
) -> None:
    """
    Request a revision of generated content or its image.

    Example:
        draftflow revision request 3f2a... "make it shorter"
        draftflow revision request 3f2a... "brighter colors" --type image
    """
    orchestrator = build_orchestrator()
    try:
        revision_id = asyncio.run(
            orchestrator.handle_revision_request(
                content_id,
                feedback,
                revision_type,
                user_id=user_id,
                priority=priority,
            )
        )
    except DraftflowError as exc:
        _fail(exc)
    typer.echo(f"Revision requested: {revision_id}")


@revision_app.command("history")
def revision_history(content_id: str) -> None:
    """Print the revision history of a piece of content as JSON."""
    orchestrator = build_orchestrator()
    try:
        history = asyncio.run(orchestrator.get_revision_history(content_id))
    except DraftflowError as exc:
        _fail(exc)
    _echo_json(history)


@input_app.command("submit")
def input_submit(user_id: str, input_id: str, text: str) -> None:
    """Start a workflow for processed input text."""
    orchestrator = build_orchestrator()
    try:
        workflow_id = asyncio.run(
            orchestrator.handle_input_processed(user_id, input_id, {"text": text})
        )
    except DraftflowError as exc:
        _fail(exc)
    typer.echo(f"Workflow started: {workflow_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
