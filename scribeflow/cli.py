"""Command line interface for scribeflow."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from .bootstrap import build_services, configure_logging
from .config import ScribeflowConfig, load_config
from .contracts import ChatJob
from .errors import IdentityError, TemplateValidationError
from .persistence import get_repository
from .registry import load_registry
from .security.classifier import SecurityLevel
from .security.context import RequesterContext
from .transports import get_transport
from .worker import ChatWorker, enqueue_message

app = typer.Typer(help="CLI for scribeflow content workflows")

# Command groups
templates_app = typer.Typer(help="Inspect workflow templates")
workflow_app = typer.Typer(help="Inspect and manage workflow instances")
chat_app = typer.Typer(help="Send chat messages")
worker_app = typer.Typer(help="Run queue workers")

app.add_typer(templates_app, name="templates")
app.add_typer(workflow_app, name="workflow")
app.add_typer(chat_app, name="chat")
app.add_typer(worker_app, name="worker")

_state = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a scribeflow YAML config file"
    ),
) -> None:
    """Scribeflow CLI entry point."""
    _state["config_path"] = str(config) if config else None


def _config() -> ScribeflowConfig:
    config = load_config(_state["config_path"])
    configure_logging(config.log_level)
    return config


@templates_app.command("list")
def templates_list(path: Optional[Path] = None) -> None:
    """List loaded templates with their aliases and steps."""
    config = _config()
    try:
        registry = load_registry(path or config.templates_dir)
    except TemplateValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    for template in registry.list_templates():
        aliases = ", ".join(template.aliases) or "-"
        typer.echo(f"{template.id}\t{template.name}\taliases: {aliases}")
        for step in template.steps:
            deps = ", ".join(sorted(step.dependencies)) or "-"
            typer.echo(f"  - {step.name} [{step.type.value}] after: {deps}")


@templates_app.command("validate")
def templates_validate(path: Optional[Path] = None) -> None:
    """
    Validate template files without starting any service.

    Example:
        scribeflow templates validate ./templates
        # Output: OK: 6 templates
    """
    config = _config()
    try:
        registry = load_registry(path or config.templates_dir)
    except TemplateValidationError as exc:
        typer.secho(f"Invalid templates: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"OK: {len(registry)} templates")


@workflow_app.command("list")
def workflow_list(thread: Optional[str] = typer.Option(None, help="Only this thread")) -> None:
    """List workflow instances with their status."""
    config = _config()
    repo = get_repository(config.database_url, config)
    workflows = asyncio.run(repo.list_workflows(thread))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.thread_id}\t{wf.template_name}\t{wf.status.value}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow instance and the state of each step.

    Example:
        scribeflow workflow show 3f1c...
        # Output: Workflow 3f1c... (Press Release): active
        #         - Information Collection: complete
        #         - Asset Generation: in_progress
    """
    config = _config()
    repo = get_repository(config.database_url, config)
    wf = asyncio.run(repo.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id} ({wf.template_name}): {wf.status.value}")
    typer.echo(f"Thread: {wf.thread_id}")
    for step in wf.steps:
        marker = " <- current" if step.id == wf.current_step_id else ""
        typer.echo(f"- {step.name}: {step.status.value}{marker}")
        if step.metadata.collected:
            typer.echo(f"    {json.dumps(step.metadata.collected, default=str)}")


@workflow_app.command("abandon")
def workflow_abandon(workflow_id: str) -> None:
    """Abandon an active workflow instance."""
    services = build_services(_config())
    wf = asyncio.run(services.engine.abandon(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")


def _requester(
    requester: str, org: str, clearance: SecurityLevel, token: Optional[str]
) -> RequesterContext:
    if token:
        from .auth import JWTIdentityProvider

        try:
            return JWTIdentityProvider().resolve(token)
        except IdentityError as exc:
            typer.secho(str(exc), fg=typer.colors.RED)
            raise typer.Exit(code=1)
    return RequesterContext(requester_id=requester, org_id=org, clearance=clearance)


@chat_app.command("send")
def chat_send(
    thread: str,
    message: str,
    requester: str = typer.Option("cli-user", help="Requester id"),
    org: str = typer.Option("default-org", help="Organisation id"),
    clearance: SecurityLevel = typer.Option(SecurityLevel.INTERNAL, help="Requester clearance"),
    token: Optional[str] = typer.Option(None, help="Bearer token to resolve the requester"),
) -> None:
    """Process one message synchronously and print the reply."""
    services = build_services(_config())
    ctx = _requester(requester, org, clearance, token)
    job = ChatJob(
        thread_id=thread,
        content=message,
        requester_id=ctx.requester_id,
        org_id=ctx.org_id,
        clearance=ctx.clearance,
    )
    reply = asyncio.run(services.orchestrator.handle(job, ctx))
    typer.echo(reply.text)


@chat_app.command("enqueue")
def chat_enqueue(
    thread: str,
    message: str,
    requester: str = typer.Option("cli-user", help="Requester id"),
    org: str = typer.Option("default-org", help="Organisation id"),
    clearance: SecurityLevel = typer.Option(SecurityLevel.INTERNAL, help="Requester clearance"),
) -> None:
    """Publish a message to the chat job queue."""
    config = _config()
    transport = get_transport(config=config)
    job = asyncio.run(
        enqueue_message(
            transport,
            thread,
            message,
            requester_id=requester,
            org_id=org,
            clearance=clearance,
            topic=config.transport.topic,
        )
    )
    typer.echo(job.message_id)


@worker_app.command("run")
def worker_run(lifespan: Optional[float] = None) -> None:
    """
    Run a worker that processes queued chat messages.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)

    Example:
        scribeflow worker run --lifespan 300
    """
    config = _config()
    services = build_services(config)
    transport = get_transport(config=config)

    async def _echo(reply) -> None:
        typer.echo(f"[{reply.thread_id}] {reply.text}")

    worker = ChatWorker(
        transport,
        services.orchestrator,
        topic=config.transport.topic,
        config=config.worker,
        on_reply=_echo,
    )
    typer.echo(f"Starting worker on {config.transport.topic}")
    asyncio.run(worker.start(lifespan=lifespan))


if __name__ == "__main__":
    app()
