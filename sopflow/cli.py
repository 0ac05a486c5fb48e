"""Command line interface for running sopflow workers and inspecting instances."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .audit import estimate_cost, token_totals
from .config import load_config
from .constants import ENGINE_TOPIC, SCHEDULER_TOPIC
from .definitions import apply_bundle, load_file
from .errors import DefinitionNotFound, InstanceNotFound
from .persistence import InstanceStatus
from .runtime import build_runtime

app = typer.Typer(help="CLI for sopflow process automation")

# Command groups
worker_app = typer.Typer(help="Commands for running workers")
scheduler_app = typer.Typer(help="Commands for the agent loop scheduler")
definitions_app = typer.Typer(help="Commands for managing process definitions")
instance_app = typer.Typer(help="Commands for inspecting process instances")

app.add_typer(worker_app, name="worker")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(definitions_app, name="definitions")
app.add_typer(instance_app, name="instance")

_state: dict = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to a YAML config file"),
    log_level: str = typer.Option("INFO", help="Root log level"),
) -> None:
    """sopflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config else None


def _runtime():
    return build_runtime(load_config(_state["config_path"]))


@worker_app.command("start")
def worker_start(
    topic: str = typer.Option(ENGINE_TOPIC, help="Queue topic to consume"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run a worker that executes engine and scheduler jobs.

    Example:
        sopflow worker start
        sopflow worker start --topic scheduler --lifespan 300
    """
    runtime = _runtime()
    typer.echo(f"Starting worker on topic: {topic}")
    asyncio.run(runtime.worker(topic).start(lifespan=lifespan))


@app.command("beat")
def beat(
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Enqueue scheduler cycles for every active role on its interval."""
    runtime = _runtime()
    typer.echo(f"Publishing scheduler cycles to topic: {SCHEDULER_TOPIC}")
    asyncio.run(runtime.beat().run(lifespan=lifespan))


@app.command("summary")
def summary() -> None:
    """Post today's operations summary and check the decision budget."""
    runtime = _runtime()
    report = asyncio.run(runtime.summary.run())
    typer.echo(report.text)
    typer.echo(f"Budget: {report.budget.value}")
    for slug in report.paused_roles:
        typer.echo(f"  paused {slug}")


@scheduler_app.command("cycle")
def scheduler_cycle(role: str) -> None:
    """Run one agent loop cycle for ROLE and print what it did."""
    runtime = _runtime()
    report = asyncio.run(runtime.scheduler.run_cycle(role))
    if report.skipped:
        typer.echo(f"Cycle skipped for {role}: {report.skipped}")
        return
    typer.echo(f"{role}: {report.action.value} - {report.description}")
    for instance_id in report.created_instance_ids:
        typer.echo(f"  created {instance_id}")


@scheduler_app.command("stale")
def scheduler_stale() -> None:
    """List roles whose heartbeat is older than two loop intervals."""
    runtime = _runtime()
    roles = asyncio.run(runtime.scheduler.stale_roles())
    if not roles:
        typer.echo("All roles healthy")
        return
    for role in roles:
        typer.echo(f"{role.slug}\tlast heartbeat: {role.last_heartbeat_at or 'never'}")


@definitions_app.command("load")
def definitions_load(path: Path) -> None:
    """Load roles, process definitions and watchers from a YAML file."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    bundle = load_file(path)
    runtime = _runtime()
    asyncio.run(apply_bundle(runtime.repository, bundle))
    typer.echo(
        f"Loaded {len(bundle.definitions)} definitions, {len(bundle.roles)} roles, "
        f"{len(bundle.watchers)} watchers"
    )


@definitions_app.command("list")
def definitions_list() -> None:
    """List process definitions with their status."""
    runtime = _runtime()
    definitions = asyncio.run(runtime.repository.list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        typer.echo(
            f"{definition.slug}\tv{definition.version}\t{definition.status.value}\t"
            f"{len(definition.steps)} steps"
        )


@instance_app.command("create")
def instance_create(
    slug: str,
    data: Optional[str] = typer.Option(None, help="Initial working data as JSON"),
    priority: int = typer.Option(5, help="Scheduling priority"),
    enqueue: bool = typer.Option(False, help="Enqueue the first step immediately"),
) -> None:
    """Create a pending instance of an active definition."""
    runtime = _runtime()
    working_data = json.loads(data) if data else {}
    try:
        instance = asyncio.run(
            runtime.engine.create_instance(
                slug, working_data, priority=priority, enqueue=enqueue
            )
        )
    except DefinitionNotFound as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(instance.id)


@instance_app.command("list")
def instance_list(
    role: Optional[str] = typer.Option(None, help="Only instances of this role"),
    status: Optional[InstanceStatus] = typer.Option(None, help="Only this status"),
) -> None:
    """
    List instances with their current status.

    Example:
        sopflow instance list --status paused_for_human
        # Output: 1b6f...    lead_response    paused_for_human    step 2
    """
    runtime = _runtime()
    statuses = [status] if status else None
    instances = asyncio.run(runtime.repository.list_instances(role=role, statuses=statuses))
    if not instances:
        typer.echo("No instances found")
        return
    for inst in instances:
        typer.echo(
            f"{inst.id}\t{inst.process_slug}\t{inst.status.value}\tstep {inst.current_position}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """Show an instance's working data, audit trail and decision cost."""
    runtime = _runtime()
    try:
        inst = asyncio.run(runtime.engine.get_instance(instance_id))
    except InstanceNotFound:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    events = asyncio.run(runtime.repository.list_events(instance_id))

    typer.echo(f"Instance {inst.id}: {inst.status.value} (step {inst.current_position})")
    if inst.error_message:
        typer.echo(f"Error: {inst.error_message}")
    if inst.working_data:
        typer.echo(f"Working data: {json.dumps(inst.working_data, default=str)}")
    for event in events:
        details = f" tier={event.tier}" if event.tier is not None else ""
        if event.confidence is not None:
            details += f" confidence={event.confidence:.2f}"
        position = "-" if event.step_position is None else event.step_position
        typer.echo(f"- [{position}] {event.event_type.value}{details}")
    tokens = token_totals(events)
    cost = estimate_cost(events, runtime.config.decision)
    typer.echo(
        f"Tokens: {tokens['tokens_in']} in / {tokens['tokens_out']} out, cost ${cost:.4f}"
    )


@instance_app.command("resume")
def instance_resume(
    instance_id: str,
    action: str = typer.Argument("approve"),
    text: Optional[str] = typer.Option(None, help="Response text or edited content"),
) -> None:
    """Answer a human-input request on behalf of a user."""
    runtime = _runtime()
    try:
        asyncio.run(runtime.engine.get_instance(instance_id))
    except InstanceNotFound:
        typer.echo("Instance not found")
        raise typer.Exit(code=1)
    resumed = asyncio.run(
        runtime.engine.resume(instance_id, {"action": action, "text": text, "user_id": "cli"})
    )
    if not resumed:
        typer.echo("Instance is not waiting on human input")
        raise typer.Exit(code=1)
    typer.echo(f"Instance {instance_id} resumed with '{action}'")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
