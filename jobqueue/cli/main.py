import asyncio
import json
import logging
from datetime import timedelta

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from ..config import QueueSettings, load_settings, save_settings
from ..errors import JobQueueError
from ..models.job import JobStatus
from ..storage.database import SqlJobQueue
from ..utils import clock

console = Console()

STORE_ERRORS = (JobQueueError, SQLAlchemyError)


def _open_queue(ctx, queue_name: str) -> SqlJobQueue:
    settings: QueueSettings = ctx.obj["settings"]
    return SqlJobQueue(queue_name, db_path=ctx.obj["db_path"] or settings.db_path)


def _parse_input(input_json: str):
    try:
        return json.loads(input_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Input must be valid JSON: {e}")


def _short(value, width: int = 50) -> str:
    text = "" if value is None else json.dumps(value) if not isinstance(value, str) else value
    return text[:width] + "..." if len(text) > width else text


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


def _fail(message: str):
    console.print(f"[red]{message}[/red]")
    raise SystemExit(1)


@click.group()
@click.option("--db", "db_path", default=None, help="Path to the SQLite job store")
@click.option("--config", "config_file", default=None, help="Path to the JSON config file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, db_path, config_file, verbose):
    """jobqueue - inspect and feed durable job queues"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        ctx.obj["settings"] = load_settings(config_file)
    except (ValidationError, ValueError) as e:
        _fail(f"Invalid configuration: {str(e)}")
    ctx.obj["config_file"] = config_file
    ctx.obj["db_path"] = db_path


@cli.command()
@click.argument("queue_name")
@click.argument("task_type")
@click.argument("input_json")
@click.option("--delay", type=float, default=None, help="Seconds to wait before the job becomes eligible")
@click.option("--max-retries", type=int, default=None, help="Failed attempts allowed before the job is FAILED")
@click.option("--dedupe", is_flag=True, help="Reuse a pending or processing job with the same input")
@click.pass_context
def enqueue(ctx, queue_name, task_type, input_json, delay, max_retries, dedupe):
    """Add a job to a queue"""
    payload = _parse_input(input_json)
    settings: QueueSettings = ctx.obj["settings"]
    run_after = clock.utcnow() + timedelta(seconds=delay) if delay else None
    try:
        queue = _open_queue(ctx, queue_name)
        job_id = asyncio.run(queue.enqueue(
            task_type,
            payload,
            run_after=run_after,
            max_retries=max_retries if max_retries is not None else settings.max_retries,
            dedupe=dedupe,
        ))
    except STORE_ERRORS as e:
        _fail(f"Error enqueueing job: {str(e)}")
    console.print(f"[green]Job {job_id} enqueued on {queue_name}[/green]")


@cli.command()
@click.argument("queue_name")
@click.pass_context
def status(ctx, queue_name):
    """Show job counts per status"""

    async def _counts(queue):
        return {state: await queue.size(state) for state in JobStatus}

    try:
        counts = asyncio.run(_counts(_open_queue(ctx, queue_name)))
    except STORE_ERRORS as e:
        _fail(f"Error getting status: {str(e)}")

    table = Table(title=f"Queue {queue_name}")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="magenta")
    for state, count in counts.items():
        table.add_row(state.value, str(count))
    console.print(table)


@cli.command("list")
@click.argument("queue_name")
@click.option("--status", "state", type=click.Choice([s.value for s in JobStatus]), help="Filter jobs by status")
@click.option("--limit", default=100, show_default=True, help="How many jobs to read, oldest first")
@click.pass_context
def list_jobs(ctx, queue_name, state, limit):
    """List jobs in insertion order"""
    try:
        jobs = asyncio.run(_open_queue(ctx, queue_name).peek(limit))
    except STORE_ERRORS as e:
        _fail(f"Error listing jobs: {str(e)}")
    if state:
        jobs = [job for job in jobs if job.status.value == state]

    if not jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs in {queue_name}" + (f" ({state})" if state else ""))
    table.add_column("ID", style="cyan")
    table.add_column("Task", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Retries", style="yellow")
    table.add_column("Created At", style="blue")
    table.add_column("Run After", style="blue")
    table.add_column("Error", style="red")
    for job in jobs:
        table.add_row(
            str(job.id),
            job.task_type,
            job.status.value,
            f"{job.retries}/{job.max_retries}",
            _when(job.created_at),
            _when(job.run_after),
            _short(job.error),
        )
    console.print(table)


@cli.command()
@click.argument("queue_name")
@click.argument("job_id", type=int)
@click.pass_context
def show(ctx, queue_name, job_id):
    """Show one job as JSON"""
    try:
        job = asyncio.run(_open_queue(ctx, queue_name).get(job_id))
    except STORE_ERRORS as e:
        _fail(f"Error reading job: {str(e)}")
    if job is None:
        _fail(f"Job {job_id} not found")
    click.echo(job.model_dump_json(indent=2))


@cli.command()
@click.argument("queue_name")
@click.argument("task_type")
@click.argument("input_json")
@click.pass_context
def lookup(ctx, queue_name, task_type, input_json):
    """Print the cached output for a task type and input, if any"""
    payload = _parse_input(input_json)
    try:
        output = asyncio.run(_open_queue(ctx, queue_name).output_for_input(task_type, payload))
    except STORE_ERRORS as e:
        _fail(f"Error looking up output: {str(e)}")
    if output is None:
        console.print("[yellow]No cached output[/yellow]")
        return
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.argument("queue_name")
@click.confirmation_option(prompt="Delete every job in this queue?")
@click.pass_context
def clear(ctx, queue_name):
    """Delete every job in a queue"""
    try:
        asyncio.run(_open_queue(ctx, queue_name).clear())
    except STORE_ERRORS as e:
        _fail(f"Error clearing queue: {str(e)}")
    console.print(f"[green]Queue {queue_name} cleared[/green]")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("get")
@click.argument("key")
@click.pass_context
def config_get(ctx, key):
    """Get a configuration value"""
    values = ctx.obj["settings"].model_dump()
    if key not in values:
        _fail(f"Configuration key '{key}' not found")
    console.print(f"{key}: {values[key]}")


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a configuration value"""
    values = ctx.obj["settings"].model_dump()
    if key not in values:
        _fail(f"Unknown configuration key '{key}'. Allowed: {', '.join(sorted(values))}")

    # Convert value to the appropriate type
    if value.lower() in ("none", "null"):
        value = None
    elif value.isdigit():
        value = int(value)
    elif value.replace(".", "", 1).isdigit():
        value = float(value)

    values[key] = value
    try:
        settings = QueueSettings(**values)
    except ValidationError as e:
        _fail(f"Invalid value for {key}: {e.errors()[0]['msg']}")
    save_settings(settings, ctx.obj["config_file"])
    console.print(f"[green]Set {key} to {value}[/green]")


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
