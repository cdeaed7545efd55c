import json
import logging
import os
import signal
from threading import Event
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import Config, config_path
from .errors import QueueCtlError
from .jobs import JobQueue
from .models import STATES
from .pool import WorkerPool, WorkerRegistry, pid_file_path
from .storage import Storage, db_path
from .utils import configure_logging, format_timestamp
from .worker import Worker

app = typer.Typer(help="A local, disk-persisted job queue with retries and a DLQ.")
worker_app = typer.Typer(help="Manage worker processes.")
config_app = typer.Typer(help="Read or change configuration.")
app.add_typer(worker_app, name="worker")
app.add_typer(config_app, name="config")

console = Console()
logger = logging.getLogger(__name__)


# ----------------------------
# Helpers
# ----------------------------
def _coerce_value(value: str) -> Any:
    """Coerce a CLI string to int/float/bool/None/str for config-set."""
    if value.isdigit():
        return int(value)
    lower = value.lower()
    if lower in ("true", "false"):
        return lower == "true"
    if lower in ("null", "none"):
        return None
    try:
        return float(value)
    except ValueError:
        return value


def _fail(message: str):
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _storage() -> Storage:
    return Storage(db_path())


def _config() -> Config:
    return Config(config_path())


def _pool() -> WorkerPool:
    return WorkerPool(WorkerRegistry(pid_file_path()))


def _queue() -> JobQueue:
    return JobQueue(_storage(), _config())


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")):
    configure_logging(verbose)


# ----------------------------
# Jobs
# ----------------------------
@app.command(help="Add a new job from a JSON string.")
def enqueue(job_data: str = typer.Argument(..., help='JSON object, e.g. \'{"command": "echo hi"}\'')):
    """
    Example:
      queuectl enqueue '{"id": "job1", "command": "sleep 2", "max_retries": 2}'
    """
    try:
        job = _queue().enqueue(json.loads(job_data))
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    except QueueCtlError as e:
        _fail(str(e))
    typer.echo(f"Job enqueued: {job.id}")


@app.command("list", help="List jobs, optionally filtered by state.")
def list_cmd(
    state: Optional[str] = typer.Option(None, "--state", "-s", help=f"One of: {', '.join(STATES)}"),
):
    jobs = _queue().list_jobs(state)
    if not jobs:
        typer.echo("No jobs found.")
        return

    table = Table("ID", "Command", "State", "Attempts", "Next Run", "Updated", title="Jobs")
    for job in jobs:
        table.add_row(
            job.id,
            job.command,
            job.state,
            f"{job.attempts}/{job.max_retries}",
            format_timestamp(job.next_run_at),
            format_timestamp(job.updated_at),
        )
    console.print(table)


@app.command(help="Show one job as JSON.")
def show(job_id: str = typer.Argument(..., help="Job ID")):
    try:
        job = _queue().get_job(job_id)
    except QueueCtlError as e:
        _fail(str(e))
    if job is None:
        _fail(f"Job {job_id} not found")
    typer.echo(json.dumps(job.to_dict(), indent=2))


@app.command(help="Show job counts per state and active workers.")
def status():
    status = _queue().get_status(_pool())

    queue_table = Table("State", "Count", title="Queue Status")
    for state in STATES:
        queue_table.add_row(state, str(status.counts[state]))
    queue_table.add_row("Total", str(status.total), style="bold")

    worker_table = Table("Active Workers", "PIDs", title="Worker Status")
    worker_table.add_row(
        str(status.active_count),
        ", ".join(str(pid) for pid in status.active_workers) or "-",
    )

    console.print(queue_table)
    console.print(worker_table)

    if status.active_count == 0 and status.counts["pending"] > 0:
        typer.echo("Warning: there are pending jobs but no active workers.", err=True)


# ----------------------------
# Workers
# ----------------------------
@worker_app.command("start", help="Start worker processes in the background.")
def worker_start(count: int = typer.Option(1, "--count", "-c", help="Number of workers to start")):
    try:
        pids = _pool().start(count)
    except QueueCtlError as e:
        _fail(str(e))
    except OSError as e:
        _fail(f"Could not start workers: {e}")
    typer.echo(f"Started {len(pids)} worker(s). PIDs: {', '.join(str(pid) for pid in pids)}")


@worker_app.command("stop", help="Gracefully stop all tracked workers.")
def worker_stop():
    stopped = _pool().stop()
    if stopped:
        typer.echo(f"Stopped {stopped} worker(s).")
    else:
        typer.echo("No active workers to stop.")


@worker_app.command("run", hidden=True, help="Run a single worker loop in the foreground.")
def worker_run(ordinal: int = typer.Option(1, "--id", help="Worker ordinal")):
    worker = Worker(_storage(), _config(), worker_id=f"worker-{ordinal}:{os.getpid()}")
    stop_event = Event()

    def _handle_stop(signum, frame):
        logger.info("[%s] Received signal %d, finishing current job", worker.worker_id, signum)
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handle_stop)

    worker.run(stop_event)


# ----------------------------
# Config
# ----------------------------
@config_app.command("get", help="Print all settings, or one setting.")
def config_get(key: Optional[str] = typer.Argument(None)):
    config = _config()
    if key is None:
        typer.echo(json.dumps(config.get_all(), indent=2))
        return
    try:
        typer.echo(json.dumps(config.get(key)))
    except QueueCtlError as e:
        _fail(str(e))


@config_app.command("set", help="Set configuration key/value.")
def config_set(key: str, value: str):
    """
    Coerces 'true'/'false' to bool, numbers to int/float and 'null' to None.
    """
    actual = _coerce_value(value)
    try:
        _config().set(key, actual)
    except QueueCtlError as e:
        _fail(str(e))
    typer.echo(f"Configuration {key} set to {json.dumps(actual)}")


def run():
    """Entrypoint so you can: python -m queuectl ... or from main.py."""
    app()
