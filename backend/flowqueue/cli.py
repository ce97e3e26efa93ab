"""Flask CLI commands for running workers and maintenance."""

from __future__ import annotations

import signal

import click
from flask import Flask, current_app
from flask.cli import AppGroup, with_appcontext

from .workflow import queue, retention
from .workflow.worker import Worker

worker_cli = AppGroup("worker", help="Run job queue workers.")


@worker_cli.command("run")
@click.option("--worker-id", default=None, help="Identifier recorded on claimed jobs.")
def run_worker(worker_id: str | None) -> None:
    """Poll for jobs until interrupted."""

    worker = Worker(current_app._get_current_object(), worker_id)

    def _shutdown(signum, frame) -> None:
        worker.logger.info("Received signal %s, stopping worker", signum)
        worker.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    worker.run_forever()


@worker_cli.command("once")
@click.option("--count", default=1, show_default=True, help="Maximum number of jobs to process.")
@click.option("--worker-id", default=None)
def run_once(count: int, worker_id: str | None) -> None:
    """Process at most COUNT ready jobs and exit."""

    processed = Worker(current_app._get_current_object(), worker_id).process_batch(count)
    for item in processed:
        click.echo(f"{item['job_id']} {item['execution_id']} {item['outcome']}")
    click.echo(f"processed {len(processed)} job(s)")


@click.command("purge-expired")
@with_appcontext
def purge_expired() -> None:
    """Reap exhausted jobs and delete rows past their retention."""

    reaped = queue.reap_exhausted()
    counts = retention.purge_expired()
    click.echo(
        f"reaped {reaped} job(s); purged {counts['jobs']} job(s), "
        f"{counts['logs']} log entries, {counts['executions']} execution(s)"
    )


def register_commands(app: Flask) -> None:
    app.cli.add_command(worker_cli)
    app.cli.add_command(purge_expired)
