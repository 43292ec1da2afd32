"""ralph status — report the loop holding the lock in this directory."""

from __future__ import annotations

from pathlib import Path

import click

from ralph.config.parser import ConfigError, load_config
from ralph.lock import SessionLock
from ralph.plan import PlanReader


@click.command()
@click.option("-c", "--config", "config_file", type=click.Path(), help="Config file path.")
def status(config_file: str | None) -> None:
    """Show whether a loop is running here and how far the plan has got."""
    cwd = Path.cwd()
    try:
        config = load_config(Path(config_file) if config_file else None, cwd=cwd)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    lock = SessionLock(cwd, config.session.lock_file)
    record = lock.read()
    if record is None:
        click.echo("No running session.")
    elif lock.is_live(record.pid):
        click.echo(
            f"Session {record.session_id} running (PID {record.pid}, "
            f"started {record.started_at})"
        )
    else:
        click.echo(f"Stale lock from PID {record.pid} (process not running)")

    progress = PlanReader(cwd / config.plan).progress()
    if progress.total:
        click.echo(f"Plan {config.plan}: {progress.done}/{progress.total} tasks done")
    else:
        click.echo(f"Plan {config.plan}: no tasks found")
