"""ralph down — signal a running loop to shut down gracefully."""

from __future__ import annotations

import time
from pathlib import Path

import click

from ralph.config.models import RalphConfig
from ralph.config.parser import ConfigError, load_config
from ralph.constants import DEFAULT_SERVER_PORT
from ralph.lock import SessionLock
from ralph.platform import ProcessPlatform, get_platform

#: Maximum valid PID on most systems (Linux default PID_MAX).
_PID_MAX = 4_194_304

#: Polls (100ms apart) before escalating to a forced kill.
_WAIT_POLLS = 100


@click.command()
@click.option("-c", "--config", "config_file", type=click.Path(), help="Config file path.")
@click.option(
    "--port",
    type=int,
    default=None,
    is_flag=False,
    flag_value=DEFAULT_SERVER_PORT,
    help=f"Also kill processes listening on PORT (default {DEFAULT_SERVER_PORT}).",
)
def down(config_file: str | None, port: int | None) -> None:
    """Signal a running ralph loop to shut down gracefully."""
    config = _load(config_file)
    platform = get_platform()
    lock = SessionLock(Path.cwd(), config.session.lock_file, platform)

    exit_code = _stop_lock_holder(lock, platform)
    if port is not None:
        _kill_port_listeners(port, platform)
    raise SystemExit(exit_code)


def _load(config_file: str | None) -> RalphConfig:
    try:
        return load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc


def _stop_lock_holder(lock: SessionLock, platform: ProcessPlatform) -> int:
    record = lock.read()
    if record is None:
        click.echo(f"No running session found (no lock at {lock.path.name})")
        return 1

    pid = record.pid
    if pid <= 1 or pid > _PID_MAX:
        click.echo("Invalid lock file: PID missing or out of range")
        lock.clear()
        return 1

    if not platform.is_process_running(pid):
        click.echo(
            f"Session {record.session_id} (PID {pid}) is no longer running. "
            "Cleaning up stale lock."
        )
        lock.clear()
        return 0

    click.echo(f"Shutting down session {record.session_id} (PID {pid})...")
    try:
        signalled = platform.terminate(pid)
    except PermissionError:
        click.echo(f"Permission denied: cannot signal PID {pid}")
        return 1
    if not signalled:
        click.echo("Process already exited.")
        lock.clear()
        return 0

    for _ in range(_WAIT_POLLS):
        time.sleep(0.1)
        if not platform.is_process_running(pid):
            click.echo("Session ended.")
            # The exiting loop releases its lock; this covers a crash.
            lock.clear()
            return 0

    click.echo(f"Session didn't exit within {_WAIT_POLLS // 10}s. Killing...")
    try:
        platform.terminate(pid, force=True)
    except PermissionError:
        click.echo(f"Permission denied: cannot kill PID {pid}")
        return 1
    lock.clear()
    click.echo("Session killed.")
    return 0


def _kill_port_listeners(port: int, platform: ProcessPlatform) -> None:
    pids = platform.pids_listening_on(port)
    if not pids:
        click.echo(f"Nothing listening on port {port}.")
        return
    for pid in pids:
        try:
            if platform.terminate(pid):
                click.echo(f"Stopped PID {pid} listening on port {port}.")
        except PermissionError:
            click.echo(f"Permission denied: cannot signal PID {pid}")
