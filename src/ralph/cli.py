"""Root CLI group and version flag."""

import signal

import click

# Keep a closed stdout pipe (e.g. `ralph run --format jsonl | head`) from
# killing the process mid-teardown.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from ralph import __version__  # noqa: E402
from ralph.commands.down import down  # noqa: E402
from ralph.commands.run import run  # noqa: E402
from ralph.commands.status import status  # noqa: E402


@click.group()
@click.version_option(version=__version__, prog_name="ralph")
def cli() -> None:
    """Ralph — run a coding agent in a loop until the plan is done."""


cli.add_command(run)
cli.add_command(down)
cli.add_command(status)
