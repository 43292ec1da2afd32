"""ralph run — drive an agent through the plan until it is done."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path
from typing import Any

import click

from ralph.agent.base import AgentExecutor
from ralph.agent.executors import create_executor
from ralph.config.models import RalphConfig
from ralph.config.parser import ConfigError, load_config
from ralph.engine.loop import LoopEngine
from ralph.events.formatters import create_formatter
from ralph.events.pipeline import HeadlessEventPipeline
from ralph.ratelimit import FallbackResolver, parse_fallback_pairs

logger = logging.getLogger(__name__)


@click.command()
@click.option("-c", "--config", "config_file", type=click.Path(), help="Config file path.")
@click.option("--plan", type=str, default=None, help="Task plan file.")
@click.option("--progress", type=str, default=None, help="Progress log file.")
@click.option("-m", "--model", type=str, default=None, help="Model as provider/model.")
@click.option(
    "--adapter",
    type=click.Choice(["opencode-server", "opencode-run", "codex", "claude"]),
    default=None,
    help="How the agent is driven.",
)
@click.option("--agent", type=str, default=None, help="Agent profile name.")
@click.option("-p", "--prompt", type=str, default=None, help="Inline prompt template.")
@click.option("--prompt-file", type=str, default=None, help="Prompt template file.")
@click.option("--server", type=str, default=None, help="Attach to this agent server URL.")
@click.option(
    "--server-timeout",
    "server_timeout_ms",
    type=int,
    default=None,
    help="Server health-check timeout in milliseconds.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "jsonl", "json"]),
    default=None,
    help="Event output format.",
)
@click.option("--timestamps", is_flag=True, default=None, help="Stamp events with epoch ms.")
@click.option("--max-iterations", type=int, default=None, help="Stop after N iterations.")
@click.option("--max-time", type=int, default=None, help="Stop after N seconds.")
@click.option(
    "--continue-on-error",
    is_flag=True,
    default=None,
    help="Keep going after an agent failure.",
)
@click.option(
    "--fallback",
    "fallbacks",
    multiple=True,
    metavar="PRIMARY=FALLBACK",
    help="Fallback agent/model when PRIMARY is rate limited. Repeatable.",
)
@click.option("--force", is_flag=True, help="Take over a lock held by a running instance.")
@click.option("-v", "--verbose", is_flag=True, help="Show agent output and prompts.")
@click.option("--debug", is_flag=True, help="Write a debug log to the session log file.")
def run(
    config_file: str | None,
    plan: str | None,
    progress: str | None,
    model: str | None,
    adapter: str | None,
    agent: str | None,
    prompt: str | None,
    prompt_file: str | None,
    server: str | None,
    server_timeout_ms: int | None,
    output_format: str | None,
    timestamps: bool | None,
    max_iterations: int | None,
    max_time: int | None,
    continue_on_error: bool | None,
    fallbacks: tuple[str, ...],
    force: bool,
    verbose: bool,
    debug: bool,
) -> None:
    """Run the agent loop until every task in the plan is done."""
    try:
        fallback_overrides = parse_fallback_pairs(fallbacks)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--fallback") from exc

    overrides: dict[str, Any] = {
        "plan": plan,
        "progress": progress,
        "model": model,
        "adapter": adapter,
        "agent": agent,
        "prompt": prompt,
        "prompt_file": prompt_file,
        "server": server,
        "server_timeout_ms": server_timeout_ms,
        "format": output_format,
        # Flags only override the file when given.
        "timestamps": timestamps or None,
        "max_iterations": max_iterations,
        "max_time": max_time,
        "continue_on_error": continue_on_error or None,
    }

    cwd = Path.cwd()
    try:
        config = load_config(
            Path(config_file) if config_file else None,
            overrides=overrides,
            cwd=cwd,
        )
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    _configure_logging(cwd / config.session.log_file if debug else None)

    exit_code = asyncio.run(_run_loop(config, cwd, fallback_overrides, force, verbose))
    raise SystemExit(exit_code)


def _configure_logging(log_path: Path | None) -> None:
    if log_path is None:
        logging.basicConfig(
            level=logging.WARNING,
            format="%(levelname)s %(name)s: %(message)s",
        )
        return
    logging.basicConfig(
        filename=str(log_path),
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run_loop(
    config: RalphConfig,
    cwd: Path,
    fallback_overrides: dict[str, str],
    force: bool,
    verbose: bool,
) -> int:
    """Wire the engine together and run it under SIGINT/SIGTERM handling."""
    formatter = create_formatter(config.format, verbose=verbose)
    pipeline = HeadlessEventPipeline(formatter, timestamps=config.timestamps)
    executor = create_executor(config.adapter, config.server, config.server_timeout_ms)

    def _build_fallback_executor(adapter: str) -> AgentExecutor:
        return create_executor(adapter, config.server, config.server_timeout_ms)

    engine = LoopEngine(
        config,
        pipeline,
        executor,
        cwd=cwd,
        fallback=FallbackResolver(config.fallback_agents, fallback_overrides),
        executor_factory=_build_fallback_executor,
        force=force,
    )

    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task[None]] = set()

    def _signal_stop(sig_name: str) -> None:
        logger.info("Received %s, stopping", sig_name)
        task = asyncio.create_task(engine.stop())
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; Ctrl+C then raises KeyboardInterrupt.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _signal_stop, sig.name)

    try:
        return await engine.run()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        if stop_tasks:
            await asyncio.gather(*stop_tasks, return_exceptions=True)
