"""Output sinks for headless events."""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import IO, Any, Literal, Protocol

import click

from ralph.events.models import HeadlessEvent, HeadlessSummary, event_to_dict

logger = logging.getLogger(__name__)

OutputFormat = Literal["text", "jsonl", "json"]


class EventFormatter(Protocol):
    """Anything that can receive the event stream of one run."""

    def emit(self, event: HeadlessEvent) -> None: ...

    def finalize(self, summary: HeadlessSummary) -> None: ...


class _StreamWriter:
    """Serialized, flushed line writer shared by the formatters below."""

    def __init__(
        self,
        stream: IO[str] | None = None,
        write: Callable[[str], None] | None = None,
    ) -> None:
        self._stream = stream
        self._write = write
        self._lock = threading.Lock()

    def line(self, text: str) -> None:
        with self._lock:
            if self._write is not None:
                self._write(text + "\n")
                return
            stream = self._stream if self._stream is not None else sys.stdout
            stream.write(text + "\n")
            stream.flush()


# ------------------------------------------------------------------ #
# JSON lines
# ------------------------------------------------------------------ #


class JsonlFormatter:
    """One JSON object per line, flushed after every event.

    ``finalize`` appends a ``{"type": "summary", ...}`` record; events
    arriving after that are dropped.
    """

    def __init__(
        self,
        stream: IO[str] | None = None,
        write: Callable[[str], None] | None = None,
    ) -> None:
        self._out = _StreamWriter(stream, write)
        self._closed = False

    def emit(self, event: HeadlessEvent) -> None:
        if self._closed:
            return
        self._out.line(json.dumps(event_to_dict(event)))

    def finalize(self, summary: HeadlessSummary) -> None:
        if self._closed:
            return
        self._closed = True
        record = {"type": "summary", **summary.model_dump(by_alias=True)}
        self._out.line(json.dumps(record))


# ------------------------------------------------------------------ #
# Single JSON document
# ------------------------------------------------------------------ #


class JsonFormatter:
    """Buffers every event and writes one JSON document on finalize."""

    def __init__(
        self,
        stream: IO[str] | None = None,
        write: Callable[[str], None] | None = None,
    ) -> None:
        self._out = _StreamWriter(stream, write)
        self._events: list[dict[str, Any]] = []
        self._closed = False

    @property
    def events(self) -> list[dict[str, Any]]:
        return list(self._events)

    def emit(self, event: HeadlessEvent) -> None:
        if self._closed:
            return
        self._events.append(event_to_dict(event))

    def finalize(self, summary: HeadlessSummary) -> None:
        if self._closed:
            return
        self._closed = True
        document = {
            "events": self._events,
            "summary": summary.model_dump(by_alias=True),
        }
        self._out.line(json.dumps(document, indent=2))


# ------------------------------------------------------------------ #
# Human-readable text
# ------------------------------------------------------------------ #


class TextFormatter:
    """Terse coloured log lines for a terminal.

    Raw ``output`` and ``prompt`` events are skipped unless *verbose*;
    reasoning and tool lines carry the iteration number as a prefix.
    """

    def __init__(
        self,
        stream: IO[str] | None = None,
        write: Callable[[str], None] | None = None,
        verbose: bool = False,
        color: bool | None = None,
    ) -> None:
        self._out = _StreamWriter(stream, write)
        self._verbose = verbose
        self._color = color
        self._closed = False

    def emit(self, event: HeadlessEvent) -> None:
        if self._closed:
            return
        line = self._render(event)
        if line is None:
            return
        if event.timestamp is not None:
            stamp = datetime.fromtimestamp(event.timestamp / 1000, tz=UTC)
            line = f"{stamp.strftime('%H:%M:%S')} {line}"
        self._out.line(line)

    def finalize(self, summary: HeadlessSummary) -> None:
        if self._closed:
            return
        self._closed = True
        colour = "green" if summary.exit_code == 0 else "red"
        self._out.line(
            self._style(
                f"Finished (exit {summary.exit_code}) after "
                f"{summary.iterations} iteration(s) in "
                f"{_format_duration(summary.duration_ms)}: "
                f"{summary.tasks_complete}/{summary.total_tasks} tasks, "
                f"{summary.commits} commit(s), "
                f"+{summary.lines_added}/-{summary.lines_removed}",
                fg=colour,
                bold=True,
            )
        )

    def _style(self, text: str, **styles: Any) -> str:
        if self._color is False:
            return text
        return click.style(text, **styles)

    def _render(self, event: Any) -> str | None:
        match event.type:
            case "iteration_start":
                task = f": {event.task}" if event.task else ""
                return self._style(f"▶ Iteration {event.iteration}{task}", bold=True)
            case "iteration_end":
                return self._style(
                    f"✔ Iteration {event.iteration} done in "
                    f"{_format_duration(event.duration_ms)} "
                    f"({event.commits} commit(s))",
                    fg="green",
                )
            case "tool":
                detail = f" {event.detail}" if event.detail else ""
                return f"  [{event.iteration}] {event.name}: {event.title}{detail}"
            case "reasoning":
                return self._style(f"  [{event.iteration}] {event.text}", dim=True)
            case "progress":
                return f"Progress: {event.done}/{event.total} tasks"
            case "stats":
                return (
                    f"Stats: {event.commits} commit(s), "
                    f"+{event.lines_added}/-{event.lines_removed}"
                )
            case "pause":
                return self._style("Paused", fg="yellow")
            case "resume":
                return self._style("Resumed", fg="yellow")
            case "complete":
                return self._style("All tasks complete", fg="green", bold=True)
            case "error":
                return self._style(f"Error: {event.message}", fg="red")
            case "backoff":
                return self._style(
                    f"Backing off {_format_duration(event.backoff_ms)} "
                    f"(attempt {event.attempt})",
                    fg="yellow",
                )
            case "backoff_cleared":
                return self._style("Retrying", fg="yellow")
            case "rate_limit":
                target = (
                    f", switching to {event.fallback_agent}"
                    if event.fallback_agent
                    else ""
                )
                return self._style(
                    f"Rate limited on {event.primary_agent}{target}", fg="yellow"
                )
            case "active_agent":
                return f"Active agent: {event.agent} ({event.reason})"
            case "model":
                return f"Model: {event.model}"
            case "session":
                return f"Session {event.action}: {event.session_id}"
            case "output":
                return event.data.rstrip("\n") if self._verbose else None
            case "prompt":
                return event.prompt if self._verbose else None
            case "tokens":
                if not self._verbose:
                    return None
                return f"  tokens: in={event.input} out={event.output}"
            case _:
                return None


def _format_duration(ms: int) -> str:
    seconds = ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m{seconds:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


# ------------------------------------------------------------------ #
# Fan-out
# ------------------------------------------------------------------ #


class FanOutFormatter:
    """Forwards every call to several formatters.

    A failing child is logged and skipped so the others still receive
    the event.
    """

    def __init__(self, formatters: Sequence[EventFormatter]) -> None:
        self._formatters = list(formatters)

    def emit(self, event: HeadlessEvent) -> None:
        for formatter in self._formatters:
            try:
                formatter.emit(event)
            except Exception:
                logger.exception("Formatter %r failed on %s", formatter, event.type)

    def finalize(self, summary: HeadlessSummary) -> None:
        for formatter in self._formatters:
            try:
                formatter.finalize(summary)
            except Exception:
                logger.exception("Formatter %r failed to finalize", formatter)


def create_formatter(
    output_format: OutputFormat,
    stream: IO[str] | None = None,
    verbose: bool = False,
) -> EventFormatter:
    """Build the formatter for ``--format``."""
    match output_format:
        case "jsonl":
            return JsonlFormatter(stream)
        case "json":
            return JsonFormatter(stream)
        case "text":
            return TextFormatter(stream, verbose=verbose)
    msg = f"Unknown output format: {output_format!r}"
    raise ValueError(msg)
