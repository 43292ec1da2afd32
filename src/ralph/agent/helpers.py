"""Shared helper functions for agent executors."""

from __future__ import annotations

import re

#: CSI/OSC escape sequences and charset switches emitted by terminal UIs.
_ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|[\x1b\x9b][\[()#;?]*(?:\d{1,4}(?:;\d{0,4})*)?[\dA-ORZcf-nqry=><]"
)

#: Longest reasoning line kept; longer lines end in an ellipsis.
MAX_REASONING_CHARS = 80


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from *text*."""
    return _ANSI_RE.sub("", text)


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def truncate_line(line: str, limit: int = MAX_REASONING_CHARS) -> str:
    if len(line) <= limit:
        return line
    return line[: limit - 3] + "..."


def split_model(model: str) -> tuple[str, str]:
    """Split ``provider/model`` into its two halves.

    Raises:
        ValueError: When either half is missing.
    """
    provider, sep, model_id = model.partition("/")
    if not sep or not provider or not model_id:
        msg = (
            f'Invalid model format: "{model}". '
            'Expected "provider/model" (e.g., "anthropic/claude-opus-4")'
        )
        raise ValueError(msg)
    return provider, model_id


class LineAccumulator:
    """Turns a growing text buffer into complete lines.

    :meth:`update` takes the *full* text seen so far for one stream and
    returns only the lines completed since the previous call; a trailing
    partial line is held back.
    """

    def __init__(self) -> None:
        self._consumed = 0

    def update(self, full_text: str) -> list[str]:
        new = full_text[self._consumed :]
        cut = new.rfind("\n")
        if cut < 0:
            return []
        self._consumed += cut + 1
        return [line.strip() for line in new[:cut].split("\n") if line.strip()]
