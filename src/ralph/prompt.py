"""Prompt templates for agent iterations."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = (
    "READ all of {plan} and {progress}. Pick ONE unchecked task "
    "(prefer highest-risk/highest-impact). Keep changes small: one logical "
    "change per commit. Update {plan} by checking the task off and adding "
    "notes or steps as needed. Append a brief entry to {progress} with what "
    "changed and why. Run the project's feedback loops (tests, type checks, "
    "linters) before committing; if one is missing, note it in {progress} "
    "and continue. Commit the change (update {plan} in the same commit). "
    "ONLY do one task unless GLARINGLY OBVIOUS steps should run together. "
    "Quality bar: production code, maintainable, tests when appropriate. "
    "If you learn a critical operational detail, update AGENTS.md. When ALL "
    "tasks complete, create .ralph-done and output <promise>COMPLETE</promise>. "
    "NEVER GIT PUSH. ONLY COMMIT."
)

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n.*?\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


def strip_front_matter(text: str) -> str:
    return _FRONT_MATTER_RE.sub("", text, count=1).lstrip("\n")


def load_template(prompt: str | None, prompt_file: Path | None) -> str:
    """Pick the template: inline prompt, then prompt file, then the default."""
    if prompt and prompt.strip():
        return prompt
    if prompt_file is not None:
        try:
            text = prompt_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return DEFAULT_PROMPT
        except OSError as exc:
            logger.warning("Cannot read prompt file %s: %s", prompt_file, exc)
            return DEFAULT_PROMPT
        logger.debug("Loaded prompt from %s", prompt_file)
        return strip_front_matter(text)
    return DEFAULT_PROMPT


def render(template: str, plan: str, progress: str, task: str | None = None) -> str:
    """Fill in the plan, progress, and task placeholders.

    Both ``{plan}`` and ``{{PLAN_FILE}}`` spellings are accepted (likewise
    for progress); ``{task}`` becomes the current task text.
    """
    rendered = (
        template.replace("{{PLAN_FILE}}", plan)
        .replace("{plan}", plan)
        .replace("{{PROGRESS_FILE}}", progress)
        .replace("{progress}", progress)
    )
    return rendered.replace("{task}", task or "")


def apply_steering(prompt: str, messages: Sequence[str]) -> str:
    """Append queued steering messages to *prompt*."""
    context = [m.strip() for m in messages if m.strip()]
    if not context:
        return prompt
    joined = "\n".join(context)
    return f"{prompt}\n\nAdditional context from user:\n{joined}"
