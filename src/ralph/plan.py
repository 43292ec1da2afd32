"""Task plan reader — markdown checklists and PRD-style JSON."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_CHECKBOX_RE = re.compile(r"^(\s*)-\s*\[([ xX])\]\s*(.+)$")
_FENCE = "```"


@dataclass(frozen=True)
class Task:
    """One checklist item."""

    id: str
    text: str
    done: bool
    line: int | None = None


@dataclass(frozen=True)
class PlanProgress:
    done: int
    total: int

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.done == self.total


def parse_markdown_tasks(content: str) -> list[Task]:
    """Collect ``- [ ]`` / ``- [x]`` items, skipping fenced code blocks."""
    tasks: list[Task] = []
    in_code_block = False
    for number, line in enumerate(content.split("\n"), start=1):
        if line.strip().startswith(_FENCE):
            in_code_block = not in_code_block
            continue
        if in_code_block:
            continue
        match = _CHECKBOX_RE.match(line)
        if match:
            tasks.append(
                Task(
                    id=f"task-{number}",
                    text=match.group(3).strip(),
                    done=match.group(2).lower() == "x",
                    line=number,
                )
            )
    return tasks


def parse_prd_tasks(data: Any) -> list[Task]:
    """Read ``{"items": [{"description", "passes"}]}`` or a bare item list."""
    items = data.get("items", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []
    tasks: list[Task] = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            continue
        text = item.get("description") or item.get("title") or ""
        if not text:
            continue
        tasks.append(
            Task(
                id=str(item.get("id") or f"item-{index}"),
                text=str(text).strip(),
                done=item.get("passes") is True,
            )
        )
    return tasks


class PlanReader:
    """Reads the plan file fresh on every call; agents edit it mid-run."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def tasks(self) -> list[Task]:
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning("Cannot read plan %s: %s", self._path, exc)
            return []
        if self._path.suffix.lower() == ".json" or content.lstrip().startswith(("{", "[")):
            try:
                return parse_prd_tasks(json.loads(content))
            except json.JSONDecodeError as exc:
                logger.warning("Plan %s is not valid JSON: %s", self._path, exc)
                return []
        return parse_markdown_tasks(content)

    def progress(self) -> PlanProgress:
        tasks = self.tasks()
        return PlanProgress(done=sum(t.done for t in tasks), total=len(tasks))

    def next_task(self) -> Task | None:
        return next((t for t in self.tasks() if not t.done), None)
