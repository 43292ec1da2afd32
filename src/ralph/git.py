"""Git statistics for the working directory."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoStats:
    """Repository changes since the run started."""

    commits: int = 0
    lines_added: int = 0
    lines_removed: int = 0


async def _git(cwd: Path, *args: str) -> str | None:
    """Run ``git *args``; ``None`` when git is missing or the command fails."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        logger.debug("git unavailable: %s", exc)
        return None
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        logger.debug("git %s failed: %s", " ".join(args), stderr.decode(errors="replace").strip())
        return None
    return stdout.decode(errors="replace")


async def get_head_hash(cwd: Path) -> str | None:
    out = await _git(cwd, "rev-parse", "HEAD")
    return out.strip() if out else None


async def get_commits_since(cwd: Path, base: str) -> int:
    out = await _git(cwd, "rev-list", "--count", f"{base}..HEAD")
    try:
        return int(out.strip()) if out else 0
    except ValueError:
        return 0


async def get_diff_stats(cwd: Path, base: str) -> tuple[int, int]:
    """Added/removed lines between *base* and the working tree."""
    out = await _git(cwd, "diff", "--numstat", base)
    added = removed = 0
    for line in (out or "").splitlines():
        fields = line.split("\t")
        # Binary files report "-" for both counts.
        if len(fields) < 3 or not fields[0].isdigit() or not fields[1].isdigit():
            continue
        added += int(fields[0])
        removed += int(fields[1])
    return added, removed


class GitStats:
    """Tracks commits and line changes relative to the starting HEAD.

    Outside a git repository (or without git) every collection returns
    zeros.
    """

    def __init__(self, cwd: Path) -> None:
        self._cwd = cwd
        self._base: str | None = None

    @property
    def base(self) -> str | None:
        return self._base

    async def start(self) -> None:
        self._base = await get_head_hash(self._cwd)
        if self._base is None:
            logger.info("No git HEAD in %s; repository stats disabled", self._cwd)

    async def collect(self) -> RepoStats:
        if self._base is None:
            return RepoStats()
        commits = await get_commits_since(self._cwd, self._base)
        added, removed = await get_diff_stats(self._cwd, self._base)
        return RepoStats(commits=commits, lines_added=added, lines_removed=removed)
