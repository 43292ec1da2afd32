"""Per-platform process primitives — liveness, termination, port lookup.

The rest of ralph only talks to :class:`ProcessPlatform`; the concrete
strategy is picked once by :func:`get_platform`.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import sys
from typing import Protocol

logger = logging.getLogger(__name__)

#: Seconds allowed for helper commands (``lsof``, ``tasklist``, ...).
_HELPER_TIMEOUT = 5.0

_NETSTAT_LISTEN_RE = re.compile(r"^\s*TCP\s+\S+:(\d+)\s+\S+\s+LISTENING\s+(\d+)", re.I)


class ProcessPlatform(Protocol):
    """Process operations whose implementation differs per OS."""

    def is_process_running(self, pid: int) -> bool: ...

    def terminate(self, pid: int, *, force: bool = False) -> bool: ...

    def pids_listening_on(self, port: int) -> list[int]: ...


class PosixPlatform:
    """Linux / macOS implementation based on signals and ``lsof``."""

    def is_process_running(self, pid: int) -> bool:
        """Probe *pid* with signal 0.

        Only "no such process" counts as dead; any other failure (e.g.
        ``EPERM`` for another user's process) is treated as alive.
        """
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except OSError:
            return True
        return True

    def terminate(self, pid: int, *, force: bool = False) -> bool:
        """Send SIGTERM (or SIGKILL with *force*). Returns False if gone."""
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        return True

    def pids_listening_on(self, port: int) -> list[int]:
        try:
            result = subprocess.run(
                ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
                capture_output=True,
                text=True,
                timeout=_HELPER_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Port lookup for %d failed: %s", port, exc)
            return []
        return _parse_pid_lines(result.stdout)


class WindowsPlatform:
    """Windows implementation based on ``tasklist``/``taskkill``/``netstat``.

    ``os.kill(pid, 0)`` is not a probe on Windows (signal 0 is
    ``CTRL_C_EVENT``), so liveness goes through ``tasklist``.
    """

    def is_process_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            result = subprocess.run(
                ["tasklist", "/FI", f"PID eq {pid}", "/NH", "/FO", "CSV"],
                capture_output=True,
                text=True,
                timeout=_HELPER_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return True
        return f'"{pid}"' in result.stdout

    def terminate(self, pid: int, *, force: bool = False) -> bool:
        args = ["taskkill", "/PID", str(pid), "/T"]
        if force:
            args.append("/F")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=_HELPER_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("taskkill for PID %d failed: %s", pid, exc)
            return False
        return result.returncode == 0

    def pids_listening_on(self, port: int) -> list[int]:
        try:
            result = subprocess.run(
                ["netstat", "-ano", "-p", "TCP"],
                capture_output=True,
                text=True,
                timeout=_HELPER_TIMEOUT,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Port lookup for %d failed: %s", port, exc)
            return []
        pids: list[int] = []
        for line in result.stdout.splitlines():
            match = _NETSTAT_LISTEN_RE.match(line)
            if match and int(match.group(1)) == port:
                pid = int(match.group(2))
                if pid not in pids:
                    pids.append(pid)
        return pids


def _parse_pid_lines(text: str) -> list[int]:
    pids: list[int] = []
    for line in text.splitlines():
        line = line.strip()
        if line.isdigit():
            pid = int(line)
            if pid not in pids:
                pids.append(pid)
    return pids


def get_platform() -> ProcessPlatform:
    """Return the strategy for the running OS."""
    if sys.platform == "win32":
        return WindowsPlatform()
    return PosixPlatform()
