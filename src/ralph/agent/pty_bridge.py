"""ProcessBridge — run an agent CLI attached to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import struct
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from ralph.errors import RalphError

if sys.platform != "win32":
    import fcntl
    import pty
    import termios

logger = logging.getLogger(__name__)

#: Bytes read from the pty per readiness callback.
_READ_CHUNK = 65_536

#: Seconds to keep draining the pty after the child exits.  Grandchildren
#: holding the slave open must not delay the exit notification forever.
_EOF_GRACE = 1.0

#: Whether real pseudo-terminals are available on this platform.
PTY_SUPPORTED = sys.platform != "win32"

DataCallback = Callable[[str], None]
ExitCallback = Callable[["ExitInfo"], None]


class AgentSpawnError(RalphError):
    """The agent binary could not be started."""


@dataclass(frozen=True)
class ExitInfo:
    """How a child process ended."""

    exit_code: int
    signal: int | None = None


def build_child_env(
    cols: int,
    rows: int,
    env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Parent env, then terminal defaults, then *env* (which wins)."""
    child_env = dict(os.environ)
    child_env["TERM"] = "xterm-256color"
    child_env["COLUMNS"] = str(cols)
    child_env["LINES"] = str(rows)
    if env:
        child_env.update(env)
    return child_env


class ProcessHandle:
    """A running child process plus its terminal.

    Output is delivered to :meth:`on_data` subscribers in arrival order,
    decoded incrementally as UTF-8.  :meth:`on_exit` subscribers fire
    exactly once.  After :meth:`cleanup` the handle is inert: nothing is
    delivered and ``write``/``resize`` are ignored.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int | None,
    ) -> None:
        self._process = process
        self._master_fd = master_fd
        self._loop = asyncio.get_running_loop()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._data_subscribers: list[DataCallback] = []
        self._exit_subscribers: list[ExitCallback] = []
        self._exit_info: asyncio.Future[ExitInfo] = self._loop.create_future()
        self._eof = asyncio.Event()
        self._cleaned = False
        self._reader_task: asyncio.Task[None] | None = None

        if master_fd is not None:
            os.set_blocking(master_fd, False)
            self._loop.add_reader(master_fd, self._on_readable)
        else:
            self._reader_task = asyncio.create_task(self._pipe_reader())
        self._exit_task = asyncio.create_task(self._watch_exit())

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exited(self) -> bool:
        return self._exit_info.done()

    @property
    def exit_info(self) -> ExitInfo | None:
        return self._exit_info.result() if self._exit_info.done() else None

    def on_data(self, callback: DataCallback) -> Callable[[], None]:
        """Subscribe to output; returns an unsubscribe function."""
        if self._cleaned:
            return lambda: None
        self._data_subscribers.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._data_subscribers.remove(callback)

        return unsubscribe

    def on_exit(self, callback: ExitCallback) -> None:
        """Subscribe to exit.  Late subscribers are called immediately."""
        if self._cleaned:
            return
        if self._exit_info.done():
            _safe_call(callback, self._exit_info.result())
            return
        self._exit_subscribers.append(callback)

    async def wait(self) -> ExitInfo:
        return await asyncio.shield(self._exit_info)

    def write(self, data: str | bytes) -> None:
        if self._cleaned or self._exit_info.done():
            return
        payload = data.encode("utf-8") if isinstance(data, str) else data
        if self._master_fd is not None:
            with contextlib.suppress(OSError):
                os.write(self._master_fd, payload)
            return
        stdin = self._process.stdin
        if stdin is not None:
            with contextlib.suppress(BrokenPipeError, ConnectionResetError, OSError):
                stdin.write(payload)

    def resize(self, cols: int, rows: int) -> None:
        if self._cleaned or self._exit_info.done() or self._master_fd is None:
            return
        winsize = struct.pack("HHHH", rows, cols, 0, 0)
        with contextlib.suppress(OSError):
            fcntl.ioctl(self._master_fd, termios.TIOCSWINSZ, winsize)

    def kill(self, sig: int = signal.SIGTERM) -> None:
        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self._process.send_signal(sig)

    def cleanup(self) -> None:
        """Stop all delivery, close the terminal, and kill the child.  Idempotent."""
        if self._cleaned:
            return
        self._cleaned = True
        self._data_subscribers.clear()
        self._exit_subscribers.clear()
        self._close_master()
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _deliver(self, chunk: bytes, final: bool = False) -> None:
        text = self._decoder.decode(chunk, final=final)
        if not text or self._cleaned:
            return
        for callback in list(self._data_subscribers):
            _safe_call(callback, text)

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            chunk = os.read(self._master_fd, _READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once every slave descriptor is closed.
            chunk = b""
        if chunk:
            self._deliver(chunk)
            return
        self._deliver(b"", final=True)
        self._loop.remove_reader(self._master_fd)
        self._eof.set()

    async def _pipe_reader(self) -> None:
        stdout = self._process.stdout
        if stdout is None:
            self._eof.set()
            return
        try:
            while chunk := await stdout.read(_READ_CHUNK):
                self._deliver(chunk)
            self._deliver(b"", final=True)
        finally:
            self._eof.set()

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._eof.wait(), timeout=_EOF_GRACE)

        if returncode < 0:
            info = ExitInfo(exit_code=128 - returncode, signal=-returncode)
        else:
            info = ExitInfo(exit_code=returncode)
        logger.debug("Child %d exited: %s", self._process.pid, info)

        self._exit_info.set_result(info)
        subscribers, self._exit_subscribers = self._exit_subscribers, []
        if not self._cleaned:
            for callback in subscribers:
                _safe_call(callback, info)
        self._close_master()

    def _close_master(self) -> None:
        fd, self._master_fd = self._master_fd, None
        if fd is None:
            return
        with contextlib.suppress(ValueError, OSError):
            self._loop.remove_reader(fd)
        with contextlib.suppress(OSError):
            os.close(fd)


class ProcessBridge:
    """Spawns agent commands in a pseudo-terminal (pipes on Windows)."""

    def __init__(self, use_pty: bool | None = None) -> None:
        self._use_pty = PTY_SUPPORTED if use_pty is None else use_pty

    async def spawn(
        self,
        command: Sequence[str],
        cols: int = 80,
        rows: int = 24,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        """Start *command* and return its handle.

        Raises:
            AgentSpawnError: When the executable is missing or cannot run.
        """
        if not command:
            msg = "Cannot spawn an empty command"
            raise AgentSpawnError(msg)

        child_env = build_child_env(cols, rows, env)
        if self._use_pty:
            return await self._spawn_pty(command, cols, rows, cwd, child_env)
        return await self._spawn_pipes(command, cwd, child_env)

    async def _spawn_pty(
        self,
        command: Sequence[str],
        cols: int,
        rows: int,
        cwd: str | os.PathLike[str] | None,
        env: dict[str, str],
    ) -> ProcessHandle:
        master_fd, slave_fd = pty.openpty()
        fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            os.close(master_fd)
            msg = f"Agent command not found: {command[0]}. Is it installed and on your PATH?"
            raise AgentSpawnError(msg) from exc
        except OSError as exc:
            os.close(master_fd)
            msg = f"Failed to spawn {command[0]}: {exc}"
            raise AgentSpawnError(msg) from exc
        finally:
            os.close(slave_fd)
        logger.debug("Spawned %s (pid %d) in a %dx%d pty", command[0], process.pid, cols, rows)
        return ProcessHandle(process, master_fd)

    async def _spawn_pipes(
        self,
        command: Sequence[str],
        cwd: str | os.PathLike[str] | None,
        env: dict[str, str],
    ) -> ProcessHandle:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd,
                env=env,
            )
        except FileNotFoundError as exc:
            msg = f"Agent command not found: {command[0]}. Is it installed and on your PATH?"
            raise AgentSpawnError(msg) from exc
        except OSError as exc:
            msg = f"Failed to spawn {command[0]}: {exc}"
            raise AgentSpawnError(msg) from exc
        logger.debug("Spawned %s (pid %d) with pipes", command[0], process.pid)
        return ProcessHandle(process, None)


def _safe_call(callback: Callable[..., None], *args: object) -> None:
    try:
        callback(*args)
    except Exception:
        logger.exception("Process subscriber %r raised", callback)
