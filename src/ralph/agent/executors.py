"""Agent executors — PTY-spawned CLIs and remote server sessions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Mapping

import httpx

from ralph.agent.adapters import PTY_ADAPTERS, SERVER_ADAPTER, build_command
from ralph.agent.base import (
    AgentError,
    AgentEvent,
    AgentExit,
    AgentOutput,
    AgentRequest,
    AgentSession,
)
from ralph.agent.helpers import split_model, strip_ansi
from ralph.agent.pty_bridge import ExitInfo, ProcessBridge, ProcessHandle
from ralph.agent.remote import (
    DEFAULT_TIMEOUT_MS,
    RemoteClient,
    ServerConnection,
    ServerEventMapper,
    get_or_create_server,
)

logger = logging.getLogger(__name__)

#: Trailing characters of terminal output kept for rate-limit detection.
_CAPTURE_LIMIT = 65_536


# ------------------------------------------------------------------ #
# PTY
# ------------------------------------------------------------------ #


class PtySession:
    """One agent CLI run inside a pseudo-terminal."""

    def __init__(self, handle: ProcessHandle) -> None:
        self._handle = handle
        self._queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()
        self._captured = ""
        self._closed = False
        handle.on_data(self._on_data)
        handle.on_exit(self._on_exit)

    @property
    def session_id(self) -> str | None:
        return None

    @property
    def pid(self) -> int:
        return self._handle.pid

    async def events(self) -> AsyncIterator[AgentEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if isinstance(event, AgentExit | AgentError):
                return

    async def send(self, message: str) -> bool:
        if self._closed or self._handle.exited:
            return False
        self._handle.write(message + "\r")
        return True

    async def abort(self) -> None:
        self._handle.kill()

    async def cleanup(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._handle.cleanup()
        self._queue.put_nowait(None)

    def _on_data(self, text: str) -> None:
        clean = strip_ansi(text)
        if not clean:
            return
        self._captured = (self._captured + clean)[-_CAPTURE_LIMIT:]
        self._queue.put_nowait(AgentOutput(clean))

    def _on_exit(self, info: ExitInfo) -> None:
        self._queue.put_nowait(AgentExit(exit_code=info.exit_code, stderr=self._captured))


class PtyExecutor:
    """Spawns a fresh agent CLI per iteration."""

    def __init__(
        self,
        adapter: str,
        bridge: ProcessBridge | None = None,
        cols: int = 120,
        rows: int = 40,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if adapter not in PTY_ADAPTERS:
            msg = f"Unknown PTY adapter {adapter!r}"
            raise ValueError(msg)
        self._adapter = adapter
        self._bridge = bridge or ProcessBridge()
        self._cols = cols
        self._rows = rows
        self._env = dict(env or {})

    @property
    def agent_id(self) -> str:
        return self._adapter

    @property
    def mode(self) -> str:
        return "pty"

    async def start(self, request: AgentRequest) -> AgentSession:
        command = build_command(self._adapter, request)
        logger.info("Iteration %d: spawning %s", request.iteration, command[0])
        handle = await self._bridge.spawn(
            command,
            cols=self._cols,
            rows=self._rows,
            cwd=request.cwd,
            env=self._env,
        )
        return PtySession(handle)

    async def close(self) -> None:
        return None


# ------------------------------------------------------------------ #
# Remote server
# ------------------------------------------------------------------ #


class RemoteSession:
    """One prompt/response cycle on a remote agent server.

    The prompt is sent once the event stream reports
    ``server.connected`` so no early events are missed.
    """

    def __init__(
        self,
        client: RemoteClient,
        session_id: str,
        request: AgentRequest,
    ) -> None:
        self._client = client
        self._session_id = session_id
        self._request = request
        self._model = split_model(request.model) if request.model else None
        self._mapper = ServerEventMapper(session_id, plan_file=request.plan_file)
        self._queue: asyncio.Queue[AgentEvent | None] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None
        self._prompt_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def session_id(self) -> str | None:
        return self._session_id

    async def events(self) -> AsyncIterator[AgentEvent]:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if isinstance(event, AgentExit | AgentError):
                return

    async def send(self, message: str) -> bool:
        if self._closed:
            return False
        try:
            await self._client.send_message(
                self._session_id, message, self._model, self._request.agent
            )
        except httpx.HTTPError as exc:
            logger.warning("Steering message to %s failed: %s", self._session_id, exc)
            return False
        return True

    async def abort(self) -> None:
        try:
            await self._client.abort(self._session_id)
        except httpx.HTTPError as exc:
            logger.warning("Abort of session %s failed: %s", self._session_id, exc)

    async def cleanup(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in (self._prompt_task, self._pump_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._queue.put_nowait(None)

    async def _pump(self) -> None:
        try:
            async for raw in self._client.stream_events():
                if raw.get("type") == "server.connected":
                    if self._prompt_task is None:
                        self._prompt_task = asyncio.create_task(self._send_prompt())
                    continue
                for event in self._mapper.map(raw):
                    self._queue.put_nowait(event)
        except httpx.HTTPError as exc:
            self._queue.put_nowait(AgentError(f"Lost connection to server: {exc}"))
            return
        except Exception as exc:
            logger.exception("Event stream for session %s failed", self._session_id)
            self._queue.put_nowait(AgentError(f"Server event stream failed: {exc}"))
            return
        self._queue.put_nowait(AgentError("Server event stream closed unexpectedly"))

    async def _send_prompt(self) -> None:
        try:
            await self._client.send_message(
                self._session_id,
                self._request.prompt,
                self._model,
                self._request.agent,
            )
        except httpx.HTTPError as exc:
            logger.error("Prompt to session %s failed: %s", self._session_id, exc)
            self._queue.put_nowait(AgentError(f"Prompt failed: {exc}"))


class RemoteExecutor:
    """Runs iterations as sessions on an agent server.

    The server connection is established lazily on the first
    :meth:`start` and reused for the rest of the run.
    """

    def __init__(
        self,
        server_url: str | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._server_url = server_url
        self._timeout_ms = timeout_ms
        self._transport = transport
        self._connection: ServerConnection | None = None
        self._client: RemoteClient | None = None

    @property
    def agent_id(self) -> str:
        return SERVER_ADAPTER

    @property
    def mode(self) -> str:
        return "sdk"

    @property
    def connection(self) -> ServerConnection | None:
        return self._connection

    async def start(self, request: AgentRequest) -> AgentSession:
        if self._client is None:
            self._connection = await get_or_create_server(
                self._server_url, self._timeout_ms, transport=self._transport
            )
            self._client = RemoteClient(self._connection.url, transport=self._transport)
        session_id = await self._client.create_session(title=f"ralph iteration {request.iteration}")
        logger.info("Iteration %d: created session %s", request.iteration, session_id)
        return RemoteSession(self._client, session_id, request)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._connection is not None:
            self._connection.close()
            self._connection = None


def create_executor(
    adapter: str,
    server_url: str | None = None,
    server_timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> PtyExecutor | RemoteExecutor:
    """Build the executor for an ``--adapter`` value."""
    if adapter == SERVER_ADAPTER:
        return RemoteExecutor(server_url, server_timeout_ms)
    return PtyExecutor(adapter)
