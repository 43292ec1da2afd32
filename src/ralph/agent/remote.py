"""Remote agent server — URL validation, health checks, and the session client.

The server speaks a small HTTP API: ``GET /global/health``, ``POST
/session``, ``POST /session/{id}/message``, ``POST /session/{id}/abort``
and a server-sent event stream on ``GET /event``.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlsplit

import httpx

from ralph.agent.base import (
    AgentError,
    AgentEvent,
    AgentExit,
    AgentModel,
    AgentPlanModified,
    AgentReasoning,
    AgentTokens,
    AgentTool,
)
from ralph.agent.helpers import LineAccumulator, truncate_line
from ralph.constants import DEFAULT_SERVER_HOST, DEFAULT_SERVER_PORT
from ralph.errors import RalphError

logger = logging.getLogger(__name__)

#: Default health-check timeout in milliseconds.
DEFAULT_TIMEOUT_MS = 5_000

#: Health-check timeout used when probing for an already-running local server.
_PROBE_TIMEOUT_MS = 1_000

#: Seconds allowed for a freshly spawned local server to become healthy.
_SPAWN_READY_SECONDS = 30.0

_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class InvalidURLError(RalphError):
    """The server URL could not be parsed."""


class InvalidProtocolError(RalphError):
    """The server URL does not use http or https."""


class ServerURLError(RalphError):
    """The server URL carries a path, query, or fragment."""


class ConnectionFailedError(RalphError):
    """The server is unreachable or reports itself unhealthy."""


# ------------------------------------------------------------------ #
# URL handling and health
# ------------------------------------------------------------------ #


def validate_and_normalize_server_url(url: str) -> str:
    """Return ``scheme://host[:port]`` for *url*.

    Raises:
        InvalidURLError: When *url* has no scheme or host.
        InvalidProtocolError: When the scheme is not http/https.
        ServerURLError: When anything beyond the origin is present.
    """
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as exc:
        msg = f"Invalid URL format: {url}"
        raise InvalidURLError(msg) from exc
    if not parts.scheme or not parts.hostname:
        msg = f"Invalid URL format: {url}"
        raise InvalidURLError(msg)
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        msg = f"Invalid protocol: {scheme}:. Must be http or https."
        raise InvalidProtocolError(msg)
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        msg = f"Server URL must be origin only (no path/query/fragment): {url}"
        raise ServerURLError(msg)

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    default_port = 443 if scheme == "https" else 80
    if port is not None and port != default_port:
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


def is_localhost(url: str) -> bool:
    return urlsplit(url).hostname in _LOCAL_HOSTS


def auth_headers() -> dict[str, str]:
    """Basic auth headers from ``RALPH_SERVER_PASSWORD``, if set."""
    password = os.environ.get("RALPH_SERVER_PASSWORD")
    if not password:
        return {}
    username = os.environ.get("RALPH_SERVER_USERNAME") or "opencode"
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return {"Authorization": f"Basic {token}"}


@dataclass(frozen=True)
class HealthResult:
    ok: bool
    reason: Literal["unreachable", "unhealthy"] | None = None


async def check_server_health(
    url: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HealthResult:
    """Probe ``{url}/global/health``.  Never raises."""
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_ms / 1000),
            headers=auth_headers(),
            transport=transport,
        ) as client:
            response = await client.get(f"{url}/global/health")
    except httpx.HTTPError as exc:
        logger.debug("Health check of %s failed: %s", url, exc)
        return HealthResult(ok=False, reason="unreachable")

    if response.status_code != 200:
        return HealthResult(ok=False, reason="unhealthy")
    try:
        healthy = response.json().get("healthy") is True
    except (ValueError, AttributeError):
        return HealthResult(ok=False, reason="unhealthy")
    return HealthResult(ok=True) if healthy else HealthResult(ok=False, reason="unhealthy")


@dataclass
class ServerConnection:
    """A server ralph talks to.  Only servers ralph started are closed."""

    url: str
    attached: bool = True
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)

    def close(self) -> None:
        if self.attached or self._process is None:
            return
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.terminate()
        self._process = None


async def connect_to_external_server(
    url: str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ServerConnection:
    """Validate *url* and confirm the server there is healthy.

    Raises:
        InvalidURLError, InvalidProtocolError, ServerURLError: Bad URL.
        ConnectionFailedError: Unreachable or unhealthy server.
    """
    normalized = validate_and_normalize_server_url(url)
    if not normalized.startswith("https://") and not is_localhost(normalized):
        logger.warning(
            "Using insecure HTTP connection to non-localhost server %s", normalized
        )

    health = await check_server_health(normalized, timeout_ms, transport=transport)
    if not health.ok:
        if health.reason == "unreachable":
            msg = f"Cannot connect to server at {normalized}"
        else:
            msg = f"Server unhealthy at {normalized}"
        raise ConnectionFailedError(msg)

    logger.info("Connected to external server %s", normalized)
    return ServerConnection(url=normalized, attached=True)


async def get_or_create_server(
    server_url: str | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    hostname: str = DEFAULT_SERVER_HOST,
    port: int = DEFAULT_SERVER_PORT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ServerConnection:
    """Attach to *server_url*, or to a local server, or start ``opencode serve``."""
    if server_url:
        return await connect_to_external_server(server_url, timeout_ms, transport)

    local_url = f"http://{hostname}:{port}"
    probe = await check_server_health(local_url, _PROBE_TIMEOUT_MS, transport=transport)
    if probe.ok:
        logger.info("Attached to existing server at %s", local_url)
        return ServerConnection(url=local_url, attached=True)

    logger.info("No server at %s, starting opencode serve", local_url)
    try:
        process = await asyncio.create_subprocess_exec(
            "opencode",
            "serve",
            "--port",
            str(port),
            "--hostname",
            hostname,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        msg = f"Cannot start opencode server: {exc}"
        raise ConnectionFailedError(msg) from exc

    connection = ServerConnection(url=local_url, attached=False, _process=process)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + _SPAWN_READY_SECONDS
    while loop.time() < deadline:
        if process.returncode is not None:
            break
        health = await check_server_health(local_url, _PROBE_TIMEOUT_MS, transport=transport)
        if health.ok:
            return connection
        await asyncio.sleep(0.5)

    connection.close()
    msg = f"Cannot connect to server at {local_url}"
    raise ConnectionFailedError(msg)


# ------------------------------------------------------------------ #
# Session client
# ------------------------------------------------------------------ #


class RemoteClient:
    """Thin async wrapper over the server's session API."""

    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        # The event stream stays open for a whole iteration, so no read timeout.
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=auth_headers(),
            timeout=httpx.Timeout(30.0, read=None),
            transport=transport,
        )

    async def create_session(self, title: str | None = None) -> str:
        body: dict[str, Any] = {"title": title} if title else {}
        response = await self._client.post("/session", json=body)
        response.raise_for_status()
        session_id = response.json().get("id")
        if not isinstance(session_id, str) or not session_id:
            msg = f"Server returned no session id: {response.text[:200]}"
            raise ConnectionFailedError(msg)
        return session_id

    async def send_message(
        self,
        session_id: str,
        text: str,
        model: tuple[str, str] | None = None,
        agent: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model is not None:
            body["model"] = {"providerID": model[0], "modelID": model[1]}
        if agent:
            body["agent"] = agent
        response = await self._client.post(f"/session/{session_id}/message", json=body)
        response.raise_for_status()

    async def abort(self, session_id: str) -> None:
        response = await self._client.post(f"/session/{session_id}/abort")
        response.raise_for_status()

    async def stream_events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded server-sent events from ``GET /event``."""
        async with self._client.stream("GET", "/event") as response:
            response.raise_for_status()
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line or not data_lines:
                    continue
                payload = "\n".join(data_lines)
                data_lines = []
                event = _decode_event(payload)
                if event is not None:
                    yield event
            if data_lines:
                event = _decode_event("\n".join(data_lines))
                if event is not None:
                    yield event

    async def aclose(self) -> None:
        await self._client.aclose()


def _decode_event(payload: str) -> dict[str, Any] | None:
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Ignoring undecodable server event: %.200s", payload)
        return None
    return event if isinstance(event, dict) else None


# ------------------------------------------------------------------ #
# Event mapping
# ------------------------------------------------------------------ #


@dataclass
class ServerEventMapper:
    """Turns raw server events for one session into agent events.

    Text parts grow in place on the server, so completed lines are
    tracked per part id and each line is reported once.
    """

    session_id: str
    plan_file: str | None = None
    _text_lines: dict[str, LineAccumulator] = field(default_factory=dict)

    def map(self, event: dict[str, Any]) -> list[AgentEvent]:
        event_type = event.get("type")
        props = _as_dict(event.get("properties"))

        match event_type:
            case "message.updated":
                info = _as_dict(props.get("info"))
                if (
                    info.get("sessionID") == self.session_id
                    and info.get("role") == "assistant"
                    and info.get("providerID")
                    and info.get("modelID")
                ):
                    return [AgentModel(f"{info['providerID']}/{info['modelID']}")]
            case "message.part.updated":
                part = _as_dict(props.get("part"))
                if part.get("sessionID") != self.session_id:
                    return []
                match part.get("type"):
                    case "tool":
                        state = _as_dict(part.get("state"))
                        if state.get("status") == "completed":
                            return [_tool_event(part.get("tool", "tool"), state)]
                    case "text":
                        text = str(part.get("text") or "")
                        part_id = str(part.get("id", ""))
                        lines = self._text_lines.setdefault(part_id, LineAccumulator())
                        return [AgentReasoning(truncate_line(line)) for line in lines.update(text)]
                    case "step-finish":
                        tokens = _as_dict(part.get("tokens"))
                        cache = _as_dict(tokens.get("cache"))
                        return [
                            AgentTokens(
                                input=_as_count(tokens.get("input")),
                                output=_as_count(tokens.get("output")),
                                reasoning=_as_count(tokens.get("reasoning")),
                                cache_read=_as_count(cache.get("read")),
                                cache_write=_as_count(cache.get("write")),
                            )
                        ]
            case "session.idle":
                if props.get("sessionID") == self.session_id:
                    return [AgentExit(exit_code=0)]
            case "session.error":
                error = props.get("error")
                if props.get("sessionID") == self.session_id and error:
                    return [AgentError(_error_message(error))]
            case "file.edited" | "file.watcher.updated":
                if self._is_plan_file(str(props.get("file", ""))):
                    return [AgentPlanModified()]
        return []

    def _is_plan_file(self, path: str) -> bool:
        if not self.plan_file or not path:
            return False
        name = self.plan_file.replace("\\", "/").rsplit("/", 1)[-1]
        return (
            path == self.plan_file
            or path.endswith(f"/{name}")
            or path.endswith(f"\\{name}")
        )


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_count(value: Any) -> int:
    """Token counts arrive as ints, numeric strings, or null."""
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _tool_event(tool: str, state: dict[str, Any]) -> AgentTool:
    tool_input = _as_dict(state.get("input"))
    title = state.get("title") or (json.dumps(tool_input) if tool_input else "Unknown")
    detail: str | None = None
    for key in ("filePath", "path", "command"):
        if tool_input.get(key):
            detail = str(tool_input[key])
            break
    else:
        if tool_input:
            detail = json.dumps(tool_input, separators=(",", ":"))
    return AgentTool(name=str(tool), title=str(title), detail=detail)


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return str(error.get("name", "Unknown server error"))
    return str(error)
