"""Command builders for agent CLIs driven through a pseudo-terminal."""

from __future__ import annotations

from collections.abc import Callable

from ralph.agent.base import AgentRequest
from ralph.agent.helpers import split_model

#: Adapter that talks to a remote agent server instead of spawning a CLI.
SERVER_ADAPTER = "opencode-server"


def build_opencode_run(request: AgentRequest) -> list[str]:
    cmd = ["opencode", "run"]
    if request.model:
        cmd.extend(["--model", request.model])
    if request.agent:
        cmd.extend(["--agent", request.agent])
    cmd.append(request.prompt)
    return cmd


def build_codex(request: AgentRequest) -> list[str]:
    cmd = ["codex", "exec", "--full-auto"]
    if request.model:
        cmd.extend(["--model", split_model(request.model)[1]])
    cmd.append(request.prompt)
    return cmd


def build_claude(request: AgentRequest) -> list[str]:
    cmd = ["claude", "-p", request.prompt, "--dangerously-skip-permissions"]
    if request.model:
        cmd.extend(["--model", split_model(request.model)[1]])
    if request.agent:
        cmd.extend(["--agent", request.agent])
    return cmd


PTY_ADAPTERS: dict[str, Callable[[AgentRequest], list[str]]] = {
    "opencode-run": build_opencode_run,
    "codex": build_codex,
    "claude": build_claude,
}

#: Every adapter name ``--adapter`` accepts.
ADAPTER_NAMES = (SERVER_ADAPTER, *PTY_ADAPTERS)


def build_command(adapter: str, request: AgentRequest) -> list[str]:
    """Return the argv that runs *request* with *adapter*.

    Raises:
        ValueError: For an adapter that does not spawn a CLI.
    """
    builder = PTY_ADAPTERS.get(adapter)
    if builder is None:
        msg = f"Unknown PTY adapter {adapter!r}; expected one of {', '.join(PTY_ADAPTERS)}"
        raise ValueError(msg)
    return builder(request)
