"""Types shared by every agent executor."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True)
class AgentRequest:
    """Everything an executor needs to run one iteration."""

    prompt: str
    iteration: int
    cwd: Path
    model: str | None = None
    agent: str | None = None
    plan_file: str | None = None


# ------------------------------------------------------------------ #
# Agent events (executor -> engine)
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class AgentOutput:
    """A chunk of raw terminal output (ANSI already stripped)."""

    text: str


@dataclass(frozen=True)
class AgentTool:
    name: str
    title: str
    detail: str | None = None


@dataclass(frozen=True)
class AgentReasoning:
    text: str


@dataclass(frozen=True)
class AgentTokens:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass(frozen=True)
class AgentModel:
    model: str


@dataclass(frozen=True)
class AgentPlanModified:
    pass


@dataclass(frozen=True)
class AgentExit:
    """The agent finished.  Terminal event of a session.

    ``stderr`` carries whatever diagnostic text the backend produced;
    in pty mode that is the merged terminal output.
    """

    exit_code: int
    stderr: str = ""


@dataclass(frozen=True)
class AgentError:
    """The agent backend reported a failure.  Terminal event of a session."""

    message: str


AgentEvent = (
    AgentOutput
    | AgentTool
    | AgentReasoning
    | AgentTokens
    | AgentModel
    | AgentPlanModified
    | AgentExit
    | AgentError
)


# ------------------------------------------------------------------ #
# Protocols
# ------------------------------------------------------------------ #


class AgentSession(Protocol):
    """One live agent run."""

    @property
    def session_id(self) -> str | None: ...

    def events(self) -> AsyncIterator[AgentEvent]:
        """Yield events until (and including) an exit or error event."""
        ...

    async def send(self, message: str) -> bool:
        """Forward a steering message; ``False`` if the session is gone."""
        ...

    async def abort(self) -> None: ...

    async def cleanup(self) -> None:
        """Release every resource the session holds.  Idempotent."""
        ...


class AgentExecutor(Protocol):
    """Starts agent sessions for a particular backend."""

    @property
    def agent_id(self) -> str:
        """Identifier used for rate-limit patterns and fallback lookup."""
        ...

    @property
    def mode(self) -> str:
        """``"pty"`` or ``"sdk"``."""
        ...

    async def start(self, request: AgentRequest) -> AgentSession: ...

    async def close(self) -> None: ...
