"""Pydantic v2 models for headless events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic.alias_generators import to_camel


class _EventBase(BaseModel):
    """Common envelope shared by every headless event."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    timestamp: int | None = Field(
        default=None,
        description="Epoch milliseconds (only set when timestamps are enabled)",
    )


class IterationStartEvent(_EventBase):
    """An iteration began (also re-emitted when a task is retried)."""

    type: Literal["iteration_start"] = "iteration_start"
    iteration: int = Field(ge=1, description="Iteration number (1-indexed)")
    task: str | None = Field(default=None, description="Task being worked on")


class IterationEndEvent(_EventBase):
    """An iteration finished cleanly."""

    type: Literal["iteration_end"] = "iteration_end"
    iteration: int = Field(ge=1, description="Iteration number (1-indexed)")
    duration_ms: int = Field(ge=0, description="Iteration wall time")
    commits: int = Field(ge=0, description="Commits made during the iteration")


class ToolEvent(_EventBase):
    """The agent completed a tool call."""

    type: Literal["tool"] = "tool"
    iteration: int
    name: str = Field(description="Tool name")
    title: str = Field(description="Human-readable summary")
    detail: str | None = Field(default=None, description="Path, command, or args")


class ReasoningEvent(_EventBase):
    """One complete line of agent text output."""

    type: Literal["reasoning"] = "reasoning"
    iteration: int
    text: str


class ProgressEvent(_EventBase):
    """Task counts read from the plan."""

    type: Literal["progress"] = "progress"
    done: int = Field(ge=0)
    total: int = Field(ge=0)


class StatsEvent(_EventBase):
    """Repository statistics since the run started."""

    type: Literal["stats"] = "stats"
    commits: int = Field(ge=0)
    lines_added: int = Field(ge=0)
    lines_removed: int = Field(ge=0)


class PauseEvent(_EventBase):
    type: Literal["pause"] = "pause"


class ResumeEvent(_EventBase):
    type: Literal["resume"] = "resume"


class IdleEvent(_EventBase):
    """The agent started or stopped producing output."""

    type: Literal["idle"] = "idle"
    is_idle: bool


class CompleteEvent(_EventBase):
    """No actionable tasks remain."""

    type: Literal["complete"] = "complete"


class ErrorEvent(_EventBase):
    """A user-visible error."""

    type: Literal["error"] = "error"
    message: str


class BackoffEvent(_EventBase):
    """The engine is waiting before a retry."""

    type: Literal["backoff"] = "backoff"
    backoff_ms: int = Field(ge=0, description="Delay length")
    retry_at: int = Field(description="Epoch ms when the retry happens")
    attempt: int = Field(ge=1, description="Consecutive failure count")


class BackoffClearedEvent(_EventBase):
    type: Literal["backoff_cleared"] = "backoff_cleared"


class TokensEvent(_EventBase):
    """Token usage reported by the agent backend for one step."""

    type: Literal["tokens"] = "tokens"
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


class ModelEvent(_EventBase):
    """The model in use was identified or changed."""

    type: Literal["model"] = "model"
    model: str


class SandboxEvent(_EventBase):
    type: Literal["sandbox"] = "sandbox"
    enabled: bool
    mode: Literal["sandbox", "local"]


class RateLimitEvent(_EventBase):
    """A rate limit was detected on the primary agent."""

    type: Literal["rate_limit"] = "rate_limit"
    primary_agent: str
    fallback_agent: str | None = None
    message: str | None = None
    retry_after: int | None = Field(default=None, description="Seconds")


class ActiveAgentEvent(_EventBase):
    """Which agent/model is currently driving iterations."""

    type: Literal["active_agent"] = "active_agent"
    agent: str
    reason: Literal["primary", "fallback"]


class SessionEvent(_EventBase):
    """An agent session was created or ended."""

    type: Literal["session"] = "session"
    action: Literal["created", "ended"]
    session_id: str
    server_url: str | None = None
    attached: bool = False


class OutputEvent(_EventBase):
    """Raw (ANSI-stripped) agent terminal output."""

    type: Literal["output"] = "output"
    data: str


class PromptEvent(_EventBase):
    """The full prompt sent for the current iteration."""

    type: Literal["prompt"] = "prompt"
    prompt: str


class AdapterModeEvent(_EventBase):
    type: Literal["adapter_mode"] = "adapter_mode"
    mode: Literal["sdk", "pty"]


class PlanModifiedEvent(_EventBase):
    type: Literal["plan_modified"] = "plan_modified"


class HeadlessSummary(BaseModel):
    """Run summary handed to formatters on finalize."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    exit_code: int
    duration_ms: int
    iterations: int
    tasks_complete: int
    total_tasks: int
    commits: int
    lines_added: int
    lines_removed: int


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


HeadlessEvent = Annotated[
    Annotated[IterationStartEvent, Tag("iteration_start")]
    | Annotated[IterationEndEvent, Tag("iteration_end")]
    | Annotated[ToolEvent, Tag("tool")]
    | Annotated[ReasoningEvent, Tag("reasoning")]
    | Annotated[ProgressEvent, Tag("progress")]
    | Annotated[StatsEvent, Tag("stats")]
    | Annotated[PauseEvent, Tag("pause")]
    | Annotated[ResumeEvent, Tag("resume")]
    | Annotated[IdleEvent, Tag("idle")]
    | Annotated[CompleteEvent, Tag("complete")]
    | Annotated[ErrorEvent, Tag("error")]
    | Annotated[BackoffEvent, Tag("backoff")]
    | Annotated[BackoffClearedEvent, Tag("backoff_cleared")]
    | Annotated[TokensEvent, Tag("tokens")]
    | Annotated[ModelEvent, Tag("model")]
    | Annotated[SandboxEvent, Tag("sandbox")]
    | Annotated[RateLimitEvent, Tag("rate_limit")]
    | Annotated[ActiveAgentEvent, Tag("active_agent")]
    | Annotated[SessionEvent, Tag("session")]
    | Annotated[OutputEvent, Tag("output")]
    | Annotated[PromptEvent, Tag("prompt")]
    | Annotated[AdapterModeEvent, Tag("adapter_mode")]
    | Annotated[PlanModifiedEvent, Tag("plan_modified")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all headless event types."""


def event_to_dict(event: _EventBase) -> dict[str, Any]:
    """Serialize *event* with camelCase keys, dropping unset optionals."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)
