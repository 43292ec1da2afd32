"""Pydantic v2 models for ralph.yaml configuration."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ralph.constants import LOCK_FILE, LOG_FILE
from ralph.ratelimit.backoff import BACKOFF_BASE_MS, BACKOFF_MAX_MS

_MODEL_RE = re.compile(r"^[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.:-]+$")

#: Default ``provider/model`` when none is configured.
DEFAULT_MODEL = "opencode/claude-opus-4-5"

AdapterName = Literal["opencode-server", "opencode-run", "codex", "claude"]


class SessionConfig(BaseModel):
    """Where per-run bookkeeping files live."""

    model_config = ConfigDict(extra="forbid")

    lock_file: str = Field(
        default=LOCK_FILE,
        description="Lock file name, relative to the working directory",
    )
    log_file: str = Field(
        default=LOG_FILE,
        description="Debug log written when --debug is given",
    )


class BackoffConfig(BaseModel):
    """Exponential backoff bounds for rate-limited retries."""

    model_config = ConfigDict(extra="forbid")

    base_ms: int = Field(default=BACKOFF_BASE_MS, gt=0, description="First delay")
    max_ms: int = Field(default=BACKOFF_MAX_MS, gt=0, description="Delay cap")

    @model_validator(mode="after")
    def _validate_bounds(self) -> BackoffConfig:
        if self.max_ms < self.base_ms:
            msg = f"backoff max_ms ({self.max_ms}) must be >= base_ms ({self.base_ms})"
            raise ValueError(msg)
        return self


class RalphConfig(BaseModel):
    """Top-level ralph.yaml configuration.

    Every field has a default, so an empty file (or none at all) is a
    valid configuration.
    """

    model_config = ConfigDict(extra="forbid")

    model: str = Field(
        default=DEFAULT_MODEL,
        description="Model identifier, e.g. 'anthropic/claude-opus-4'",
    )
    adapter: AdapterName = Field(
        default="opencode-server",
        description="How the agent is driven",
    )
    agent: str | None = Field(default=None, description="Agent profile name")
    plan: str = Field(default="plan.md", description="Task plan file")
    progress: str = Field(default="progress.txt", description="Progress log file")
    prompt: str | None = Field(default=None, description="Inline prompt template")
    prompt_file: str = Field(
        default=".ralph-prompt.md",
        description="Prompt template file (used when 'prompt' is unset)",
    )
    server: str | None = Field(
        default=None,
        description="Attach to this agent server URL instead of a local one",
    )
    server_timeout_ms: int = Field(
        default=5_000,
        gt=0,
        description="Health-check timeout for the agent server",
    )
    format: Literal["text", "jsonl", "json"] = Field(
        default="text",
        description="Event output format",
    )
    timestamps: bool = Field(default=False, description="Stamp events with epoch ms")
    max_iterations: int | None = Field(
        default=None,
        ge=1,
        description="Stop with exit code 3 after this many iterations",
    )
    max_time: int | None = Field(
        default=None,
        ge=1,
        description="Stop with exit code 3 after this many seconds",
    )
    continue_on_error: bool = Field(
        default=False,
        description="Treat agent failures as retryable instead of fatal",
    )
    fallback_agents: dict[str, str] = Field(
        default_factory=dict,
        description="Rate-limited agent/model -> fallback agent/model",
    )
    session: SessionConfig = Field(default_factory=SessionConfig)
    backoff: BackoffConfig = Field(default_factory=BackoffConfig)

    @field_validator("model")
    @classmethod
    def _validate_model(cls, value: str) -> str:
        if not _MODEL_RE.match(value):
            msg = f"Invalid model format '{value}' — expected 'provider/model-name'"
            raise ValueError(msg)
        return value
