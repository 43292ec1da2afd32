"""Engine state — status machine, iteration history, and run statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from ralph.errors import RalphError
from ralph.ratelimit.backoff import BackoffState


class LoopStatus(StrEnum):
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    SELECTING = "selecting"
    EXECUTING = "executing"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETE = "complete"
    IDLE = "idle"
    ERROR = "error"


#: Statuses a run never leaves.
TERMINAL_STATUSES = frozenset({LoopStatus.STOPPED, LoopStatus.COMPLETE, LoopStatus.ERROR})

_ALLOWED: dict[LoopStatus, frozenset[LoopStatus]] = {
    LoopStatus.STARTING: frozenset({LoopStatus.READY, LoopStatus.STOPPED, LoopStatus.ERROR}),
    LoopStatus.READY: frozenset({LoopStatus.RUNNING, LoopStatus.STOPPED, LoopStatus.ERROR}),
    LoopStatus.RUNNING: frozenset(
        {
            LoopStatus.SELECTING,
            LoopStatus.PAUSING,
            LoopStatus.STOPPED,
            LoopStatus.ERROR,
        }
    ),
    LoopStatus.SELECTING: frozenset(
        {
            LoopStatus.EXECUTING,
            LoopStatus.COMPLETE,
            LoopStatus.PAUSING,
            LoopStatus.STOPPED,
            LoopStatus.ERROR,
        }
    ),
    LoopStatus.EXECUTING: frozenset(
        {LoopStatus.SELECTING, LoopStatus.STOPPED, LoopStatus.ERROR}
    ),
    LoopStatus.PAUSING: frozenset({LoopStatus.PAUSED, LoopStatus.STOPPED, LoopStatus.ERROR}),
    LoopStatus.PAUSED: frozenset({LoopStatus.RUNNING, LoopStatus.STOPPED, LoopStatus.ERROR}),
    LoopStatus.IDLE: frozenset(),
    LoopStatus.STOPPED: frozenset(),
    LoopStatus.COMPLETE: frozenset(),
    LoopStatus.ERROR: frozenset(),
}


class InvalidTransitionError(RalphError):
    """A status change the state machine does not allow."""


@dataclass(frozen=True)
class IterationRecord:
    """One finished iteration.  Times are epoch milliseconds."""

    index: int
    task_id: str | None
    started_at: int
    ended_at: int
    duration_ms: int
    commits: int


@dataclass
class StatsSnapshot:
    """Aggregate run statistics reported in ``stats`` events and the summary."""

    start_time: int
    iterations: int = 0
    tasks_complete: int = 0
    total_tasks: int = 0
    commits: int = 0
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class ActiveAgentState:
    agent_id: str
    reason: Literal["primary", "fallback"] = "primary"


@dataclass
class EngineState:
    """All mutable engine state; status changes only via the named transitions."""

    stats: StatsSnapshot
    active_agent: ActiveAgentState
    status: LoopStatus = LoopStatus.STARTING
    is_idle: bool = False
    iteration: int = 0
    history: list[IterationRecord] = field(default_factory=list)
    backoff: BackoffState = field(default_factory=BackoffState)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _move(self, target: LoopStatus) -> None:
        if target not in _ALLOWED[self.status]:
            msg = f"Invalid transition {self.status.value} -> {target.value}"
            raise InvalidTransitionError(msg)
        self.status = target

    def ready(self) -> None:
        self._move(LoopStatus.READY)

    def run(self) -> None:
        self._move(LoopStatus.RUNNING)

    def select(self) -> None:
        self._move(LoopStatus.SELECTING)

    def execute(self) -> None:
        self._move(LoopStatus.EXECUTING)

    def task_done(self) -> None:
        self._move(LoopStatus.SELECTING)

    def begin_pause(self) -> None:
        self._move(LoopStatus.PAUSING)

    def pause(self) -> None:
        self._move(LoopStatus.PAUSED)

    def resume(self) -> None:
        self._move(LoopStatus.RUNNING)

    def complete(self) -> None:
        self._move(LoopStatus.COMPLETE)

    def stop(self) -> None:
        self._move(LoopStatus.STOPPED)

    def fail(self) -> None:
        self._move(LoopStatus.ERROR)

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #

    def set_idle(self, idle: bool) -> bool:
        """Update the idle flag; returns ``True`` if it changed."""
        if self.is_idle == idle:
            return False
        self.is_idle = idle
        return True

    def record_iteration(self, record: IterationRecord) -> None:
        self.history.append(record)
        self.stats.iterations = max(self.stats.iterations, record.index)

    def eta_ms(self, remaining_tasks: int | None = None) -> int | None:
        """Average iteration time multiplied by the remaining task count."""
        if not self.history:
            return None
        if remaining_tasks is None:
            remaining_tasks = self.stats.total_tasks - self.stats.tasks_complete
        if remaining_tasks <= 0:
            return 0
        average = sum(r.duration_ms for r in self.history) / len(self.history)
        return round(average * remaining_tasks)
