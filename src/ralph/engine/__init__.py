"""Loop engine — state machine, backoff timer, pause watcher, and the loop itself."""

from ralph.engine.loop import LoopEngine
from ralph.engine.pause import PauseFileWatcher
from ralph.engine.state import (
    EngineState,
    InvalidTransitionError,
    IterationRecord,
    LoopStatus,
    StatsSnapshot,
)
from ralph.engine.timer import BackoffTimer

__all__ = [
    "BackoffTimer",
    "EngineState",
    "InvalidTransitionError",
    "IterationRecord",
    "LoopEngine",
    "LoopStatus",
    "PauseFileWatcher",
    "StatsSnapshot",
]
