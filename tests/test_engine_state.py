"""Tests for the engine status machine, backoff timer, and pause watcher."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from ralph.engine import (
    BackoffTimer,
    EngineState,
    InvalidTransitionError,
    IterationRecord,
    LoopStatus,
    PauseFileWatcher,
    StatsSnapshot,
)
from ralph.engine.state import ActiveAgentState


def _state() -> EngineState:
    return EngineState(
        stats=StatsSnapshot(start_time=0), active_agent=ActiveAgentState("anthropic/a")
    )


def _record(index: int, duration_ms: int) -> IterationRecord:
    return IterationRecord(
        index=index,
        task_id=f"task-{index}",
        started_at=0,
        ended_at=duration_ms,
        duration_ms=duration_ms,
        commits=0,
    )


# ------------------------------------------------------------------ #
# Transitions
# ------------------------------------------------------------------ #


class TestTransitions:
    def test_happy_path(self) -> None:
        state = _state()
        state.ready()
        state.run()
        state.select()
        state.execute()
        state.task_done()
        assert state.status == LoopStatus.SELECTING
        state.complete()
        assert state.status == LoopStatus.COMPLETE
        assert state.terminal is True

    def test_pause_cycle(self) -> None:
        state = _state()
        state.ready()
        state.run()
        state.select()
        state.begin_pause()
        state.pause()
        state.resume()
        assert state.status == LoopStatus.RUNNING

    @pytest.mark.parametrize(
        "status", [LoopStatus.STARTING, LoopStatus.EXECUTING, LoopStatus.PAUSED]
    )
    def test_stop_and_fail_from_active_states(self, status: LoopStatus) -> None:
        state = _state()
        state.status = status
        state.stop()
        assert state.status == LoopStatus.STOPPED

        state = _state()
        state.status = status
        state.fail()
        assert state.status == LoopStatus.ERROR

    def test_invalid_transition(self) -> None:
        state = _state()
        with pytest.raises(
            InvalidTransitionError, match="Invalid transition starting -> executing"
        ):
            state.execute()
        assert state.status == LoopStatus.STARTING

    @pytest.mark.parametrize(
        "status", [LoopStatus.STOPPED, LoopStatus.COMPLETE, LoopStatus.ERROR]
    )
    def test_terminal_states_are_final(self, status: LoopStatus) -> None:
        state = _state()
        state.status = status
        with pytest.raises(InvalidTransitionError):
            state.run()
        with pytest.raises(InvalidTransitionError):
            state.stop()

    def test_executing_cannot_complete_directly(self) -> None:
        state = _state()
        state.status = LoopStatus.EXECUTING
        with pytest.raises(InvalidTransitionError):
            state.complete()


# ------------------------------------------------------------------ #
# Bookkeeping
# ------------------------------------------------------------------ #


class TestBookkeeping:
    def test_set_idle_reports_changes(self) -> None:
        state = _state()
        assert state.set_idle(False) is False
        assert state.set_idle(True) is True
        assert state.set_idle(True) is False
        assert state.is_idle is True

    def test_record_iteration(self) -> None:
        state = _state()
        state.record_iteration(_record(1, 100))
        state.record_iteration(_record(2, 300))
        assert state.stats.iterations == 2
        assert [r.index for r in state.history] == [1, 2]

    def test_eta(self) -> None:
        state = _state()
        assert state.eta_ms() is None

        state.record_iteration(_record(1, 100))
        state.record_iteration(_record(2, 300))
        state.stats.total_tasks = 5
        state.stats.tasks_complete = 2

        assert state.eta_ms() == 600
        assert state.eta_ms(remaining_tasks=1) == 200
        assert state.eta_ms(remaining_tasks=0) == 0


# ------------------------------------------------------------------ #
# Backoff timer
# ------------------------------------------------------------------ #


class TestBackoffTimer:
    @pytest.mark.asyncio
    async def test_wait_elapses(self) -> None:
        timer = BackoffTimer()
        assert await timer.wait(0.01) is True
        assert timer.active is False

    @pytest.mark.asyncio
    async def test_cancel_ends_wait(self) -> None:
        timer = BackoffTimer()
        waiter = asyncio.create_task(timer.wait(30))
        await asyncio.sleep(0)
        assert timer.active is True

        timer.cancel()
        assert await asyncio.wait_for(waiter, timeout=1) is False
        assert timer.cancelled is True

    @pytest.mark.asyncio
    async def test_cancel_is_sticky(self) -> None:
        timer = BackoffTimer()
        timer.cancel()
        assert await timer.wait(30) is False

    @pytest.mark.asyncio
    async def test_zero_delay(self) -> None:
        assert await BackoffTimer().wait(0) is True


# ------------------------------------------------------------------ #
# Pause file
# ------------------------------------------------------------------ #


class TestPauseFileWatcher:
    @pytest.mark.asyncio
    async def test_fires_on_presence_changes(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph-pause"
        calls: list[str] = []
        watcher = PauseFileWatcher(
            asyncio.Event(),
            path,
            on_pause=lambda: calls.append("pause"),
            on_resume=lambda: calls.append("resume"),
        )

        await watcher._tick()
        path.touch()
        await watcher._tick()
        await watcher._tick()
        path.unlink()
        await watcher._tick()

        assert calls == ["pause", "resume"]

    @pytest.mark.asyncio
    async def test_background_polling(self, tmp_path: Path) -> None:
        path = tmp_path / ".ralph-pause"
        paused = asyncio.Event()
        shutdown = asyncio.Event()
        watcher = PauseFileWatcher(shutdown, path, paused.set, lambda: None, interval=0.01)

        await watcher.start()
        path.touch()
        await asyncio.wait_for(paused.wait(), timeout=5)
        shutdown.set()
        await watcher.stop()
