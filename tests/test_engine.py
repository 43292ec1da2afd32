"""Tests for LoopEngine with scripted agent sessions."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from ralph.agent.base import (
    AgentError,
    AgentEvent,
    AgentExit,
    AgentModel,
    AgentOutput,
    AgentPlanModified,
    AgentReasoning,
    AgentRequest,
    AgentTokens,
    AgentTool,
)
from ralph.config import BackoffConfig, RalphConfig
from ralph.engine import LoopEngine, LoopStatus
from ralph.events.formatters import JsonFormatter
from ralph.events.pipeline import HeadlessEventPipeline
from ralph.git import RepoStats
from ralph.lock import SessionLock
from ralph.plan import Task

# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #

#: A scripted step is either an agent event to yield or a callable to run.
Step = Any


class FakePlan:
    def __init__(self, *texts: str) -> None:
        self._tasks = [Task(id=f"task-{i}", text=t, done=False) for i, t in enumerate(texts)]

    def tasks(self) -> list[Task]:
        return list(self._tasks)

    def complete_next(self) -> None:
        for index, task in enumerate(self._tasks):
            if not task.done:
                self._tasks[index] = Task(id=task.id, text=task.text, done=True)
                return


class FakeRepoStats:
    def __init__(self, *snapshots: RepoStats) -> None:
        self._snapshots = list(snapshots)
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def collect(self) -> RepoStats:
        if len(self._snapshots) > 1:
            return self._snapshots.pop(0)
        return self._snapshots[0] if self._snapshots else RepoStats()


class FakeSession:
    def __init__(
        self,
        steps: Sequence[Step] = (),
        session_id: str | None = None,
        block: bool = False,
    ) -> None:
        self._steps = list(steps)
        self._block = block
        self._closed = asyncio.Event()
        self.session_id = session_id
        self.sent: list[str] = []
        self.cleaned = False

    async def events(self) -> AsyncIterator[AgentEvent]:
        for step in self._steps:
            await asyncio.sleep(0)
            if callable(step):
                step()
                continue
            yield step
        if self._block:
            await self._closed.wait()

    async def send(self, message: str) -> bool:
        if self.cleaned:
            return False
        self.sent.append(message)
        return True

    async def abort(self) -> None:
        return None

    async def cleanup(self) -> None:
        self.cleaned = True
        self._closed.set()


class FakeExecutor:
    def __init__(
        self,
        *scripts: Sequence[Step] | FakeSession,
        agent_id: str = "opencode-server",
        mode: str = "sdk",
        start_error: Exception | None = None,
    ) -> None:
        self._scripts = list(scripts)
        self._agent_id = agent_id
        self._mode = mode
        self._start_error = start_error
        self.requests: list[AgentRequest] = []
        self.sessions: list[FakeSession] = []
        self.closed = 0

    @property
    def agent_id(self) -> str:
        return self._agent_id

    @property
    def mode(self) -> str:
        return self._mode

    async def start(self, request: AgentRequest) -> FakeSession:
        self.requests.append(request)
        if self._start_error is not None:
            raise self._start_error
        script = self._scripts.pop(0)
        session = script if isinstance(script, FakeSession) else FakeSession(script)
        self.sessions.append(session)
        return session

    async def close(self) -> None:
        self.closed += 1


class FakeTimer:
    def __init__(self) -> None:
        self.delays: list[float] = []
        self.cancelled = False

    async def wait(self, seconds: float) -> bool:
        self.delays.append(seconds)
        await asyncio.sleep(0)
        return not self.cancelled

    def cancel(self) -> None:
        self.cancelled = True


class Harness:
    """Wires a LoopEngine to fakes and a JSON formatter."""

    def __init__(
        self,
        tmp_path: Path,
        executor: FakeExecutor,
        plan: FakePlan,
        repo_stats: FakeRepoStats | None = None,
        platform: MagicMock | None = None,
        executor_factory: Callable[[str], Any] | None = None,
        **config: Any,
    ) -> None:
        config.setdefault("model", "anthropic/claude")
        config.setdefault("backoff", BackoffConfig(base_ms=1000, max_ms=10_000))
        self.config = RalphConfig(**config)
        self.stream = io.StringIO()
        self.formatter = JsonFormatter(stream=self.stream)
        self.executor = executor
        self.plan = plan
        self.timer = FakeTimer()
        self.lock = SessionLock(tmp_path, platform=platform or _platform(alive=False))
        self.engine = LoopEngine(
            self.config,
            HeadlessEventPipeline(self.formatter),
            executor,
            cwd=tmp_path,
            plan=plan,
            repo_stats=repo_stats or FakeRepoStats(),
            lock=self.lock,
            timer=self.timer,  # type: ignore[arg-type]
            executor_factory=executor_factory,
            watch_pause_file=False,
            clock=lambda: 1000,
        )

    @property
    def events(self) -> list[dict[str, Any]]:
        return self.formatter.events

    def types(self, *only: str) -> list[str]:
        return [e["type"] for e in self.events if not only or e["type"] in only]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]

    def summary(self) -> dict[str, Any]:
        return json.loads(self.stream.getvalue())["summary"]


def _platform(alive: bool) -> MagicMock:
    platform = MagicMock()
    platform.is_process_running.return_value = alive
    return platform


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


# ------------------------------------------------------------------ #
# Happy path
# ------------------------------------------------------------------ #


class TestCompletion:
    @pytest.mark.asyncio
    async def test_two_tasks(self, tmp_path: Path) -> None:
        plan = FakePlan("Write parser", "Ship it")
        executor = FakeExecutor(
            [AgentOutput("working\n"), plan.complete_next, AgentExit(0)],
            [plan.complete_next, AgentExit(0)],
        )
        h = Harness(
            tmp_path,
            executor,
            plan,
            repo_stats=FakeRepoStats(RepoStats(1, 10, 2), RepoStats(2, 15, 3)),
        )

        assert await h.engine.run() == 0

        assert h.types()[:2] == ["adapter_mode", "active_agent"]
        assert h.types("iteration_start", "iteration_end", "stats", "progress", "complete") == [
            "progress",
            "iteration_start",
            "stats",
            "iteration_end",
            "progress",
            "iteration_start",
            "stats",
            "iteration_end",
            "progress",
            "complete",
        ]
        starts = h.of_type("iteration_start")
        assert [(e["iteration"], e["task"]) for e in starts] == [
            (1, "Write parser"),
            (2, "Ship it"),
        ]
        assert [e["commits"] for e in h.of_type("iteration_end")] == [1, 1]
        assert h.of_type("output") == [{"type": "output", "data": "working\n"}]
        assert h.of_type("stats")[-1] == {
            "type": "stats",
            "commits": 2,
            "linesAdded": 15,
            "linesRemoved": 3,
        }

        summary = h.summary()
        assert summary["exitCode"] == 0
        assert summary["iterations"] == 2
        assert summary["tasksComplete"] == 2
        assert summary["totalTasks"] == 2
        assert summary["commits"] == 2
        assert h.engine.status == LoopStatus.COMPLETE
        assert not h.lock.path.exists()
        assert executor.closed >= 1

    @pytest.mark.asyncio
    async def test_empty_plan_completes_immediately(self, tmp_path: Path) -> None:
        executor = FakeExecutor()
        h = Harness(tmp_path, executor, FakePlan())

        assert await h.engine.run() == 0
        assert "complete" in h.types()
        assert executor.requests == []

    @pytest.mark.asyncio
    async def test_request_contents(self, tmp_path: Path) -> None:
        plan = FakePlan("Fix bug")
        executor = FakeExecutor([plan.complete_next, AgentExit(0)])
        h = Harness(tmp_path, executor, plan, agent="build", prompt="Do {task} from {plan}")

        await h.engine.run()

        request = executor.requests[0]
        assert request.prompt == "Do Fix bug from plan.md"
        assert request.model == "anthropic/claude"
        assert request.agent == "build"
        assert request.iteration == 1
        assert request.cwd == tmp_path
        assert h.of_type("prompt") == [{"type": "prompt", "prompt": "Do Fix bug from plan.md"}]

    @pytest.mark.asyncio
    async def test_agent_events_forwarded(self, tmp_path: Path) -> None:
        plan = FakePlan("Task")
        session = FakeSession(
            [
                AgentTool("edit", "Edit src/a.py", "src/a.py"),
                AgentReasoning("thinking"),
                AgentTokens(input=10, output=5),
                AgentModel("anthropic/claude"),
                plan.complete_next,
                AgentPlanModified(),
                AgentExit(0),
            ],
            session_id="ses_1",
        )
        h = Harness(tmp_path, FakeExecutor(session), plan)

        await h.engine.run()

        forwarded = ("session", "idle", "tool", "reasoning", "tokens", "model", "plan_modified")
        assert h.types(*forwarded) == [
            "session",
            "idle",
            "idle",
            "tool",
            "reasoning",
            "tokens",
            "model",
            "plan_modified",
            "session",
        ]
        assert h.of_type("tool")[0] == {
            "type": "tool",
            "iteration": 1,
            "name": "edit",
            "title": "Edit src/a.py",
            "detail": "src/a.py",
        }
        assert [e["action"] for e in h.of_type("session")] == ["created", "ended"]
        assert [e["isIdle"] for e in h.of_type("idle")] == [True, False]
        assert session.cleaned is True


# ------------------------------------------------------------------ #
# Failures
# ------------------------------------------------------------------ #


class TestFailures:
    @pytest.mark.asyncio
    async def test_nonzero_exit_halts(self, tmp_path: Path) -> None:
        h = Harness(tmp_path, FakeExecutor([AgentExit(2, stderr="segfault\n")]), FakePlan("T"))

        assert await h.engine.run() == 1

        assert h.of_type("error") == [
            {"type": "error", "message": "Agent exited with code 2:\n  segfault"}
        ]
        assert h.engine.status == LoopStatus.ERROR
        assert h.summary()["exitCode"] == 1
        assert not h.lock.path.exists()

    @pytest.mark.asyncio
    async def test_agent_error_halts(self, tmp_path: Path) -> None:
        h = Harness(tmp_path, FakeExecutor([AgentError("Prompt failed")]), FakePlan("T"))

        assert await h.engine.run() == 1
        assert h.of_type("error")[0]["message"] == "Prompt failed"

    @pytest.mark.asyncio
    async def test_start_failure(self, tmp_path: Path) -> None:
        executor = FakeExecutor(start_error=RuntimeError("spawn failed"))
        h = Harness(tmp_path, executor, FakePlan("T"))

        assert await h.engine.run() == 1
        assert h.of_type("error")[0]["message"] == "spawn failed"

    @pytest.mark.asyncio
    async def test_stream_without_exit(self, tmp_path: Path) -> None:
        h = Harness(tmp_path, FakeExecutor([AgentOutput("x")]), FakePlan("T"))

        assert await h.engine.run() == 1
        assert "without an exit status" in h.of_type("error")[0]["message"]

    @pytest.mark.asyncio
    async def test_continue_on_error(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        executor = FakeExecutor([AgentError("boom")], [plan.complete_next, AgentExit(0)])
        h = Harness(tmp_path, executor, plan, continue_on_error=True)

        assert await h.engine.run() == 0

        assert h.types("error", "backoff", "iteration_start", "complete") == [
            "iteration_start",
            "error",
            "backoff",
            "iteration_start",
            "complete",
        ]
        assert [e["iteration"] for e in h.of_type("iteration_start")] == [1, 2]
        assert len(h.timer.delays) == 1
        assert 1.0 <= h.timer.delays[0] <= 1.1

    @pytest.mark.asyncio
    async def test_lock_contention(self, tmp_path: Path) -> None:
        (tmp_path / ".ralph-lock").write_text(
            json.dumps(
                {
                    "pid": os.getpid() + 1,
                    "sessionId": "other",
                    "startedAt": "2026-01-01T00:00:00+00:00",
                    "version": 1,
                }
            )
        )
        executor = FakeExecutor()
        h = Harness(tmp_path, executor, FakePlan("T"), platform=_platform(alive=True))

        assert await h.engine.run() == 1

        assert h.types() == ["error"]
        assert executor.requests == []
        assert h.summary()["exitCode"] == 1
        assert (tmp_path / ".ralph-lock").exists()


# ------------------------------------------------------------------ #
# Rate limits
# ------------------------------------------------------------------ #


class TestRateLimits:
    @pytest.mark.asyncio
    async def test_retry_on_fallback_model(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        executor = FakeExecutor(
            [AgentExit(1, stderr="Error: rate limit exceeded, retry after 30s")],
            [plan.complete_next, AgentExit(0)],
        )
        h = Harness(
            tmp_path,
            executor,
            plan,
            fallback_agents={"anthropic/claude": "openai/gpt-5"},
        )

        assert await h.engine.run() == 0

        assert h.types(
            "iteration_start",
            "rate_limit",
            "model",
            "active_agent",
            "backoff",
            "backoff_cleared",
            "iteration_end",
            "error",
        ) == [
            "active_agent",
            "iteration_start",
            "rate_limit",
            "model",
            "active_agent",
            "backoff",
            "backoff_cleared",
            "iteration_start",
            "iteration_end",
        ]
        rate_limit = h.of_type("rate_limit")[0]
        assert rate_limit["primaryAgent"] == "anthropic/claude"
        assert rate_limit["fallbackAgent"] == "openai/gpt-5"
        assert rate_limit["retryAfter"] == 30
        assert "rate limit" in rate_limit["message"]

        assert h.of_type("model")[0]["model"] == "openai/gpt-5"
        assert h.of_type("active_agent")[-1] == {
            "type": "active_agent",
            "agent": "openai/gpt-5",
            "reason": "fallback",
        }
        backoff = h.of_type("backoff")[0]
        assert backoff["backoffMs"] == 30_000
        assert backoff["retryAt"] == 31_000
        assert backoff["attempt"] == 1
        assert h.timer.delays == [30.0]
        assert [r.model for r in executor.requests] == ["anthropic/claude", "openai/gpt-5"]
        assert [r.iteration for r in executor.requests] == [1, 1]

    @pytest.mark.asyncio
    async def test_backoff_grows_without_fallback(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        limited = [AgentExit(1, stderr="429 Too Many Requests")]
        executor = FakeExecutor(limited, limited, [plan.complete_next, AgentExit(0)])
        h = Harness(tmp_path, executor, plan)

        assert await h.engine.run() == 0

        assert [e["attempt"] for e in h.of_type("backoff")] == [1, 2]
        assert all("fallbackAgent" not in e for e in h.of_type("rate_limit"))
        assert 1.0 <= h.timer.delays[0] <= 1.1
        assert 2.0 <= h.timer.delays[1] <= 2.2
        assert h.engine.state.backoff.attempt == 0

    @pytest.mark.asyncio
    async def test_each_retry_reports_idle_again(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        limited = [AgentExit(1, stderr="429 Too Many Requests")]
        executor = FakeExecutor(limited, limited, [plan.complete_next, AgentExit(0)])
        h = Harness(tmp_path, executor, plan)

        assert await h.engine.run() == 0

        assert [e["isIdle"] for e in h.of_type("idle")] == [True, False] * 3
        assert h.engine.state.is_idle is False

    @pytest.mark.asyncio
    async def test_fallback_adapter_uses_factory(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        primary = FakeExecutor([AgentExit(1, stderr="rate limit reached")])
        replacement = FakeExecutor([plan.complete_next, AgentExit(0)], agent_id="claude")
        built: list[str] = []

        def factory(adapter: str) -> FakeExecutor:
            built.append(adapter)
            return replacement

        h = Harness(
            tmp_path,
            primary,
            plan,
            executor_factory=factory,
            fallback_agents={"opencode-server": "claude"},
        )

        assert await h.engine.run() == 0

        assert built == ["claude"]
        assert primary.closed >= 1
        assert len(replacement.requests) == 1
        assert h.of_type("active_agent")[-1]["agent"] == "claude"

    @pytest.mark.asyncio
    async def test_fallback_used_once(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        limited = [AgentExit(1, stderr="rate limit")]
        executor = FakeExecutor(limited, limited, [plan.complete_next, AgentExit(0)])
        h = Harness(
            tmp_path,
            executor,
            plan,
            fallback_agents={"anthropic/claude": "openai/gpt-5", "openai/gpt-5": "google/x"},
        )

        assert await h.engine.run() == 0

        fallbacks = [e.get("fallbackAgent") for e in h.of_type("rate_limit")]
        assert fallbacks == ["openai/gpt-5", None]
        assert executor.requests[-1].model == "openai/gpt-5"

    @pytest.mark.asyncio
    async def test_plain_failure_is_not_rate_limit(self, tmp_path: Path) -> None:
        h = Harness(
            tmp_path, FakeExecutor([AgentExit(1, stderr="TypeError: bad")]), FakePlan("T")
        )
        assert await h.engine.run() == 1
        assert h.of_type("rate_limit") == []


# ------------------------------------------------------------------ #
# Control: stop, pause, steering, limits
# ------------------------------------------------------------------ #


class TestControl:
    @pytest.mark.asyncio
    async def test_stop_interrupts_running_agent(self, tmp_path: Path) -> None:
        session = FakeSession([AgentOutput("busy")], block=True)
        executor = FakeExecutor(session)
        h = Harness(tmp_path, executor, FakePlan("T"))

        run = asyncio.create_task(h.engine.run())
        await _wait_until(lambda: bool(h.of_type("output")))
        await h.engine.stop()

        assert await asyncio.wait_for(run, timeout=5) == 2
        assert session.cleaned is True
        assert h.engine.status == LoopStatus.STOPPED
        assert h.timer.cancelled is True
        assert h.summary()["exitCode"] == 2
        assert not h.lock.path.exists()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, tmp_path: Path) -> None:
        h = Harness(tmp_path, FakeExecutor(), FakePlan("T"))
        await h.engine.stop()
        await h.engine.stop(exit_code=3)
        assert await h.engine.run() == 2

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, tmp_path: Path) -> None:
        plan = FakePlan("T")
        h = Harness(tmp_path, FakeExecutor([plan.complete_next, AgentExit(0)]), plan)
        h.engine.pause()

        run = asyncio.create_task(h.engine.run())
        await _wait_until(lambda: "pause" in h.types())
        assert h.engine.status == LoopStatus.PAUSED
        assert h.types("iteration_start") == []

        h.engine.resume()
        assert await asyncio.wait_for(run, timeout=5) == 0
        assert h.types("pause", "resume", "iteration_start", "complete") == [
            "pause",
            "resume",
            "iteration_start",
            "complete",
        ]

    @pytest.mark.asyncio
    async def test_queued_steering_goes_into_next_prompt(self, tmp_path: Path) -> None:
        plan = FakePlan("A", "B")
        executor = FakeExecutor(
            [plan.complete_next, AgentExit(0)], [plan.complete_next, AgentExit(0)]
        )
        h = Harness(tmp_path, executor, plan)

        assert await h.engine.steer("  use tabs  ") is False
        assert await h.engine.steer("   ") is False
        await h.engine.run()

        assert executor.requests[0].prompt.endswith("Additional context from user:\nuse tabs")
        assert "Additional context" not in executor.requests[1].prompt

    @pytest.mark.asyncio
    async def test_live_steering(self, tmp_path: Path) -> None:
        session = FakeSession([AgentOutput("busy")], block=True)
        h = Harness(tmp_path, FakeExecutor(session), FakePlan("T"))

        run = asyncio.create_task(h.engine.run())
        await _wait_until(lambda: bool(h.of_type("output")))

        assert await h.engine.steer("focus on tests") is True
        assert session.sent == ["focus on tests"]

        await h.engine.stop()
        await asyncio.wait_for(run, timeout=5)

    @pytest.mark.asyncio
    async def test_max_iterations(self, tmp_path: Path) -> None:
        plan = FakePlan("A", "B")
        executor = FakeExecutor([plan.complete_next, AgentExit(0)])
        h = Harness(tmp_path, executor, plan, max_iterations=1)

        assert await h.engine.run() == 3

        assert h.of_type("error") == [{"type": "error", "message": "max-iterations reached (1)"}]
        assert len(executor.requests) == 1
        assert h.engine.status == LoopStatus.STOPPED
        assert h.summary()["exitCode"] == 3

    @pytest.mark.asyncio
    async def test_max_time(self, tmp_path: Path) -> None:
        session = FakeSession(block=True)
        h = Harness(tmp_path, FakeExecutor(session), FakePlan("T"), max_time=1)

        assert await asyncio.wait_for(h.engine.run(), timeout=10) == 3

        assert h.of_type("error")[0]["message"] == "max-time reached (1s)"
        assert session.cleaned is True
        assert h.summary()["exitCode"] == 3

    @pytest.mark.asyncio
    async def test_premature_done_file_ignored(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        done_file = tmp_path / ".ralph-done"
        done_file.touch()
        plan = FakePlan("T")
        h = Harness(tmp_path, FakeExecutor([plan.complete_next, AgentExit(0)]), plan)

        with caplog.at_level(logging.WARNING, logger="ralph.engine.loop"):
            assert await h.engine.run() == 0

        assert not done_file.exists()
        assert "Premature .ralph-done ignored" in caplog.text
        assert h.types("iteration_start") == ["iteration_start"]
