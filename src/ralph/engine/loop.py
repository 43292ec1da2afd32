"""LoopEngine — drives an agent through the task plan, one iteration at a time."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from ralph.agent.base import (
    AgentError,
    AgentExecutor,
    AgentExit,
    AgentModel,
    AgentOutput,
    AgentPlanModified,
    AgentReasoning,
    AgentRequest,
    AgentSession,
    AgentTokens,
    AgentTool,
)
from ralph.agent.helpers import format_stderr_preview
from ralph.config.models import RalphConfig
from ralph.constants import (
    DONE_FILE,
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    EXIT_LIMIT,
    EXIT_SUCCESS,
    PAUSE_FILE,
)
from ralph.engine.pause import PauseFileWatcher
from ralph.engine.state import (
    ActiveAgentState,
    EngineState,
    InvalidTransitionError,
    IterationRecord,
    LoopStatus,
    StatsSnapshot,
)
from ralph.engine.timer import BackoffTimer
from ralph.events.models import (
    ActiveAgentEvent,
    AdapterModeEvent,
    BackoffClearedEvent,
    BackoffEvent,
    CompleteEvent,
    ErrorEvent,
    HeadlessEvent,
    IdleEvent,
    IterationEndEvent,
    IterationStartEvent,
    ModelEvent,
    OutputEvent,
    PauseEvent,
    PlanModifiedEvent,
    ProgressEvent,
    PromptEvent,
    RateLimitEvent,
    ReasoningEvent,
    ResumeEvent,
    SessionEvent,
    TokensEvent,
    ToolEvent,
)
from ralph.events.pipeline import HeadlessEventPipeline
from ralph.git import GitStats, RepoStats
from ralph.lock import SessionLock
from ralph.plan import PlanReader, Task
from ralph.prompt import apply_steering, load_template, render
from ralph.ratelimit import (
    BackoffPolicy,
    FallbackResolver,
    RateLimitDetector,
    RateLimitVerdict,
    rate_limit_detector,
)

logger = logging.getLogger(__name__)


class TaskSource(Protocol):
    def tasks(self) -> list[Task]: ...


class RepoStatsSource(Protocol):
    async def start(self) -> None: ...

    async def collect(self) -> RepoStats: ...


ExecutorFactory = Callable[[str], AgentExecutor]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class _Outcome:
    kind: Literal["done", "rate_limited", "failed", "stopped"]
    message: str | None = None
    verdict: RateLimitVerdict | None = None


_STOPPED = _Outcome("stopped")


class LoopEngine:
    """Runs iterations until the plan is done, a limit hits, or it is stopped.

    Each iteration picks the first unchecked task, renders the prompt,
    starts an agent session, and forwards what the agent does as
    headless events.  Rate limits never end the run: the same task is
    retried after a backoff, optionally on a fallback agent.  Other
    failures end the run unless ``continue_on_error`` is set.

    Args:
        config: Resolved run configuration.
        pipeline: Destination for every event.
        executor: Starts agent sessions.
        cwd: Project directory (plan, lock, pause and done files).
        plan: Task source; defaults to the configured plan file.
        repo_stats: Git statistics source.
        lock: Single-instance guard.
        detector: Rate-limit classifier.
        fallback: Fallback agent resolver.
        timer: Cancellable wait used for backoff delays.
        executor_factory: Builds an executor when a fallback names an
            adapter instead of a ``provider/model``.
        force: Take over a lock held by a live process.
        watch_pause_file: Poll for the pause file.
    """

    def __init__(
        self,
        config: RalphConfig,
        pipeline: HeadlessEventPipeline,
        executor: AgentExecutor,
        *,
        cwd: Path | None = None,
        plan: TaskSource | None = None,
        repo_stats: RepoStatsSource | None = None,
        lock: SessionLock | None = None,
        detector: RateLimitDetector | None = None,
        fallback: FallbackResolver | None = None,
        timer: BackoffTimer | None = None,
        executor_factory: ExecutorFactory | None = None,
        force: bool = False,
        watch_pause_file: bool = True,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._config = config
        self._pipeline = pipeline
        self._executor = executor
        self._cwd = cwd or Path.cwd()
        self._plan = plan or PlanReader(self._cwd / config.plan)
        self._repo_stats = repo_stats or GitStats(self._cwd)
        self._lock = lock or SessionLock(self._cwd, config.session.lock_file)
        self._detector = detector or rate_limit_detector
        self._fallback = fallback or FallbackResolver(config.fallback_agents)
        self._timer = timer or BackoffTimer()
        self._executor_factory = executor_factory
        self._force = force
        self._clock = clock
        self._policy = BackoffPolicy(config.backoff.base_ms, config.backoff.max_ms)

        self._model = config.model
        self._state = EngineState(
            stats=StatsSnapshot(start_time=clock()),
            active_agent=ActiveAgentState(agent_id=config.model),
        )
        self._session: AgentSession | None = None
        self._steering: list[str] = []
        self._fallback_used = False

        self._pause_requested = False
        self._resume_event = asyncio.Event()
        self._stop_requested = False
        self._exit_code: int | None = None
        self._shutdown = asyncio.Event()
        self._pause_watcher: PauseFileWatcher | None = None
        if watch_pause_file:
            self._pause_watcher = PauseFileWatcher(
                self._shutdown, self._cwd / PAUSE_FILE, self.pause, self.resume
            )
        self._deadline_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def status(self) -> LoopStatus:
        return self._state.status

    async def run(self) -> int:
        """Run to completion and return the process exit code."""
        if self._stop_requested:
            return self._exit_code if self._exit_code is not None else EXIT_INTERRUPTED

        result = self._lock.acquire(force=self._force)
        if not result.acquired:
            self._emit(ErrorEvent(message=result.error or "Failed to acquire session lock"))
            self._state.fail()
            self._exit_code = EXIT_ERROR
            self._pipeline.finalize(EXIT_ERROR, self._state.stats)
            return EXIT_ERROR

        exit_code = EXIT_ERROR
        try:
            exit_code = await self._run_loop()
        except Exception as exc:
            logger.exception("Loop aborted")
            self._emit(ErrorEvent(message=_describe(exc)))
            self._mark(LoopStatus.ERROR)
        finally:
            # A stop() that raced the loop keeps its own exit code.
            if self._exit_code is None:
                self._exit_code = exit_code
            await self._teardown()
        return self._exit_code

    async def stop(self, exit_code: int = EXIT_INTERRUPTED, reason: str | None = None) -> None:
        """Stop the run and tear everything down.  Safe to call more than once."""
        if self._stop_requested:
            return
        self._stop_requested = True
        if self._exit_code is None:
            self._exit_code = exit_code
        if reason:
            self._emit(ErrorEvent(message=reason))
        logger.info("Stop requested (exit code %d)", self._exit_code)
        self._resume_event.set()
        self._mark(LoopStatus.STOPPED)
        await self._teardown()

    def pause(self) -> None:
        """Pause before the next iteration starts."""
        if self._state.terminal or self._pause_requested:
            return
        self._pause_requested = True
        self._resume_event.clear()

    def resume(self) -> None:
        if not self._pause_requested:
            return
        self._pause_requested = False
        self._resume_event.set()

    async def steer(self, message: str) -> bool:
        """Send *message* to the live agent, or queue it for the next prompt.

        Returns ``True`` when a live session accepted the message.
        """
        text = message.strip()
        if not text:
            return False
        session = self._session
        if session is not None and await session.send(text):
            return True
        self._steering.append(text)
        return False

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #

    async def _run_loop(self) -> int:
        self._state.ready()
        await self._repo_stats.start()
        if self._stop_requested:
            return self._stop_code()
        self._state.run()

        self._emit(AdapterModeEvent(mode="pty" if self._executor.mode == "pty" else "sdk"))
        self._emit(ActiveAgentEvent(agent=self._state.active_agent.agent_id, reason="primary"))
        self._refresh_progress()

        if self._pause_watcher is not None:
            await self._pause_watcher.start()
        if self._config.max_time:
            self._deadline_task = asyncio.create_task(self._enforce_max_time(self._config.max_time))

        while True:
            if self._stop_requested:
                return self._stop_code()
            if self._pause_requested:
                await self._wait_while_paused()
                continue
            if self._state.status is LoopStatus.RUNNING:
                self._state.select()

            self._check_done_file()
            task = self._next_task()
            if task is None:
                self._state.complete()
                self._emit(CompleteEvent())
                return EXIT_SUCCESS

            limit = self._config.max_iterations
            if limit is not None and self._state.iteration >= limit:
                self._emit(ErrorEvent(message=f"max-iterations reached ({limit})"))
                self._state.stop()
                return EXIT_LIMIT

            self._state.iteration += 1
            exit_code = await self._run_iteration(self._state.iteration, task)
            if exit_code is not None:
                return exit_code

    async def _wait_while_paused(self) -> None:
        self._state.begin_pause()
        self._state.pause()
        self._emit(PauseEvent())
        logger.info("Paused")
        await self._resume_event.wait()
        if self._stop_requested:
            return
        self._state.resume()
        self._emit(ResumeEvent())
        logger.info("Resumed")

    async def _run_iteration(self, iteration: int, task: Task) -> int | None:
        """Run *task* until it succeeds; ``None`` means carry on with the next one."""
        started_at = self._clock()
        self._state.stats.iterations = iteration
        self._emit(IterationStartEvent(iteration=iteration, task=task.text))
        self._state.execute()

        while True:
            outcome = await self._execute_once(iteration, task)
            if self._stop_requested or outcome.kind == "stopped":
                return self._stop_code()

            match outcome.kind:
                case "done":
                    return await self._finish_iteration(iteration, task, started_at)
                case "rate_limited":
                    assert outcome.verdict is not None
                    if not await self._handle_rate_limit(outcome.verdict):
                        return self._stop_code()
                    self._emit(IterationStartEvent(iteration=iteration, task=task.text))
                case "failed":
                    message = outcome.message or "Agent failed"
                    self._emit(ErrorEvent(message=message))
                    if not self._config.continue_on_error:
                        self._state.fail()
                        return EXIT_ERROR
                    attempt = self._state.backoff.increment()
                    if not await self._backoff_wait(attempt, None):
                        return self._stop_code()
                    self._state.task_done()
                    return None

    async def _finish_iteration(self, iteration: int, task: Task, started_at: int) -> int | None:
        previous_commits = self._state.stats.commits
        repo = await self._repo_stats.collect()
        if self._stop_requested:
            return self._stop_code()

        stats = self._state.stats
        stats.commits = repo.commits
        stats.lines_added = repo.lines_added
        stats.lines_removed = repo.lines_removed
        self._pipeline.emit_stats(stats)

        ended_at = self._clock()
        record = IterationRecord(
            index=iteration,
            task_id=task.id,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=max(0, ended_at - started_at),
            commits=max(0, repo.commits - previous_commits),
        )
        self._state.record_iteration(record)
        self._state.backoff.reset()
        self._emit(
            IterationEndEvent(
                iteration=iteration,
                duration_ms=record.duration_ms,
                commits=record.commits,
            )
        )
        self._refresh_progress()
        self._state.task_done()
        return None

    # ------------------------------------------------------------------ #
    # Agent session
    # ------------------------------------------------------------------ #

    async def _execute_once(self, iteration: int, task: Task) -> _Outcome:
        request = AgentRequest(
            prompt=self._build_prompt(task),
            iteration=iteration,
            cwd=self._cwd,
            model=self._model,
            agent=self._config.agent,
            plan_file=self._config.plan,
        )
        self._emit(PromptEvent(prompt=request.prompt))

        try:
            session = await self._executor.start(request)
        except Exception as exc:
            logger.exception("Failed to start agent for iteration %d", iteration)
            return self._classify_failure(_describe(exc), exit_code=1)

        if self._stop_requested:
            await session.cleanup()
            return _STOPPED

        self._session = session
        if session.session_id:
            self._emit(SessionEvent(action="created", session_id=session.session_id))
        self._set_idle(True)

        terminal: AgentExit | AgentError | None = None
        try:
            async for event in session.events():
                if isinstance(event, AgentExit | AgentError):
                    terminal = event
                    break
                self._set_idle(False)
                self._forward(iteration, event)
        finally:
            self._session = None
            self._set_idle(False)
            await session.cleanup()
            if session.session_id:
                self._emit(SessionEvent(action="ended", session_id=session.session_id))

        if self._stop_requested:
            return _STOPPED
        match terminal:
            case None:
                return _Outcome("failed", message="Agent session ended without an exit status")
            case AgentExit(exit_code=0):
                return _Outcome("done")
            case AgentExit(exit_code=code, stderr=stderr):
                return self._classify_failure(stderr, exit_code=code, exited=True)
            case AgentError(message=message):
                return self._classify_failure(message, exit_code=1)

    def _forward(self, iteration: int, event: object) -> None:
        match event:
            case AgentOutput(text=text):
                self._emit(OutputEvent(data=text))
            case AgentTool(name=name, title=title, detail=detail):
                self._emit(ToolEvent(iteration=iteration, name=name, title=title, detail=detail))
            case AgentReasoning(text=text):
                self._emit(ReasoningEvent(iteration=iteration, text=text))
            case AgentTokens():
                self._emit(
                    TokensEvent(
                        input=event.input,
                        output=event.output,
                        reasoning=event.reasoning,
                        cache_read=event.cache_read,
                        cache_write=event.cache_write,
                    )
                )
            case AgentModel(model=model):
                self._emit(ModelEvent(model=model))
            case AgentPlanModified():
                self._emit(PlanModifiedEvent())
                self._refresh_progress()

    def _classify_failure(self, text: str, exit_code: int, *, exited: bool = False) -> _Outcome:
        """Decide between a rate limit and a plain failure.

        *exited* marks *text* as captured process output rather than an
        error message; the exit code is then named in the failure.
        """
        verdict = self._detector.detect(
            text, exit_code=exit_code, agent_id=self._executor.agent_id
        )
        if verdict.is_rate_limit:
            return _Outcome("rate_limited", verdict=verdict)
        if not exited:
            return _Outcome("failed", message=text or "Agent failed")
        message = f"Agent exited with code {exit_code}"
        preview = format_stderr_preview(text)
        if preview:
            message += f":\n  {preview}"
        return _Outcome("failed", message=message)

    def _build_prompt(self, task: Task) -> str:
        template = load_template(self._config.prompt, self._cwd / self._config.prompt_file)
        prompt = render(template, self._config.plan, self._config.progress, task.text)
        prompt = apply_steering(prompt, self._steering)
        self._steering.clear()
        return prompt

    # ------------------------------------------------------------------ #
    # Rate limits and backoff
    # ------------------------------------------------------------------ #

    async def _handle_rate_limit(self, verdict: RateLimitVerdict) -> bool:
        primary = self._state.active_agent.agent_id
        fallback = None if self._fallback_used else self._resolve_fallback()
        logger.warning("Rate limited on %s (fallback: %s)", primary, fallback or "none")
        self._emit(
            RateLimitEvent(
                primary_agent=primary,
                fallback_agent=fallback,
                message=verdict.message,
                retry_after=verdict.retry_after_seconds,
            )
        )
        attempt = self._state.backoff.increment()
        if fallback is not None:
            await self._switch_to_fallback(fallback)
        return await self._backoff_wait(attempt, verdict.retry_after_seconds)

    def _resolve_fallback(self) -> str | None:
        return self._fallback.get_fallback_agent(
            self._model
        ) or self._fallback.get_fallback_agent(self._executor.agent_id)

    async def _switch_to_fallback(self, fallback: str) -> None:
        self._fallback_used = True
        if "/" in fallback:
            self._model = fallback
        elif self._executor_factory is not None:
            replacement = self._executor_factory(fallback)
            with contextlib.suppress(Exception):
                await self._executor.close()
            self._executor = replacement
        else:
            logger.warning("Fallback %r names an adapter but none can be built", fallback)
        self._state.active_agent = ActiveAgentState(agent_id=fallback, reason="fallback")
        self._emit(ModelEvent(model=self._model))
        self._emit(ActiveAgentEvent(agent=fallback, reason="fallback"))

    async def _backoff_wait(self, attempt: int, retry_after_seconds: int | None) -> bool:
        """Wait out the backoff; ``False`` when the wait was cut short by a stop."""
        delay_ms = max(self._policy.delay_ms(attempt), (retry_after_seconds or 0) * 1000)
        self._emit(
            BackoffEvent(
                backoff_ms=delay_ms,
                retry_at=self._clock() + delay_ms,
                attempt=attempt,
            )
        )
        logger.info("Backing off %d ms (attempt %d)", delay_ms, attempt)
        elapsed = await self._timer.wait(delay_ms / 1000)
        if not elapsed or self._stop_requested:
            return False
        self._emit(BackoffClearedEvent())
        return True

    # ------------------------------------------------------------------ #
    # Plan helpers
    # ------------------------------------------------------------------ #

    def _refresh_progress(self) -> None:
        tasks = self._plan.tasks()
        done = sum(1 for t in tasks if t.done)
        self._state.stats.tasks_complete = done
        self._state.stats.total_tasks = len(tasks)
        self._emit(ProgressEvent(done=done, total=len(tasks)))

    def _next_task(self) -> Task | None:
        return next((t for t in self._plan.tasks() if not t.done), None)

    def _check_done_file(self) -> None:
        """Consume the done file; a premature one is ignored."""
        path = self._cwd / DONE_FILE
        if not path.exists():
            return
        with contextlib.suppress(OSError):
            path.unlink()
        tasks = self._plan.tasks()
        done = sum(1 for t in tasks if t.done)
        if tasks and done == len(tasks):
            logger.info("%s found and every task is done", DONE_FILE)
        else:
            logger.warning(
                "Premature %s ignored: only %d/%d tasks complete", DONE_FILE, done, len(tasks)
            )

    # ------------------------------------------------------------------ #
    # Events, limits, teardown
    # ------------------------------------------------------------------ #

    def _emit(self, event: HeadlessEvent) -> None:
        self._pipeline.emit(event)

    def _set_idle(self, idle: bool) -> None:
        if self._state.set_idle(idle):
            self._emit(IdleEvent(is_idle=idle))

    def _mark(self, status: LoopStatus) -> None:
        if self._state.terminal:
            return
        with contextlib.suppress(InvalidTransitionError):
            if status is LoopStatus.STOPPED:
                self._state.stop()
            else:
                self._state.fail()

    def _stop_code(self) -> int:
        return self._exit_code if self._exit_code is not None else EXIT_INTERRUPTED

    async def _enforce_max_time(self, seconds: int) -> None:
        await asyncio.sleep(seconds)
        await self.stop(EXIT_LIMIT, f"max-time reached ({seconds}s)")

    async def _teardown(self) -> None:
        steps: tuple[tuple[str, Callable[[], Awaitable[None]]], ...] = (
            ("cancel backoff timer", self._cancel_timers),
            ("clean up agent session", self._cleanup_session),
            ("stop pause watcher", self._stop_pause_watcher),
            ("close executor", self._executor.close),
            ("release lock", self._release_lock),
            ("finalize events", self._finalize),
        )
        for name, step in steps:
            try:
                await step()
            except Exception:
                logger.exception("Teardown step failed: %s", name)

    async def _cancel_timers(self) -> None:
        self._timer.cancel()
        task = self._deadline_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _cleanup_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.cleanup()

    async def _stop_pause_watcher(self) -> None:
        self._shutdown.set()
        if self._pause_watcher is not None:
            await self._pause_watcher.stop()

    async def _release_lock(self) -> None:
        self._lock.release()

    async def _finalize(self) -> None:
        exit_code = self._exit_code if self._exit_code is not None else EXIT_ERROR
        self._pipeline.finalize(exit_code, self._state.stats)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
