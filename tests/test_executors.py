"""Tests for agent command builders, helpers, and the PTY executor."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from ralph.agent.adapters import ADAPTER_NAMES, build_command
from ralph.agent.base import AgentExit, AgentOutput, AgentRequest
from ralph.agent.executors import PtyExecutor, PtySession, RemoteExecutor, create_executor
from ralph.agent.helpers import (
    LineAccumulator,
    format_stderr_preview,
    split_model,
    strip_ansi,
    truncate_line,
)
from ralph.agent.pty_bridge import ProcessBridge

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _request(**kwargs: object) -> AgentRequest:
    values: dict[str, object] = {"prompt": "fix it", "iteration": 1, "cwd": Path(".")}
    values.update(kwargs)
    return AgentRequest(**values)  # type: ignore[arg-type]


class TestHelpers:
    def test_strip_ansi(self) -> None:
        raw = "\x1b[1;32mgreen\x1b[0m \x1b]0;title\x07text\x1b[2K"
        assert strip_ansi(raw) == "green text"

    def test_format_stderr_preview(self) -> None:
        text = "\n".join(f"line {i}" for i in range(10)) + "\n\n"
        assert format_stderr_preview(text, max_lines=2) == "line 8\n  line 9"

    def test_truncate_line(self) -> None:
        assert truncate_line("short") == "short"
        assert truncate_line("x" * 81) == "x" * 77 + "..."
        assert truncate_line("x" * 80) == "x" * 80

    def test_split_model(self) -> None:
        assert split_model("anthropic/claude-opus-4") == ("anthropic", "claude-opus-4")
        assert split_model("openrouter/meta/llama") == ("openrouter", "meta/llama")

    @pytest.mark.parametrize("model", ["claude", "/claude", "anthropic/"])
    def test_split_model_invalid(self, model: str) -> None:
        with pytest.raises(ValueError, match="Invalid model format"):
            split_model(model)

    def test_line_accumulator(self) -> None:
        acc = LineAccumulator()
        assert acc.update("a") == []
        assert acc.update("ab\n  c  \nd") == ["ab", "c"]
        assert acc.update("ab\n  c  \nd\n") == ["d"]


# ------------------------------------------------------------------ #
# Command builders
# ------------------------------------------------------------------ #


class TestBuildCommand:
    def test_adapter_names(self) -> None:
        assert ADAPTER_NAMES == ("opencode-server", "opencode-run", "codex", "claude")

    def test_opencode_run(self) -> None:
        cmd = build_command("opencode-run", _request(model="anthropic/claude", agent="build"))
        assert cmd == [
            "opencode", "run", "--model", "anthropic/claude", "--agent", "build", "fix it"
        ]

    def test_codex_uses_model_part(self) -> None:
        cmd = build_command("codex", _request(model="openai/gpt-5"))
        assert cmd == ["codex", "exec", "--full-auto", "--model", "gpt-5", "fix it"]

    def test_claude(self) -> None:
        cmd = build_command("claude", _request(model="anthropic/opus"))
        assert cmd == [
            "claude", "-p", "fix it", "--dangerously-skip-permissions", "--model", "opus"
        ]

    def test_without_model(self) -> None:
        assert build_command("opencode-run", _request()) == ["opencode", "run", "fix it"]

    def test_unknown_adapter(self) -> None:
        with pytest.raises(ValueError, match="Unknown PTY adapter"):
            build_command("opencode-server", _request())


# ------------------------------------------------------------------ #
# Executors
# ------------------------------------------------------------------ #


class TestCreateExecutor:
    def test_server_adapter(self) -> None:
        executor = create_executor("opencode-server", "http://localhost:4190", 1000)
        assert isinstance(executor, RemoteExecutor)

    def test_pty_adapter(self) -> None:
        executor = create_executor("claude")
        assert isinstance(executor, PtyExecutor)
        assert executor.agent_id == "claude"
        assert executor.mode == "pty"

    def test_unknown(self) -> None:
        with pytest.raises(ValueError):
            PtyExecutor("nope")


class TestPtyExecutor:
    @pytest.mark.asyncio
    async def test_start_spawns_built_command(self, tmp_path: Path) -> None:
        bridge = ProcessBridge(use_pty=False)
        spawn = AsyncMock(side_effect=RuntimeError("stop here"))
        bridge.spawn = spawn  # type: ignore[method-assign]
        executor = PtyExecutor("codex", bridge=bridge, cols=100, rows=30, env={"A": "1"})

        with pytest.raises(RuntimeError):
            await executor.start(_request(cwd=tmp_path, model="openai/gpt-5"))

        spawn.assert_awaited_once_with(
            ["codex", "exec", "--full-auto", "--model", "gpt-5", "fix it"],
            cols=100,
            rows=30,
            cwd=tmp_path,
            env={"A": "1"},
        )


class TestPtySession:
    @pytest.mark.asyncio
    async def test_output_then_exit(self) -> None:
        code = "import sys; sys.stderr.write('\\x1b[31mboom\\x1b[0m\\n'); sys.exit(2)"
        handle = await ProcessBridge(use_pty=False).spawn([sys.executable, "-c", code])
        session = PtySession(handle)
        assert session.session_id is None

        events = [event async for event in session.events()]
        await session.cleanup()

        outputs = "".join(e.text for e in events if isinstance(e, AgentOutput))
        assert outputs == "boom\n"
        assert events[-1] == AgentExit(exit_code=2, stderr="boom\n")

    @pytest.mark.asyncio
    async def test_send_and_cleanup(self) -> None:
        code = "import os; print('echo:' + os.read(0, 64).decode().strip())"
        handle = await ProcessBridge(use_pty=False).spawn([sys.executable, "-c", code])
        session = PtySession(handle)

        assert await session.send("steer me") is True
        events = [event async for event in session.events()]
        output = "".join(e.text for e in events if isinstance(e, AgentOutput))
        assert "echo:steer me" in output

        await session.cleanup()
        await session.cleanup()
        assert await session.send("late") is False

    @pytest.mark.asyncio
    async def test_cleanup_ends_event_stream(self) -> None:
        code = "import time; time.sleep(30)"
        handle = await ProcessBridge(use_pty=False).spawn([sys.executable, "-c", code])
        session = PtySession(handle)

        async def consume() -> list[object]:
            return [event async for event in session.events()]

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        await session.cleanup()
        assert await asyncio.wait_for(consumer, timeout=5) == []
