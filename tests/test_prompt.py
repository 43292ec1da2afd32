"""Tests for prompt templates."""

from __future__ import annotations

from pathlib import Path

from ralph.prompt import (
    DEFAULT_PROMPT,
    apply_steering,
    load_template,
    render,
    strip_front_matter,
)


class TestLoadTemplate:
    def test_inline_prompt_wins(self, tmp_path: Path) -> None:
        prompt_file = tmp_path / "prompt.md"
        prompt_file.write_text("from file")
        assert load_template("inline", prompt_file) == "inline"

    def test_blank_inline_prompt_falls_through(self, tmp_path: Path) -> None:
        prompt_file = tmp_path / "prompt.md"
        prompt_file.write_text("from file")
        assert load_template("   ", prompt_file) == "from file"

    def test_prompt_file_front_matter_stripped(self, tmp_path: Path) -> None:
        prompt_file = tmp_path / "prompt.md"
        prompt_file.write_text("---\ntitle: loop\n---\n\nDo {task}\n")
        assert load_template(None, prompt_file) == "Do {task}\n"

    def test_missing_prompt_file_uses_default(self, tmp_path: Path) -> None:
        assert load_template(None, tmp_path / "missing.md") == DEFAULT_PROMPT

    def test_default(self) -> None:
        assert load_template(None, None) == DEFAULT_PROMPT


class TestRender:
    def test_placeholders(self) -> None:
        template = "{plan} {{PLAN_FILE}} {progress} {{PROGRESS_FILE}} [{task}]"
        assert render(template, "plan.md", "progress.txt", "Fix bug") == (
            "plan.md plan.md progress.txt progress.txt [Fix bug]"
        )

    def test_missing_task_is_blank(self) -> None:
        assert render("[{task}]", "p", "q") == "[]"

    def test_default_prompt_mentions_files(self) -> None:
        rendered = render(DEFAULT_PROMPT, "plan.md", "progress.txt")
        assert "{plan}" not in rendered
        assert "READ all of plan.md and progress.txt" in rendered
        assert ".ralph-done" in rendered


class TestSteering:
    def test_appends_messages(self) -> None:
        assert apply_steering("Base", ["  use pytest ", "", "be brief"]) == (
            "Base\n\nAdditional context from user:\nuse pytest\nbe brief"
        )

    def test_no_messages(self) -> None:
        assert apply_steering("Base", []) == "Base"
        assert apply_steering("Base", ["   "]) == "Base"


def test_strip_front_matter_without_block() -> None:
    assert strip_front_matter("plain\n---\ntext") == "plain\n---\ntext"
