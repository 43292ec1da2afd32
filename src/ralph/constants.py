"""Shared constants for the ralph runtime."""

from __future__ import annotations

#: Lock file guarding a working directory against concurrent runs.
LOCK_FILE = ".ralph-lock"

#: Presence of this file pauses the loop; removing it resumes.
PAUSE_FILE = ".ralph-pause"

#: Agents create this file when they believe every task is done.
DONE_FILE = ".ralph-done"

#: Debug log written when ``--debug`` is passed.
LOG_FILE = ".ralph-log"

#: Default port for a locally attached opencode server.
DEFAULT_SERVER_PORT = 4190

#: Default host for a locally attached opencode server.
DEFAULT_SERVER_HOST = "127.0.0.1"

#: Headless exit codes.
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 2
EXIT_LIMIT = 3
